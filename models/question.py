from sqlalchemy import Column, Integer, String, Text, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, TimestampMixin

QTYPE_SINGLE = "single"
QTYPE_MULTI = "multi"


class Question(Base, TimestampMixin):
    __tablename__ = "questions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category = Column(String(32), index=True, nullable=False)
    qtype = Column(String(10), nullable=False, default=QTYPE_SINGLE)
    text = Column(Text, nullable=False)
    code_snippet = Column(Text, nullable=True)
    explanation = Column(Text, nullable=True)
    reference_url = Column(String(512), nullable=True)
    reference_title = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    answers = relationship(
        "Answer",
        back_populates="question",
        order_by="Answer.order_index",
        cascade="all, delete-orphan",
    )


class Answer(Base):
    __tablename__ = "answers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    question_id = Column(Integer, ForeignKey("questions.id", ondelete="CASCADE"), index=True, nullable=False)
    text = Column(Text, nullable=False)
    is_correct = Column(Boolean, default=False, nullable=False)
    order_index = Column(Integer, default=0, nullable=False)

    question = relationship("Question", back_populates="answers")
