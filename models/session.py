from sqlalchemy import (
    Column, Integer, String, BigInteger, ForeignKey, Boolean, JSON, DateTime, UniqueConstraint, Index
)
from models.base import Base, TimestampMixin

MODE_EXAM = "exam"
MODE_PRACTICE = "practice"

STATUS_ACTIVE = "active"
STATUS_SUBMITTED = "submitted"
STATUS_EXPIRED = "expired"


class ExamSession(Base, TimestampMixin):
    __tablename__ = "exam_sessions"

    id = Column(String(32), primary_key=True)
    user_id = Column(BigInteger, ForeignKey("users.telegram_id"), index=True, nullable=False)
    exam_id = Column(Integer, nullable=False)

    mode = Column(String(10), nullable=False)
    status = Column(String(10), default=STATUS_ACTIVE, nullable=False)

    started_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=True)  # practice sessions are untimed
    finished_at = Column(DateTime, nullable=True)

    current_index = Column(Integer, default=1, nullable=False)
    total_count = Column(Integer, nullable=False)

    warn10_sent = Column(Boolean, default=False, nullable=False)
    warn5_sent = Column(Boolean, default=False, nullable=False)
    warn1_sent = Column(Boolean, default=False, nullable=False)

    correct_count = Column(Integer, nullable=True)
    score_percent = Column(Integer, nullable=True)

    # Frozen submission outcome, returned as-is on a repeated submit
    result_json = Column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_exam_sessions_sweep", "status", "mode"),
        Index("idx_exam_sessions_user_status", "user_id", "status"),
    )


class SessionQuestion(Base):
    __tablename__ = "session_questions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(32), ForeignKey("exam_sessions.id", ondelete="CASCADE"), index=True, nullable=False)
    question_id = Column(Integer, ForeignKey("questions.id"), nullable=False)
    q_index = Column(Integer, nullable=False)
    flagged = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("session_id", "q_index", name="uq_session_questions_index"),
        UniqueConstraint("session_id", "question_id", name="uq_session_questions_question"),
    )


class SessionAnswer(Base):
    __tablename__ = "session_answers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(32), ForeignKey("exam_sessions.id", ondelete="CASCADE"), index=True, nullable=False)
    question_id = Column(Integer, ForeignKey("questions.id"), nullable=False)
    answer_id = Column(Integer, ForeignKey("answers.id"), nullable=False)

    __table_args__ = (
        UniqueConstraint("session_id", "question_id", "answer_id", name="uq_session_answers_option"),
    )
