from typing import Dict, List, Optional
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from models.question import Question
from models.session import ExamSession, SessionQuestion, SessionAnswer
from services.question_service import QuestionService
from utils.rounding import percent
from core.config import settings
from core.exceptions import NotFoundError
from db.session import reading


class CategoryStats(BaseModel):
    category: str
    total: int
    correct: int


class GradeResult(BaseModel):
    total: int
    correct: int
    percent: int  # 0..100, rounded half up
    by_category: List[CategoryStats] = Field(default_factory=list)


class Submission(BaseModel):
    result: GradeResult
    passed: bool


class ScoringService:
    def __init__(self, db: AsyncSession, questions: Optional[QuestionService] = None,
                 categories: Optional[List[str]] = None):
        self.db = db
        self.questions = questions or QuestionService(db)
        self.categories = list(categories if categories is not None else settings.CATEGORY_QUOTA.keys())

    async def _require_session(self, session_id: str):
        result = await self.db.execute(select(ExamSession.id).filter(ExamSession.id == session_id))
        if result.scalar_one_or_none() is None:
            raise NotFoundError(f"Session {session_id} not found")

    async def _selected(self, session_id: str, question_id: int) -> List[int]:
        result = await self.db.execute(
            select(SessionAnswer.answer_id)
            .filter(SessionAnswer.session_id == session_id, SessionAnswer.question_id == question_id)
            .order_by(SessionAnswer.answer_id.asc())
        )
        return list(result.scalars().all())

    async def _is_correct(self, session_id: str, question_id: int) -> bool:
        correct_ids = await self.questions.correct_answer_ids(question_id)
        if not correct_ids:
            return False
        return await self._selected(session_id, question_id) == correct_ids

    async def selected_answer_ids(self, session_id: str, question_id: int) -> List[int]:
        async with reading(self.db):
            await self._require_session(session_id)
            return await self._selected(session_id, question_id)

    async def is_question_correct(self, session_id: str, question_id: int) -> bool:
        """All-or-nothing: the chosen set must equal the correct set exactly."""
        async with reading(self.db):
            await self._require_session(session_id)
            return await self._is_correct(session_id, question_id)

    async def grade(self, session_id: str) -> GradeResult:
        async with reading(self.db):
            await self._require_session(session_id)
            result = await self.db.execute(
                select(SessionQuestion.question_id, Question.category)
                .join(Question, Question.id == SessionQuestion.question_id)
                .filter(SessionQuestion.session_id == session_id)
                .order_by(SessionQuestion.q_index.asc())
            )
            rows = result.all()

            by_category: Dict[str, Dict[str, int]] = {c: {"total": 0, "correct": 0} for c in self.categories}
            correct_count = 0

            for question_id, category in rows:
                bucket = by_category.setdefault(category, {"total": 0, "correct": 0})
                bucket["total"] += 1
                if await self._is_correct(session_id, question_id):
                    correct_count += 1
                    bucket["correct"] += 1

        total = len(rows)
        return GradeResult(
            total=total,
            correct=correct_count,
            percent=percent(correct_count, total),
            by_category=[
                CategoryStats(category=c, total=v["total"], correct=v["correct"])
                for c, v in by_category.items()
            ],
        )
