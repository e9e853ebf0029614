from typing import Dict, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from models.question import Question, Answer
from db.session import reading
from core.exceptions import NotFoundError


class QuestionService:
    """Read-only access to the question bank."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_question_by_id(self, question_id: int) -> Question:
        async with reading(self.db):
            result = await self.db.execute(select(Question).filter(Question.id == question_id))
            question = result.scalar_one_or_none()
        if question is None:
            raise NotFoundError(f"Question {question_id} not found")
        return question

    async def get_answers_for_question(self, question_id: int) -> List[Answer]:
        async with reading(self.db):
            result = await self.db.execute(
                select(Answer).filter(Answer.question_id == question_id).order_by(Answer.order_index.asc(), Answer.id.asc())
            )
            return list(result.scalars().all())

    async def count_active_by_category(self) -> Dict[str, int]:
        async with reading(self.db):
            result = await self.db.execute(
                select(Question.category, func.count(Question.id))
                .filter(Question.is_active == True)
                .group_by(Question.category)
            )
            return {category: count for category, count in result.all()}

    async def active_ids_in_category(self, category: str) -> List[int]:
        async with reading(self.db):
            result = await self.db.execute(
                select(Question.id)
                .filter(Question.category == category, Question.is_active == True)
                .order_by(Question.id.asc())
            )
            return list(result.scalars().all())

    async def correct_answer_ids(self, question_id: int) -> List[int]:
        async with reading(self.db):
            result = await self.db.execute(
                select(Answer.id)
                .filter(Answer.question_id == question_id, Answer.is_correct == True)
                .order_by(Answer.id.asc())
            )
            return list(result.scalars().all())

    async def answer_belongs_to_question(self, question_id: int, answer_id: int) -> bool:
        async with reading(self.db):
            result = await self.db.execute(
                select(Answer.id).filter(Answer.id == answer_id, Answer.question_id == question_id)
            )
            return result.scalar_one_or_none() is not None
