import random
from typing import Dict, List, Optional
from services.question_service import QuestionService
from core.config import settings
from core.exceptions import InsufficientPoolError
from core.logger import logger


class SelectionService:
    def __init__(
        self,
        questions: QuestionService,
        quota: Optional[Dict[str, int]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.questions = questions
        self.quota = dict(quota if quota is not None else settings.CATEGORY_QUOTA)
        self.rng = rng or random.Random()

    async def select_question_set(self) -> List[int]:
        """
        Draw each category's quota of distinct active questions, then shuffle
        the whole set so the category order is not visible to the taker.
        """
        available = await self.questions.count_active_by_category()
        for category, needed in self.quota.items():
            if available.get(category, 0) < needed:
                logger.warning("Question pool too small", category=category,
                               needed=needed, available=available.get(category, 0))
                raise InsufficientPoolError(category, needed, available.get(category, 0))

        ids: List[int] = []
        for category, needed in self.quota.items():
            pool = await self.questions.active_ids_in_category(category)
            # The pool may have shrunk since the count
            if len(pool) < needed:
                raise InsufficientPoolError(category, needed, len(pool))
            ids.extend(self.rng.sample(pool, needed))

        # random.shuffle is Fisher-Yates
        self.rng.shuffle(ids)
        return ids
