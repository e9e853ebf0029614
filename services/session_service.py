import math
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, insert, update, delete, func
from models.base import utcnow
from models.session import (
    ExamSession, SessionQuestion, SessionAnswer,
    MODE_EXAM, MODE_PRACTICE, STATUS_ACTIVE, STATUS_SUBMITTED, STATUS_EXPIRED,
)
from services.question_service import QuestionService
from services.selection_service import SelectionService
from services.scoring_service import ScoringService, Submission
from services.user_service import UserService
from db.session import atomic, reading
from core.config import settings
from core.exceptions import NotFoundError, InvalidStateError, ActiveSessionExistsError
from core.logger import logger

# Warning threshold (minutes) -> flag column, tightest first
WARNING_FLAGS = {1: "warn1_sent", 5: "warn5_sent", 10: "warn10_sent"}

QSTATUS_UNANSWERED = "unanswered"
QSTATUS_ANSWERED = "answered"
QSTATUS_FLAGGED = "flagged"


class Progress(BaseModel):
    answered: int
    flagged: int
    total: int


class SessionService:
    """
    Owns the exam session lifecycle: active -> submitted | expired.
    Stateless between calls; every compound write runs in one transaction.
    """

    def __init__(
        self,
        db: AsyncSession,
        questions: Optional[QuestionService] = None,
        selection: Optional[SelectionService] = None,
        scoring: Optional[ScoringService] = None,
        users: Optional[UserService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.clock = clock
        self.questions = questions or QuestionService(db)
        self.selection = selection or SelectionService(self.questions)
        self.scoring = scoring or ScoringService(db, self.questions)
        self.users = users or UserService(db, clock=clock)

    # ---- lookups -------------------------------------------------------

    async def get_session(self, session_id: str) -> ExamSession:
        async with reading(self.db):
            result = await self.db.execute(
                select(ExamSession)
                .filter(ExamSession.id == session_id)
                .execution_options(populate_existing=True)
            )
            session = result.scalar_one_or_none()
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    async def get_active_session(self, user_id: int, exam_id: Optional[int] = None) -> Optional[ExamSession]:
        query = select(ExamSession).filter(ExamSession.user_id == user_id, ExamSession.status == STATUS_ACTIVE)
        if exam_id is not None:
            query = query.filter(ExamSession.exam_id == exam_id)
        async with reading(self.db):
            result = await self.db.execute(
                query.order_by(ExamSession.started_at.desc()).limit(1).execution_options(populate_existing=True)
            )
            return result.scalars().first()

    async def get_question_at(self, session_id: str, index: int) -> SessionQuestion:
        async with reading(self.db):
            result = await self.db.execute(
                select(SessionQuestion)
                .filter(SessionQuestion.session_id == session_id, SessionQuestion.q_index == index)
                .execution_options(populate_existing=True)
            )
            row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"No question at position {index} in session {session_id}")
        return row

    # ---- creation ------------------------------------------------------

    async def create_session(self, user_id: int, exam_id: int, mode: str) -> ExamSession:
        if mode not in (MODE_EXAM, MODE_PRACTICE):
            raise ValueError(f"Unknown session mode: {mode}")

        # Lookup-then-create: two racing callers can both pass this check
        existing = await self.get_active_session(user_id, exam_id)
        if existing is not None:
            raise ActiveSessionExistsError(user_id, exam_id, existing.id)

        async with reading(self.db):
            question_ids = await self.selection.select_question_set()

        async with atomic(self.db):
            session = await self._insert_session(user_id, exam_id, mode, question_ids)

        logger.info("Exam session created", user_id=user_id, session_id=session.id,
                    mode=mode, expires_at=session.expires_at)
        return session

    async def _insert_session(self, user_id: int, exam_id: int, mode: str, question_ids: List[int]) -> ExamSession:
        # Sessions reference users.telegram_id; a first-time user gets a row here
        await self.users.get_or_create_user(user_id)
        await self.db.flush()

        now = self.clock()
        session = ExamSession(
            id=uuid.uuid4().hex,
            user_id=user_id,
            exam_id=exam_id,
            mode=mode,
            status=STATUS_ACTIVE,
            started_at=now,
            expires_at=now + timedelta(minutes=settings.EXAM_DURATION_MINUTES) if mode == MODE_EXAM else None,
            current_index=1,
            total_count=len(question_ids),
            warn10_sent=False,
            warn5_sent=False,
            warn1_sent=False,
        )
        self.db.add(session)
        # Flush the parent first so the position rows have a target
        await self.db.flush()
        self.db.add_all([
            SessionQuestion(session_id=session.id, question_id=qid, q_index=i, flagged=False)
            for i, qid in enumerate(question_ids, start=1)
        ])
        await self.db.flush()
        return session

    # ---- navigation and flags ------------------------------------------

    async def set_current_index(self, session_id: str, index: int) -> int:
        session = await self.get_session(session_id)
        index = max(1, min(index, session.total_count))
        async with atomic(self.db):
            session.current_index = index
        return index

    async def toggle_flag(self, session_id: str, index: int) -> bool:
        row = await self.get_question_at(session_id, index)
        # Read-modify-write without a row lock; last writer wins
        async with atomic(self.db):
            row.flagged = not row.flagged
            flagged = row.flagged
        return flagged

    async def clear_all_flags(self, session_id: str):
        await self.get_session(session_id)
        async with atomic(self.db):
            await self.db.execute(
                update(SessionQuestion)
                .where(SessionQuestion.session_id == session_id)
                .values(flagged=False)
                .execution_options(synchronize_session=False)
            )

    # ---- answers -------------------------------------------------------

    def _require_open(self, session: ExamSession):
        if session.status != STATUS_ACTIVE:
            raise InvalidStateError(f"Session {session.id} is {session.status}; answers are frozen")
        if session.expires_at is not None and self.clock() >= session.expires_at:
            raise InvalidStateError(f"Session {session.id} ran out of time; answers are frozen")

    async def _require_answerable(self, session_id: str, question_id: int, answer_id: Optional[int] = None):
        """Checked before the write transaction opens, so a rejection rolls nothing back."""
        session = await self.get_session(session_id)
        self._require_open(session)

        async with reading(self.db):
            result = await self.db.execute(
                select(SessionQuestion.id)
                .filter(SessionQuestion.session_id == session_id, SessionQuestion.question_id == question_id)
            )
            in_session = result.scalar_one_or_none() is not None
            belongs = answer_id is None or await self.questions.answer_belongs_to_question(question_id, answer_id)

        if not in_session:
            raise NotFoundError(f"Question {question_id} is not part of session {session_id}")
        if not belongs:
            raise NotFoundError(f"Answer {answer_id} is not an option of question {question_id}")
        return session

    async def record_single_choice(self, session_id: str, question_id: int, answer_id: int):
        """Replace whatever was chosen for the question with exactly one option."""
        await self._require_answerable(session_id, question_id, answer_id)
        async with atomic(self.db):
            await self.db.execute(
                delete(SessionAnswer)
                .where(SessionAnswer.session_id == session_id, SessionAnswer.question_id == question_id)
                .execution_options(synchronize_session=False)
            )
            await self.db.execute(
                insert(SessionAnswer).values(session_id=session_id, question_id=question_id, answer_id=answer_id)
            )
        logger.debug("Single choice recorded", session_id=session_id, question_id=question_id, answer_id=answer_id)

    async def toggle_multi_choice(self, session_id: str, question_id: int, answer_id: int) -> bool:
        """
        Flip membership of one option in the chosen set.
        Returns True if the option is selected afterwards.
        """
        await self._require_answerable(session_id, question_id, answer_id)
        async with atomic(self.db):
            result = await self.db.execute(
                delete(SessionAnswer)
                .where(
                    SessionAnswer.session_id == session_id,
                    SessionAnswer.question_id == question_id,
                    SessionAnswer.answer_id == answer_id,
                )
                .execution_options(synchronize_session=False)
            )
            selected = not result.rowcount
            if selected:
                # Unique (session, question, answer) rejects a racing duplicate insert
                await self.db.execute(
                    insert(SessionAnswer).values(session_id=session_id, question_id=question_id, answer_id=answer_id)
                )
        logger.debug("Multi choice toggled", session_id=session_id, question_id=question_id,
                     answer_id=answer_id, selected=selected)
        return selected

    async def selected_answer_ids(self, session_id: str, question_id: int) -> List[int]:
        return await self.scoring.selected_answer_ids(session_id, question_id)

    async def reset_answers(self, session_id: str, question_id: Optional[int] = None):
        query = delete(SessionAnswer).where(SessionAnswer.session_id == session_id)
        if question_id is None:
            self._require_open(await self.get_session(session_id))
        else:
            await self._require_answerable(session_id, question_id)
            query = query.where(SessionAnswer.question_id == question_id)

        async with atomic(self.db):
            await self.db.execute(query.execution_options(synchronize_session=False))
        logger.info("Answers reset", session_id=session_id, question_id=question_id)

    # ---- progress and timing -------------------------------------------

    async def progress(self, session_id: str) -> Progress:
        session = await self.get_session(session_id)

        async with reading(self.db):
            answered = await self.db.execute(
                select(func.count(func.distinct(SessionAnswer.question_id)))
                .filter(SessionAnswer.session_id == session_id)
            )
            flagged = await self.db.execute(
                select(func.count(SessionQuestion.id))
                .filter(SessionQuestion.session_id == session_id, SessionQuestion.flagged == True)
            )
            return Progress(answered=answered.scalar() or 0, flagged=flagged.scalar() or 0, total=session.total_count)

    async def question_statuses(self, session_id: str) -> List[str]:
        """Per position, 1-based order: flagged wins over answered."""
        session = await self.get_session(session_id)

        async with reading(self.db):
            answered_rows = await self.db.execute(
                select(SessionAnswer.question_id).filter(SessionAnswer.session_id == session_id).distinct()
            )
            answered = set(answered_rows.scalars().all())

            rows = await self.db.execute(
                select(SessionQuestion.q_index, SessionQuestion.question_id, SessionQuestion.flagged)
                .filter(SessionQuestion.session_id == session_id)
            )
            positions = rows.all()

        statuses = [QSTATUS_UNANSWERED] * session.total_count
        for q_index, question_id, is_flagged in positions:
            if is_flagged:
                statuses[q_index - 1] = QSTATUS_FLAGGED
            elif question_id in answered:
                statuses[q_index - 1] = QSTATUS_ANSWERED
        return statuses

    async def remaining_seconds(self, session_id: str) -> Optional[int]:
        session = await self.get_session(session_id)
        if session.status != STATUS_ACTIVE or session.expires_at is None:
            return None
        delta = (session.expires_at - self.clock()).total_seconds()
        return max(0, math.floor(delta))

    # ---- terminal transitions ------------------------------------------

    async def abandon(self, session_id: str) -> bool:
        """active -> expired. Returns False when the session was already terminal."""
        await self.get_session(session_id)
        async with atomic(self.db):
            changed = await self._expire(session_id)
        if changed:
            logger.info("Exam session abandoned", session_id=session_id)
        return changed

    async def _expire(self, session_id: str) -> bool:
        result = await self.db.execute(
            update(ExamSession)
            .where(ExamSession.id == session_id, ExamSession.status == STATUS_ACTIVE)
            .values(status=STATUS_EXPIRED, finished_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def restart_practice(self, session_id: str) -> ExamSession:
        old = await self.get_session(session_id)
        if old.mode != MODE_PRACTICE:
            raise InvalidStateError("Restart is allowed only in practice mode")

        existing = await self.get_active_session(old.user_id, old.exam_id)
        if existing is not None and existing.id != session_id:
            raise ActiveSessionExistsError(old.user_id, old.exam_id, existing.id)

        async with reading(self.db):
            question_ids = await self.selection.select_question_set()

        async with atomic(self.db):
            await self._expire(session_id)
            session = await self._insert_session(old.user_id, old.exam_id, MODE_PRACTICE, question_ids)

        logger.info("Practice session restarted", user_id=session.user_id,
                    old_session_id=session_id, session_id=session.id)
        return session

    async def finalize_and_submit(self, session_id: str, pass_percent: Optional[int] = None) -> Submission:
        """
        Grade and close an exam session. A repeated call on a submitted session
        returns the stored outcome without re-grading. A caller that loses the
        active -> submitted race writes nothing and gets InvalidStateError.
        """
        if pass_percent is None:
            pass_percent = settings.PASS_PERCENT

        session = await self.get_session(session_id)
        if session.mode != MODE_EXAM:
            raise InvalidStateError("Practice sessions have no submission")
        if session.status == STATUS_SUBMITTED and session.result_json:
            return Submission.model_validate(session.result_json)
        if session.status != STATUS_ACTIVE:
            raise InvalidStateError(f"Session {session_id} is {session.status}")

        async with atomic(self.db):
            result = await self.scoring.grade(session_id)
            submission = Submission(result=result, passed=result.percent >= pass_percent)
            now = self.clock()

            cas = await self.db.execute(
                update(ExamSession)
                .where(ExamSession.id == session_id, ExamSession.status == STATUS_ACTIVE)
                .values(
                    status=STATUS_SUBMITTED,
                    finished_at=now,
                    correct_count=result.correct,
                    score_percent=result.percent,
                    result_json=submission.model_dump(),
                )
                .execution_options(synchronize_session=False)
            )
            won = cas.rowcount == 1
            if won and not submission.passed:
                await self.users.mark_failure(session.user_id, now)

        if not won:
            logger.info("Submit lost to a concurrent finalize", session_id=session_id)
            raise InvalidStateError(f"Session {session_id} was finalized concurrently")

        logger.info("Exam session submitted", session_id=session_id, user_id=session.user_id,
                    correct=result.correct, total=result.total, percent=result.percent,
                    passed=submission.passed)
        return submission

    # ---- expiry monitor support ----------------------------------------

    async def list_expirable_sessions(self) -> List[ExamSession]:
        async with reading(self.db):
            result = await self.db.execute(
                select(ExamSession)
                .filter(
                    ExamSession.status == STATUS_ACTIVE,
                    ExamSession.mode == MODE_EXAM,
                    ExamSession.expires_at.is_not(None),
                )
                .order_by(ExamSession.expires_at.asc())
                .execution_options(populate_existing=True)
            )
            return list(result.scalars().all())

    async def mark_warning_sent(self, session_id: str, minutes: int) -> bool:
        """
        Set the flag for one threshold. Looser thresholds are closed with it so
        a late 10-minute warning never follows a 1-minute one. Flags are never
        cleared; returns True only for the call that set the flag.
        """
        column = getattr(ExamSession, WARNING_FLAGS[minutes])
        values = {name: True for m, name in WARNING_FLAGS.items() if m >= minutes}
        async with atomic(self.db):
            result = await self.db.execute(
                update(ExamSession)
                .where(ExamSession.id == session_id, ExamSession.status == STATUS_ACTIVE, column == False)
                .values(values)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1
