import asyncio
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Union
from pydantic import BaseModel
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.exceptions import ExamError, InvalidStateError
from core.logger import logger
from models.base import utcnow
from services.scoring_service import GradeResult
from services.session_service import SessionService, WARNING_FLAGS


class WarningRaised(BaseModel):
    session_id: str
    user_id: int
    threshold_minutes: int


class AutoSubmitted(BaseModel):
    session_id: str
    user_id: int
    result: GradeResult
    passed: bool


MonitorEvent = Union[WarningRaised, AutoSubmitted]


class Notifier(Protocol):
    async def notify(self, event: MonitorEvent) -> None: ...


def pick_warning(remaining: int, sent: dict) -> Optional[int]:
    """
    First unsent threshold the remaining time has crossed, tightest first.
    `sent` maps threshold minutes -> flag already set.
    """
    for minutes in sorted(WARNING_FLAGS):
        if remaining <= minutes * 60 and not sent.get(minutes):
            return minutes
    return None


class ExpiryMonitor:
    """
    Polls active timed sessions, raises time warnings and auto-submits expired
    ones. Warnings and auto-submits lag real time by at most one interval.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        notifier: Optional[Notifier] = None,
        pass_percent: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
        interval_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.pass_percent = pass_percent if pass_percent is not None else settings.PASS_PERCENT
        self.clock = clock
        self.interval_seconds = interval_seconds or settings.MONITOR_INTERVAL_SECONDS
        self._lock = asyncio.Lock()
        self._scheduler: Optional[AsyncIOScheduler] = None

    def start(self, scheduler: AsyncIOScheduler):
        scheduler.add_job(
            self.sweep,
            trigger="interval",
            seconds=self.interval_seconds,
            id=settings.MONITOR_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler = scheduler
        logger.info("Expiry monitor scheduled", interval_seconds=self.interval_seconds)

    async def stop(self):
        """Stop scheduling sweeps and wait for an in-flight sweep to finish."""
        if self._scheduler is not None:
            if self._scheduler.get_job(settings.MONITOR_JOB_ID):
                self._scheduler.remove_job(settings.MONITOR_JOB_ID)
            self._scheduler = None
        async with self._lock:
            pass
        logger.info("Expiry monitor stopped")

    async def sweep(self) -> List[MonitorEvent]:
        if self._lock.locked():
            logger.warning("Expiry sweep still running, skipping this tick")
            return []

        async with self._lock:
            logger.debug("Starting expiry sweep...")
            try:
                async with self.session_factory() as db:
                    sessions = await SessionService(db, clock=self.clock).list_expirable_sessions()
                    targets = [
                        (s.id, s.user_id, {1: s.warn1_sent, 5: s.warn5_sent, 10: s.warn10_sent})
                        for s in sessions
                    ]
            except ExamError as e:
                logger.error("Expiry sweep could not list sessions", error=str(e))
                return []

            events: List[MonitorEvent] = []
            for session_id, user_id, sent in targets:
                try:
                    event = await self._check_session(session_id, user_id, sent)
                except ExamError as e:
                    logger.error("Expiry check failed", session_id=session_id, error=str(e))
                    continue
                if event is not None:
                    events.append(event)
                    await self._emit(event)

            logger.debug("Expiry sweep completed", scanned=len(targets), events=len(events))
            return events

    async def _check_session(self, session_id: str, user_id: int, sent: dict) -> Optional[MonitorEvent]:
        # Each session gets its own unit of work so one failure does not poison the rest
        async with self.session_factory() as db:
            service = SessionService(db, clock=self.clock)
            remaining = await service.remaining_seconds(session_id)
            if remaining is None:
                return None

            if remaining <= 0:
                try:
                    submission = await service.finalize_and_submit(session_id, self.pass_percent)
                except InvalidStateError as e:
                    # Someone else closed it first; their result stands
                    logger.info("Auto-submit lost race", session_id=session_id, reason=str(e))
                    return None
                logger.info("Exam auto-submitted", session_id=session_id, user_id=user_id,
                            percent=submission.result.percent, passed=submission.passed)
                return AutoSubmitted(session_id=session_id, user_id=user_id,
                                     result=submission.result, passed=submission.passed)

            minutes = pick_warning(remaining, sent)
            if minutes is None:
                return None
            if not await service.mark_warning_sent(session_id, minutes):
                return None
            logger.info("Time warning raised", session_id=session_id, user_id=user_id,
                        threshold_minutes=minutes, remaining=remaining)
            return WarningRaised(session_id=session_id, user_id=user_id, threshold_minutes=minutes)

    async def _emit(self, event: MonitorEvent):
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(event)
        except Exception as e:
            # Delivery is best effort; the state change is already committed
            logger.error("Failed to deliver monitor event", event_type=type(event).__name__,
                         session_id=event.session_id, error=str(e))
