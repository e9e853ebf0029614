from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from models.session import ExamSession, MODE_EXAM, MODE_PRACTICE, STATUS_SUBMITTED
from models.user import User
from db.session import reading
from utils.rounding import percent, round_half_up
from core.config import settings


class ModeUsage(BaseModel):
    mode: str
    sessions: int
    users: int


class ExamSummary(BaseModel):
    submitted: int
    passes: int
    fails: int
    pass_rate_pct: int
    avg_score_pct: Optional[int] = None
    avg_minutes: Optional[float] = None


class AdminStats(BaseModel):
    window_start: datetime
    window_end: datetime
    users_total: int
    users_active: int
    usage_by_mode: List[ModeUsage]
    exam: ExamSummary


class StatsService:
    """Usage and outcome numbers over a [start, end) window."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_admin_stats(self, start: datetime, end: datetime, pass_percent: int = None) -> AdminStats:
        if pass_percent is None:
            pass_percent = settings.PASS_PERCENT

        async with reading(self.db):
            users_total = (await self.db.execute(select(func.count(User.id)))).scalar() or 0
            users_active = (await self.db.execute(
                select(func.count(func.distinct(ExamSession.user_id)))
                .filter(ExamSession.started_at >= start, ExamSession.started_at < end)
            )).scalar() or 0

        return AdminStats(
            window_start=start,
            window_end=end,
            users_total=users_total,
            users_active=users_active,
            usage_by_mode=await self.get_mode_usage(start, end),
            exam=await self.get_exam_summary(start, end, pass_percent),
        )

    async def get_mode_usage(self, start: datetime, end: datetime) -> List[ModeUsage]:
        async with reading(self.db):
            result = await self.db.execute(
                select(
                    ExamSession.mode,
                    func.count(ExamSession.id),
                    func.count(func.distinct(ExamSession.user_id)),
                )
                .filter(ExamSession.started_at >= start, ExamSession.started_at < end)
                .group_by(ExamSession.mode)
            )
            rows = result.all()
        # Both modes are always reported, zero rows included
        by_mode = {m: ModeUsage(mode=m, sessions=0, users=0) for m in (MODE_EXAM, MODE_PRACTICE)}
        for mode, sessions, users in rows:
            by_mode[mode] = ModeUsage(mode=mode, sessions=sessions, users=users)
        return list(by_mode.values())

    async def get_exam_summary(self, start: datetime, end: datetime, pass_percent: int) -> ExamSummary:
        async with reading(self.db):
            result = await self.db.execute(
                select(ExamSession.score_percent, ExamSession.started_at, ExamSession.finished_at)
                .filter(
                    ExamSession.mode == MODE_EXAM,
                    ExamSession.status == STATUS_SUBMITTED,
                    ExamSession.finished_at >= start,
                    ExamSession.finished_at < end,
                )
            )
            rows = result.all()

        submitted = len(rows)
        scores = [score for score, _, _ in rows if score is not None]
        passes = sum(1 for score in scores if score >= pass_percent)
        minutes = [
            (finished - started).total_seconds() / 60
            for _, started, finished in rows
            if finished and started and finished > started
        ]

        return ExamSummary(
            submitted=submitted,
            passes=passes,
            fails=submitted - passes,
            pass_rate_pct=percent(passes, submitted),
            avg_score_pct=round_half_up(sum(scores) / len(scores)) if scores else None,
            avg_minutes=round_half_up(sum(minutes) / len(minutes), 1) if minutes else None,
        )
