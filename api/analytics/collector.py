"""
Analytics Aggregator.

Recomputes the daily rollup from the full day's messages and conversations
and upserts it, so repeated runs converge on the same record.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import Conversation, DailyAnalytics, Message
from database.repositories import AnalyticsRepository

logger = logging.getLogger(__name__)

COUNTERS = (
    "messages",
    "new_conversations",
    "completed",
    "abandoned",
    "scheduled_meetings",
    "confirmed_meetings",
    "forwarded",
)


def day_bounds_utc(day: date, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    """[start, end) of a local calendar day as naive UTC datetimes."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return (
        start.astimezone(timezone.utc).replace(tzinfo=None),
        end.astimezone(timezone.utc).replace(tzinfo=None),
    )


class AnalyticsAggregator:
    """Computes and stores per-day rollups."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], timezone_name: str = "America/Sao_Paulo"):
        self.session_factory = session_factory
        self.tz = ZoneInfo(timezone_name)

    def today(self) -> date:
        return datetime.now(self.tz).date()

    async def _count(self, session: AsyncSession, q) -> int:
        return (await session.execute(q)).scalar() or 0

    async def compute(self, session: AsyncSession, day: date) -> Dict[str, Any]:
        start, end = day_bounds_utc(day, self.tz)

        def within(col):
            return and_(col >= start, col < end)

        conv_count = select(func.count(Conversation.id))
        values: Dict[str, Any] = {
            "messages": await self._count(
                session, select(func.count(Message.id)).where(within(Message.created_at))
            ),
            "new_conversations": await self._count(
                session, conv_count.where(within(Conversation.conversation_started))
            ),
            "completed": await self._count(
                session, conv_count.where(Conversation.stage == "COMPLETED", within(Conversation.last_activity))
            ),
            "abandoned": await self._count(
                session, conv_count.where(Conversation.stage == "ABANDONED", within(Conversation.last_activity))
            ),
            "scheduled_meetings": await self._count(
                session, conv_count.where(Conversation.appointment_scheduled.is_(True), within(Conversation.appointment_date))
            ),
            "confirmed_meetings": await self._count(
                session, conv_count.where(Conversation.appointment_status == "CONFIRMED", within(Conversation.appointment_booked_at))
            ),
            "forwarded": await self._count(
                session, conv_count.where(Conversation.forwarded.is_(True), within(Conversation.last_forwarded_at))
            ),
        }

        rows = await session.execute(
            select(Conversation.stage, func.count(Conversation.id))
            .where(
                Conversation.conversation_started < end,
                or_(Conversation.active.is_(True), within(Conversation.last_activity)),
            )
            .group_by(Conversation.stage)
        )
        values["stage_distribution"] = {stage: count for stage, count in rows.all()}
        return values

    async def recompute(self, day: Optional[date] = None) -> DailyAnalytics:
        """Recompute and upsert the record for a day (default: today)."""
        day = day or self.today()
        async with self.session_factory() as session:
            values = await self.compute(session, day)
            record = await AnalyticsRepository(session).upsert(day.isoformat(), values)
            await session.commit()
        logger.debug(f"Analytics recomputed for {day.isoformat()}: {values}")
        return record

    async def get_day(self, day: date) -> Optional[DailyAnalytics]:
        async with self.session_factory() as session:
            return await AnalyticsRepository(session).get(day.isoformat())

    async def summary(self, days: int = 7) -> Dict[str, Any]:
        """Stored records for the last N days (oldest first) plus totals."""
        today = self.today()
        keys = [(today - timedelta(days=i)).isoformat() for i in range(days - 1, -1, -1)]
        async with self.session_factory() as session:
            records = await AnalyticsRepository(session).list_days(keys)

        rows: List[Dict[str, Any]] = [r.to_dict() for r in records]
        totals = {k: sum(r[k] for r in rows) for k in COUNTERS}
        new = totals["new_conversations"]
        totals["completion_rate"] = round(totals["completed"] / new * 100, 1) if new else 0
        totals["scheduling_rate"] = round(totals["confirmed_meetings"] / new * 100, 1) if new else 0
        return {"days": days, "records": rows, "totals": totals}
