"""
Reminder Scheduler.

Two passes over confirmed appointments: the day before and about one hour
before. A reminder is sent first; its flag is set afterwards with a
conditional update, so a failed send is retried by the next sweep and a
repeated sweep never resends.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.channels.base import MessagingChannel
from api.middleware.metrics import record_reminder
from database.models import Conversation
from database.repositories import ConversationRepository

from .slot_allocator import display_time

logger = logging.getLogger(__name__)

DAY_BEFORE = "reminder_day_before_sent"
HOUR_BEFORE = "reminder_hour_before_sent"


@dataclass
class ReminderReport:
    """Counts from one sweep."""
    kind: str
    due: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "due": self.due,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def _utc_naive(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ReminderScheduler:
    """Finds due reminders and sends each one exactly once."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        channel: MessagingChannel,
        timezone_name: str = "America/Sao_Paulo",
        hour_window_minutes: int = 10,
    ):
        self.session_factory = session_factory
        self.channel = channel
        self.tz = ZoneInfo(timezone_name)
        self.hour_window = timedelta(minutes=hour_window_minutes)

    def tomorrow_bounds(self, now: datetime) -> Tuple[datetime, datetime]:
        """[start, end) of tomorrow in the business timezone, as naive UTC."""
        local = now.astimezone(self.tz)
        tomorrow = local.date() + timedelta(days=1)
        start = datetime.combine(tomorrow, time.min, tzinfo=self.tz)
        end = datetime.combine(tomorrow + timedelta(days=1), time.min, tzinfo=self.tz)
        return _utc_naive(start), _utc_naive(end)

    def hour_bounds(self, now: datetime) -> Tuple[datetime, datetime]:
        """now + 1h, plus or minus half the window, as naive UTC."""
        target = now + timedelta(hours=1)
        half = self.hour_window / 2
        return _utc_naive(target - half), _utc_naive(target + half)

    def _message(self, conv: Conversation, kind: str) -> str:
        local = conv.appointment_date.replace(tzinfo=timezone.utc).astimezone(self.tz)
        who = f", {conv.name.split()[0]}" if conv.name else ""
        if kind == DAY_BEFORE:
            text = f"Olá{who}! Lembrete: nossa reunião é amanhã, {display_time(local)}."
        else:
            text = f"Olá{who}! Nossa reunião começa em cerca de 1 hora ({local:%H:%M})."
        if conv.appointment_meeting_link:
            text += f"\nLink: {conv.appointment_meeting_link}"
        return text

    async def _sweep(self, kind: str, start: datetime, end: datetime) -> ReminderReport:
        report = ReminderReport(kind=kind)

        async with self.session_factory() as session:
            due = await ConversationRepository(session).confirmed_between(start, end, kind)
        report.due = len(due)

        for conv in due:
            response = await self.channel.send_text(conv.contact_key, self._message(conv, kind))
            record_reminder(kind, response.success)
            if not response.success:
                report.failed += 1
                report.errors.append(f"{conv.contact_key}: {response.error}")
                logger.warning(f"Reminder {kind} to {conv.contact_key} failed: {response.error}")
                continue

            async with self.session_factory() as session:
                repo = ConversationRepository(session)
                marked = await repo.mark_reminder_sent(conv.id, kind)
                if marked:
                    await repo.add_message(
                        conv.id, "OUT", self._message(conv, kind),
                        external_id=response.message_id, delivery_status="sent",
                    )
                await session.commit()
            if marked:
                report.sent += 1
            else:
                # Another sweep sent it concurrently
                report.skipped += 1

        if report.due:
            logger.info(f"Reminder sweep {kind}: {report.to_dict()}")
        return report

    async def run_day_before(self, now: Optional[datetime] = None) -> ReminderReport:
        now = now or datetime.now(timezone.utc)
        start, end = self.tomorrow_bounds(now)
        return await self._sweep(DAY_BEFORE, start, end)

    async def run_hour_before(self, now: Optional[datetime] = None) -> ReminderReport:
        now = now or datetime.now(timezone.utc)
        start, end = self.hour_bounds(now)
        return await self._sweep(HOUR_BEFORE, start, end)
