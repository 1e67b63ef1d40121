"""
Slot Allocator.

Generates candidate meeting windows inside business hours on working days
and drops the ones that overlap busy intervals on the calendar.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

from .calendar_client import BusyInterval, CalendarClient, CalendarError

logger = logging.getLogger(__name__)

WEEKDAYS_PT = [
    "Segunda-feira",
    "Terça-feira",
    "Quarta-feira",
    "Quinta-feira",
    "Sexta-feira",
    "Sábado",
    "Domingo",
]


def display_time(value: datetime) -> str:
    """Portuguese weekday, day/month and time, e.g. "Terça-feira, 21/10 às 14:00"."""
    return f"{WEEKDAYS_PT[value.weekday()]}, {value:%d/%m} às {value:%H:%M}"


@dataclass(frozen=True)
class Slot:
    """A candidate meeting window (aware datetimes in the business timezone)."""
    start: datetime
    end: datetime

    @property
    def iso(self) -> str:
        return self.start.isoformat()

    @property
    def display(self) -> str:
        return display_time(self.start)

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.iso, "end": self.end.isoformat(), "display": self.display}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Slot":
        return cls(
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]),
        )


def format_slot_list(slots: Sequence[Slot]) -> str:
    """Numbered list, one slot per line, 1-based."""
    return "\n".join(f"{i}. {slot.display}" for i, slot in enumerate(slots, start=1))


def slots_from_json(data: Optional[List[Dict[str, Any]]]) -> List[Slot]:
    """Decode a stored offered-slot list; malformed entries are skipped."""
    slots = []
    for item in data or []:
        try:
            slots.append(Slot.from_dict(item))
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Skipping malformed stored slot: {item!r}")
    return slots


class SlotAllocator:
    """Computes available meeting slots against a calendar."""

    def __init__(
        self,
        calendar: Optional[CalendarClient],
        timezone: str = "America/Sao_Paulo",
        business_start: time = time(9, 0),
        business_end: time = time(18, 0),
        duration_minutes: int = 30,
        buffer_minutes: int = 15,
        days_ahead: int = 7,
        working_days: Sequence[int] = (0, 1, 2, 3, 4),
        max_slots: int = 6,
    ):
        self.calendar = calendar
        self.tz = ZoneInfo(timezone)
        self.business_start = business_start
        self.business_end = business_end
        self.duration = timedelta(minutes=duration_minutes)
        self.step = timedelta(minutes=duration_minutes + buffer_minutes)
        self.days_ahead = days_ahead
        self.working_days = set(working_days)
        self.max_slots = max_slots

    def business_days(self, today: date) -> List[date]:
        """The next N working days, starting today."""
        days: List[date] = []
        day = today
        # Bounded so an empty working-day set cannot loop forever
        for _ in range(self.days_ahead * 7 + 7):
            if len(days) >= self.days_ahead:
                break
            if day.weekday() in self.working_days:
                days.append(day)
            day += timedelta(days=1)
        return days

    def windows_for_day(self, day: date) -> List[Slot]:
        """All fixed-duration windows in business hours, stepping by duration + buffer."""
        windows = []
        start = datetime.combine(day, self.business_start, tzinfo=self.tz)
        close = datetime.combine(day, self.business_end, tzinfo=self.tz)
        while start + self.duration <= close:
            windows.append(Slot(start=start, end=start + self.duration))
            start += self.step
        return windows

    async def available_slots(self, now: Optional[datetime] = None) -> List[Slot]:
        """
        Up to max_slots free windows, in chronological order.

        Raises:
            CalendarError: calendar not configured or busy lookup failed
        """
        if self.calendar is None:
            raise CalendarError("Calendar not configured")

        now = (now or datetime.now(self.tz)).astimezone(self.tz)
        slots: List[Slot] = []

        for day in self.business_days(now.date()):
            candidates = [w for w in self.windows_for_day(day) if w.start > now]
            if not candidates:
                continue

            day_start = datetime.combine(day, self.business_start, tzinfo=self.tz)
            day_end = datetime.combine(day, self.business_end, tzinfo=self.tz)
            busy: List[BusyInterval] = await self.calendar.list_busy(day_start, day_end)

            for window in candidates:
                if any(b.overlaps(window.start, window.end) for b in busy):
                    continue
                slots.append(window)
                if len(slots) >= self.max_slots:
                    return slots

        logger.debug(f"Generated {len(slots)} available slots")
        return slots
