"""
Scheduling Module.

- Calendar collaborator (Google Calendar)
- Slot allocation and booking
- Reminder and idle-cleanup sweeps
"""

from .calendar_client import (
    BusyInterval,
    CalendarClient,
    CalendarError,
    CalendarEvent,
    GoogleCalendarClient,
)
from .slot_allocator import Slot, SlotAllocator, format_slot_list
from .booking import BookingCoordinator, BookingOutcome, BookingStatus, DEFERRED_BOOKING_TEXT
from .reminders import ReminderScheduler, ReminderReport
from .cleanup import IdleCleanup

__all__ = [
    "BusyInterval",
    "CalendarClient",
    "CalendarError",
    "CalendarEvent",
    "GoogleCalendarClient",
    "Slot",
    "SlotAllocator",
    "format_slot_list",
    "BookingCoordinator",
    "BookingOutcome",
    "BookingStatus",
    "DEFERRED_BOOKING_TEXT",
    "ReminderScheduler",
    "ReminderReport",
    "IdleCleanup",
]
