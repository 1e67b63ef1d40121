"""
Booking Coordinator.

Resolves a numbered slot selection and books it on the calendar, at most
once per conversation. The sequence is:

1. short-circuit when the appointment is already scheduled or claimed
2. validate the selection against the most recently offered list
3. take the booking claim (version-guarded conditional update)
4. regenerate availability and check the chosen slot is still free
5. create the calendar event with no session open
6. record the appointment, or release the claim on failure
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.flows.engine import Stage, advance_stage, parse_stage
from api.middleware.metrics import record_booking
from database.models import Conversation
from database.repositories import (
    ConcurrencyConflictError,
    ConversationRepository,
    mutate_conversation,
)

from .calendar_client import CalendarClient, CalendarError, CalendarEvent
from .slot_allocator import Slot, SlotAllocator, display_time, format_slot_list, slots_from_json

logger = logging.getLogger(__name__)

CLAIM_ATTEMPTS = 3

DEFERRED_BOOKING_TEXT = (
    "No momento não consigo consultar a agenda. "
    "Nossa equipe vai entrar em contato para combinar o melhor horário."
)


class BookingStatus(Enum):
    CONFIRMED = "confirmed"
    ALREADY_BOOKED = "already_booked"
    IN_PROGRESS = "in_progress"
    INVALID_SELECTION = "invalid_selection"
    SLOT_TAKEN = "slot_taken"
    NO_AVAILABILITY = "no_availability"
    FAILED = "failed"


@dataclass
class BookingOutcome:
    """Result of one booking attempt, with the reply to send."""
    status: BookingStatus
    reply_text: str
    slot: Optional[Slot] = None
    event: Optional[CalendarEvent] = None
    # Fresh list to store as the new offered list on a re-prompt
    offered_slots: List[Slot] = field(default_factory=list)

    @property
    def confirmed(self) -> bool:
        return self.status == BookingStatus.CONFIRMED


def _to_utc_naive(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class BookingCoordinator:
    """Books a selected slot for a contact's active conversation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        allocator: SlotAllocator,
        calendar: Optional[CalendarClient],
        scorer,
        meeting_title: str = "Reunião de apresentação",
        claim_ttl_minutes: int = 5,
    ):
        self.session_factory = session_factory
        self.allocator = allocator
        self.calendar = calendar
        self.scorer = scorer
        self.meeting_title = meeting_title
        self.claim_ttl = timedelta(minutes=claim_ttl_minutes)

    def _already_booked(self, conv: Conversation) -> BookingOutcome:
        when = ""
        if conv.appointment_date:
            local = conv.appointment_date.replace(tzinfo=timezone.utc).astimezone(self.allocator.tz)
            when = f" para {display_time(local)}"
        text = f"Sua reunião já está agendada{when}."
        if conv.appointment_meeting_link:
            text += f"\nLink: {conv.appointment_meeting_link}"
        return BookingOutcome(status=BookingStatus.ALREADY_BOOKED, reply_text=text)

    def _in_progress(self) -> BookingOutcome:
        return BookingOutcome(
            status=BookingStatus.IN_PROGRESS,
            reply_text="Estou finalizando seu agendamento, só um instante.",
        )

    def _claim_live(self, conv: Conversation, now: datetime) -> bool:
        return (
            conv.appointment_status == "PENDING"
            and conv.booking_claimed_at is not None
            and conv.booking_claimed_at >= now - self.claim_ttl
        )

    def _reprompt(self, status: BookingStatus, slots: List[Slot]) -> BookingOutcome:
        if not slots:
            return self._finish(BookingOutcome(
                status=BookingStatus.NO_AVAILABILITY,
                reply_text=(
                    "No momento não há horários disponíveis. "
                    "Nossa equipe vai entrar em contato para combinar a reunião."
                ),
            ))
        lead = (
            "Esse horário acabou de ser preenchido."
            if status == BookingStatus.SLOT_TAKEN
            else "Não encontrei essa opção."
        )
        return self._finish(BookingOutcome(
            status=status,
            reply_text=(
                f"{lead} Estes são os horários disponíveis, responda com o número:\n"
                f"{format_slot_list(slots)}"
            ),
            offered_slots=slots,
        ))

    def _finish(self, outcome: BookingOutcome) -> BookingOutcome:
        record_booking(outcome.status.value)
        return outcome

    def _describe(self, conv: Conversation) -> str:
        lines = [
            f"Nome: {conv.name or '-'}",
            f"Cargo: {conv.role or '-'}",
            f"E-mail: {conv.email or '-'}",
            f"WhatsApp: {conv.contact_key}",
        ]
        return "\n".join(lines)

    async def book(
        self, contact_key: str, index: int, now: Optional[datetime] = None
    ) -> BookingOutcome:
        """
        Book the slot at 1-based index of the most recently offered list.

        Never raises for calendar or concurrency failures; the outcome
        carries the reply to send instead.
        """
        async with self.session_factory() as session:
            conv = await ConversationRepository(session).get_active(contact_key)
            if conv is None:
                logger.warning(f"Booking requested for {contact_key} without an active conversation")
                return self._finish(BookingOutcome(status=BookingStatus.FAILED, reply_text=DEFERRED_BOOKING_TEXT))
            if conv.appointment_scheduled:
                return self._finish(self._already_booked(conv))
            if self._claim_live(conv, datetime.utcnow()):
                return self._finish(self._in_progress())
            conversation_id = conv.id
            offered = slots_from_json(conv.offered_slots)

        try:
            fresh = None if offered else await self.allocator.available_slots(now=now)
            numbering = offered or fresh
            if not 1 <= index <= len(numbering):
                logger.info(f"Slot index {index} out of range (1..{len(numbering)}) for {contact_key}")
                if fresh is None:
                    fresh = await self.allocator.available_slots(now=now)
                return self._reprompt(BookingStatus.INVALID_SELECTION, fresh)
        except CalendarError as e:
            logger.error(f"Availability lookup failed for {contact_key}: {e}")
            return self._finish(BookingOutcome(status=BookingStatus.FAILED, reply_text=DEFERRED_BOOKING_TEXT))
        chosen = numbering[index - 1]

        claim = await self._claim(conversation_id)
        if claim is not None:
            return self._finish(claim)

        try:
            outcome, event = await self._create_event(contact_key, conversation_id, chosen, now)
        except Exception:
            # No event exists yet, so the claim must not outlive this attempt
            await self._release(conversation_id)
            raise
        if outcome is not None:
            await self._release(conversation_id)
            return outcome

        try:
            await self._record(conversation_id, chosen, event)
        except ConcurrencyConflictError as e:
            # The event exists but could not be recorded; leave the claim to expire
            logger.error(f"Booking for {contact_key} created event {event.event_id} but was not saved: {e}")
            return self._finish(BookingOutcome(
                status=BookingStatus.FAILED,
                reply_text=(
                    "Não consegui concluir o agendamento agora. "
                    "Nossa equipe vai entrar em contato para confirmar o horário."
                ),
                slot=chosen,
                event=event,
            ))

        logger.info(
            f"Meeting booked for {contact_key} at {chosen.iso}",
            extra={"contact_key": contact_key, "event_id": event.event_id},
        )
        text = f"Perfeito! Sua reunião está confirmada para {chosen.display}."
        if event.meeting_link:
            text += f"\nLink da reunião: {event.meeting_link}"
        return self._finish(BookingOutcome(
            status=BookingStatus.CONFIRMED, reply_text=text, slot=chosen, event=event,
        ))

    async def _create_event(
        self, contact_key: str, conversation_id: str, chosen: Slot, now: Optional[datetime]
    ) -> Tuple[Optional[BookingOutcome], Optional[CalendarEvent]]:
        """
        Re-check availability under the claim, then create the event.

        Returns (outcome, None) when the booking stops here, or
        (None, event) once the event exists.
        """
        try:
            fresh = await self.allocator.available_slots(now=now)
        except CalendarError as e:
            logger.error(f"Availability lookup failed for {contact_key}: {e}")
            return self._finish(BookingOutcome(status=BookingStatus.FAILED, reply_text=DEFERRED_BOOKING_TEXT)), None
        if chosen not in fresh:
            logger.info(f"Slot {chosen.iso} no longer available for {contact_key}")
            return self._reprompt(BookingStatus.SLOT_TAKEN, fresh), None

        async with self.session_factory() as session:
            conv = await ConversationRepository(session).get_by_id(conversation_id)
            description = self._describe(conv)
            attendees = [conv.email] if conv.email else None
        try:
            if self.calendar is None:
                raise CalendarError("Calendar not configured")
            event = await self.calendar.create_event(
                start=chosen.start,
                end=chosen.end,
                summary=self.meeting_title,
                description=description,
                attendees=attendees,
            )
        except CalendarError as e:
            logger.error(f"Calendar event creation failed for {contact_key}: {e}")
            return self._finish(BookingOutcome(
                status=BookingStatus.FAILED,
                reply_text=(
                    "Não consegui concluir o agendamento agora. "
                    "Nossa equipe vai entrar em contato para confirmar o horário."
                ),
                slot=chosen,
            )), None
        return None, event

    async def _claim(self, conversation_id: str) -> Optional[BookingOutcome]:
        """Take the claim. Returns None on success, else the outcome to report."""
        for _ in range(CLAIM_ATTEMPTS):
            async with self.session_factory() as session:
                repo = ConversationRepository(session)
                conv = await repo.get_by_id(conversation_id)
                if conv.appointment_scheduled:
                    return self._already_booked(conv)
                if self._claim_live(conv, datetime.utcnow()):
                    return self._in_progress()
                if await repo.claim_booking(conversation_id, conv.version, self.claim_ttl):
                    await session.commit()
                    return None
                await session.rollback()
        return self._in_progress()

    async def _release(self, conversation_id: str) -> None:
        async with self.session_factory() as session:
            await ConversationRepository(session).release_booking_claim(conversation_id)
            await session.commit()

    async def _record(self, conversation_id: str, slot: Slot, event: CalendarEvent) -> None:
        async def apply(session: AsyncSession, conv: Conversation) -> None:
            now = datetime.utcnow()
            conv.appointment_scheduled = True
            conv.appointment_event_id = event.event_id
            conv.appointment_meeting_link = event.meeting_link
            conv.appointment_date = _to_utc_naive(slot.start)
            conv.appointment_status = "CONFIRMED"
            conv.appointment_booked_at = now
            conv.booking_claimed_at = None
            conv.reminder_day_before_sent = False
            conv.reminder_hour_before_sent = False
            conv.stage = advance_stage(parse_stage(conv.stage) or Stage.INITIAL, Stage.CONFIRM_BOOKING).value
            conv.last_activity = now
            await ConversationRepository(session).rescore(conv, self.scorer)

        await mutate_conversation(self.session_factory, conversation_id, apply)
