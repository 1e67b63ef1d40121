"""
Conversation Orchestrator.

Runs one inbound message through the qualification engine.

Pipeline:
1. Load or open the contact's active conversation, drop duplicates
2. Log the inbound message
3. Ask the oracle for a decision (no session held)
4. Clamp the stage transition
5. Book a selected slot, or offer slots
6. Persist fields, stage, score and the outbound reply
7. Send the reply, then persist its delivery status
8. Forward the lead when ready or just booked
9. Recompute today's analytics
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.channels.base import InboundMessage, MessagingChannel
from api.flows.engine import (
    Stage,
    TERMINAL_STAGES,
    advance_stage,
    parse_stage,
    resolve_transition,
)
from api.middleware.metrics import record_lead_score
from database.models import Conversation, Message
from database.repositories import (
    ConcurrencyConflictError,
    ConversationRepository,
    mutate_conversation,
)
from lead_scoring.lead_router import LeadForwarder
from lead_scoring.scoring_model import LeadScorer
from scheduling.booking import BookingCoordinator, BookingOutcome, DEFERRED_BOOKING_TEXT
from scheduling.calendar_client import CalendarError
from scheduling.slot_allocator import Slot, SlotAllocator, format_slot_list

from .decision import AIDecision, FALLBACK_REPLY, parse_slot_index
from .oracle import DecisionOracle

logger = logging.getLogger(__name__)

BOOKING_STAGES = (Stage.OFFER_SLOTS, Stage.CONFIRM_BOOKING)

NO_SLOTS_TEXT = (
    "No momento não há horários disponíveis. "
    "Nossa equipe vai entrar em contato para combinar a reunião."
)


@dataclass
class TurnResult:
    """What happened to one inbound message."""
    contact_key: str
    conversation_id: Optional[str] = None
    stage: Optional[str] = None
    lead_score: Optional[int] = None
    reply_text: Optional[str] = None
    intent: Optional[str] = None
    booking_status: Optional[str] = None
    delivered: bool = False
    forwarded: bool = False
    duplicate: bool = False
    processing_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contact_key": self.contact_key,
            "conversation_id": self.conversation_id,
            "stage": self.stage,
            "lead_score": self.lead_score,
            "reply_text": self.reply_text,
            "intent": self.intent,
            "booking_status": self.booking_status,
            "delivered": self.delivered,
            "forwarded": self.forwarded,
            "duplicate": self.duplicate,
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass
class _Snapshot:
    conversation_id: str
    inbound_id: str
    stage: Stage
    fields: Dict[str, Optional[str]]


class ConversationOrchestrator:
    """
    Per-message engine for the lead-qualification dialogue.

    Collaborators are passed in explicitly so tests can substitute fakes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        oracle: DecisionOracle,
        channel: MessagingChannel,
        allocator: SlotAllocator,
        booking: BookingCoordinator,
        forwarder: LeadForwarder,
        scorer: Optional[LeadScorer] = None,
        aggregator: Optional[Any] = None,
    ):
        self.session_factory = session_factory
        self.oracle = oracle
        self.channel = channel
        self.allocator = allocator
        self.booking = booking
        self.forwarder = forwarder
        self.scorer = scorer or LeadScorer()
        self.aggregator = aggregator

    async def process(self, message: InboundMessage, now: Optional[datetime] = None) -> Optional[TurnResult]:
        """
        Task-boundary entry point: never raises.

        On an unexpected failure the contact still gets the apology reply,
        unless this turn's reply was already delivered.
        """
        result = TurnResult(contact_key=message.contact_key)
        try:
            return await self.handle_inbound(message, now=now, result=result)
        except Exception:
            logger.exception(f"Processing inbound message from {message.contact_key} failed")
            if result.delivered:
                return None
            response = await self.channel.send_text(message.contact_key, FALLBACK_REPLY)
            if not response.success:
                logger.error(f"Apology to {message.contact_key} not delivered: {response.error}")
            return None

    # ── Steps ─────────────────────────────────────────────────────

    async def _log_inbound(self, message: InboundMessage) -> Optional[_Snapshot]:
        async with self.session_factory() as session:
            repo = ConversationRepository(session)
            if message.message_id and await repo.message_exists(message.message_id):
                return None
            conv = await repo.get_or_create_active(message.contact_key, message.display_name)
            conversation_id = conv.id

        async def apply(session: AsyncSession, conv: Conversation) -> _Snapshot:
            repo = ConversationRepository(session)
            inbound = await repo.add_message(
                conv.id, "IN", message.text, external_id=message.message_id
            )
            conv.last_activity = datetime.utcnow()
            if message.display_name and not conv.display_name:
                conv.display_name = message.display_name
            return _Snapshot(
                conversation_id=conv.id,
                inbound_id=inbound.id,
                stage=parse_stage(conv.stage) or Stage.INITIAL,
                fields={"name": conv.name, "role": conv.role, "email": conv.email},
            )

        try:
            return await mutate_conversation(self.session_factory, conversation_id, apply)
        except IntegrityError:
            if not message.message_id:
                raise
            # A concurrent delivery of the same message was logged first
            return None

    async def _offer_slots(self, now: Optional[datetime]) -> tuple:
        """Returns (text to append, slots to store or None)."""
        try:
            slots = await self.allocator.available_slots(now=now)
        except CalendarError as e:
            logger.error(f"Slot lookup failed: {e}")
            return DEFERRED_BOOKING_TEXT, None
        if not slots:
            return NO_SLOTS_TEXT, []
        return (
            "Estes são os próximos horários disponíveis. Responda com o número da opção:\n"
            f"{format_slot_list(slots)}",
            slots,
        )

    async def _persist_turn(
        self,
        snapshot: _Snapshot,
        decision: AIDecision,
        target: Stage,
        fields: Dict[str, str],
        offered: Optional[List[Slot]],
        reply: str,
    ) -> Dict[str, Any]:
        async def apply(session: AsyncSession, conv: Conversation) -> Dict[str, Any]:
            repo = ConversationRepository(session)
            now = datetime.utcnow()
            stored = parse_stage(conv.stage) or Stage.INITIAL
            new_stage = advance_stage(stored, target)

            for key, value in fields.items():
                setattr(conv, key, value)
            if offered is not None:
                conv.offered_slots = [s.to_dict() for s in offered]
            conv.stage = new_stage.value
            conv.last_activity = now
            if new_stage == Stage.COMPLETED:
                conv.active = False

            score = await repo.rescore(conv, self.scorer)

            inbound = await session.get(Message, snapshot.inbound_id)
            if inbound is not None:
                inbound.ai_analysis = decision.annotation()
            outbound = await repo.add_message(conv.id, "OUT", reply, delivery_status="pending")
            return {"outbound_id": outbound.id, "stage": new_stage.value, "score": score}

        return await mutate_conversation(self.session_factory, snapshot.conversation_id, apply)

    async def _record_delivery(self, outbound_id: str, success: bool, external_id: Optional[str]) -> None:
        async with self.session_factory() as session:
            await ConversationRepository(session).set_delivery_status(
                outbound_id, "sent" if success else "failed", external_id
            )
            await session.commit()

    async def _forward(self, conversation_id: str) -> bool:
        async with self.session_factory() as session:
            conv = await ConversationRepository(session).get_by_id(conversation_id)
        if conv is None:
            return False

        if not await self.forwarder.forward(conv):
            return False

        async def mark(session: AsyncSession, conv: Conversation) -> None:
            conv.forwarded = True
            conv.last_forwarded_at = datetime.utcnow()

        try:
            await mutate_conversation(self.session_factory, conversation_id, mark)
        except ConcurrencyConflictError as e:
            logger.error(f"Forward of {conversation_id} succeeded but was not recorded: {e}")
        return True

    # ── Main entry ────────────────────────────────────────────────

    async def handle_inbound(
        self,
        message: InboundMessage,
        now: Optional[datetime] = None,
        result: Optional[TurnResult] = None,
    ) -> TurnResult:
        """
        Process one inbound message end to end.

        Args:
            message: Parsed inbound text message
            now: Evaluation time for slot generation (aware); defaults to now
            result: TurnResult to fill in, so a caller can inspect a failed turn

        Returns:
            TurnResult describing the turn
        """
        start_time = time.time()
        if result is None:
            result = TurnResult(contact_key=message.contact_key)

        snapshot = await self._log_inbound(message)
        if snapshot is None:
            logger.info(f"Duplicate inbound message {message.message_id} ignored")
            result.duplicate = True
            return result
        result.conversation_id = snapshot.conversation_id

        current = snapshot.stage
        decision = await self.oracle.decide(current, snapshot.fields, message.text)
        result.intent = decision.intent.value

        reply = decision.reply_text
        target = current
        fields: Dict[str, str] = {}
        offered: Optional[List[Slot]] = None
        booking: Optional[BookingOutcome] = None

        if not decision.is_fallback and current not in TERMINAL_STAGES:
            target = resolve_transition(current, decision.next_stage)
            fields = decision.applicable_fields()
            if len(fields) > 1:
                logger.info(
                    f"Multiple fields extracted in one message: {sorted(fields)}",
                    extra={"conversation_id": snapshot.conversation_id},
                )

            selection = parse_slot_index(message.text) or decision.slot_selection()
            wants_booking = current in BOOKING_STAGES and (
                selection is not None or decision.requests_booking
            )

            if wants_booking:
                booking = await self.booking.book(message.contact_key, selection or 0, now=now)
                result.booking_status = booking.status.value
                reply = booking.reply_text
                if booking.offered_slots:
                    offered = booking.offered_slots
                if not booking.confirmed:
                    # Nothing from this turn is applied unless the booking went through
                    target = current
                    fields = {}
            elif current == Stage.OFFER_SLOTS:
                # OFFER_SLOTS is left only through a confirmed booking
                target = current

            if booking is None and target == Stage.OFFER_SLOTS and decision.needs_slot_offer:
                extra, offered = await self._offer_slots(now)
                reply = f"{reply}\n\n{extra}" if reply else extra

        result.reply_text = reply

        outbound_id: Optional[str] = None
        try:
            persisted = await self._persist_turn(snapshot, decision, target, fields, offered, reply)
            outbound_id = persisted["outbound_id"]
            result.stage = persisted["stage"]
            result.lead_score = persisted["score"]
            record_lead_score(persisted["score"])
        except ConcurrencyConflictError as e:
            logger.error(f"Turn for {message.contact_key} dropped after version conflicts: {e}")

        response = await self.channel.send_text(message.contact_key, reply)
        result.delivered = response.success
        if not response.success:
            logger.warning(f"Reply to {message.contact_key} not delivered: {response.error}")
        if outbound_id:
            await self._record_delivery(outbound_id, response.success, response.message_id)

        just_booked = booking is not None and booking.confirmed
        if not decision.is_fallback and (decision.ready_to_forward or just_booked):
            result.forwarded = await self._forward(snapshot.conversation_id)

        if self.aggregator is not None:
            try:
                await self.aggregator.recompute()
            except Exception:
                logger.exception("Analytics recompute after inbound message failed")

        result.processing_time_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Inbound processed for {message.contact_key}",
            extra={
                "conversation_id": snapshot.conversation_id,
                "intent": result.intent,
                "stage": result.stage,
                "lead_score": result.lead_score,
                "booking": result.booking_status,
            },
        )
        return result
