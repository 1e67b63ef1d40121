"""
Repository classes for the data access layer.

Each repository encapsulates CRUD operations for a specific model.
Conversation writes that race with other writers go through
mutate_conversation(), which retries on version conflicts.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import select, func, update, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .models import Conversation, Message, DailyAnalytics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConcurrencyConflictError(Exception):
    """Raised when a conversation update keeps losing to concurrent writers."""

    def __init__(self, conversation_id: str, attempts: int):
        super().__init__(
            f"Conversation {conversation_id} update lost {attempts} version races"
        )
        self.conversation_id = conversation_id
        self.attempts = attempts


class ConversationRepository:
    """Data access for conversations and their message log."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, conversation_id: str) -> Optional[Conversation]:
        result = await self.session.execute(
            select(Conversation).where(Conversation.id == conversation_id)
        )
        return result.scalar_one_or_none()

    async def get_active(self, contact_key: str) -> Optional[Conversation]:
        result = await self.session.execute(
            select(Conversation).where(
                Conversation.contact_key == contact_key,
                Conversation.active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def get_latest(self, contact_key: str) -> Optional[Conversation]:
        """Active conversation, or the most recent archived one."""
        result = await self.session.execute(
            select(Conversation)
            .where(Conversation.contact_key == contact_key)
            .order_by(Conversation.active.desc(), Conversation.last_activity.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create(self, contact_key: str, **kwargs) -> Conversation:
        now = datetime.utcnow()
        conv = Conversation(
            contact_key=contact_key,
            stage="INITIAL",
            active=True,
            conversation_started=now,
            last_activity=now,
            **kwargs,
        )
        self.session.add(conv)
        await self.session.flush()
        return conv

    async def get_or_create_active(
        self, contact_key: str, display_name: Optional[str] = None
    ) -> Conversation:
        """
        Fetch the contact's active conversation or open a new one.

        The partial unique index on active conversations makes a racing
        create fail; the loser rolls back and reads the winner's row.
        Commits when a conversation is created.
        """
        conv = await self.get_active(contact_key)
        if conv:
            return conv
        try:
            conv = await self.create(contact_key, display_name=display_name)
            await self.session.commit()
            logger.info(f"Conversation opened for {contact_key}", extra={"conversation_id": conv.id})
            return conv
        except IntegrityError:
            await self.session.rollback()
            conv = await self.get_active(contact_key)
            if not conv:
                raise
            return conv

    async def message_exists(self, external_id: str) -> bool:
        result = await self.session.execute(
            select(func.count(Message.id)).where(Message.external_id == external_id)
        )
        return (result.scalar() or 0) > 0

    async def add_message(
        self,
        conversation_id: str,
        direction: str,
        content: str,
        external_id: Optional[str] = None,
        delivery_status: Optional[str] = None,
        ai_analysis: Optional[Dict[str, Any]] = None,
    ) -> Message:
        msg = Message(
            conversation_id=conversation_id,
            direction=direction,
            content=content,
            external_id=external_id,
            delivery_status=delivery_status,
            ai_analysis=ai_analysis,
            created_at=datetime.utcnow(),
        )
        self.session.add(msg)
        await self.session.flush()
        return msg

    async def set_delivery_status(
        self, message_id: str, status: str, external_id: Optional[str] = None
    ) -> None:
        values: Dict[str, Any] = {"delivery_status": status}
        if external_id:
            values["external_id"] = external_id
        await self.session.execute(
            update(Message).where(Message.id == message_id).values(**values)
        )
        await self.session.flush()

    async def get_messages(self, conversation_id: str, limit: int = 200) -> List[Message]:
        result = await self.session.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_inbound(self, conversation_id: str) -> int:
        result = await self.session.execute(
            select(func.count(Message.id)).where(
                Message.conversation_id == conversation_id,
                Message.direction == "IN",
            )
        )
        return result.scalar() or 0

    async def rescore(self, conv: Conversation, scorer: Any) -> int:
        """Recompute lead_score from the conversation's current state."""
        inbound = await self.count_inbound(conv.id)
        conv.lead_score = scorer.score_conversation(conv, inbound)
        return conv.lead_score

    async def list(
        self,
        active: Optional[bool] = None,
        stage: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Conversation]:
        q = select(Conversation).order_by(Conversation.last_activity.desc())
        if active is not None:
            q = q.where(Conversation.active.is_(active))
        if stage:
            q = q.where(Conversation.stage == stage)
        result = await self.session.execute(q.offset(offset).limit(limit))
        return list(result.scalars().all())

    async def count(self, active: Optional[bool] = None, stage: Optional[str] = None) -> int:
        q = select(func.count(Conversation.id))
        if active is not None:
            q = q.where(Conversation.active.is_(active))
        if stage:
            q = q.where(Conversation.stage == stage)
        result = await self.session.execute(q)
        return result.scalar() or 0

    # ── Booking claim ─────────────────────────────────────────────

    async def claim_booking(
        self, conversation_id: str, version: int, claim_ttl: timedelta
    ) -> bool:
        """
        Take the booking claim with a conditional update.

        Succeeds only when the row still has the given version, has no
        scheduled appointment and carries no live PENDING claim.
        """
        now = datetime.utcnow()
        result = await self.session.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.version == version,
                Conversation.appointment_scheduled.is_(False),
                or_(
                    Conversation.appointment_status.is_(None),
                    Conversation.appointment_status != "PENDING",
                    Conversation.booking_claimed_at < now - claim_ttl,
                ),
            )
            .values(
                appointment_status="PENDING",
                booking_claimed_at=now,
                version=version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount == 1

    async def release_booking_claim(self, conversation_id: str) -> None:
        await self.session.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.appointment_scheduled.is_(False),
                Conversation.appointment_status == "PENDING",
            )
            .values(
                appointment_status=None,
                booking_claimed_at=None,
                version=Conversation.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()

    # ── Sweeps ────────────────────────────────────────────────────

    async def confirmed_between(
        self, start: datetime, end: datetime, flag: str
    ) -> List[Conversation]:
        """Confirmed appointments starting in [start, end) whose reminder flag is unset."""
        flag_col = getattr(Conversation, flag)
        result = await self.session.execute(
            select(Conversation)
            .where(
                Conversation.appointment_scheduled.is_(True),
                Conversation.appointment_status == "CONFIRMED",
                Conversation.appointment_date >= start,
                Conversation.appointment_date < end,
                flag_col.is_(False),
            )
            .order_by(Conversation.appointment_date.asc())
        )
        return list(result.scalars().all())

    async def mark_reminder_sent(self, conversation_id: str, flag: str) -> bool:
        """Flip a reminder flag false→true. Returns False if it was already set."""
        flag_col = getattr(Conversation, flag)
        result = await self.session.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id, flag_col.is_(False))
            .values({flag: True})
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount == 1

    async def abandon_idle(self, cutoff: datetime, exempt_stages: List[str]) -> int:
        """Abandon active conversations idle since before cutoff. Returns rows swept."""
        result = await self.session.execute(
            update(Conversation)
            .where(
                and_(
                    Conversation.active.is_(True),
                    Conversation.last_activity < cutoff,
                    Conversation.stage.not_in(exempt_stages),
                )
            )
            .values(
                stage="ABANDONED",
                active=False,
                version=Conversation.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount or 0


class AnalyticsRepository:
    """Data access for daily analytics rollups."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, day: str) -> Optional[DailyAnalytics]:
        result = await self.session.execute(
            select(DailyAnalytics).where(DailyAnalytics.day == day)
        )
        return result.scalar_one_or_none()

    async def upsert(self, day: str, values: Dict[str, Any]) -> DailyAnalytics:
        """Overwrite the day's counters, creating the record on first write."""
        record = await self.get(day)
        if record is None:
            record = DailyAnalytics(day=day, **values)
            self.session.add(record)
            try:
                await self.session.flush()
                return record
            except IntegrityError:
                await self.session.rollback()
                record = await self.get(day)
                if record is None:
                    raise
        for k, v in values.items():
            setattr(record, k, v)
        record.updated_at = datetime.utcnow()
        await self.session.flush()
        return record

    async def list_days(self, days: List[str]) -> List[DailyAnalytics]:
        result = await self.session.execute(
            select(DailyAnalytics)
            .where(DailyAnalytics.day.in_(days))
            .order_by(DailyAnalytics.day.asc())
        )
        return list(result.scalars().all())


async def mutate_conversation(
    session_factory: async_sessionmaker[AsyncSession],
    conversation_id: str,
    mutate: Callable[[AsyncSession, Conversation], Awaitable[T]],
    attempts: int = 3,
) -> T:
    """
    Apply a read-modify-write to a conversation under optimistic concurrency.

    Each attempt loads the row in a fresh session, runs mutate() and commits.
    A version conflict (StaleDataError) discards the attempt and replays the
    mutation against the newer row.

    Raises:
        ConcurrencyConflictError: every attempt lost the race
        LookupError: the conversation does not exist
    """
    for attempt in range(1, attempts + 1):
        async with session_factory() as session:
            conv = await ConversationRepository(session).get_by_id(conversation_id)
            if conv is None:
                raise LookupError(f"Conversation {conversation_id} not found")
            try:
                # Autoflush inside mutate() can surface the conflict early
                result = await mutate(session, conv)
                await session.commit()
                return result
            except StaleDataError:
                await session.rollback()
                logger.warning(
                    f"Version conflict on conversation {conversation_id} "
                    f"(attempt {attempt}/{attempts})"
                )
    raise ConcurrencyConflictError(conversation_id, attempts)
