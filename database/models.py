"""
SQLAlchemy ORM models for the lead-qualification agent.

Persistent entities: conversations (with the embedded appointment record),
the append-only message log, and daily analytics rollups.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Text, ForeignKey,
    JSON, Index, text,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=_uuid)
    contact_key = Column(String(32), nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    stage = Column(String(20), nullable=False, default="INITIAL")
    active = Column(Boolean, nullable=False, default=True)

    # Collected fields
    name = Column(String(255), nullable=True)
    role = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    lead_score = Column(Integer, nullable=False, default=0)

    # Appointment
    appointment_scheduled = Column(Boolean, nullable=False, default=False)
    appointment_event_id = Column(String(255), nullable=True)
    appointment_meeting_link = Column(String(512), nullable=True)
    appointment_date = Column(DateTime, nullable=True)
    appointment_status = Column(String(12), nullable=True)  # PENDING, CONFIRMED, CANCELLED, COMPLETED
    appointment_booked_at = Column(DateTime, nullable=True)
    booking_claimed_at = Column(DateTime, nullable=True)
    reminder_day_before_sent = Column(Boolean, nullable=False, default=False)
    reminder_hour_before_sent = Column(Boolean, nullable=False, default=False)

    # Most recently offered numbered slot list
    offered_slots = Column(JSON, nullable=True)

    # Forwarding record
    forwarded = Column(Boolean, nullable=False, default=False)
    last_forwarded_at = Column(DateTime, nullable=True)

    conversation_started = Column(DateTime, default=datetime.utcnow)
    last_activity = Column(DateTime, default=datetime.utcnow)
    version = Column(Integer, nullable=False)

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index(
            "uq_conv_active_contact",
            "contact_key",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
        Index("ix_conv_active_activity", "active", "last_activity"),
        Index("ix_conv_appointment", "appointment_status", "appointment_date"),
    )


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    conversation_id = Column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    direction = Column(String(3), nullable=False)  # IN, OUT
    content = Column(Text, nullable=False)
    external_id = Column(String(128), nullable=True, index=True)  # transport message id
    delivery_status = Column(String(10), nullable=True)  # pending, sent, failed (OUT only)
    ai_analysis = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    conversation = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        # A transport message id is logged at most once per direction
        Index("uq_message_direction_external", "direction", "external_id", unique=True),
    )


class DailyAnalytics(Base):
    __tablename__ = "daily_analytics"

    id = Column(String(36), primary_key=True, default=_uuid)
    day = Column(String(10), unique=True, nullable=False)  # ISO date in configured timezone
    messages = Column(Integer, default=0)
    new_conversations = Column(Integer, default=0)
    completed = Column(Integer, default=0)
    abandoned = Column(Integer, default=0)
    scheduled_meetings = Column(Integer, default=0)
    confirmed_meetings = Column(Integer, default=0)
    forwarded = Column(Integer, default=0)
    stage_distribution = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        new = self.new_conversations or 0
        return {
            "day": self.day,
            "messages": self.messages or 0,
            "new_conversations": new,
            "completed": self.completed or 0,
            "abandoned": self.abandoned or 0,
            "scheduled_meetings": self.scheduled_meetings or 0,
            "confirmed_meetings": self.confirmed_meetings or 0,
            "forwarded": self.forwarded or 0,
            "stage_distribution": self.stage_distribution or {},
            "completion_rate": round((self.completed or 0) / new * 100, 1) if new else 0,
            "scheduling_rate": round((self.confirmed_meetings or 0) / new * 100, 1) if new else 0,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
