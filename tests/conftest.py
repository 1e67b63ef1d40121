"""Shared fixtures for LeadFlow agent tests."""

import asyncio
import json
import os
import uuid
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

# Ensure we use test settings
os.environ["ENABLE_BACKGROUND_SWEEPS"] = "false"
os.environ.setdefault("LLM_PROVIDER", "openai")
os.environ.setdefault("WHATSAPP_VERIFY_TOKEN", "verify-me")

from api.channels.base import ChannelResponse, InboundMessage
from api.channels.whatsapp import MetaCloudWhatsApp
from api.services import Services
from config.settings import Settings
from database.repositories import ConversationRepository
from database.session import close_db, init_db
from lead_scoring.lead_router import LeadForwarder
from scheduling.calendar_client import BusyInterval, CalendarClient, CalendarError, CalendarEvent

TZ = ZoneInfo("America/Sao_Paulo")

# Monday 08:00 local, one hour before business hours open
NOW = datetime(2026, 10, 19, 8, 0, tzinfo=TZ)

CONTACT = "5511988887777"


# ── Fakes ─────────────────────────────────────────────

class FakeProvider:
    """Scripted LLM provider. The last response repeats once the script runs out."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    def script(self, *responses):
        self.responses = list(responses)

    async def complete(self, system: str, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            raise RuntimeError("no scripted response")
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item if isinstance(item, str) else json.dumps(item)


class FakeChannel(MetaCloudWhatsApp):
    """Real webhook parsing, recorded sends."""

    def __init__(self, fail: bool = False):
        super().__init__(api_token="test-token", phone_number_id="1000", verify_token="verify-me")
        self.fail = fail
        self.sent = []

    async def send_text(self, contact_key: str, text: str) -> ChannelResponse:
        self.sent.append((contact_key, text))
        if self.fail:
            return ChannelResponse(success=False, error="transport down")
        return ChannelResponse(success=True, message_id=f"wamid.out.{uuid.uuid4().hex[:12]}")


class FakeCalendar(CalendarClient):
    def __init__(self, busy=None, fail_busy: bool = False, fail_create: bool = False):
        self.busy = list(busy or [])
        self.fail_busy = fail_busy
        self.fail_create = fail_create
        self.busy_calls = 0
        self.created = []

    async def list_busy(self, start, end):
        self.busy_calls += 1
        if self.fail_busy:
            raise CalendarError("freebusy unavailable")
        return [b for b in self.busy if b.overlaps(start, end)]

    async def create_event(self, start, end, summary, description, attendees=None):
        await asyncio.sleep(0)
        if self.fail_create:
            raise CalendarError("insert failed")
        self.created.append({
            "start": start, "end": end, "summary": summary,
            "description": description, "attendees": attendees,
        })
        self.busy.append(BusyInterval(start=start, end=end))
        return CalendarEvent(
            event_id=f"evt-{len(self.created)}",
            meeting_link="https://meet.google.com/abc-defg-hij",
        )


class FakeForwarder(LeadForwarder):
    def __init__(self, succeed: bool = True):
        super().__init__(webhook_url="http://automation.test/hook")
        self.succeed = succeed
        self.payloads = []

    async def post(self, payload):
        self.payloads.append(payload)
        return self.succeed


# ── Helpers ───────────────────────────────────────────

def decision(reply="Certo!", next_stage=None, intent="providing_info", **overrides):
    """Decision object as the oracle would return it."""
    data = {
        "intent": intent,
        "extractedFields": {},
        "replyText": reply,
        "nextStage": next_stage,
        "confidence": 0.9,
        "needsSlotOffer": False,
        "requestsBooking": False,
        "readyToForward": False,
    }
    data.update(overrides)
    return data


def inbound(text, message_id=None, contact=CONTACT, name="Ana"):
    return InboundMessage(
        contact_key=contact,
        text=text,
        message_id=message_id or f"wamid.in.{uuid.uuid4().hex[:12]}",
        display_name=name,
    )


async def seed_conversation(session_factory, contact=CONTACT, **fields):
    """Open an active conversation and set fields directly."""
    async with session_factory() as session:
        repo = ConversationRepository(session)
        conv = await repo.create(contact)
        for key, value in fields.items():
            setattr(conv, key, value)
        await session.commit()
        return conv


# ── Fixtures ──────────────────────────────────────────

@pytest.fixture
async def session_factory(tmp_path):
    factory = await init_db(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    yield factory
    await close_db()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def forwarder():
    return FakeForwarder()


@pytest.fixture
def settings():
    return Settings(
        timezone="America/Sao_Paulo",
        business_hours_start="09:00",
        business_hours_end="18:00",
        slot_duration_minutes=30,
        slot_buffer_minutes=15,
        max_offered_slots=3,
        enable_background_sweeps=False,
        admin_api_key="",
    )


@pytest.fixture
def services(session_factory, settings, provider, channel, calendar, forwarder):
    svc = Services()
    svc.initialize(
        session_factory,
        settings=settings,
        llm_provider=provider,
        channel=channel,
        calendar=calendar,
        forwarder=forwarder,
    )
    return svc
