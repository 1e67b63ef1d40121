"""Tests for the per-message conversation engine."""

import asyncio
import logging
from datetime import datetime

import pytest
from google.auth.exceptions import RefreshError

from database.repositories import ConcurrencyConflictError, ConversationRepository
from llm.decision import FALLBACK_REPLY
from scheduling.booking import DEFERRED_BOOKING_TEXT

from tests.conftest import CONTACT, NOW, decision, inbound, seed_conversation


async def _load(session_factory, contact=CONTACT):
    async with session_factory() as session:
        repo = ConversationRepository(session)
        conv = await repo.get_latest(contact)
        messages = await repo.get_messages(conv.id)
        return conv, messages


async def _seed_offer(services, **fields):
    """Conversation waiting at OFFER_SLOTS with the current slots offered."""
    slots = await services.allocator.available_slots(now=NOW)
    values = dict(
        stage="OFFER_SLOTS", name="Ana Souza", role="CTO", email="ana@example.com",
        offered_slots=[s.to_dict() for s in slots],
    )
    values.update(fields)
    await seed_conversation(services.session_factory, **values)
    return slots


# ── Qualification turns ───────────────────────────────

@pytest.mark.asyncio
async def test_greeting_moves_to_collect_name(services, provider, channel):
    provider.script(decision("Olá! Como posso te chamar?", "COLLECT_NAME", intent="greeting"))

    result = await services.orchestrator.handle_inbound(inbound("Olá"), now=NOW)

    assert result.stage == "COLLECT_NAME"
    assert result.lead_score == 1
    assert result.delivered
    assert channel.sent == [(CONTACT, "Olá! Como posso te chamar?")]

    conv, messages = await _load(services.session_factory)
    assert conv.stage == "COLLECT_NAME"
    assert conv.display_name == "Ana"
    outbound = [m for m in messages if m.direction == "OUT"]
    assert len(outbound) == 1
    assert outbound[0].delivery_status == "sent"
    inbound_log = [m for m in messages if m.direction == "IN"][0]
    assert inbound_log.ai_analysis["intent"] == "greeting"


@pytest.mark.asyncio
async def test_skip_request_advances_one_stage(services, provider):
    provider.script(decision("Olá!", "COMPLETED"))
    result = await services.orchestrator.handle_inbound(inbound("Olá"), now=NOW)
    assert result.stage == "COLLECT_NAME"


@pytest.mark.asyncio
async def test_broken_oracle_sends_apology(services, provider, channel):
    provider.script(RuntimeError("upstream 500"))

    result = await services.orchestrator.handle_inbound(inbound("Olá"), now=NOW)

    assert result.intent == "error"
    assert result.stage == "INITIAL"
    assert channel.sent[-1][1] == FALLBACK_REPLY


@pytest.mark.asyncio
async def test_fields_overwrite_and_email_triggers_slot_offer(services, provider, channel):
    await seed_conversation(
        services.session_factory, stage="COLLECT_EMAIL", name="Ana", role="CTO"
    )
    provider.script(decision(
        "Obrigada!", "OFFER_SLOTS",
        extractedFields={"email": "Ana.Souza@Example.COM", "name": "Ana Souza"},
        needsSlotOffer=True,
    ))

    result = await services.orchestrator.handle_inbound(inbound("ana.souza@example.com"), now=NOW)

    assert result.stage == "OFFER_SLOTS"
    assert result.lead_score == 60
    reply = channel.sent[-1][1]
    assert reply.startswith("Obrigada!")
    assert "1. Segunda-feira, 19/10 às 09:00" in reply
    assert "3. Segunda-feira, 19/10 às 10:30" in reply

    conv, _ = await _load(services.session_factory)
    assert conv.email == "ana.souza@example.com"
    assert conv.name == "Ana Souza"
    assert len(conv.offered_slots) == 3


@pytest.mark.asyncio
async def test_calendar_outage_defers_booking(services, provider, channel, calendar):
    calendar.fail_busy = True
    await seed_conversation(services.session_factory, stage="COLLECT_EMAIL", name="Ana", role="CTO")
    provider.script(decision(
        "Obrigada!", "OFFER_SLOTS", extractedFields={"email": "ana@example.com"}, needsSlotOffer=True,
    ))

    result = await services.orchestrator.handle_inbound(inbound("ana@example.com"), now=NOW)

    assert result.stage == "OFFER_SLOTS"
    assert DEFERRED_BOOKING_TEXT in channel.sent[-1][1]
    conv, _ = await _load(services.session_factory)
    assert conv.offered_slots is None


@pytest.mark.asyncio
async def test_offer_slots_needs_a_booking_to_leave(services, provider):
    await _seed_offer(services)
    provider.script(decision("Claro, fico no aguardo.", "CONFIRM_BOOKING", intent="question"))

    result = await services.orchestrator.handle_inbound(inbound("Qual a duração?"), now=NOW)

    assert result.stage == "OFFER_SLOTS"
    assert result.booking_status is None


# ── Booking ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_numeric_selection_books_slot(services, provider, channel, calendar, forwarder):
    slots = await _seed_offer(services)
    provider.script(decision(
        "Ótimo!", "CONFIRM_BOOKING", intent="selecting_slot",
        extractedFields={"slot": 2}, requestsBooking=True,
    ))

    result = await services.orchestrator.handle_inbound(inbound("2"), now=NOW)

    assert result.booking_status == "confirmed"
    assert result.stage == "CONFIRM_BOOKING"
    assert result.lead_score == 78
    assert len(calendar.created) == 1
    assert calendar.created[0]["start"] == slots[1].start
    assert calendar.created[0]["attendees"] == ["ana@example.com"]
    assert "Segunda-feira, 19/10 às 09:45" in channel.sent[-1][1]
    assert "https://meet.google.com/abc-defg-hij" in channel.sent[-1][1]

    conv, _ = await _load(services.session_factory)
    assert conv.appointment_scheduled
    assert conv.appointment_status == "CONFIRMED"
    assert conv.appointment_event_id == "evt-1"
    assert conv.appointment_date == datetime(2026, 10, 19, 12, 45)
    assert conv.forwarded
    assert forwarder.payloads[-1]["appointment"]["scheduled"] is True


@pytest.mark.asyncio
async def test_repeated_selection_reports_existing_booking(services, provider, channel, calendar):
    await _seed_offer(services)
    provider.script(decision("Ótimo!", "CONFIRM_BOOKING", extractedFields={"slot": 2}))

    await services.orchestrator.handle_inbound(inbound("2"), now=NOW)
    result = await services.orchestrator.handle_inbound(inbound("2"), now=NOW)

    assert result.booking_status == "already_booked"
    assert len(calendar.created) == 1
    assert "já está agendada" in channel.sent[-1][1]


@pytest.mark.asyncio
async def test_concurrent_selections_create_one_event(services, provider, calendar):
    await _seed_offer(services)
    provider.script(decision("Ótimo!", "CONFIRM_BOOKING", extractedFields={"slot": 1}))

    results = await asyncio.gather(
        services.orchestrator.handle_inbound(inbound("1"), now=NOW),
        services.orchestrator.handle_inbound(inbound("1"), now=NOW),
    )

    statuses = sorted(r.booking_status for r in results)
    assert statuses.count("confirmed") == 1
    assert set(statuses) - {"confirmed"} <= {"already_booked", "in_progress"}
    assert len(calendar.created) == 1

    conv, _ = await _load(services.session_factory)
    assert conv.appointment_status == "CONFIRMED"
    assert conv.stage == "CONFIRM_BOOKING"


@pytest.mark.asyncio
async def test_out_of_range_selection_reprompts(services, provider, channel, calendar):
    await _seed_offer(services)
    provider.script(decision("Ok", "CONFIRM_BOOKING"))

    result = await services.orchestrator.handle_inbound(inbound("9"), now=NOW)

    assert result.booking_status == "invalid_selection"
    assert result.stage == "OFFER_SLOTS"
    assert calendar.created == []
    assert "1. Segunda-feira" in channel.sent[-1][1]


@pytest.mark.asyncio
async def test_taken_slot_reprompts_with_fresh_list(services, provider, channel, calendar):
    slots = await _seed_offer(services)
    from scheduling.calendar_client import BusyInterval
    calendar.busy.append(BusyInterval(start=slots[0].start, end=slots[0].end))
    provider.script(decision("Ok", "CONFIRM_BOOKING"))

    result = await services.orchestrator.handle_inbound(inbound("1"), now=NOW)

    assert result.booking_status == "slot_taken"
    assert calendar.created == []
    conv, _ = await _load(services.session_factory)
    assert conv.offered_slots[0]["start"] == slots[1].iso


@pytest.mark.asyncio
async def test_calendar_insert_failure_releases_claim(services, provider, calendar):
    await _seed_offer(services)
    calendar.fail_create = True
    provider.script(decision("Ok", "CONFIRM_BOOKING"))

    result = await services.orchestrator.handle_inbound(inbound("1"), now=NOW)

    assert result.booking_status == "failed"
    assert result.stage == "OFFER_SLOTS"
    conv, _ = await _load(services.session_factory)
    assert not conv.appointment_scheduled
    assert conv.appointment_status is None

    # Recoverable: the next selection books
    calendar.fail_create = False
    result = await services.orchestrator.handle_inbound(inbound("1"), now=NOW)
    assert result.booking_status == "confirmed"


@pytest.mark.asyncio
async def test_unexpected_calendar_error_releases_claim(services, provider, channel, calendar, monkeypatch):
    await _seed_offer(services)
    provider.script(decision("Ok", "CONFIRM_BOOKING"))
    create_event = calendar.create_event

    async def token_revoked(*args, **kwargs):
        raise RefreshError("invalid_grant: Token has been expired or revoked.")

    monkeypatch.setattr(calendar, "create_event", token_revoked)
    assert await services.orchestrator.process(inbound("1"), now=NOW) is None
    assert channel.sent[-1][1] == FALLBACK_REPLY

    conv, _ = await _load(services.session_factory)
    assert conv.appointment_status is None
    assert conv.booking_claimed_at is None

    # The contact can retry right away
    monkeypatch.setattr(calendar, "create_event", create_event)
    result = await services.orchestrator.handle_inbound(inbound("1"), now=NOW)
    assert result.booking_status == "confirmed"
    assert len(calendar.created) == 1


@pytest.mark.asyncio
async def test_booking_request_after_confirmation(services, provider, calendar):
    await seed_conversation(
        services.session_factory,
        stage="CONFIRM_BOOKING",
        appointment_scheduled=True,
        appointment_status="CONFIRMED",
        appointment_date=datetime(2026, 10, 19, 12, 0),
    )
    provider.script(decision("Claro!", "CONFIRM_BOOKING", requestsBooking=True))

    result = await services.orchestrator.handle_inbound(inbound("Quero marcar a reunião"), now=NOW)

    assert result.booking_status == "already_booked"
    assert result.reply_text.startswith("Sua reunião já está agendada")
    assert result.stage == "CONFIRM_BOOKING"
    assert calendar.created == []


# ── Delivery and idempotency ──────────────────────────

@pytest.mark.asyncio
async def test_duplicate_delivery_is_ignored(services, provider, channel):
    provider.script(decision("Olá!", "COLLECT_NAME"))
    message = inbound("Olá", message_id="wamid.same")

    await services.orchestrator.handle_inbound(message, now=NOW)
    result = await services.orchestrator.handle_inbound(message, now=NOW)

    assert result.duplicate
    assert len(channel.sent) == 1
    assert len(provider.prompts) == 1


@pytest.mark.asyncio
async def test_concurrent_duplicate_delivery_is_ignored(services, provider, channel):
    provider.script(decision("Olá!", "COLLECT_NAME"))
    message = inbound("Olá", message_id="wamid.same")

    results = await asyncio.gather(
        services.orchestrator.handle_inbound(message, now=NOW),
        services.orchestrator.handle_inbound(message, now=NOW),
    )

    assert sorted(r.duplicate for r in results) == [False, True]
    assert len(channel.sent) == 1
    assert len(provider.prompts) == 1
    _, messages = await _load(services.session_factory)
    assert [m.direction for m in messages] == ["IN", "OUT"]


@pytest.mark.asyncio
async def test_failed_send_is_recorded(services, provider, channel):
    channel.fail = True
    provider.script(decision("Olá!", "COLLECT_NAME"))

    result = await services.orchestrator.handle_inbound(inbound("Olá"), now=NOW)

    assert not result.delivered
    _, messages = await _load(services.session_factory)
    assert [m.delivery_status for m in messages if m.direction == "OUT"] == ["failed"]


@pytest.mark.asyncio
async def test_ready_to_forward(services, provider, forwarder):
    provider.script(decision("Obrigada!", readyToForward=True))
    result = await services.orchestrator.handle_inbound(inbound("Olá"), now=NOW)
    assert result.forwarded
    assert forwarder.payloads[0]["contact_key"] == CONTACT


@pytest.mark.asyncio
async def test_process_never_raises(services, channel, monkeypatch):
    async def explode(*args, **kwargs):
        raise RuntimeError("database gone")

    monkeypatch.setattr(services.orchestrator, "handle_inbound", explode)
    assert await services.orchestrator.process(inbound("Olá")) is None
    assert channel.sent[-1][1] == FALLBACK_REPLY


@pytest.mark.asyncio
async def test_no_apology_after_delivered_reply(services, provider, channel, monkeypatch):
    provider.script(decision("Olá!", "COLLECT_NAME"))

    async def status_write_fails(*args, **kwargs):
        raise RuntimeError("database gone")

    monkeypatch.setattr(services.orchestrator, "_record_delivery", status_write_fails)
    assert await services.orchestrator.process(inbound("Olá"), now=NOW) is None
    assert channel.sent == [(CONTACT, "Olá!")]


@pytest.mark.asyncio
async def test_version_conflicts_drop_the_turn(services, provider, channel, monkeypatch, caplog):
    provider.script(decision("Olá!", "COLLECT_NAME", extractedFields={"name": "Ana"}))

    async def always_conflicts(snapshot, *args):
        raise ConcurrencyConflictError(snapshot.conversation_id, 3)

    monkeypatch.setattr(services.orchestrator, "_persist_turn", always_conflicts)
    with caplog.at_level(logging.ERROR, logger="llm.orchestrator"):
        result = await services.orchestrator.handle_inbound(inbound("Olá"), now=NOW)

    assert result.stage is None
    assert "dropped after version conflicts" in caplog.text
    assert channel.sent == [(CONTACT, "Olá!")]

    conv, messages = await _load(services.session_factory)
    assert conv.stage == "INITIAL"
    assert conv.name is None
    assert [m.direction for m in messages] == ["IN"]


@pytest.mark.asyncio
async def test_completed_conversation_reopens(services, provider):
    await seed_conversation(services.session_factory, stage="CONFIRM_BOOKING", name="Ana")
    provider.script(decision("Até breve!", "COMPLETED"))
    result = await services.orchestrator.handle_inbound(inbound("Obrigada"), now=NOW)
    assert result.stage == "COMPLETED"

    provider.script(decision("Olá de novo!", "COLLECT_NAME"))
    result = await services.orchestrator.handle_inbound(inbound("Oi"), now=NOW)
    assert result.stage == "COLLECT_NAME"
