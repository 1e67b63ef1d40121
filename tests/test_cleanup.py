"""Tests for the idle-conversation sweep."""

from datetime import datetime, timedelta

import pytest

from database.repositories import ConversationRepository

from tests.conftest import NOW, decision, inbound, seed_conversation


@pytest.mark.asyncio
async def test_idle_conversations_abandoned(services):
    now = datetime.utcnow()
    stale = now - timedelta(hours=30)
    idle = await seed_conversation(
        services.session_factory, contact="5511900000001", stage="COLLECT_ROLE", last_activity=stale
    )
    fresh = await seed_conversation(
        services.session_factory, contact="5511900000002", stage="COLLECT_ROLE", last_activity=now
    )
    booked = await seed_conversation(
        services.session_factory, contact="5511900000003", stage="CONFIRM_BOOKING", last_activity=stale
    )

    assert await services.cleanup.run(now=now) == 1

    async with services.session_factory() as session:
        repo = ConversationRepository(session)
        swept = await repo.get_by_id(idle.id)
        kept = await repo.get_by_id(fresh.id)
        exempt = await repo.get_by_id(booked.id)

    assert swept.stage == "ABANDONED"
    assert not swept.active
    assert swept.version > idle.version
    assert kept.active
    assert exempt.active and exempt.stage == "CONFIRM_BOOKING"


@pytest.mark.asyncio
async def test_sweep_is_idempotent(services):
    stale = datetime.utcnow() - timedelta(hours=30)
    await seed_conversation(services.session_factory, stage="INITIAL", last_activity=stale)
    assert await services.cleanup.run() == 1
    assert await services.cleanup.run() == 0


@pytest.mark.asyncio
async def test_abandoned_contact_starts_over(services, provider):
    stale = datetime.utcnow() - timedelta(hours=30)
    old = await seed_conversation(
        services.session_factory, stage="COLLECT_EMAIL", name="Ana", last_activity=stale
    )
    await services.cleanup.run()

    provider.script(decision("Olá! Qual é o seu nome?", "COLLECT_NAME"))
    result = await services.orchestrator.handle_inbound(inbound("Oi de novo"), now=NOW)

    assert result.conversation_id != old.id
    assert result.stage == "COLLECT_NAME"
