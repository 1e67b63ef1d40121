"""Tests for the reminder sweeps."""

from datetime import datetime, timedelta

import pytest

from database.repositories import ConversationRepository

from tests.conftest import CONTACT, NOW, seed_conversation

# Tuesday 20/10 14:00 local, stored as naive UTC
TOMORROW_UTC = datetime(2026, 10, 20, 17, 0)
# Monday 19/10 09:00 local, one hour after NOW
IN_ONE_HOUR_UTC = datetime(2026, 10, 19, 12, 0)


async def _booked(session_factory, when, contact=CONTACT, **fields):
    values = dict(
        stage="CONFIRM_BOOKING",
        name="Ana Souza",
        appointment_scheduled=True,
        appointment_status="CONFIRMED",
        appointment_date=when,
        appointment_meeting_link="https://meet.google.com/abc-defg-hij",
    )
    values.update(fields)
    return await seed_conversation(session_factory, contact=contact, **values)


@pytest.mark.asyncio
async def test_day_before_sent_once(services, channel):
    await _booked(services.session_factory, TOMORROW_UTC)

    first = await services.reminders.run_day_before(now=NOW)
    second = await services.reminders.run_day_before(now=NOW)

    assert (first.due, first.sent) == (1, 1)
    assert (second.due, second.sent) == (0, 0)
    assert len(channel.sent) == 1
    text = channel.sent[0][1]
    assert text.startswith("Olá, Ana!")
    assert "Terça-feira, 20/10 às 14:00" in text
    assert "https://meet.google.com/abc-defg-hij" in text


@pytest.mark.asyncio
async def test_failed_send_retried_next_sweep(services, channel):
    conv = await _booked(services.session_factory, TOMORROW_UTC)
    channel.fail = True

    report = await services.reminders.run_day_before(now=NOW)
    assert (report.failed, report.sent) == (1, 0)

    channel.fail = False
    report = await services.reminders.run_day_before(now=NOW)
    assert report.sent == 1

    async with services.session_factory() as session:
        repo = ConversationRepository(session)
        stored = await repo.get_by_id(conv.id)
        messages = await repo.get_messages(conv.id)
    assert stored.reminder_day_before_sent
    assert [m.delivery_status for m in messages] == ["sent"]


@pytest.mark.asyncio
async def test_hour_before_window(services, channel):
    await _booked(services.session_factory, IN_ONE_HOUR_UTC)
    await _booked(
        services.session_factory, IN_ONE_HOUR_UTC + timedelta(minutes=30), contact="5511911112222"
    )

    report = await services.reminders.run_hour_before(now=NOW)

    assert (report.due, report.sent) == (1, 1)
    assert channel.sent[0][0] == CONTACT
    assert "09:00" in channel.sent[0][1]


@pytest.mark.asyncio
async def test_unconfirmed_appointments_ignored(services, channel):
    await _booked(services.session_factory, TOMORROW_UTC, appointment_status="PENDING")
    report = await services.reminders.run_day_before(now=NOW)
    assert report.due == 0
    assert channel.sent == []


@pytest.mark.asyncio
async def test_passes_are_independent(services):
    await _booked(services.session_factory, IN_ONE_HOUR_UTC, reminder_day_before_sent=True)
    report = await services.reminders.run_hour_before(now=NOW)
    assert report.sent == 1


def test_tomorrow_bounds_use_business_timezone(services):
    start, end = services.reminders.tomorrow_bounds(NOW)
    assert start == datetime(2026, 10, 20, 3, 0)
    assert end == datetime(2026, 10, 21, 3, 0)
