import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import requests
from sqlalchemy.exc import IntegrityError

from medreminder import models
from medreminder.limiter import RateLimiter, RateLimitRule
from medreminder.models import DeliveryStatus
from medreminder.services.dispatcher import ReminderDispatcher
from medreminder.services.whatsapp_service import MessagingConfigurationError, MessagingGateway, TwilioBackend

from conftest import NOW, TODAY, FakeBackend, FakeRedis, FakeTwilioClient, make_delivery, make_occurrence, make_patient


def _limiter(max_requests=50):
    return RateLimiter(FakeRedis(), RateLimitRule(window_ms=3_600_000, max_requests=max_requests, key_prefix="rl:test"))


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def _dispatcher(session_factory, settings, gateway, limiter=None, sleep=None):
    return ReminderDispatcher(session_factory, gateway, limiter or _limiter(), settings, sleep=sleep or RecordingSleep())


def _logs(db, occurrence_id=None):
    db.expire_all()
    query = db.query(models.DeliveryLog)
    if occurrence_id is not None:
        query = query.filter(models.DeliveryLog.occurrence_id == occurrence_id)
    return query.all()


@pytest.mark.asyncio
async def test_due_occurrence_is_sent_once(db, session_factory, settings, backend, gateway):
    patient = make_patient(db)
    occurrence = make_occurrence(db, patient, "14:00")

    summary = await _dispatcher(session_factory, settings, gateway).run_dispatch_cycle(NOW)

    assert summary.schedules_found == 1
    assert summary.sent == 1
    assert backend.sent == [("6281234567890", "Waktunya minum obat")]
    logs = _logs(db, occurrence.id)
    assert len(logs) == 1
    assert logs[0].status == DeliveryStatus.DELIVERED
    assert logs[0].provider_message_id == "fonnte-1"


@pytest.mark.asyncio
async def test_second_cycle_same_day_sends_nothing(db, session_factory, settings, backend, gateway):
    patient = make_patient(db)
    occurrence = make_occurrence(db, patient, "14:00")
    dispatcher = _dispatcher(session_factory, settings, gateway)

    await dispatcher.run_dispatch_cycle(NOW)
    summary = await dispatcher.run_dispatch_cycle(NOW + timedelta(minutes=5))

    assert summary.schedules_found == 0
    assert summary.sent == 0
    assert len(backend.sent) == 1
    assert len(_logs(db, occurrence.id)) == 1


@pytest.mark.asyncio
async def test_not_yet_due_is_left_for_a_later_cycle(db, session_factory, settings, backend, gateway):
    patient = make_patient(db)
    make_occurrence(db, patient, "18:00")

    summary = await _dispatcher(session_factory, settings, gateway).run_dispatch_cycle(NOW)

    assert summary.schedules_found == 1
    assert summary.processed == 1
    assert summary.sent == 0
    assert backend.sent == []
    assert _logs(db) == []


@pytest.mark.asyncio
async def test_only_todays_active_occurrences_are_candidates(db, session_factory, settings, backend, gateway):
    patient = make_patient(db)
    make_occurrence(db, patient, "08:00", day=TODAY - timedelta(days=1))
    make_occurrence(db, patient, "08:00", day=TODAY + timedelta(days=1))
    make_occurrence(db, patient, "08:00", is_active=False)
    make_occurrence(db, patient, "08:00", deleted_at=NOW)
    today = make_occurrence(db, patient, "08:00")

    summary = await _dispatcher(session_factory, settings, gateway).run_dispatch_cycle(NOW)

    assert summary.schedules_found == 1
    assert [log.occurrence_id for log in _logs(db)] == [today.id]


@pytest.mark.asyncio
async def test_failed_send_is_logged_and_retried_next_cycle(db, session_factory, settings):
    backend = FakeBackend(succeed=False)
    gateway = MessagingGateway([backend])
    patient = make_patient(db)
    occurrence = make_occurrence(db, patient, "14:00")
    dispatcher = _dispatcher(session_factory, settings, gateway)

    first = await dispatcher.run_dispatch_cycle(NOW)
    assert first.failed == 1
    assert first.as_response()["errors"] == 1

    backend.succeed = True
    second = await dispatcher.run_dispatch_cycle(NOW + timedelta(minutes=5))
    assert second.sent == 1

    statuses = sorted(log.status.value for log in _logs(db, occurrence.id))
    assert statuses == ["DELIVERED", "FAILED"]


@pytest.mark.asyncio
async def test_rate_limited_occurrence_is_skipped_not_failed(db, session_factory, settings, backend, gateway):
    patient = make_patient(db)
    make_occurrence(db, patient, "13:00")
    make_occurrence(db, patient, "14:00")

    summary = await _dispatcher(session_factory, settings, gateway, limiter=_limiter(max_requests=1)).run_dispatch_cycle(NOW)

    assert summary.sent == 1
    assert summary.skipped == 1
    assert summary.failed == 0
    assert len(_logs(db)) == 1


@pytest.mark.asyncio
async def test_missing_phone_counts_as_error(db, session_factory, settings, backend, gateway):
    patient = make_patient(db, phone_number=None)
    make_occurrence(db, patient, "14:00")

    summary = await _dispatcher(session_factory, settings, gateway).run_dispatch_cycle(NOW)

    assert summary.errors == 1
    assert backend.sent == []
    assert _logs(db) == []


@pytest.mark.asyncio
async def test_large_candidate_sets_are_paged_with_a_pause(db, session_factory, settings, backend, gateway):
    settings.dispatch_batch_size = 2
    patient = make_patient(db)
    for minute in range(5):
        make_occurrence(db, patient, f"13:0{minute}")
    sleep = RecordingSleep()

    summary = await _dispatcher(session_factory, settings, gateway, sleep=sleep).run_dispatch_cycle(NOW)

    assert summary.schedules_found == 5
    assert summary.sent == 5
    assert sleep.calls == [0.05, 0.05]
    # Processed in scheduled-time order
    assert [body for _, body in backend.sent] == ["Waktunya minum obat"] * 5


@pytest.mark.asyncio
async def test_overlapping_cycles_never_produce_two_delivered_logs(db, session_factory, settings, backend, gateway):
    patient = make_patient(db)
    occurrences = [make_occurrence(db, patient, "14:00", message=f"obat {i}") for i in range(3)]
    dispatchers = [_dispatcher(session_factory, settings, gateway) for _ in range(4)]

    summaries = await asyncio.gather(*(d.run_dispatch_cycle(NOW) for d in dispatchers))

    for occurrence in occurrences:
        delivered = [log for log in _logs(db, occurrence.id) if log.status == DeliveryStatus.DELIVERED]
        assert len(delivered) == 1
    assert sum(s.sent for s in summaries) == 3


def test_store_rejects_a_second_delivered_log(db):
    patient = make_patient(db)
    occurrence = make_occurrence(db, patient)
    make_delivery(db, occurrence)
    make_delivery(db, occurrence, status=DeliveryStatus.FAILED)

    with pytest.raises(IntegrityError):
        make_delivery(db, occurrence)
    db.rollback()


@pytest.mark.asyncio
async def test_unconfigured_gateway_aborts_before_any_work(db, session_factory, settings):
    patient = make_patient(db)
    make_occurrence(db, patient, "14:00")
    gateway = MessagingGateway([FakeBackend(configured=False)])

    with pytest.raises(MessagingConfigurationError):
        await _dispatcher(session_factory, settings, gateway).run_dispatch_cycle(NOW)
    assert _logs(db) == []


@pytest.mark.asyncio
async def test_backup_provider_override(db, session_factory, settings):
    primary = FakeBackend("fonnte")
    backup = FakeBackend("twilio")
    gateway = MessagingGateway([primary, backup])
    patient = make_patient(db)
    make_occurrence(db, patient, "14:00")

    summary = await _dispatcher(session_factory, settings, gateway).run_dispatch_cycle(NOW, provider="twilio")

    assert summary.sent == 1
    assert primary.sent == []
    assert _logs(db)[0].provider == "twilio"


@pytest.mark.asyncio
async def test_day_boundary_uses_civil_time(db, session_factory, settings, backend, gateway):
    patient = make_patient(db)
    # 23:30 WIB on the 16th is 16:30 UTC; 00:30 WIB on the 17th is 17:30 UTC
    make_occurrence(db, patient, "23:30")
    tomorrow = make_occurrence(db, patient, "00:30", day=TODAY + timedelta(days=1))
    dispatcher = _dispatcher(session_factory, settings, gateway)

    await dispatcher.run_dispatch_cycle(datetime(2026, 10, 16, 16, 30, tzinfo=timezone.utc))
    assert len(backend.sent) == 1

    await dispatcher.run_dispatch_cycle(datetime(2026, 10, 16, 17, 30, tzinfo=timezone.utc))
    assert len(backend.sent) == 2
    assert _logs(db, tomorrow.id)[0].status == DeliveryStatus.DELIVERED


@pytest.mark.asyncio
async def test_malformed_row_does_not_abort_the_cycle(db, session_factory, settings, backend, gateway):
    patient = make_patient(db)
    make_occurrence(db, patient, "bogus")
    due = make_occurrence(db, patient, "14:00")

    summary = await _dispatcher(session_factory, settings, gateway).run_dispatch_cycle(NOW)

    assert summary.errors == 1
    assert summary.sent == 1
    assert [log.occurrence_id for log in _logs(db)] == [due.id]


@pytest.mark.asyncio
async def test_unreachable_twilio_is_logged_as_failed(db, session_factory, settings):
    error = requests.exceptions.ConnectionError("api.twilio.com unreachable")
    twilio = TwilioBackend("AC1", "token", "+14155238886", client=FakeTwilioClient(error))
    fonnte = FakeBackend("fonnte")
    patient = make_patient(db)
    make_occurrence(db, patient, "13:00")

    backup = await _dispatcher(session_factory, settings, MessagingGateway([twilio, fonnte])).run_dispatch_cycle(
        NOW, provider="twilio")
    assert backup.failed == 1
    assert _logs(db)[0].status == DeliveryStatus.FAILED

    primary = await _dispatcher(session_factory, settings, MessagingGateway([twilio, fonnte])).run_dispatch_cycle(
        NOW + timedelta(minutes=5))
    assert primary.sent == 1
    assert fonnte.sent == [("6281234567890", "Waktunya minum obat")]
