# tests/conftest.py
import asyncio
import math
import os
from datetime import date, datetime, timezone

os.environ.setdefault("DATABASE_URL", "sqlite:///./medreminder_test.db")
os.environ.setdefault("CIVIL_UTC_OFFSET_HOURS", "7")

import pytest
import redis
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from medreminder import models
from medreminder.civil_time import civil_midnight_utc
from medreminder.config import Settings, get_settings
from medreminder.database import create_tables, get_db, get_session_factory
from medreminder.dependencies import get_classifier, get_clock, get_gateway, get_redis
from medreminder.services.intent_classifier import IntentResult
from medreminder.services.whatsapp_service import MessagingBackend, MessagingGateway, SendResult

# 14:00 WIB on 16 October 2026
NOW = datetime(2026, 10, 16, 7, 0, tzinfo=timezone.utc)
TODAY = date(2026, 10, 16)


# --- Fakes ---

class FakePipeline:
    def __init__(self, store: "FakeRedis"):
        self.store = store
        self.ops = []

    def zadd(self, key, mapping):
        self.ops.append(lambda: self.store.zadd(key, mapping))
        return self

    def zremrangebyscore(self, key, min_score, max_score):
        self.ops.append(lambda: self.store.zremrangebyscore(key, min_score, max_score))
        return self

    def zcard(self, key):
        self.ops.append(lambda: self.store.zcard(key))
        return self

    def pexpire(self, key, ms):
        self.ops.append(lambda: self.store.pexpire(key, ms))
        return self

    def execute(self):
        if self.store.fail:
            raise redis.ConnectionError("counter store unreachable")
        return [op() for op in self.ops]


def _bound(value, exclusive_default=False):
    text = str(value)
    if text in ("-inf", "+inf", "inf"):
        return (-math.inf if text == "-inf" else math.inf), False
    if text.startswith("("):
        return float(text[1:]), True
    return float(text), exclusive_default


class FakeRedis:
    """In-memory sorted sets, enough for the sliding-window limiter."""

    def __init__(self):
        self.zsets = {}
        self.ttls = {}
        self.fail = False

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def zadd(self, key, mapping):
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    def zremrangebyscore(self, key, min_score, max_score):
        low, low_excl = _bound(min_score)
        high, high_excl = _bound(max_score)
        zset = self.zsets.get(key, {})
        doomed = [
            member for member, score in zset.items()
            if (score > low if low_excl else score >= low) and (score < high if high_excl else score <= high)
        ]
        for member in doomed:
            del zset[member]
        return len(doomed)

    def zcard(self, key):
        return len(self.zsets.get(key, {}))

    def zrem(self, key, member):
        if self.fail:
            raise redis.ConnectionError("counter store unreachable")
        return 1 if self.zsets.get(key, {}).pop(member, None) is not None else 0

    def pexpire(self, key, ms):
        self.ttls[key] = ms
        return True

    def ping(self):
        if self.fail:
            raise redis.ConnectionError("counter store unreachable")
        return True


class FakeBackend(MessagingBackend):
    def __init__(self, name="fonnte", succeed=True, configured=True):
        self.name = name
        self.succeed = succeed
        self.configured = configured
        self.sent = []

    def is_configured(self):
        return self.configured

    async def send(self, to, body):
        # Yield like a real HTTP call would
        await asyncio.sleep(0)
        self.sent.append((self.format_number(to), body))
        if self.succeed:
            return SendResult(True, self.name, message_id=f"{self.name}-{len(self.sent)}")
        return SendResult(False, self.name, error=f"{self.name} down")


class FakeTwilioMessages:
    def __init__(self, error=None):
        self.error = error
        self.created = []

    def create(self, **kwargs):
        if self.error:
            raise self.error
        self.created.append(kwargs)
        return type("Msg", (), {"sid": "SM123"})()


class FakeTwilioClient:
    """Stands in for twilio.rest.Client; only messages.create is used."""

    def __init__(self, error=None):
        self.messages = FakeTwilioMessages(error)


class FakeClassifier:
    def __init__(self, result=None):
        self.result = result or IntentResult("unclear", 0.0)
        self.calls = []

    async def classify(self, message, context=None):
        self.calls.append((message, context))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


# --- Fixtures ---

@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'medreminder.db'}",
        cron_secret="cron-secret",
        webhook_token="hook-token",
        admin_api_token="admin-token",
        fonnte_token="fonnte-token",
        redis_url=None,
        intent_classifier_url=None,
        civil_utc_offset_hours=7,
        dispatch_batch_size=50,
        dispatch_batch_pause_ms=50,
        dispatch_due_tolerance_minutes=1,
        messaging_rate_limit=50,
        messaging_rate_window_seconds=3600,
        log_json=False,
    )


@pytest.fixture
def engine(settings):
    engine = create_engine(settings.database_url, connect_args={"check_same_thread": False})
    create_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def gateway(backend):
    return MessagingGateway([backend])


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(settings, session_factory, fake_redis, gateway, classifier, clock):
    from medreminder.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_redis] = lambda: fake_redis
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_classifier] = lambda: classifier
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()


# --- Builders ---

def make_patient(db, name="Siti Aminah", phone_number="081234567890", **fields):
    patient = models.Patient(name=name, phone_number=phone_number, **fields)
    db.add(patient)
    db.commit()
    db.refresh(patient)
    return patient


def make_occurrence(db, patient, scheduled_time="14:00", day=TODAY, message="Waktunya minum obat", **fields):
    occurrence = models.ReminderOccurrence(
        patient_id=patient.id,
        scheduled_time=scheduled_time,
        occurrence_date=civil_midnight_utc(day, 7),
        message=message,
        is_active=fields.pop("is_active", True),
        **fields,
    )
    db.add(occurrence)
    db.commit()
    db.refresh(occurrence)
    return occurrence


def make_delivery(db, occurrence, sent_at=NOW, status=models.DeliveryStatus.DELIVERED):
    entry = models.DeliveryLog(
        occurrence_id=occurrence.id,
        patient_id=occurrence.patient_id,
        sent_at=sent_at,
        status=status,
        provider="fonnte",
        message=occurrence.message,
        phone_number="6281234567890",
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry
