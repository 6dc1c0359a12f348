import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

import db
from app.services.container import build_services
from app.types.contracts import SendResult
from config import Settings


class FakeRedis:
    """The handful of async Redis commands the pipeline uses."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.down = False

    def _check(self):
        if self.down:
            raise ConnectionError("redis down")

    async def set(self, key, value, ex=None, nx=False):
        self._check()
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            removed += self.data.pop(key, None) is not None
            self.ttls.pop(key, None)
        return removed

    async def incr(self, key):
        self._check()
        self.data[key] = int(self.data.get(key, 0)) + 1
        return self.data[key]

    async def expire(self, key, seconds):
        self._check()
        self.ttls[key] = seconds
        return True

    async def ttl(self, key):
        self._check()
        if key not in self.data:
            return -2
        return self.ttls.get(key, -1)

    async def aclose(self):
        pass


class FakeGateway:
    def __init__(self, fail=False, delay=0.0):
        self.sent = []
        self.fail = fail
        self.delay = delay

    async def send(self, phone_number, body):
        self.sent.append((phone_number, body))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            return SendResult(success=False, error="gateway down")
        return SendResult(success=True, message_id=f"wamid-{len(self.sent)}")


class TestSettings(Settings):
    __test__ = False

    OPENAI_API_KEY = None
    TELNYX_API_KEY = None
    TELNYX_FROM_NUMBER = None
    LOCK_RETRY_DELAY_MS = 20
    WORKER_POLL_INTERVAL = 0.05


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'prima.db'}"


@pytest_asyncio.fixture
async def session_maker(db_url):
    engine = db.create_engine(db_url)
    await db.create_all(engine)
    yield db.make_session_maker(engine)
    await db.dispose_engine(engine)


@pytest.fixture
def services(session_maker, redis, gateway):
    return build_services(TestSettings(), session_maker, redis, gateway=gateway)


async def add_patient(session_maker, phone="6281234567890", status="PENDING", active=True, name="Budi", **kw):
    patient = db.Patient(
        phone_number=phone, name=name, verification_status=status, is_active=active, **kw
    )
    async with session_maker() as s:
        s.add(patient)
        await s.commit()
    return patient


async def add_reminder(session_maker, patient, status="SENT", minutes_ago=5, **kw):
    reminder = db.Reminder(
        patient_id=patient.id,
        message="Waktunya minum obat",
        confirmation_status=status,
        sent_at=db.utcnow() - timedelta(minutes=minutes_ago),
        **kw,
    )
    async with session_maker() as s:
        s.add(reminder)
        await s.commit()
    return reminder


async def reload(session_maker, model, key):
    async with session_maker() as s:
        return await s.get(model, key)
