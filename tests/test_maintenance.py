import asyncio
import json
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest

import db
from app.services import container
from app.services.queue import MessageQueue
from app.scripts import queue_admin
from app.workers import maintenance, outbound
from conftest import FakeGateway, FakeRedis, TestSettings, add_patient


def run_with_db(db_url, fn):
    async def _run():
        engine = db.create_engine(db_url)
        try:
            await db.create_all(engine)
            return await fn(db.make_session_maker(engine))
        finally:
            await db.dispose_engine(engine)

    return asyncio.run(_run())


@pytest.fixture
def task_gateway():
    return FakeGateway()


@pytest.fixture(autouse=True)
def task_services(db_url, task_gateway, monkeypatch):
    @asynccontextmanager
    async def open_services(settings):
        engine = db.create_engine(db_url)
        await db.create_all(engine)
        try:
            yield container.build_services(
                TestSettings(), db.make_session_maker(engine), FakeRedis(), gateway=task_gateway,
            )
        finally:
            await db.dispose_engine(engine)

    monkeypatch.setattr(container, "open_services", open_services)


def test_reap_locks_task(db_url):
    async def seed(session_maker):
        async with session_maker() as s:
            s.add(db.DistributedLock(lock_key="patient:1", owner="x", expires_at=db.utcnow() - timedelta(seconds=5)))
            s.add(db.DistributedLock(lock_key="patient:2", owner="y", expires_at=db.utcnow() + timedelta(minutes=5)))
            await s.commit()

    run_with_db(db_url, seed)
    assert maintenance.reap_locks.apply().get() == 1


def test_recover_stuck_task(db_url, monkeypatch):
    async def seed(session_maker):
        queue = MessageQueue(session_maker)
        await queue.enqueue("p1", "628111", "hello")
        await queue.dequeue()

    run_with_db(db_url, seed)
    monkeypatch.setattr(maintenance.settings, "QUEUE_STUCK_AFTER_SECONDS", -1)
    assert maintenance.recover_stuck.apply().get() == 1


def test_expire_verifications_task(db_url, monkeypatch):
    async def seed(session_maker):
        await add_patient(session_maker, verification_sent_at=db.utcnow() - timedelta(days=10))

    run_with_db(db_url, seed)
    monkeypatch.setattr(maintenance.settings, "VERIFICATION_EXPIRY_DAYS", 7)
    assert maintenance.expire_verifications.apply().get() == 1
    assert maintenance.expire_verifications.apply().get() == 0


def test_purge_queue_task(db_url, monkeypatch):
    async def seed(session_maker):
        queue = MessageQueue(session_maker)
        msg_id = await queue.enqueue("p1", "628111", "hello")
        await queue.dequeue()
        await queue.mark_processed(msg_id)

    run_with_db(db_url, seed)
    monkeypatch.setattr(maintenance.settings, "QUEUE_RETENTION_HOURS", -1)
    assert maintenance.purge_queue.apply().get() == 1


def test_drain_task_sends_due_messages(db_url, task_gateway):
    async def seed(session_maker):
        patient = await add_patient(session_maker, status="VERIFIED")
        queue = MessageQueue(session_maker)
        await queue.enqueue(patient.id, patient.phone_number, "pengingat")

    run_with_db(db_url, seed)
    assert outbound.drain.apply(kwargs={"max_ticks": 3}).get() == 1
    assert task_gateway.sent == [("6281234567890", "pengingat")]


def test_queue_admin_requeue_and_stats(db_url, capsys):
    async def seed(session_maker):
        queue = MessageQueue(session_maker, max_retries=0)
        msg_id = await queue.enqueue("p1", "628111", "hello")
        await queue.dequeue()
        await queue.mark_failed(msg_id, "boom")

    run_with_db(db_url, seed)
    queue_admin.main(["requeue", "--limit", "10"])
    assert json.loads(capsys.readouterr().out) == {"requeued": 1}
    queue_admin.main(["stats"])
    stats = json.loads(capsys.readouterr().out)
    assert (stats["pending"], stats["failed"], stats["total_failed"]) == (1, 0, 1)
