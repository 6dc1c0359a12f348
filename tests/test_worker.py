import asyncio

import pytest

from app.services.queue import UNSUBSCRIBE_CONFIRMATION, MessageQueue
from app.services.rate_limit import ReplyRateLimiter
from app.services.worker import OutboundWorker
from app.types.contracts import Priority
from db import PatientStore
from conftest import FakeGateway, add_patient


def make_worker(session_maker, gateway, **kw):
    patients = PatientStore(session_maker)
    queue = MessageQueue(session_maker, patients=patients)
    return OutboundWorker(queue, patients, gateway, **kw), queue


@pytest.mark.asyncio
async def test_sends_in_priority_order(session_maker, gateway):
    patient = await add_patient(session_maker, status="VERIFIED")
    worker, queue = make_worker(session_maker, gateway, concurrency=1)
    await queue.enqueue(patient.id, patient.phone_number, "low", priority=Priority.LOW)
    await queue.enqueue(patient.id, patient.phone_number, "urgent", priority=Priority.URGENT)
    await queue.enqueue(patient.id, patient.phone_number, "high", priority=Priority.HIGH)

    while await worker.run_once():
        pass

    assert [body for _, body in gateway.sent] == ["urgent", "high", "low"]
    stats = await queue.stats()
    assert (stats["completed"], stats["total_processed"]) == (3, 3)


@pytest.mark.asyncio
async def test_gateway_failure_schedules_retry(session_maker):
    patient = await add_patient(session_maker, status="VERIFIED")
    worker, queue = make_worker(session_maker, FakeGateway(fail=True))
    msg_id = await queue.enqueue(patient.id, patient.phone_number, "hello")

    assert await worker.run_once() == 1

    stored = await queue.get(msg_id)
    assert (stored.status, stored.retry_count, stored.last_error) == ("pending", 1, "gateway down")
    assert stored.next_retry_at is not None


@pytest.mark.asyncio
async def test_send_timeout_counts_as_failure(session_maker):
    patient = await add_patient(session_maker, status="VERIFIED")
    worker, queue = make_worker(session_maker, FakeGateway(delay=0.5), send_timeout=0.05)
    msg_id = await queue.enqueue(patient.id, patient.phone_number, "hello")

    await worker.run_once()

    stored = await queue.get(msg_id)
    assert stored.retry_count == 1
    assert stored.last_error.startswith("send timed out")


@pytest.mark.asyncio
async def test_inactive_patient_messages_are_dead_lettered(session_maker, gateway):
    patient = await add_patient(session_maker, status="VERIFIED")
    worker, queue = make_worker(session_maker, gateway)
    reminder = await queue.enqueue(patient.id, patient.phone_number, "pengingat")
    farewell = await queue.enqueue(
        patient.id, patient.phone_number, "sampai jumpa", message_type=UNSUBSCRIBE_CONFIRMATION,
    )
    await PatientStore(session_maker).unsubscribe(patient.id, "BERHENTI")

    await worker.run_once()

    assert [body for _, body in gateway.sent] == ["sampai jumpa"]
    dead = await queue.get(reminder)
    assert (dead.status, dead.last_error) == ("failed", "patient_inactive")
    assert (await queue.get(farewell)).status == "completed"


@pytest.mark.asyncio
async def test_rate_limited_replies_are_deferred(session_maker, gateway, redis):
    patient = await add_patient(session_maker, status="VERIFIED")
    limiter = ReplyRateLimiter(redis, max_replies=1, window_seconds=60)
    worker, queue = make_worker(session_maker, gateway, rate_limiter=limiter, concurrency=1)
    first = await queue.enqueue(patient.id, patient.phone_number, "one")
    second = await queue.enqueue(patient.id, patient.phone_number, "two")
    urgent = await queue.enqueue(patient.id, patient.phone_number, "help", priority=Priority.URGENT)

    while await worker.run_once():
        pass

    assert [body for _, body in gateway.sent] == ["help", "one"]
    assert (await queue.get(first)).status == "completed"
    assert (await queue.get(urgent)).status == "completed"
    deferred = await queue.get(second)
    assert (deferred.status, deferred.retry_count) == ("pending", 0)
    assert deferred.next_retry_at is not None


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_sends(session_maker):
    patient = await add_patient(session_maker, status="VERIFIED")
    gateway = FakeGateway(delay=0.2)
    worker, queue = make_worker(session_maker, gateway, poll_interval=0.05)
    msg_id = await queue.enqueue(patient.id, patient.phone_number, "hello")

    await worker.start()
    assert worker.running
    for _ in range(100):
        if gateway.sent:
            break
        await asyncio.sleep(0.01)
    await worker.stop()

    assert not worker.running
    assert (await queue.get(msg_id)).status == "completed"
