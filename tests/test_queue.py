import pytest
from sqlalchemy import update

from app.services.queue import UNSUBSCRIBE_CONFIRMATION, MessageQueue, backoff_delay
from app.types.contracts import Priority
from db import PatientStore, QueuedMessage, utcnow
from conftest import add_patient


async def _make_due(session_maker, message_id):
    async with session_maker() as s:
        await s.execute(update(QueuedMessage).where(QueuedMessage.id == message_id).values(next_retry_at=None))
        await s.commit()


@pytest.mark.asyncio
async def test_dequeue_orders_by_priority_then_age(session_maker):
    queue = MessageQueue(session_maker)
    low = await queue.enqueue("p1", "628111", "low", priority=Priority.LOW)
    medium = await queue.enqueue("p1", "628111", "medium", priority=Priority.MEDIUM)
    urgent = await queue.enqueue("p2", "628222", "urgent", priority=Priority.URGENT)
    medium_2 = await queue.enqueue("p2", "628222", "medium 2", priority="medium")

    first = await queue.dequeue(1)
    assert [m.id for m in first] == [urgent]
    assert first[0].status == "processing"
    rest = await queue.dequeue(10)
    assert [m.id for m in rest] == [medium, medium_2, low]
    assert await queue.dequeue(10) == []


@pytest.mark.asyncio
async def test_retry_backoff_then_dead_letter(session_maker):
    queue = MessageQueue(session_maker, base_delay=30, max_delay=3600, max_retries=3)
    msg_id = await queue.enqueue("p1", "628111", "hello")

    delays = []
    for _ in range(3):
        [msg] = await queue.dequeue()
        before = utcnow()
        outcome = await queue.mark_failed(msg.id, "gateway down")
        assert outcome.retried
        delays.append(outcome.delay_seconds)
        offset = (outcome.next_retry_at - before).total_seconds()
        assert outcome.delay_seconds <= offset < outcome.delay_seconds + 5
        # not due yet
        assert await queue.dequeue() == []
        await _make_due(session_maker, msg_id)
    assert delays == [30, 60, 120]

    [msg] = await queue.dequeue()
    assert msg.retry_count == 3
    outcome = await queue.mark_failed(msg.id, "gateway down")
    assert not outcome.retried
    stored = await queue.get(msg_id)
    assert stored.status == "failed"
    assert stored.last_error == "gateway down"
    stats = await queue.stats()
    assert stats["failed"] == 1
    assert stats["total_failed"] == 1


def test_backoff_is_capped():
    assert backoff_delay(0, 30, 100) == 30
    assert backoff_delay(5, 30, 100) == 100


@pytest.mark.asyncio
async def test_non_retryable_failure_dead_letters_immediately(session_maker):
    queue = MessageQueue(session_maker)
    msg_id = await queue.enqueue("p1", "628111", "hello")
    await queue.dequeue()
    outcome = await queue.mark_failed(msg_id, "patient_inactive", can_retry=False)
    assert not outcome.retried
    assert (await queue.get(msg_id)).status == "failed"


@pytest.mark.asyncio
async def test_mark_processed_updates_running_average(session_maker):
    queue = MessageQueue(session_maker)
    for ms in (100, 300):
        msg_id = await queue.enqueue("p1", "628111", "hello")
        await queue.dequeue()
        assert await queue.mark_processed(msg_id, ms, gateway_message_id="wamid-1")
    assert not await queue.mark_processed(msg_id, 5)
    stats = await queue.stats()
    assert stats["completed"] == 2
    assert stats["total_processed"] == 2
    assert stats["avg_processing_ms"] == pytest.approx(200)


@pytest.mark.asyncio
async def test_requeue_failed_and_purge(session_maker):
    queue = MessageQueue(session_maker, max_retries=0)
    msg_id = await queue.enqueue("p1", "628111", "hello")
    await queue.dequeue()
    await queue.mark_failed(msg_id, "boom")
    assert await queue.requeue_failed() == 1
    stored = await queue.get(msg_id)
    assert (stored.status, stored.retry_count, stored.last_error) == ("pending", 0, None)

    await queue.dequeue()
    await queue.mark_processed(msg_id)
    assert await queue.purge_finished(older_than_hours=1) == 0
    assert await queue.purge_finished(older_than_hours=-1) == 1
    assert await queue.get(msg_id) is None


@pytest.mark.asyncio
async def test_recover_stuck_and_defer(session_maker):
    queue = MessageQueue(session_maker)
    msg_id = await queue.enqueue("p1", "628111", "hello")
    await queue.dequeue()
    assert await queue.recover_stuck(older_than_seconds=60) == 0
    assert await queue.recover_stuck(older_than_seconds=-1) == 1
    [msg] = await queue.dequeue()
    assert await queue.defer(msg.id, 60)
    stored = await queue.get(msg_id)
    assert (stored.status, stored.retry_count) == ("pending", 0)
    assert await queue.dequeue() == []


@pytest.mark.asyncio
async def test_inactive_patients_only_receive_unsubscribe_confirmation(session_maker):
    patient = await add_patient(session_maker, active=False)
    queue = MessageQueue(session_maker, patients=PatientStore(session_maker))
    assert await queue.enqueue(patient.id, patient.phone_number, "hi") is None
    assert await queue.enqueue(
        patient.id, patient.phone_number, "bye", message_type=UNSUBSCRIBE_CONFIRMATION
    ) is not None
    assert len(await queue.messages_for_patient(patient.id)) == 1


@pytest.mark.asyncio
async def test_remove_patient_messages_only_touches_pending(session_maker):
    queue = MessageQueue(session_maker)
    claimed = await queue.enqueue("p1", "628111", "one", priority=Priority.URGENT)
    await queue.enqueue("p1", "628111", "two")
    await queue.enqueue("p2", "628222", "other")
    await queue.dequeue()
    assert await queue.remove_patient_messages("p1") == 1
    assert [m.id for m in await queue.messages_for_patient("p1")] == [claimed]
