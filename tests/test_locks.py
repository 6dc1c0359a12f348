import asyncio

import pytest

from app.services.locks import LockService, patient_lock_key


def _locks(session_maker, **kw):
    kw.setdefault("max_retries", 2)
    kw.setdefault("retry_delay", 0.01)
    return LockService(session_maker, **kw)


@pytest.mark.asyncio
async def test_acquire_is_exclusive(session_maker):
    locks = _locks(session_maker)
    key = patient_lock_key("p1")
    token = await locks.acquire(key, ttl=30)
    assert token
    assert await locks.acquire(key, ttl=30) is None
    assert await locks.is_locked(key)
    await locks.release(key, token)
    assert not await locks.is_locked(key)
    assert await locks.acquire(key, ttl=30)


@pytest.mark.asyncio
async def test_expired_lease_is_taken_over_and_old_release_is_noop(session_maker):
    locks = _locks(session_maker)
    key = patient_lock_key("p1")
    first = await locks.acquire(key, ttl=1)
    assert first
    await asyncio.sleep(1.1)
    second = await locks.acquire(key, ttl=30)
    assert second and second != first
    await locks.release(key, first)
    assert await locks.is_locked(key)
    await locks.release(key, second)
    assert not await locks.is_locked(key)


@pytest.mark.asyncio
async def test_release_without_token_is_noop(session_maker):
    locks = _locks(session_maker)
    token = await locks.acquire("k", ttl=30)
    await locks.release("k", None)
    await locks.release("k", "someone-else")
    assert await locks.is_locked("k")
    await locks.release("k", token)
    assert not await locks.is_locked("k")


@pytest.mark.asyncio
async def test_with_lock_releases_on_error(session_maker):
    locks = _locks(session_maker)

    async def boom():
        raise ValueError("boom")

    with pytest.raises(ValueError):
        await locks.with_lock("k", boom)
    assert not await locks.is_locked("k")


@pytest.mark.asyncio
async def test_with_lock_returns_none_when_busy(session_maker):
    locks = _locks(session_maker)
    token = await locks.acquire("k")
    called = []

    async def work():
        called.append(True)
        return "done"

    assert await locks.with_lock("k", work) is None
    assert called == []
    await locks.release("k", token)
    assert await locks.with_lock("k", work) == "done"
    assert not await locks.is_locked("k")


@pytest.mark.asyncio
async def test_reap_expired(session_maker):
    locks = _locks(session_maker)
    await locks.acquire("stale", ttl=0)
    await locks.acquire("fresh", ttl=30)
    assert await locks.reap_expired() == 1
    assert await locks.is_locked("fresh")
