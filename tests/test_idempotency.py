import pytest

from app.services.idempotency import IdempotencyGuard, fingerprint, incoming_key, status_key
from app.services.rate_limit import ReplyRateLimiter


def test_fingerprint_treats_missing_fields_as_empty():
    assert fingerprint([None, "628123", None, "YA"]) == fingerprint(["", "628123", "", "YA"])
    assert fingerprint(["a", "b"]) != fingerprint(["ab", ""])


def test_keys_are_prefixed():
    assert incoming_key("m1", "628123", 1700000000, "YA").startswith("webhook:incoming:")
    assert status_key("m1", None).startswith("webhook:message-status:")


@pytest.mark.asyncio
async def test_second_sighting_is_duplicate(redis):
    guard = IdempotencyGuard(redis, ttl_seconds=60)
    key = incoming_key(None, "628123", None, "YA")
    assert await guard.is_duplicate(key) is False
    assert await guard.is_duplicate(key) is True
    assert redis.ttls[key] == 60


@pytest.mark.asyncio
async def test_forget_allows_reprocessing(redis):
    guard = IdempotencyGuard(redis)
    await guard.is_duplicate("k")
    await guard.forget("k")
    assert await guard.is_duplicate("k") is False


@pytest.mark.asyncio
async def test_store_outage_fails_open(redis, caplog):
    redis.down = True
    guard = IdempotencyGuard(redis)
    assert await guard.is_duplicate("k") is False
    assert await guard.is_duplicate("k") is False
    assert "processing without dedup" in caplog.text


@pytest.mark.asyncio
async def test_reply_rate_limit_window(redis):
    limiter = ReplyRateLimiter(redis, max_replies=2, window_seconds=60)
    assert (await limiter.hit("628123")).allowed
    assert (await limiter.hit("628123")).remaining == 0
    denied = await limiter.hit("628123")
    assert not denied.allowed
    assert denied.retry_after == 60
    assert (await limiter.hit("628999")).allowed


@pytest.mark.asyncio
async def test_rate_limiter_fails_open(redis):
    redis.down = True
    assert (await ReplyRateLimiter(redis, max_replies=0).hit("628123")).allowed
