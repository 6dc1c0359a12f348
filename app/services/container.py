"""Explicit wiring of the pipeline services for one process."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import db
from app.services.handlers import HandlerChain, build_chain
from app.services.idempotency import IdempotencyGuard
from app.services.intent import IntentClassifier, LLMCompletion
from app.services.keywords import KeywordScorer
from app.services.llm import build_llm
from app.services.locks import LockService
from app.services.pipeline import InboundProcessor
from app.services.queue import MessageQueue
from app.services.rate_limit import ReplyRateLimiter
from app.services.transitions import ConfirmationMachine, VerificationMachine
from app.services.worker import Gateway, OutboundWorker
from app.utils.redis_client import create_async_redis
from app.utils.whatsapp import WhatsAppGateway
from db import PatientStore, SessionMaker


@dataclass
class Services:
    patients: PatientStore
    locks: LockService
    queue: MessageQueue
    guard: IdempotencyGuard
    classifier: IntentClassifier
    verification: VerificationMachine
    confirmation: ConfirmationMachine
    chain: HandlerChain
    processor: InboundProcessor
    worker: OutboundWorker


def build_services(
    settings: Any,
    session_maker: SessionMaker,
    redis: Any,
    llm: Optional[LLMCompletion] = None,
    gateway: Optional[Gateway] = None,
) -> Services:
    if llm is None:
        llm = build_llm(settings.OPENAI_API_KEY, settings.OPENAI_MODEL, settings.OPENAI_TIMEOUT)
    if gateway is None:
        gateway = WhatsAppGateway(
            settings.TELNYX_API_KEY, settings.TELNYX_FROM_NUMBER, timeout=settings.GATEWAY_TIMEOUT,
        )

    patients = PatientStore(session_maker)
    locks = LockService(
        session_maker,
        default_ttl=settings.LOCK_TTL_SECONDS,
        max_retries=settings.LOCK_MAX_RETRIES,
        retry_delay=settings.LOCK_RETRY_DELAY_MS / 1000,
    )
    queue = MessageQueue(
        session_maker,
        patients=patients,
        base_delay=settings.QUEUE_BASE_RETRY_DELAY_SECONDS,
        max_delay=settings.QUEUE_MAX_RETRY_DELAY_SECONDS,
        max_retries=settings.QUEUE_MAX_RETRIES,
    )
    scorer = KeywordScorer()
    classifier = IntentClassifier(
        scorer=scorer,
        llm=llm,
        keyword_threshold=settings.KEYWORD_THRESHOLD,
        llm_threshold=settings.LLM_THRESHOLD,
    )
    verification = VerificationMachine(patients, locks, queue, scorer=scorer)
    confirmation = ConfirmationMachine(
        patients, locks, queue, scorer=scorer, clarify_below=settings.KEYWORD_THRESHOLD,
    )
    chain = build_chain(queue, verification, confirmation, llm=llm)
    guard = IdempotencyGuard(redis, ttl_seconds=settings.IDEMPOTENCY_TTL_SECONDS)
    worker = OutboundWorker(
        queue,
        patients,
        gateway,
        rate_limiter=ReplyRateLimiter(
            redis,
            max_replies=settings.REPLY_RATE_LIMIT,
            window_seconds=settings.REPLY_RATE_WINDOW_SECONDS,
        ),
        concurrency=settings.WORKER_CONCURRENCY,
        poll_interval=settings.WORKER_POLL_INTERVAL,
        send_timeout=settings.GATEWAY_TIMEOUT + 5,
    )
    return Services(
        patients=patients,
        locks=locks,
        queue=queue,
        guard=guard,
        classifier=classifier,
        verification=verification,
        confirmation=confirmation,
        chain=chain,
        processor=InboundProcessor(guard, patients, classifier, chain),
        worker=worker,
    )


@asynccontextmanager
async def open_services(settings: Any) -> AsyncIterator[Services]:
    """Engine + Redis + services for a short-lived process (Celery task, CLI)."""
    engine = db.create_engine()
    redis = create_async_redis(settings.REDIS_URL)
    try:
        yield build_services(settings, db.make_session_maker(engine), redis)
    finally:
        await redis.aclose()
        await db.dispose_engine(engine)
