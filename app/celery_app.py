"""Celery application for periodic pipeline maintenance.

Start a worker + beat with:
    celery -A app.celery_app worker -B -Q maintenance -l info --concurrency=1
"""

import os
from celery import Celery

BROKER_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

celery_app = Celery("prima_backend", broker=BROKER_URL, backend=BROKER_URL)

# Global task settings
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.task_default_retry_delay = 30  # seconds

celery_app.conf.task_routes = {
    "app.workers.maintenance.*": {"queue": "maintenance"},
    "app.workers.outbound.*": {"queue": "maintenance"},
}

celery_app.conf.beat_schedule = {
    "reap-expired-locks": {
        "task": "app.workers.maintenance.reap_locks",
        "schedule": 60.0,
    },
    "recover-stuck-messages": {
        "task": "app.workers.maintenance.recover_stuck",
        "schedule": 120.0,
    },
    "purge-finished-messages": {
        "task": "app.workers.maintenance.purge_queue",
        "schedule": 3600.0,
    },
    "expire-verifications": {
        "task": "app.workers.maintenance.expire_verifications",
        "schedule": 3600.0,
    },
}

# Drain the outbound queue from beat when the API runs without its in-process worker
if os.getenv("CELERY_DRAIN_QUEUE", "0") == "1":
    celery_app.conf.beat_schedule["drain-outbound-queue"] = {
        "task": "app.workers.outbound.drain",
        "schedule": float(os.getenv("WORKER_POLL_INTERVAL", "5")),
    }

# --- Ensure tasks are registered ---
import app.workers.maintenance
import app.workers.outbound
