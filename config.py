import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    # --- Database ---
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

    # --- Redis ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # --- Webhook auth ---
    WEBHOOK_TOKEN = os.environ.get("WEBHOOK_TOKEN")
    WEBHOOK_AUTH_DISABLED = _flag("WEBHOOK_AUTH_DISABLED")

    # --- OpenAI / LLM ---
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
    OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4.1-mini")
    OPENAI_TIMEOUT = float(os.environ.get("OPENAI_TIMEOUT", "15"))

    # --- Telnyx (WhatsApp / SMS gateway) ---
    TELNYX_API_KEY = os.environ.get("TELNYX_API_KEY")
    TELNYX_FROM_NUMBER = os.environ.get("TELNYX_FROM_NUMBER")
    GATEWAY_TIMEOUT = float(os.environ.get("GATEWAY_TIMEOUT", "20"))

    # --- Idempotency ---
    IDEMPOTENCY_TTL_SECONDS = int(os.environ.get("IDEMPOTENCY_TTL_SECONDS", "86400"))

    # --- Distributed lock ---
    LOCK_TTL_SECONDS = float(os.environ.get("LOCK_TTL_SECONDS", "30"))
    LOCK_MAX_RETRIES = int(os.environ.get("LOCK_MAX_RETRIES", "3"))
    LOCK_RETRY_DELAY_MS = int(os.environ.get("LOCK_RETRY_DELAY_MS", "100"))

    # --- Outbound queue ---
    QUEUE_BASE_RETRY_DELAY_SECONDS = int(os.environ.get("QUEUE_BASE_RETRY_DELAY_SECONDS", "30"))
    QUEUE_MAX_RETRY_DELAY_SECONDS = int(os.environ.get("QUEUE_MAX_RETRY_DELAY_SECONDS", "3600"))
    QUEUE_MAX_RETRIES = int(os.environ.get("QUEUE_MAX_RETRIES", "3"))
    QUEUE_RETENTION_HOURS = int(os.environ.get("QUEUE_RETENTION_HOURS", "24"))
    QUEUE_STUCK_AFTER_SECONDS = int(os.environ.get("QUEUE_STUCK_AFTER_SECONDS", "300"))

    # --- Worker loop ---
    WORKER_POLL_INTERVAL = float(os.environ.get("WORKER_POLL_INTERVAL", "5"))
    WORKER_CONCURRENCY = int(os.environ.get("WORKER_CONCURRENCY", "5"))
    WORKER_ENABLED = _flag("WORKER_ENABLED", "1")

    # --- Reply rate limit (per phone number) ---
    REPLY_RATE_LIMIT = int(os.environ.get("REPLY_RATE_LIMIT", "10"))
    REPLY_RATE_WINDOW_SECONDS = int(os.environ.get("REPLY_RATE_WINDOW_SECONDS", "60"))

    # --- Intent classification ---
    KEYWORD_THRESHOLD = float(os.environ.get("KEYWORD_THRESHOLD", "0.4"))
    LLM_THRESHOLD = float(os.environ.get("LLM_THRESHOLD", "0.6"))

    # --- Verification ---
    VERIFICATION_EXPIRY_DAYS = int(os.environ.get("VERIFICATION_EXPIRY_DAYS", "7"))

    # --- Logging ---
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

settings = Settings()
