import os
from dotenv import load_dotenv

load_dotenv()

class Settings:
    API_KEY: str = os.getenv("API_KEY", "")

    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    # Every Redis call is bounded; a stuck call fails that unit of work only.
    REDIS_SOCKET_TIMEOUT_SEC: float = float(os.getenv("REDIS_SOCKET_TIMEOUT_SEC", "5"))
    RQ_QUEUE_NAME: str = os.getenv("RQ_QUEUE_NAME", "engagement")

    # Lifecycle thresholds
    INACTIVITY_THRESHOLD_DAYS: int = int(os.getenv("INACTIVITY_THRESHOLD_DAYS", "14"))
    GOODBYE_TIMEOUT_HOURS: int = int(os.getenv("GOODBYE_TIMEOUT_HOURS", "48"))
    REMIND_LATER_DAYS: int = int(os.getenv("REMIND_LATER_DAYS", "14"))
    UNPROMPTED_RETURN_DAYS: int = int(os.getenv("UNPROMPTED_RETURN_DAYS", "3"))
    WEEKLY_ACTIVITY_DAYS: int = int(os.getenv("WEEKLY_ACTIVITY_DAYS", "7"))

    # Conversation context (multi-step flows)
    CONTEXT_TTL_SEC: int = int(os.getenv("CONTEXT_TTL_SEC", "300"))

    # Message queue / delivery
    MAX_MESSAGE_RETRIES: int = int(os.getenv("MAX_MESSAGE_RETRIES", "3"))
    DELIVERY_BASE_DELAY_MS: int = int(os.getenv("DELIVERY_BASE_DELAY_MS", "60000"))
    DELIVERY_MAX_DELAY_MS: int = int(os.getenv("DELIVERY_MAX_DELAY_MS", "3600000"))
    DELIVERY_BATCH_LIMIT: int = int(os.getenv("DELIVERY_BATCH_LIMIT", "100"))
    DELIVERY_CLAIM_TTL_MS: int = int(os.getenv("DELIVERY_CLAIM_TTL_MS", "30000"))
    # Modes:
    # - "inline": run a delivery pass in-process right after a sweep
    # - "rq": enqueue a delivery job for an RQ worker
    # - "off": leave pending rows for an external poller
    DELIVERY_MODE: str = os.getenv("DELIVERY_MODE", "rq").lower()
    TRANSPORT_URL: str = os.getenv("TRANSPORT_URL", "")
    TRANSPORT_TIMEOUT_SEC: float = float(os.getenv("TRANSPORT_TIMEOUT_SEC", "5"))
    DEFAULT_LOCALE: str = os.getenv("DEFAULT_LOCALE", "pt-BR")

    # Batch jobs
    JOB_WORKERS: int = int(os.getenv("JOB_WORKERS", "8"))
    JOB_LOCK_TTL_MS: int = int(os.getenv("JOB_LOCK_TTL_MS", str(30 * 60 * 1000)))

    # Observability
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "info").lower()
    ENABLE_PII_REDACTION: bool = os.getenv("ENABLE_PII_REDACTION", "true").lower() == "true"
    TRANSITION_RECENT_LIMIT: int = int(os.getenv("TRANSITION_RECENT_LIMIT", "1000"))

    # Admin surface
    ADMIN_RBAC_ENABLED: bool = os.getenv("ADMIN_RBAC_ENABLED", "true").lower() == "true"
    ADMIN_API_KEY: str = os.getenv("ADMIN_API_KEY", "")

settings = Settings()
