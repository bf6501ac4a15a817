import os
from functools import lru_cache


class Settings:
    # Persistence
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./planner.db")
    # Redis settings (cache entries, single-flight leases, event mirroring)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_CACHE_ENABLED: bool = bool(int(os.getenv("REDIS_CACHE_ENABLED", "0")))
    REDIS_EVENTS_ENABLED: bool = bool(int(os.getenv("REDIS_EVENTS_ENABLED", "0")))
    REDIS_CACHE_PREFIX: str = os.getenv("REDIS_CACHE_PREFIX", "cache:")
    REDIS_LEASE_PREFIX: str = os.getenv("REDIS_LEASE_PREFIX", "lease:")
    REDIS_EVENTS_PREFIX: str = os.getenv("REDIS_EVENTS_PREFIX", "events:run:")
    # Redis reconnect jitter and circuit-breaker
    REDIS_RECONNECT_MAX_ATTEMPTS: int = int(os.getenv("REDIS_RECONNECT_MAX_ATTEMPTS", "5"))
    REDIS_RECONNECT_BASE_DELAY: float = float(os.getenv("REDIS_RECONNECT_BASE_DELAY", "0.5"))
    REDIS_RECONNECT_MAX_DELAY: float = float(os.getenv("REDIS_RECONNECT_MAX_DELAY", "10"))
    REDIS_RECONNECT_JITTER_MS: int = int(os.getenv("REDIS_RECONNECT_JITTER_MS", "250"))
    REDIS_CIRCUIT_COOLDOWN_SECONDS: float = float(os.getenv("REDIS_CIRCUIT_COOLDOWN_SECONDS", "60"))
    # Agent retry policy (bounded exponential backoff)
    RETRY_MAX_ATTEMPTS: int = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
    RETRY_BASE_DELAY_SECONDS: float = float(os.getenv("RETRY_BASE_DELAY_SECONDS", "0.5"))
    RETRY_MULTIPLIER: float = float(os.getenv("RETRY_MULTIPLIER", "2.0"))
    RETRY_MAX_DELAY_SECONDS: float = float(os.getenv("RETRY_MAX_DELAY_SECONDS", "30"))
    RETRY_JITTER_SECONDS: float = float(os.getenv("RETRY_JITTER_SECONDS", "0.25"))
    # Timeouts and concurrency
    NODE_TIMEOUT_SECONDS: float = float(os.getenv("NODE_TIMEOUT_SECONDS", "60"))
    RUN_WALL_CLOCK_SECONDS: float = float(os.getenv("RUN_WALL_CLOCK_SECONDS", "600"))
    RUN_MAX_CONCURRENCY: int = int(os.getenv("RUN_MAX_CONCURRENCY", "4"))
    GLOBAL_MAX_CONCURRENCY: int = int(os.getenv("GLOBAL_MAX_CONCURRENCY", "16"))
    # finished runs kept in memory; older ones are served from storage
    RUN_RETENTION_COUNT: int = int(os.getenv("RUN_RETENTION_COUNT", "200"))
    # Cache TTL classes
    CACHE_TTL_SHORT_SECONDS: float = float(os.getenv("CACHE_TTL_SHORT_SECONDS", "900"))
    CACHE_TTL_MEDIUM_SECONDS: float = float(os.getenv("CACHE_TTL_MEDIUM_SECONDS", "21600"))
    CACHE_TTL_LONG_SECONDS: float = float(os.getenv("CACHE_TTL_LONG_SECONDS", "604800"))
    CACHE_LEASE_TTL_MS: int = int(os.getenv("CACHE_LEASE_TTL_MS", "30000"))
    CACHE_LEASE_POLL_SECONDS: float = float(os.getenv("CACHE_LEASE_POLL_SECONDS", "0.05"))
    # Cost ledger ceiling; policy is "soft" or "hard", ceiling 0 disables it
    BUDGET_POLICY: str = os.getenv("BUDGET_POLICY", "soft")
    BUDGET_CEILING_USD: float = float(os.getenv("BUDGET_CEILING_USD", "0"))
    # Accepted and exposed only; the engine does not enforce it
    ANON_RATE_LIMIT_PER_MINUTE: int = int(os.getenv("ANON_RATE_LIMIT_PER_MINUTE", "0"))
    # Context outbox reconciler
    OUTBOX_POLL_INTERVAL_SECONDS: float = float(os.getenv("OUTBOX_POLL_INTERVAL_SECONDS", "2"))
    OUTBOX_BASE_DELAY_SECONDS: float = float(os.getenv("OUTBOX_BASE_DELAY_SECONDS", "1"))
    OUTBOX_MAX_DELAY_SECONDS: float = float(os.getenv("OUTBOX_MAX_DELAY_SECONDS", "60"))
    OUTBOX_MAX_RETRIES: int = int(os.getenv("OUTBOX_MAX_RETRIES", "5"))
    OUTBOX_BATCH_SIZE: int = int(os.getenv("OUTBOX_BATCH_SIZE", "50"))
    CONTEXT_SEARCH_K: int = int(os.getenv("CONTEXT_SEARCH_K", "5"))
    # Remote agent endpoints: {AGENT_BASE_URL}/{agent_type}
    AGENT_BASE_URL: str = os.getenv("AGENT_BASE_URL", "")
    AGENT_API_KEY: str = os.getenv("AGENT_API_KEY", "")
    # Events
    EVENT_REPLAY_LIMIT: int = int(os.getenv("EVENT_REPLAY_LIMIT", "1000"))
    # Observability / admin
    METRICS_PORT: int = int(os.getenv("METRICS_PORT", "0"))
    ADMIN_TOKEN: str = os.getenv("PLANNER_ADMIN_TOKEN", "")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
