from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TRACKER_", env_file=".env", extra="ignore"
    )

    database_url: str = "sqlite+aiosqlite:///./tracker.db"
    create_tables: bool = False  # run create_all on startup (dev / tests)

    kv_backend: Literal["redis", "memory"] = "redis"
    redis_dsn: str = "redis://localhost:6379/0"
    redis_pool_size: int = 5

    cache_namespace: str = "tms:"
    l1_enabled: bool = False  # per-process tier, not invalidated across workers
    l1_maxsize: int = 2048
    l1_ttl_seconds: int = 5
    l2_ttl_seconds: int = 300  # point entries
    list_ttl_seconds: int = 60

    lock_ttl_seconds: float = 15.0
    lock_max_attempts: int = 5
    lock_base_delay: float = 0.05
    lock_max_delay: float = 1.0

    # per-call deadlines, distinct from the lock ttl
    lock_op_timeout: float = 2.0
    store_timeout: float = 5.0
    cache_timeout: float = 1.0
    audit_timeout: float = 2.0

    invalidation_retry_attempts: int = 3

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
