"""Configuration management using Pydantic BaseSettings.

Settings are read from the environment (and an optional ``.env`` file) into an
explicit ``CacheSettings`` instance that callers pass to the components that
need it. There is no process-wide configuration singleton.
"""
from typing import List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

BACKEND_KINDS = ["memory", "persistent", "file"]
LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


class CacheSettings(BaseSettings):
    """Cache configuration.

    Field names double as environment variable names (case-insensitive),
    e.g. ``CACHE_BACKEND=file``.
    """

    # Manager
    cache_backend: str = Field("persistent", description="Preferred backend: memory, persistent, file")
    cache_prefix: str = Field("kvstash_", description="Namespace prepended to every key")
    cache_ttl_seconds: int = Field(3600, ge=0, le=31536000, description="Default TTL in seconds (0 = never expires)")

    # Memory backend
    cache_redis_url: Optional[str] = Field(None, description="Redis URL; unset uses the in-process memory store")
    cache_redis_timeout_seconds: float = Field(2.0, gt=0, le=60, description="Redis connect/socket timeout")
    cache_max_memory_size: int = Field(1000, ge=1, le=1000000, description="Max in-process memory cache entries")

    # Persistent backend
    cache_db_path: str = Field(".kvstash/cache.db", description="SQLite database file for the persistent backend")
    cache_db_timeout_seconds: float = Field(5.0, gt=0, le=120, description="SQLite busy timeout")

    # File backend
    cache_file_dir: str = Field(".kvstash/files", description="Root directory for the file backend")
    cache_file_lock_timeout_seconds: float = Field(2.0, ge=0, le=60, description="File write lock timeout")

    # Grouped cache
    cache_group_ttl_seconds: int = Field(604800, ge=0, description="Default TTL for grouped entries")
    cache_group_bypass: bool = Field(False, description="Disable grouped caching (debug bypass)")

    # Throttling
    throttle_limit: int = Field(60, ge=1, le=1000000, description="Requests allowed per window")
    throttle_period_seconds: int = Field(60, ge=1, le=86400, description="Throttle window length")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_format: str = Field("%(asctime)s - %(name)s - %(levelname)s - %(message)s", description="Log format")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }

    @field_validator('cache_backend')
    @classmethod
    def validate_backend(cls, v):
        if v.lower() not in BACKEND_KINDS:
            raise ValueError(f'Invalid cache backend: {v}. Valid options: {BACKEND_KINDS}')
        return v.lower()

    @field_validator('cache_redis_url')
    @classmethod
    def validate_redis_url(cls, v):
        if v is None or not v.strip():
            return None
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError('cache_redis_url must be a Redis URL (redis://, rediss:// or unix://)')
        return v

    @field_validator('log_level')
    @classmethod
    def validate_level(cls, v):
        if v.upper() not in LOG_LEVELS:
            raise ValueError(f'Invalid log level: {v}. Valid options: {LOG_LEVELS}')
        return v.upper()

    def validate_configuration(self) -> List[str]:
        """Validate the complete configuration and return any issues."""
        issues = []

        if self.cache_backend == "memory" and not self.cache_redis_url:
            issues.append("CACHE_BACKEND=memory without CACHE_REDIS_URL uses a per-process store; "
                          "counters are not shared between processes")

        if self.cache_backend == "file":
            issues.append("CACHE_BACKEND=file is intended for low-traffic or development use")

        if 0 < self.cache_ttl_seconds < 60:
            issues.append("CACHE_TTL_SECONDS is very low, may cause frequent cache misses")

        if self.cache_file_lock_timeout_seconds == 0:
            issues.append("CACHE_FILE_LOCK_TIMEOUT_SECONDS=0 makes every contended file write fail")

        if self.cache_group_bypass:
            issues.append("CACHE_GROUP_BYPASS is enabled; grouped entries are always recomputed")

        return issues

    def log_configuration(self) -> None:
        """Log the current configuration (sanitized)."""
        from kvstash.utils.logger import log_info

        log_info("Configuration loaded",
                 cache_backend=self.cache_backend,
                 cache_prefix=self.cache_prefix,
                 cache_ttl_seconds=self.cache_ttl_seconds,
                 cache_redis_url=self.cache_redis_url,
                 cache_db_path=self.cache_db_path,
                 cache_file_dir=self.cache_file_dir,
                 cache_group_bypass=self.cache_group_bypass,
                 log_level=self.log_level)
