"""Runtime configuration for the analysis queue, its workers and the provider."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse
from uuid import uuid4

ENV_PREFIX = "PRACTICE_ANALYSIS_"
DEFAULT_DB_PATH = ".practice_analysis.db"


def default_worker_id() -> str:
    return f"worker-{os.getpid()}-{uuid4().hex[:6]}"


@dataclass(slots=True)
class QueueSettings:
    """Job-store behaviour: leases, priorities, retry and retention budgets."""

    lease_seconds: int = 300
    default_priority: int = 5
    max_retries: int = 3
    cleanup_days: int = 7
    min_transcript_chars: int = 50


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop settings."""

    worker_id: str = field(default_factory=default_worker_id)
    pool_size: int = 2
    poll_interval_seconds: float = 2.0
    max_idle_polls: int = 1
    reap_before_claim: bool = True


@dataclass(slots=True)
class ProviderSettings:
    """Anthropic Messages API settings."""

    api_key: str | None = None
    base_url: str = "https://api.anthropic.com"
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 4096
    timeout_seconds: float = 120.0
    max_retries: int = 2


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(DEFAULT_DB_PATH)
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(_env("DB_PATH", DEFAULT_DB_PATH)),
            sqlite_busy_timeout_ms=int(_env("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            queue=QueueSettings(
                lease_seconds=int(_env("LEASE_SECONDS", "300")),
                default_priority=int(_env("DEFAULT_PRIORITY", "5")),
                max_retries=int(_env("MAX_RETRIES", "3")),
                cleanup_days=int(_env("CLEANUP_DAYS", "7")),
                min_transcript_chars=int(_env("MIN_TRANSCRIPT_CHARS", "50")),
            ),
            worker=WorkerSettings(
                worker_id=_env("WORKER_ID", "") or default_worker_id(),
                pool_size=int(_env("WORKER_POOL_SIZE", "2")),
                poll_interval_seconds=float(_env("WORKER_POLL_INTERVAL_SECONDS", "2.0")),
                max_idle_polls=int(_env("WORKER_MAX_IDLE_POLLS", "1")),
                reap_before_claim=_env_bool(f"{ENV_PREFIX}WORKER_REAP_BEFORE_CLAIM", default=True),
            ),
            provider=ProviderSettings(
                api_key=_env("API_KEY", "") or os.getenv("ANTHROPIC_API_KEY") or None,
                base_url=_env("PROVIDER_BASE_URL", "https://api.anthropic.com"),
                model=_env("PROVIDER_MODEL", "claude-sonnet-4-20250514"),
                max_tokens=int(_env("PROVIDER_MAX_TOKENS", "4096")),
                timeout_seconds=float(_env("PROVIDER_TIMEOUT_SECONDS", "120.0")),
                max_retries=int(_env("PROVIDER_MAX_RETRIES", "2")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range queue and worker settings."""

        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError(f"{ENV_PREFIX}SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.queue.lease_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}LEASE_SECONDS must be > 0.")
        if self.queue.max_retries < 0:
            raise ValueError(f"{ENV_PREFIX}MAX_RETRIES must be >= 0.")
        if self.queue.cleanup_days < 0:
            raise ValueError(f"{ENV_PREFIX}CLEANUP_DAYS must be >= 0.")
        if self.queue.min_transcript_chars < 0:
            raise ValueError(f"{ENV_PREFIX}MIN_TRANSCRIPT_CHARS must be >= 0.")
        if not self.worker.worker_id.strip():
            raise ValueError(f"{ENV_PREFIX}WORKER_ID must not be empty.")
        if self.worker.pool_size <= 0:
            raise ValueError(f"{ENV_PREFIX}WORKER_POOL_SIZE must be > 0.")
        if self.worker.poll_interval_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}WORKER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.max_idle_polls <= 0:
            raise ValueError(f"{ENV_PREFIX}WORKER_MAX_IDLE_POLLS must be > 0.")

    def validate_for_provider(self) -> None:
        """Raise configuration error if the analysis provider cannot be built."""

        if not self.provider.api_key:
            raise ValueError(
                "An Anthropic API key is required. "
                f"Set {ENV_PREFIX}API_KEY or ANTHROPIC_API_KEY.",
            )
        parsed = urlparse(self.provider.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                f"Invalid {ENV_PREFIX}PROVIDER_BASE_URL: {self.provider.base_url!r}. "
                "Expected an absolute URL with http:// or https:// scheme.",
            )
        if self.provider.max_tokens <= 0:
            raise ValueError(f"{ENV_PREFIX}PROVIDER_MAX_TOKENS must be > 0.")
        if self.provider.timeout_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}PROVIDER_TIMEOUT_SECONDS must be > 0.")
        if self.provider.max_retries < 0:
            raise ValueError(f"{ENV_PREFIX}PROVIDER_MAX_RETRIES must be >= 0.")


def _env(suffix: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{suffix}", default)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
