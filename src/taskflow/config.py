"""Runtime configuration for the task scheduler and worker pool."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool execution settings."""

    worker_id: str = "worker-local"
    concurrency: int = 10
    poll_interval_seconds: float = 5.0
    visibility_timeout_seconds: float = 30.0
    lease_grace_seconds: float = 5.0
    graceful_shutdown_seconds: float = 30.0
    rate_limit_window_seconds: float = 1.0
    install_signal_handlers: bool = True


@dataclass(slots=True)
class RetrySettings:
    """Task-level retry/backoff settings."""

    base_ms: int = 1_000
    max_delay_ms: int | None = None


@dataclass(slots=True)
class QueueSettings:
    """Dispatch queue infrastructure settings."""

    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 30.0
    depth_emit_seconds: float = 5.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".taskflow.db")
    sqlite_busy_timeout_ms: int = 5_000
    owner_id: str = "default_owner"
    log_level: str = "INFO"
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    queue: QueueSettings = field(default_factory=QueueSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASKFLOW_DB_PATH", ".taskflow.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TASKFLOW_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            owner_id=os.getenv("TASKFLOW_OWNER_ID", "default_owner"),
            log_level=os.getenv("TASKFLOW_LOG_LEVEL", "INFO").strip().upper(),
            worker=WorkerSettings(
                worker_id=os.getenv("TASKFLOW_WORKER_ID", "").strip() or _default_worker_id(),
                concurrency=int(os.getenv("TASKFLOW_WORKER_CONCURRENCY", "10")),
                poll_interval_seconds=float(
                    os.getenv("TASKFLOW_WORKER_POLL_INTERVAL_SECONDS", "5.0"),
                ),
                visibility_timeout_seconds=float(
                    os.getenv("TASKFLOW_VISIBILITY_TIMEOUT_SECONDS", "30"),
                ),
                lease_grace_seconds=float(os.getenv("TASKFLOW_LEASE_GRACE_SECONDS", "5")),
                graceful_shutdown_seconds=float(
                    os.getenv("TASKFLOW_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                rate_limit_window_seconds=float(
                    os.getenv("TASKFLOW_RATE_LIMIT_WINDOW_SECONDS", "1.0"),
                ),
                install_signal_handlers=_env_bool(
                    "TASKFLOW_WORKER_INSTALL_SIGNAL_HANDLERS",
                    default=True,
                ),
            ),
            retry=RetrySettings(
                base_ms=int(os.getenv("TASKFLOW_RETRY_BASE_MS", "1000")),
                max_delay_ms=_env_optional_int("TASKFLOW_RETRY_MAX_DELAY_MS"),
            ),
            queue=QueueSettings(
                retry_base_seconds=float(os.getenv("TASKFLOW_QUEUE_RETRY_BASE_SECONDS", "1.0")),
                retry_max_seconds=float(os.getenv("TASKFLOW_QUEUE_RETRY_MAX_SECONDS", "30.0")),
                depth_emit_seconds=float(os.getenv("TASKFLOW_QUEUE_DEPTH_EMIT_SECONDS", "5.0")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASKFLOW_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"TASKFLOW_LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}, "
                f"got {self.log_level!r}.",
            )
        if not self.owner_id.strip():
            raise ValueError("TASKFLOW_OWNER_ID must not be empty.")
        if self.worker.concurrency < 1:
            raise ValueError("TASKFLOW_WORKER_CONCURRENCY must be >= 1.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("TASKFLOW_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.visibility_timeout_seconds <= 0:
            raise ValueError("TASKFLOW_VISIBILITY_TIMEOUT_SECONDS must be > 0.")
        if self.worker.lease_grace_seconds < 0:
            raise ValueError("TASKFLOW_LEASE_GRACE_SECONDS must be >= 0.")
        if self.worker.graceful_shutdown_seconds < 0:
            raise ValueError("TASKFLOW_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.worker.rate_limit_window_seconds <= 0:
            raise ValueError("TASKFLOW_RATE_LIMIT_WINDOW_SECONDS must be > 0.")
        if self.retry.base_ms < 0:
            raise ValueError("TASKFLOW_RETRY_BASE_MS must be >= 0.")
        if self.retry.max_delay_ms is not None and self.retry.max_delay_ms < 0:
            raise ValueError("TASKFLOW_RETRY_MAX_DELAY_MS must be >= 0.")
        if self.queue.retry_base_seconds <= 0:
            raise ValueError("TASKFLOW_QUEUE_RETRY_BASE_SECONDS must be > 0.")
        if self.queue.retry_max_seconds < self.queue.retry_base_seconds:
            raise ValueError(
                "TASKFLOW_QUEUE_RETRY_MAX_SECONDS must be >= TASKFLOW_QUEUE_RETRY_BASE_SECONDS.",
            )
        if self.queue.depth_emit_seconds < 0:
            raise ValueError("TASKFLOW_QUEUE_DEPTH_EMIT_SECONDS must be >= 0.")


def _default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


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
