"""Runtime configuration for the coordination server, workers and mailer."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_BUILD_COMMAND = "docker build -t {image} {workspace}"
DEFAULT_BENCHMARK_COMMAND = "docker run --rm -v {workspace}:/workspace {image} {scene}"


@dataclass(slots=True)
class QueueSettings:
    """Task queue lease and retry policy."""

    lease_timeout_seconds: int = 1_800
    max_retries: int = 3


@dataclass(slots=True)
class WorkspaceSettings:
    """Workspace lifecycle limits."""

    max_workspaces_per_technique: int = 3
    unpublished_days_limit: int = 7
    max_rerun_cycles: int = 5


@dataclass(slots=True)
class WorkerSettings:
    """Settings for one build/benchmark worker process."""

    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}-{os.getpid()}")
    poll_interval_seconds: float = 2.0
    build_command: str = DEFAULT_BUILD_COMMAND
    benchmark_command: str = DEFAULT_BENCHMARK_COMMAND
    command_timeout_seconds: int = 3_600


@dataclass(slots=True)
class MailerSettings:
    """Outbound notification delivery."""

    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    from_address: str = "fbksd@localhost"
    admin_email: str = "admin@localhost"
    poll_interval_seconds: float = 5.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".fbksd_server.db")
    sqlite_busy_timeout_ms: int = 5_000
    data_root: Path = Path("fbksd-data")
    results_base_url: str = "http://localhost:8000/results"
    queue: QueueSettings = field(default_factory=QueueSettings)
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    mailer: MailerSettings = field(default_factory=MailerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        worker_defaults = WorkerSettings()
        return cls(
            db_path=db_path or Path(os.getenv("FBKSD_DB_PATH", ".fbksd_server.db")),
            sqlite_busy_timeout_ms=int(os.getenv("FBKSD_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            data_root=Path(os.getenv("FBKSD_DATA_ROOT", "fbksd-data")),
            results_base_url=os.getenv(
                "FBKSD_RESULTS_BASE_URL",
                "http://localhost:8000/results",
            ).rstrip("/"),
            queue=QueueSettings(
                lease_timeout_seconds=int(os.getenv("FBKSD_LEASE_TIMEOUT_SECONDS", "1800")),
                max_retries=int(os.getenv("FBKSD_MAX_RETRIES", "3")),
            ),
            workspace=WorkspaceSettings(
                max_workspaces_per_technique=int(
                    os.getenv("FBKSD_MAX_WORKSPACES_PER_TECHNIQUE", "3"),
                ),
                unpublished_days_limit=int(os.getenv("FBKSD_UNPUBLISHED_DAYS_LIMIT", "7")),
                max_rerun_cycles=int(os.getenv("FBKSD_MAX_RERUN_CYCLES", "5")),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("FBKSD_WORKER_ID", worker_defaults.worker_id),
                poll_interval_seconds=float(os.getenv("FBKSD_WORKER_POLL_INTERVAL_SECONDS", "2")),
                build_command=os.getenv("FBKSD_BUILD_COMMAND", DEFAULT_BUILD_COMMAND),
                benchmark_command=os.getenv("FBKSD_BENCHMARK_COMMAND", DEFAULT_BENCHMARK_COMMAND),
                command_timeout_seconds=int(os.getenv("FBKSD_COMMAND_TIMEOUT_SECONDS", "3600")),
            ),
            mailer=MailerSettings(
                smtp_host=_env_optional("FBKSD_SMTP_HOST"),
                smtp_port=int(os.getenv("FBKSD_SMTP_PORT", "587")),
                smtp_user=_env_optional("FBKSD_SMTP_USER"),
                smtp_password=_env_optional("FBKSD_SMTP_PASSWORD"),
                from_address=os.getenv("FBKSD_MAIL_FROM", "fbksd@localhost"),
                admin_email=os.getenv("FBKSD_ADMIN_EMAIL", "admin@localhost"),
                poll_interval_seconds=float(os.getenv("FBKSD_MAILER_POLL_INTERVAL_SECONDS", "5")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any limit is out of range."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("FBKSD_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.queue.lease_timeout_seconds <= 0:
            raise ValueError("FBKSD_LEASE_TIMEOUT_SECONDS must be > 0.")
        if self.queue.max_retries < 0:
            raise ValueError("FBKSD_MAX_RETRIES must be >= 0.")
        if self.workspace.max_workspaces_per_technique <= 0:
            raise ValueError("FBKSD_MAX_WORKSPACES_PER_TECHNIQUE must be > 0.")
        if self.workspace.unpublished_days_limit <= 0:
            raise ValueError("FBKSD_UNPUBLISHED_DAYS_LIMIT must be > 0.")
        if self.workspace.max_rerun_cycles <= 0:
            raise ValueError("FBKSD_MAX_RERUN_CYCLES must be > 0.")
        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("FBKSD_WORKER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.command_timeout_seconds <= 0:
            raise ValueError("FBKSD_COMMAND_TIMEOUT_SECONDS must be > 0.")
        if self.mailer.poll_interval_seconds <= 0:
            raise ValueError("FBKSD_MAILER_POLL_INTERVAL_SECONDS must be > 0.")
        if not 0 < self.mailer.smtp_port < 65_536:
            raise ValueError("FBKSD_SMTP_PORT must be a valid TCP port.")
        _validate_base_url(self.results_base_url)


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid FBKSD_RESULTS_BASE_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
