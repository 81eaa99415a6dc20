"""Backend interface for build and benchmark execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class BackendRunRequest:
    """Inputs required to run one build or benchmark command."""

    command_template: str
    workspace_dir: Path
    log_name: str
    image: str
    commit: str
    timeout_seconds: int
    scene: str = ""
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class BackendRunResult:
    """Execution outcome from backend runner."""

    exit_code: int
    timed_out: bool
    stdout_path: Path
    stderr_path: Path

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class TaskBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        """Run one command and return execution metadata."""
