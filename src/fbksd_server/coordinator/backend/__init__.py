"""Worker backend implementations."""

from fbksd_server.coordinator.backend.base import BackendRunRequest, BackendRunResult, TaskBackend
from fbksd_server.coordinator.backend.command_backend import BackendRunError, CommandBackend

__all__ = [
    "BackendRunError",
    "BackendRunRequest",
    "BackendRunResult",
    "CommandBackend",
    "TaskBackend",
]
