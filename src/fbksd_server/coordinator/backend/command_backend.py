"""Subprocess backend running the configured build and benchmark commands."""

from __future__ import annotations

import os
import shlex
import subprocess
import time

from fbksd_server.coordinator.backend.base import BackendRunRequest, BackendRunResult

TIMEOUT_EXIT_CODE = 124
_POLL_SECONDS = 0.1
_STOP_WAIT_SECONDS = 2


class BackendRunError(RuntimeError):
    """The command could not be run to completion; ``transient`` errors are worth a retry."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CommandBackend:
    """Run a command template with ``{image}``, ``{commit}``, ``{scene}`` and ``{workspace}``.

    Output goes to ``<workspace>/logs/<log_name>.stdout.log`` and ``.stderr.log``;
    the same values are exported as ``FBKSD_*`` environment variables.
    """

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        values = {
            "image": request.image,
            "commit": request.commit,
            "scene": request.scene,
            "workspace": str(request.workspace_dir),
        }
        argv = build_argv(command_template=request.command_template, values=values)
        env = {**os.environ, **{f"FBKSD_{key.upper()}": value for key, value in values.items()}}

        log_dir = request.workspace_dir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = log_dir / f"{request.log_name}.stdout.log"
        stderr_path = log_dir / f"{request.log_name}.stderr.log"

        with (
            stdout_path.open("w", encoding="utf-8") as stdout_file,
            stderr_path.open("w", encoding="utf-8") as stderr_file,
        ):
            try:
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    env=env,
                    cwd=request.workspace_dir,
                    stdout=stdout_file,
                    stderr=stderr_file,
                    text=True,
                )
            except FileNotFoundError as error:
                raise BackendRunError(f"Command not found: {argv[0]}", transient=False) from error
            except OSError as error:
                raise BackendRunError(f"Command failed to start: {error}", transient=True) from error
            exit_code, timed_out = _supervise(process, request)

        return BackendRunResult(
            exit_code=exit_code,
            timed_out=timed_out,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )


def build_argv(*, command_template: str, values: dict[str, str]) -> list[str]:
    template = command_template.strip()
    if not template:
        raise BackendRunError("Command template is empty.", transient=False)
    try:
        rendered = template.format(**{key: shlex.quote(value) for key, value in values.items()})
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError("Command template rendered empty command.", transient=False)
    return argv


def _supervise(process: subprocess.Popen[str], request: BackendRunRequest) -> tuple[int, bool]:
    """Wait for the command, enforcing its timeout and the worker's shutdown grace period."""

    deadline = time.monotonic() + request.timeout_seconds
    grace_seconds = max(0, request.graceful_shutdown_seconds or 0)
    stop_at: float | None = None
    while True:
        try:
            return process.wait(timeout=_POLL_SECONDS), False
        except subprocess.TimeoutExpired:
            pass

        now = time.monotonic()
        if now >= deadline:
            _stop(process)
            return TIMEOUT_EXIT_CODE, True
        if request.shutdown_requested is not None and request.shutdown_requested():
            if stop_at is None:
                stop_at = now + grace_seconds
            if now >= stop_at:
                _stop(process)
                raise BackendRunError("Interrupted by worker shutdown.", transient=True)


def _stop(process: subprocess.Popen[str]) -> None:
    process.terminate()
    try:
        process.wait(timeout=_STOP_WAIT_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait(timeout=_STOP_WAIT_SECONDS)
