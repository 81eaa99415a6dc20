"""Delivery of queued notification tasks."""

from __future__ import annotations

import logging
import signal
import smtplib
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol

from fbksd_server.config import MailerSettings
from fbksd_server.coordinator.errors import LeaseExpired
from fbksd_server.coordinator.models import NotifyPayload, TaskStatus
from fbksd_server.coordinator.task_queue import TaskQueue

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    """Sends one plain-text message."""

    def send(self, *, to: str, subject: str, body: str) -> None: ...


class SmtpMailer:
    """Mailer backed by an SMTP relay."""

    def __init__(self, settings: MailerSettings, *, timeout_seconds: float = 30.0) -> None:
        if not settings.smtp_host:
            raise ValueError("SMTP host is not configured.")
        self.settings = settings
        self.timeout_seconds = timeout_seconds

    def send(self, *, to: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self.settings.from_address
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)

        with smtplib.SMTP(
            self.settings.smtp_host,
            self.settings.smtp_port,
            timeout=self.timeout_seconds,
        ) as client:
            if self.settings.smtp_user:
                client.starttls()
                client.login(self.settings.smtp_user, self.settings.smtp_password or "")
            client.send_message(message)


class LogMailer:
    """Writes messages to the log instead of sending them; used when no SMTP host is set."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, *, to: str, subject: str, body: str) -> None:
        self.sent.append((to, subject, body))
        logger.info("Mail to %s: %s\n%s", to, subject, body)


def build_mailer(settings: MailerSettings) -> Mailer:
    if settings.smtp_host:
        return SmtpMailer(settings)
    return LogMailer()


@dataclass(slots=True)
class DispatchSummary:
    sent: int = 0
    retried: int = 0
    dead_lettered: int = 0
    idle_polls: int = 0


class NotificationDispatcher:
    """Drains the notification queue through a mailer."""

    def __init__(
        self,
        *,
        task_queue: TaskQueue,
        mailer: Mailer,
        worker_id: str,
        poll_interval_seconds: float = 5.0,
    ) -> None:
        self.task_queue = task_queue
        self.mailer = mailer
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_requested = False

    def run_once(self) -> DispatchSummary:
        summary = DispatchSummary()
        task = self.task_queue.lease_notification(self.worker_id)
        if task is None:
            summary.idle_polls = 1
            return summary

        payload = task.payload
        if not isinstance(payload, NotifyPayload):
            raise ValueError(f"Unexpected {task.kind.value} task on the notification queue.")
        try:
            self.mailer.send(to=payload.address, subject=payload.subject, body=payload.body)
        except (OSError, smtplib.SMTPException) as error:
            logger.warning("Sending mail to %s failed: %s", payload.address, error)
            try:
                failed = self.task_queue.fail(task.task_id, str(error), self.worker_id)
            except LeaseExpired:
                return summary
            if failed.status is TaskStatus.DEAD_LETTERED:
                summary.dead_lettered = 1
            else:
                summary.retried = 1
            return summary

        try:
            self.task_queue.ack(task.task_id, self.worker_id)
        except LeaseExpired:
            logger.warning("Notification %s was re-leased before it was acknowledged", task.task_id)
            return summary
        summary.sent = 1
        return summary

    def run_loop(self, *, max_idle_polls: int | None = 1) -> DispatchSummary:
        """Send notifications until the queue is idle or SIGINT/SIGTERM arrives."""

        aggregate = DispatchSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self._stop_requested:
                summary = self.run_once()
                aggregate.sent += summary.sent
                aggregate.retried += summary.retried
                aggregate.dead_lettered += summary.dead_lettered
                aggregate.idle_polls += summary.idle_polls
                if summary.idle_polls:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info(
                "Received %s; stopping after the current message",
                signal.Signals(signum).name,
            )
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Not the main thread; rely on request_stop().
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
