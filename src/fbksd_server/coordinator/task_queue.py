"""Durable FIFO task queues with leases, bounded retries and dead letters."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from fbksd_server.coordinator.errors import LeaseExpired, NotFound
from fbksd_server.coordinator.models import (
    QUEUE_FOR_KIND,
    BenchmarkPayload,
    BuildPayload,
    NotifyPayload,
    PublishCopyPayload,
    QueueName,
    QueueStats,
    ReRunPayload,
    TaskDetails,
    TaskEventView,
    TaskKind,
    TaskPayload,
    TaskStatus,
    TaskView,
    decode_payload,
    encode_payload,
    kind_of,
)
from fbksd_server.storage.common import (
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_optional,
    utc_now,
)
from fbksd_server.storage.sqlmodel_models import QueuedTask, TaskEvent

logger = logging.getLogger(__name__)

WORK_QUEUES: tuple[QueueName, ...] = (QueueName.PRIORITY, QueueName.NORMAL)
_MAX_POSITION_ATTEMPTS = 50


class TaskQueue:
    """Priority, normal and notification queues persisted in one table.

    Every state change is a compare-and-set update keyed on the expected
    status, so concurrent workers never receive the same task. Ordering
    within a queue is the ``position`` column, unique per queue: retries go
    to the tail (max + 1), expired leases go back to the head (min - 1).

    Listeners registered with :meth:`add_dead_letter_listener` are called
    after commit for every task that runs out of retries, whether through
    :meth:`fail` or through lease expiry.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        lease_timeout_seconds: int = 1_800,
        max_retries: int = 3,
        admin_email: str = "admin@localhost",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.lease_timeout_seconds = lease_timeout_seconds
        self.max_retries = max_retries
        self.admin_email = admin_email
        self.clock = clock
        self._dead_letter_listeners: list[Callable[[TaskView], object]] = []

    def add_dead_letter_listener(self, listener: Callable[[TaskView], object]) -> None:
        self._dead_letter_listeners.append(listener)

    def _dead_lettered(self, task: TaskView) -> None:
        for listener in self._dead_letter_listeners:
            listener(task)

    def enqueue(self, payload: TaskPayload, *, max_retries: int | None = None) -> TaskView:
        """Append a task at the tail of the queue selected by its kind."""

        budget = self.max_retries if max_retries is None else max_retries
        for _ in range(_MAX_POSITION_ATTEMPTS):
            with Session(self.engine) as session:
                row = self._insert_task(session=session, payload=payload, max_retries=budget)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                session.refresh(row)
                logger.debug("Enqueued %s task %s on %s", row.kind, row.task_id, row.queue)
                return _to_task_view(row)
        raise RuntimeError("Could not allocate a queue position after repeated conflicts.")

    def lease(self, worker_id: str, timeout_seconds: int | None = None) -> TaskView | None:
        """Claim the head of the priority queue, or of the normal queue if priority is empty."""

        return self._lease(
            worker_id=worker_id,
            queues=WORK_QUEUES,
            timeout_seconds=timeout_seconds,
        )

    def lease_notification(
        self,
        worker_id: str,
        timeout_seconds: int | None = None,
    ) -> TaskView | None:
        return self._lease(
            worker_id=worker_id,
            queues=(QueueName.NOTIFICATION,),
            timeout_seconds=timeout_seconds,
        )

    def _lease(
        self,
        *,
        worker_id: str,
        queues: Iterable[QueueName],
        timeout_seconds: int | None,
    ) -> TaskView | None:
        ordered = tuple(queues)
        timeout = self.lease_timeout_seconds if timeout_seconds is None else timeout_seconds
        self.reclaim_expired()

        while True:
            now = self.clock()
            with Session(self.engine) as session:
                candidate: QueuedTask | None = None
                for queue in ordered:
                    candidate = session.exec(
                        select(QueuedTask)
                        .where(
                            QueuedTask.queue == queue.value,
                            QueuedTask.status == TaskStatus.QUEUED.value,
                        )
                        .order_by(col(QueuedTask.position).asc())
                        .limit(1),
                    ).one_or_none()
                    if candidate is not None:
                        break
                if candidate is None:
                    return None

                deadline = now + timedelta(seconds=timeout)
                result = session.exec(
                    sa_update(QueuedTask)
                    .where(
                        col(QueuedTask.task_id) == candidate.task_id,
                        col(QueuedTask.status) == TaskStatus.QUEUED.value,
                    )
                    .values(
                        status=TaskStatus.LEASED.value,
                        worker_id=worker_id,
                        leased_at=to_db_datetime(now),
                        lease_deadline=to_db_datetime(deadline),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                self._add_event(
                    session=session,
                    task_id=candidate.task_id,
                    event_type="leased",
                    status_from=TaskStatus.QUEUED,
                    status_to=TaskStatus.LEASED,
                    details={"worker_id": worker_id, "lease_deadline": deadline.isoformat()},
                )
                session.commit()
                claimed = session.exec(
                    select(QueuedTask).where(QueuedTask.task_id == candidate.task_id),
                ).one()
                logger.info(
                    "Worker %s leased %s task %s from %s",
                    worker_id,
                    claimed.kind,
                    claimed.task_id,
                    claimed.queue,
                )
                return _to_task_view(claimed)

    def heartbeat(
        self,
        task_id: str,
        worker_id: str,
        timeout_seconds: int | None = None,
    ) -> TaskView:
        """Extend a lease still held by ``worker_id``."""

        now = self.clock()
        timeout = self.lease_timeout_seconds if timeout_seconds is None else timeout_seconds
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueuedTask)
                .where(
                    col(QueuedTask.task_id) == task_id,
                    col(QueuedTask.status) == TaskStatus.LEASED.value,
                    col(QueuedTask.worker_id) == worker_id,
                    col(QueuedTask.lease_deadline) >= to_db_datetime(now),
                )
                .values(
                    lease_deadline=to_db_datetime(now + timedelta(seconds=timeout)),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise LeaseExpired(task_id, worker_id)
            session.commit()
            row = session.exec(select(QueuedTask).where(QueuedTask.task_id == task_id)).one()
            return _to_task_view(row)

    def ensure_leased(self, task_id: str, worker_id: str | None = None) -> TaskView:
        """Return the task if it is leased (by ``worker_id`` when given)."""

        task = self.get(task_id)
        if task.status is not TaskStatus.LEASED:
            raise LeaseExpired(task_id, worker_id)
        if worker_id is not None and task.worker_id != worker_id:
            raise LeaseExpired(task_id, worker_id)
        return task

    def update_payload(self, task_id: str, payload: TaskPayload, *, worker_id: str) -> TaskView:
        """Rewrite the payload of a leased task, e.g. to pin its workspace."""

        if kind_of(payload) is not self.get(task_id).kind:
            raise ValueError(f"Payload kind does not match task {task_id}.")
        now = self.clock()
        technique_id, workspace_id = _payload_refs(payload)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueuedTask)
                .where(
                    col(QueuedTask.task_id) == task_id,
                    col(QueuedTask.status) == TaskStatus.LEASED.value,
                    col(QueuedTask.worker_id) == worker_id,
                )
                .values(
                    payload_json=encode_payload(payload),
                    technique_id=technique_id,
                    workspace_id=workspace_id,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise LeaseExpired(task_id, worker_id)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="payload_updated",
                status_from=TaskStatus.LEASED,
                status_to=TaskStatus.LEASED,
                details={"workspace_id": workspace_id},
            )
            session.commit()
            row = session.exec(select(QueuedTask).where(QueuedTask.task_id == task_id)).one()
            return _to_task_view(row)

    def ack(self, task_id: str, worker_id: str | None = None) -> TaskView:
        """Mark a leased task completed."""

        now = self.clock()
        with Session(self.engine) as session:
            conditions = [
                col(QueuedTask.task_id) == task_id,
                col(QueuedTask.status) == TaskStatus.LEASED.value,
            ]
            if worker_id is not None:
                conditions.append(col(QueuedTask.worker_id) == worker_id)
            result = session.exec(
                sa_update(QueuedTask)
                .where(*conditions)
                .values(
                    status=TaskStatus.COMPLETED.value,
                    lease_deadline=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise LeaseExpired(task_id, worker_id)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="acked",
                status_from=TaskStatus.LEASED,
                status_to=TaskStatus.COMPLETED,
                details={"worker_id": worker_id} if worker_id else {},
            )
            session.commit()
            row = session.exec(select(QueuedTask).where(QueuedTask.task_id == task_id)).one()
            return _to_task_view(row)

    def fail(self, task_id: str, reason: str, worker_id: str | None = None) -> TaskView:
        """Requeue a leased task at the tail, or dead-letter it once retries run out."""

        for _ in range(_MAX_POSITION_ATTEMPTS):
            now = self.clock()
            with Session(self.engine) as session:
                row = session.exec(
                    select(QueuedTask).where(QueuedTask.task_id == task_id),
                ).one_or_none()
                if row is None:
                    raise NotFound(f"Task not found: {task_id}")
                if row.status != TaskStatus.LEASED.value or (
                    worker_id is not None and row.worker_id != worker_id
                ):
                    raise LeaseExpired(task_id, worker_id)

                try:
                    moved = self._retry_or_dead_letter(
                        session=session,
                        row=row,
                        reason=reason,
                        now=now,
                        at_head=False,
                    )
                    if not moved:
                        # Deadline moved under us (heartbeat); re-read and retry.
                        session.rollback()
                        continue
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                refreshed = _to_task_view(
                    session.exec(
                        select(QueuedTask).where(QueuedTask.task_id == task_id),
                    ).one(),
                )
            if refreshed.status is TaskStatus.DEAD_LETTERED:
                self._dead_lettered(refreshed)
            return refreshed
        raise RuntimeError("Could not requeue task after repeated position conflicts.")

    def reclaim_expired(self) -> int:
        """Return expired leases to the head of their queue; returns the number reclaimed."""

        reclaimed = 0
        now = self.clock()
        with Session(self.engine) as session:
            expired_ids = session.exec(
                select(QueuedTask.task_id)
                .where(
                    QueuedTask.status == TaskStatus.LEASED.value,
                    col(QueuedTask.lease_deadline) < to_db_datetime(now),
                )
                .order_by(col(QueuedTask.lease_deadline).desc()),
            ).all()

        # Latest deadline first, so the oldest lease ends up at the very head.
        for task_id in expired_ids:
            if self._reclaim_one(task_id=task_id, now=now):
                reclaimed += 1
        return reclaimed

    def _reclaim_one(self, *, task_id: str, now: datetime) -> bool:
        for _ in range(_MAX_POSITION_ATTEMPTS):
            with Session(self.engine) as session:
                row = session.exec(
                    select(QueuedTask).where(
                        QueuedTask.task_id == task_id,
                        QueuedTask.status == TaskStatus.LEASED.value,
                        col(QueuedTask.lease_deadline) < to_db_datetime(now),
                    ),
                ).one_or_none()
                if row is None:
                    return False
                reason = f"Lease held by {row.worker_id} expired."
                logger.warning(
                    "Lease on %s task %s held by %s expired",
                    row.kind,
                    row.task_id,
                    row.worker_id,
                )
                try:
                    moved = self._retry_or_dead_letter(
                        session=session,
                        row=row,
                        reason=reason,
                        now=now,
                        at_head=True,
                    )
                    if not moved:
                        session.rollback()
                        return False
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                reclaimed = _to_task_view(
                    session.exec(
                        select(QueuedTask).where(QueuedTask.task_id == task_id),
                    ).one(),
                )
            if reclaimed.status is TaskStatus.DEAD_LETTERED:
                self._dead_lettered(reclaimed)
            return True
        raise RuntimeError("Could not reclaim expired lease after repeated position conflicts.")

    def _retry_or_dead_letter(
        self,
        *,
        session: Session,
        row: QueuedTask,
        reason: str,
        now: datetime,
        at_head: bool,
    ) -> bool:
        if row.retries + 1 > row.max_retries:
            return self._dead_letter(session=session, row=row, reason=reason, now=now)
        if at_head:
            return self._requeue(
                session=session,
                row=row,
                reason=reason,
                now=now,
                position=_head_position(session, row.queue),
                event_type="lease_expired",
            )
        return self._requeue(
            session=session,
            row=row,
            reason=reason,
            now=now,
            position=_tail_position(session, row.queue),
            event_type="retry_requeued",
        )

    def _requeue(  # noqa: PLR0913
        self,
        *,
        session: Session,
        row: QueuedTask,
        reason: str,
        now: datetime,
        position: int,
        event_type: str,
    ) -> bool:
        result = session.exec(
            sa_update(QueuedTask)
            .where(
                col(QueuedTask.task_id) == row.task_id,
                col(QueuedTask.status) == TaskStatus.LEASED.value,
                col(QueuedTask.lease_deadline) == row.lease_deadline,
            )
            .values(
                status=TaskStatus.QUEUED.value,
                position=position,
                retries=row.retries + 1,
                worker_id=None,
                leased_at=None,
                lease_deadline=None,
                last_error=reason,
                updated_at=to_db_datetime(now),
            ),
        )
        if result.rowcount != 1:
            return False
        self._add_event(
            session=session,
            task_id=row.task_id,
            event_type=event_type,
            status_from=TaskStatus.LEASED,
            status_to=TaskStatus.QUEUED,
            details={
                "position": position,
                "retries": row.retries + 1,
                "reason": reason,
                "worker_id": row.worker_id,
            },
        )
        return True

    def _dead_letter(
        self,
        *,
        session: Session,
        row: QueuedTask,
        reason: str,
        now: datetime,
    ) -> bool:
        result = session.exec(
            sa_update(QueuedTask)
            .where(
                col(QueuedTask.task_id) == row.task_id,
                col(QueuedTask.status) == TaskStatus.LEASED.value,
                col(QueuedTask.lease_deadline) == row.lease_deadline,
            )
            .values(
                status=TaskStatus.DEAD_LETTERED.value,
                retries=row.retries + 1,
                worker_id=None,
                lease_deadline=None,
                last_error=reason,
                updated_at=to_db_datetime(now),
            ),
        )
        if result.rowcount != 1:
            return False
        self._add_event(
            session=session,
            task_id=row.task_id,
            event_type="dead_lettered",
            status_from=TaskStatus.LEASED,
            status_to=TaskStatus.DEAD_LETTERED,
            details={"retries": row.retries + 1, "reason": reason},
        )
        if row.kind == TaskKind.NOTIFY.value:
            logger.error(
                "Notification task %s dead-lettered after %s attempts: %s",
                row.task_id,
                row.retries + 1,
                reason,
            )
            return True

        logger.error(
            "%s task %s dead-lettered after %s attempts: %s",
            row.kind,
            row.task_id,
            row.retries + 1,
            reason,
        )
        body = (
            f"Task {row.task_id} ({row.kind}) exhausted its retry budget of {row.max_retries}.\n\n"
            f"Last error: {reason}\n\n"
            f"Payload: {row.payload_json}\n"
        )
        self._insert_task(
            session=session,
            payload=NotifyPayload(
                address=self.admin_email,
                subject=f"[fbksd] {row.kind} task {row.task_id} dead-lettered",
                body=body,
            ),
            max_retries=self.max_retries,
        )
        return True

    def get(self, task_id: str) -> TaskView:
        with Session(self.engine) as session:
            row = session.exec(
                select(QueuedTask).where(QueuedTask.task_id == task_id),
            ).one_or_none()
            if row is None:
                raise NotFound(f"Task not found: {task_id}")
            return _to_task_view(row)

    def list_tasks(
        self,
        *,
        queue: QueueName | None = None,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        with Session(self.engine) as session:
            query = select(QueuedTask)
            if queue is not None:
                query = query.where(QueuedTask.queue == queue.value)
            if status is not None:
                query = query.where(QueuedTask.status == status.value)
            rows = session.exec(
                query.order_by(
                    col(QueuedTask.queue).asc(),
                    col(QueuedTask.position).asc(),
                ).limit(max(1, limit)),
            ).all()
            return [_to_task_view(row) for row in rows]

    def get_task_details(self, task_id: str) -> TaskDetails:
        task = self.get(task_id)
        with Session(self.engine) as session:
            events = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.created_at).asc(), col(TaskEvent.id).asc()),
            ).all()
            return TaskDetails(task=task, events=[_to_event_view(event) for event in events])

    def discard_for_workspace(self, workspace_id: int) -> int:
        """Discard queued tasks that still reference a workspace; returns the count."""

        now = self.clock()
        discarded = 0
        with Session(self.engine) as session:
            task_ids = session.exec(
                select(QueuedTask.task_id).where(
                    QueuedTask.workspace_id == workspace_id,
                    QueuedTask.status == TaskStatus.QUEUED.value,
                ),
            ).all()
            for task_id in task_ids:
                result = session.exec(
                    sa_update(QueuedTask)
                    .where(
                        col(QueuedTask.task_id) == task_id,
                        col(QueuedTask.status) == TaskStatus.QUEUED.value,
                    )
                    .values(status=TaskStatus.DISCARDED.value, updated_at=to_db_datetime(now)),
                )
                if result.rowcount != 1:
                    continue
                discarded += 1
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="discarded",
                    status_from=TaskStatus.QUEUED,
                    status_to=TaskStatus.DISCARDED,
                    details={"workspace_id": workspace_id},
                )
            session.commit()
        if discarded:
            logger.info("Discarded %s queued task(s) of workspace %s", discarded, workspace_id)
        return discarded

    def count_open(self, kind: TaskKind, *, technique_id: int | None = None) -> int:
        """Queued or leased tasks of ``kind`` that have no workspace yet."""

        with Session(self.engine) as session:
            query = select(func.count()).where(
                QueuedTask.kind == kind.value,
                col(QueuedTask.status).in_([TaskStatus.QUEUED.value, TaskStatus.LEASED.value]),
                col(QueuedTask.workspace_id).is_(None),
            )
            if technique_id is not None:
                query = query.where(QueuedTask.technique_id == technique_id)
            return int(session.exec(query).one())

    def stats(self) -> QueueStats:
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueuedTask.queue, QueuedTask.status, func.count())
                .group_by(col(QueuedTask.queue), col(QueuedTask.status)),
            ).all()
        stats = QueueStats()
        for queue, status, count in rows:
            stats.counts.setdefault(QueueName(queue), {})[TaskStatus(status)] = int(count)
        return stats

    def _insert_task(
        self,
        *,
        session: Session,
        payload: TaskPayload,
        max_retries: int,
    ) -> QueuedTask:
        now = self.clock()
        kind = kind_of(payload)
        queue = QUEUE_FOR_KIND[kind]
        technique_id, workspace_id = _payload_refs(payload)
        row = QueuedTask(
            task_id=str(uuid4()),
            queue=queue.value,
            position=_tail_position(session, queue.value),
            kind=kind.value,
            technique_id=technique_id,
            workspace_id=workspace_id,
            payload_json=encode_payload(payload),
            status=TaskStatus.QUEUED.value,
            retries=0,
            max_retries=max_retries,
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        session.add(row)
        self._add_event(
            session=session,
            task_id=row.task_id,
            event_type="enqueued",
            status_from=None,
            status_to=TaskStatus.QUEUED,
            details={"queue": queue.value, "kind": kind.value, "position": row.position},
        )
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self.clock()),
            ),
        )


def _tail_position(session: Session, queue: str) -> int:
    value = session.exec(
        select(func.max(QueuedTask.position)).where(QueuedTask.queue == queue),
    ).one()
    return int(value) + 1 if value is not None else 0


def _head_position(session: Session, queue: str) -> int:
    value = session.exec(
        select(func.min(QueuedTask.position)).where(QueuedTask.queue == queue),
    ).one()
    return int(value) - 1 if value is not None else 0


def _payload_refs(payload: TaskPayload) -> tuple[int | None, int | None]:
    if isinstance(payload, BuildPayload):
        return payload.technique_id, payload.workspace_id
    if isinstance(payload, (BenchmarkPayload, PublishCopyPayload, ReRunPayload)):
        return None, payload.workspace_id
    return None, None


def _to_task_view(row: QueuedTask) -> TaskView:
    kind = TaskKind(row.kind)
    return TaskView(
        task_id=row.task_id,
        queue=QueueName(row.queue),
        position=row.position,
        kind=kind,
        payload=decode_payload(kind, row.payload_json),
        technique_id=row.technique_id,
        workspace_id=row.workspace_id,
        status=TaskStatus(row.status),
        retries=row.retries,
        max_retries=row.max_retries,
        worker_id=row.worker_id,
        leased_at=to_utc_aware_optional(row.leased_at),
        lease_deadline=to_utc_aware_optional(row.lease_deadline),
        last_error=row.last_error,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def _to_event_view(row: TaskEvent) -> TaskEventView:
    if row.id is None:
        raise RuntimeError("Task event row has no primary key.")
    return TaskEventView(
        event_id=row.id,
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware(row.created_at),
        details=json.loads(row.details_json) if row.details_json else {},
    )
