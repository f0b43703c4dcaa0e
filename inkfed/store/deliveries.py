# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

from datetime import datetime

from sqlalchemy import delete, func, select, update

from .models import DeliveryTask, utcnow
from .schema import DeliveryStatus

QUEUED_STATUSES = (DeliveryStatus.PENDING.value, DeliveryStatus.FAILED.value)


class DeliveryQueueMixin:
    """Durable queue of outbound deliveries."""

    def enqueue_deliveries(
        self, activity_iri: str, payload: dict, signer: str, inboxes: list[str]
    ) -> list[DeliveryTask]:
        now = utcnow()
        tasks = [
            DeliveryTask(
                activity_iri=activity_iri,
                inbox=inbox,
                payload=payload,
                signer=signer,
                attempts=0,
                next_attempt_at=now,
                status=DeliveryStatus.PENDING.value,
                created_at=now,
            )
            for inbox in inboxes
        ]
        with self.transaction() as session:
            session.add_all(tasks)
        self._logger.debug("Queued %d deliveries of %s", len(tasks), activity_iri)
        return tasks

    def get_delivery(self, task_id: int) -> DeliveryTask | None:
        with self.session() as session:
            return session.get(DeliveryTask, task_id)

    def queued_deliveries(self, limit: int = 500) -> list[DeliveryTask]:
        """Pending and retrying tasks in creation order."""
        with self.session() as session:
            return list(
                session.scalars(
                    select(DeliveryTask)
                    .where(DeliveryTask.status.in_(QUEUED_STATUSES))
                    .order_by(DeliveryTask.id)
                    .limit(limit)
                )
            )

    def due_deliveries(
        self, now: datetime, inboxes: int = 100, per_inbox: int = 20
    ) -> dict[str, list[DeliveryTask]]:
        """Queued tasks of every inbox whose oldest queued task is due.

        Inboxes are picked by their head task only, so a backlog held back
        by a retry on one inbox does not hide the tasks of others.
        """
        queued = DeliveryTask.status.in_(QUEUED_STATUSES)
        heads = select(func.min(DeliveryTask.id)).where(queued).group_by(DeliveryTask.inbox)
        with self.session() as session:
            due = session.scalars(
                select(DeliveryTask.inbox)
                .where(DeliveryTask.id.in_(heads), DeliveryTask.next_attempt_at <= now)
                .order_by(DeliveryTask.id)
                .limit(inboxes)
            ).all()
            return {
                inbox: list(
                    session.scalars(
                        select(DeliveryTask)
                        .where(queued, DeliveryTask.inbox == inbox)
                        .order_by(DeliveryTask.id)
                        .limit(per_inbox)
                    )
                )
                for inbox in due
            }

    def list_deliveries(
        self, status: DeliveryStatus | None = None, limit: int = 100
    ) -> list[DeliveryTask]:
        query = select(DeliveryTask).order_by(DeliveryTask.id.desc()).limit(limit)
        if status is not None:
            query = query.where(DeliveryTask.status == status.value)
        with self.session() as session:
            return list(session.scalars(query))

    def count_deliveries_by_status(self) -> dict[str, int]:
        with self.session() as session:
            rows = session.execute(
                select(DeliveryTask.status, func.count(DeliveryTask.id)).group_by(
                    DeliveryTask.status
                )
            )
            counts = dict.fromkeys((status.value for status in DeliveryStatus), 0)
            counts.update({status: count for status, count in rows})
            return counts

    def record_delivery_attempt(
        self,
        task_id: int,
        status: DeliveryStatus,
        attempts: int,
        next_attempt_at: datetime | None = None,
        last_error: str | None = None,
    ) -> None:
        values = {
            "status": status.value,
            "attempts": attempts,
            "last_error": last_error,
            "updated_at": utcnow(),
        }
        if next_attempt_at is not None:
            values["next_attempt_at"] = next_attempt_at
        with self.transaction() as session:
            session.execute(update(DeliveryTask).where(DeliveryTask.id == task_id).values(**values))

    def retry_dead_deliveries(self, inbox: str | None = None) -> int:
        query = update(DeliveryTask).where(DeliveryTask.status == DeliveryStatus.DEAD.value)
        if inbox is not None:
            query = query.where(DeliveryTask.inbox == inbox)
        with self.transaction() as session:
            result = session.execute(
                query.values(
                    status=DeliveryStatus.PENDING.value,
                    attempts=0,
                    next_attempt_at=utcnow(),
                    updated_at=utcnow(),
                )
            )
        self._logger.info("Re-queued %d dead deliveries", result.rowcount)
        return result.rowcount

    def prune_deliveries(self, older_than: datetime) -> int:
        """Remove finished (delivered or dead) tasks."""
        with self.transaction() as session:
            result = session.execute(
                delete(DeliveryTask).where(
                    DeliveryTask.status.in_(
                        [DeliveryStatus.DELIVERED.value, DeliveryStatus.DEAD.value]
                    ),
                    DeliveryTask.created_at < older_than,
                )
            )
        self._logger.info("Pruned %d finished deliveries", result.rowcount)
        return result.rowcount


__all__ = ["DeliveryQueueMixin"]
