# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

from datetime import datetime, timedelta

from sqlalchemy import and_, delete, or_, update
from sqlalchemy.exc import IntegrityError

from .models import ActivityRecord, utcnow
from .schema import InboxState

IN_PROGRESS_STATES = (
    InboxState.VERIFIED.value,
    InboxState.TRANSLATING.value,
    InboxState.APPLYING.value,
)


class ActivityLogMixin:
    """Inbound activity log doubling as the deduplication window."""

    def claim_activity(
        self,
        iri: str,
        type_: str | None,
        actor: str | None,
        payload: dict,
        remote_addr: str | None = None,
        lease: float = 300,
    ) -> bool:
        """Atomically record an activity IRI; False if it was seen already.

        A previous claim that ended in ``failed`` is taken over again so that
        the sender's retry gets processed, as is one still in progress after
        ``lease`` seconds, which was abandoned by a crashed run.
        """
        try:
            with self.transaction() as session:
                session.add(
                    ActivityRecord(
                        iri=iri,
                        type=type_,
                        actor=actor,
                        payload=payload,
                        state=InboxState.VERIFIED.value,
                        remote_addr=remote_addr,
                    )
                )
            return True
        except IntegrityError:
            self._logger.debug("Activity %s already recorded", iri)

        stale = utcnow() - timedelta(seconds=lease)
        with self.transaction() as session:
            result = session.execute(
                update(ActivityRecord)
                .where(
                    ActivityRecord.iri == iri,
                    or_(
                        ActivityRecord.state == InboxState.FAILED.value,
                        and_(
                            ActivityRecord.state.in_(IN_PROGRESS_STATES),
                            or_(
                                ActivityRecord.updated_at < stale,
                                and_(
                                    ActivityRecord.updated_at.is_(None),
                                    ActivityRecord.received_at < stale,
                                ),
                            ),
                        ),
                    ),
                )
                .values(state=InboxState.VERIFIED.value, payload=payload, updated_at=utcnow())
            )
        return result.rowcount == 1

    def mark_activity(self, iri: str, state: InboxState, outcome: str | None = None) -> None:
        with self.transaction() as session:
            session.execute(
                update(ActivityRecord)
                .where(ActivityRecord.iri == iri)
                .values(state=state.value, outcome=outcome, updated_at=utcnow())
            )

    def get_activity_record(self, iri: str) -> ActivityRecord | None:
        with self.session() as session:
            return session.get(ActivityRecord, iri)

    def prune_activities(self, older_than: datetime) -> int:
        """Forget activities older than the deduplication window."""
        with self.transaction() as session:
            result = session.execute(
                delete(ActivityRecord).where(
                    ActivityRecord.received_at < older_than,
                    ActivityRecord.state != InboxState.FAILED.value,
                )
            )
        self._logger.info("Pruned %d inbound activity records", result.rowcount)
        return result.rowcount


__all__ = ["ActivityLogMixin"]
