# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

from datetime import datetime
from typing import Any

from sqlalchemy import delete, exists, or_, select

from .models import ActorRecord, Comment, Reaction, Relationship, utcnow
from .schema import ActorKind


class ActorCacheMixin:
    """Local actor key material and the cache of remote actor documents."""

    def get_actor_record(self, iri: str) -> ActorRecord | None:
        with self.session() as session:
            return session.get(ActorRecord, iri)

    def get_actor_record_by_key(self, key_iri: str) -> ActorRecord | None:
        with self.session() as session:
            return session.scalars(select(ActorRecord).where(ActorRecord.key_iri == key_iri)).first()

    def save_local_actor_keys(
        self,
        iri: str,
        key_iri: str,
        public_key_pem: str,
        private_key_pem: str,
        actor_type: str = "Person",
        handle: str | None = None,
    ) -> None:
        self._logger.debug("Storing key %s for local actor %s", key_iri, iri)
        with self.transaction() as session:
            record = session.get(ActorRecord, iri)
            if record is None:
                record = ActorRecord(iri=iri)
                session.add(record)
            record.kind = ActorKind.LOCAL.value
            record.actor_type = actor_type
            record.handle = handle
            record.key_iri = key_iri
            record.public_key_pem = public_key_pem
            record.private_key_pem = private_key_pem

    def get_private_key_pem(self, iri: str) -> tuple[str | None, str | None]:
        record = self.get_actor_record(iri)
        if record is None or record.kind != ActorKind.LOCAL.value:
            return None, None
        return record.key_iri, record.private_key_pem

    def upsert_remote_actor(self, iri: str, fields: dict[str, Any], document: dict) -> ActorRecord:
        """Write a fetched actor document to the cache; the last writer wins."""
        with self.transaction() as session:
            record = session.get(ActorRecord, iri)
            if record is None:
                record = ActorRecord(iri=iri, kind=ActorKind.REMOTE.value)
                session.add(record)
            elif record.kind == ActorKind.LOCAL.value:
                raise ValueError(f"{iri} is a local actor and cannot be cached")

            # Another actor may have claimed this key before; keys are unique
            key_iri = fields.get("key_iri")
            if key_iri:
                session.execute(
                    delete(ActorRecord).where(
                        ActorRecord.key_iri == key_iri, ActorRecord.iri != iri
                    )
                )

            for name, value in fields.items():
                setattr(record, name, value)
            record.document = document
            record.fetched_at = utcnow()

        self._logger.debug("Cached remote actor %s", iri)
        return record

    def delete_actor_record(self, iri: str) -> bool:
        with self.transaction() as session:
            result = session.execute(delete(ActorRecord).where(ActorRecord.iri == iri))
        return result.rowcount > 0

    def prune_remote_actors(self, older_than: datetime) -> int:
        """Delete stale remote actors nothing refers to any more."""
        referenced = or_(
            exists().where(
                or_(
                    Relationship.follower_iri == ActorRecord.iri,
                    Relationship.following_iri == ActorRecord.iri,
                )
            ),
            exists().where(Reaction.actor_iri == ActorRecord.iri),
            exists().where(Comment.remote_author_iri == ActorRecord.iri),
        )
        with self.transaction() as session:
            result = session.execute(
                delete(ActorRecord)
                .where(
                    ActorRecord.kind == ActorKind.REMOTE.value,
                    ActorRecord.fetched_at < older_than,
                    ~referenced,
                )
                .execution_options(synchronize_session=False)
            )
        self._logger.info("Pruned %d unreferenced remote actors", result.rowcount)
        return result.rowcount


__all__ = ["ActorCacheMixin"]
