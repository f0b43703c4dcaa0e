# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

from sqlalchemy import func, select

from .models import Reaction, Relationship
from .schema import RelationshipStatus


class RelationshipMixin:
    def get_relationship(self, follower_iri: str, following_iri: str) -> Relationship | None:
        with self.session() as session:
            return session.scalars(
                select(Relationship).where(
                    Relationship.follower_iri == follower_iri,
                    Relationship.following_iri == following_iri,
                )
            ).first()

    def get_relationship_by_follow(self, follow_activity_iri: str) -> Relationship | None:
        with self.session() as session:
            return session.scalars(
                select(Relationship).where(
                    Relationship.follow_activity_iri == follow_activity_iri
                )
            ).first()

    def request_follow(
        self, follower_iri: str, following_iri: str, follow_activity_iri: str
    ) -> Relationship:
        """Record an outgoing follow request.

        An existing row is kept; it only learns the Follow IRI if the
        application created it without one.
        """
        with self.transaction() as session:
            relationship = session.scalars(
                select(Relationship).where(
                    Relationship.follower_iri == follower_iri,
                    Relationship.following_iri == following_iri,
                )
            ).first()
            if relationship is None:
                relationship = Relationship(
                    follower_iri=follower_iri,
                    following_iri=following_iri,
                    status=RelationshipStatus.PENDING.value,
                    follow_activity_iri=follow_activity_iri,
                )
                session.add(relationship)
            elif relationship.follow_activity_iri is None:
                relationship.follow_activity_iri = follow_activity_iri
        return relationship

    def set_follow_status(
        self, follower_iri: str, following_iri: str, status: RelationshipStatus
    ) -> Relationship | None:
        """Set the status of an existing follow; None if there is none."""
        with self.transaction() as session:
            relationship = session.scalars(
                select(Relationship).where(
                    Relationship.follower_iri == follower_iri,
                    Relationship.following_iri == following_iri,
                )
            ).first()
            if relationship is not None:
                relationship.status = status.value
        return relationship

    def remove_follow(self, follower_iri: str, following_iri: str) -> Relationship | None:
        """Delete a follow and return the removed row."""
        with self.transaction() as session:
            relationship = session.scalars(
                select(Relationship).where(
                    Relationship.follower_iri == follower_iri,
                    Relationship.following_iri == following_iri,
                )
            ).first()
            if relationship is not None:
                session.delete(relationship)
        return relationship

    def list_followers(
        self, following_iri: str, status: RelationshipStatus = RelationshipStatus.ACCEPTED
    ) -> list[str]:
        with self.session() as session:
            return list(
                session.scalars(
                    select(Relationship.follower_iri)
                    .where(
                        Relationship.following_iri == following_iri,
                        Relationship.status == status.value,
                    )
                    .order_by(Relationship.id)
                )
            )

    def count_followers(self, following_iri: str) -> int:
        with self.session() as session:
            return session.scalar(
                select(func.count(Relationship.id)).where(
                    Relationship.following_iri == following_iri,
                    Relationship.status == RelationshipStatus.ACCEPTED.value,
                )
            )

    def get_reaction_by_activity(self, activity_iri: str) -> Reaction | None:
        with self.session() as session:
            return session.scalars(
                select(Reaction).where(Reaction.activity_iri == activity_iri)
            ).first()

    def list_reactions(self, object_iri: str) -> list[Reaction]:
        with self.session() as session:
            return list(
                session.scalars(
                    select(Reaction).where(Reaction.object_iri == object_iri).order_by(Reaction.id)
                )
            )


__all__ = ["RelationshipMixin"]
