# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

from datetime import datetime

from sqlalchemy import func, select

from .models import Comment, Entry, User
from .schema import LISTED_PRIVACY


class LocalContentMixin:
    """Read access to the application's users, entries and comments."""

    def get_user(self, username: str) -> User | None:
        with self.session() as session:
            return session.scalars(select(User).where(User.username == username)).first()

    def get_user_by_id(self, user_id: int) -> User | None:
        with self.session() as session:
            return session.get(User, user_id)

    def get_entry(self, entry_id: int) -> Entry | None:
        with self.session() as session:
            return session.get(Entry, entry_id)

    def get_comment(self, comment_id: int) -> Comment | None:
        with self.session() as session:
            return session.get(Comment, comment_id)

    def get_comment_by_ap_id(self, ap_id: str) -> Comment | None:
        with self.session() as session:
            return session.scalars(select(Comment).where(Comment.ap_id == ap_id)).first()

    def entry_iri(self, entry: Entry, author: User | None = None) -> str:
        if entry.ap_id:
            return entry.ap_id
        if author is None:
            author = self.get_user_by_id(entry.user_id)
        return self.iris.entry(author.username, entry.id)

    def comment_iri(self, comment: Comment, author: User | None = None) -> str:
        if comment.ap_id:
            return comment.ap_id
        if author is None:
            author = self.get_user_by_id(comment.user_id)
        return self.iris.comment(author.username, comment.id)

    def find_entry_by_iri(self, iri: str) -> Entry | None:
        with self.session() as session:
            entry = session.scalars(select(Entry).where(Entry.ap_id == iri)).first()
            if entry is not None:
                return entry

        parsed = self.iris.parse(iri)
        if parsed is None or parsed[0] != "entries":
            return None
        _, username, entry_id = parsed
        entry = self.get_entry(entry_id)
        if entry is None or entry.ap_id:
            return None
        author = self.get_user_by_id(entry.user_id)
        if author is None or author.username != username:
            return None
        return entry

    def find_comment_by_iri(self, iri: str) -> Comment | None:
        """Find a local or cached remote comment by its IRI."""
        comment = self.get_comment_by_ap_id(iri)
        if comment is not None:
            return comment

        parsed = self.iris.parse(iri)
        if parsed is None or parsed[0] != "comments":
            return None
        _, username, comment_id = parsed
        comment = self.get_comment(comment_id)
        if comment is None or comment.ap_id or comment.user_id is None:
            return None
        author = self.get_user_by_id(comment.user_id)
        if author is None or author.username != username:
            return None
        return comment

    def find_user_by_iri(self, iri: str) -> User | None:
        parsed = self.iris.parse(iri)
        if parsed is None or parsed[0] != "actor":
            return None
        return self.get_user(parsed[1])

    def count_listed_entries(self, user_id: int) -> int:
        with self.session() as session:
            return session.scalar(
                select(func.count(Entry.id)).where(
                    Entry.user_id == user_id,
                    Entry.privacy.in_([p.value for p in LISTED_PRIVACY]),
                    Entry.published_at.is_not(None),
                    Entry.deleted_at.is_(None),
                )
            )

    def list_listed_entries(self, user_id: int, offset: int = 0, limit: int = 20) -> list[Entry]:
        with self.session() as session:
            return list(
                session.scalars(
                    select(Entry)
                    .where(
                        Entry.user_id == user_id,
                        Entry.privacy.in_([p.value for p in LISTED_PRIVACY]),
                        Entry.published_at.is_not(None),
                        Entry.deleted_at.is_(None),
                    )
                    .order_by(Entry.published_at.desc(), Entry.id.desc())
                    .offset(offset)
                    .limit(limit)
                )
            )

    def count_users(self) -> int:
        with self.session() as session:
            return session.scalar(select(func.count(User.id)))

    def count_active_users(self, since: datetime) -> int:
        """Users who published an entry since the given time."""
        with self.session() as session:
            return session.scalar(
                select(func.count(func.distinct(Entry.user_id))).where(
                    Entry.published_at >= since, Entry.deleted_at.is_(None)
                )
            )

    def count_local_entries(self) -> int:
        with self.session() as session:
            return session.scalar(
                select(func.count(Entry.id)).where(
                    Entry.published_at.is_not(None), Entry.deleted_at.is_(None)
                )
            )

    def count_local_comments(self) -> int:
        with self.session() as session:
            return session.scalar(
                select(func.count(Comment.id)).where(
                    Comment.user_id.is_not(None), Comment.deleted_at.is_(None)
                )
            )


__all__ = ["LocalContentMixin"]
