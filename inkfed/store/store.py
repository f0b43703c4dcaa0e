# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..iris import LocalIRIs
from .activities import ActivityLogMixin
from .actors import ActorCacheMixin
from .changes import NativeChangeMixin
from .content import LocalContentMixin
from .deliveries import DeliveryQueueMixin
from .models import Base
from .relationships import RelationshipMixin


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class FederationStore(
    LocalContentMixin,
    ActorCacheMixin,
    RelationshipMixin,
    ActivityLogMixin,
    DeliveryQueueMixin,
    NativeChangeMixin,
):
    """Data-access boundary of the federation engine.

    Wraps the shared relational database: the application tables it reads
    (and the few rows it writes on inbound activities) as well as the tables
    the federation service owns.
    """

    def __init__(
        self,
        database: str,
        base_url: str,
        *,
        logger: logging.Logger | None = None,
        echo: bool = False,
    ):
        self._logger = logger or logging.getLogger(__name__)
        self._database = database
        self.iris = LocalIRIs(base_url)
        self._engine: Engine | None = None
        self._sessionmaker: sessionmaker | None = None
        self._echo = echo

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *args):
        self.close()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self.open()
        return self._engine

    def open(self, create: bool = False) -> None:
        if self._engine is not None:
            return
        self._logger.debug("Opening database %s", self._database)

        kwargs = {}
        if self._database.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if self._database in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self._engine = create_engine(self._database, echo=self._echo, **kwargs)
        if self._database.startswith("sqlite"):
            event.listen(self._engine, "connect", _enable_sqlite_foreign_keys)
        self._sessionmaker = sessionmaker(self._engine, expire_on_commit=False)

        if create:
            self.create_tables()

    def close(self) -> None:
        if self._engine is not None:
            self._logger.debug("Closing database %s", self._database)
            self._engine.dispose()
            self._engine = None
            self._sessionmaker = None

    def create_tables(self) -> None:
        self._logger.info("Creating missing tables in %s", self._database)
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Read-only session; objects stay usable after it closes."""
        if self._sessionmaker is None:
            self.open()
        with self._sessionmaker() as session:
            yield session

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session committing on success and rolling back on any error."""
        if self._sessionmaker is None:
            self.open()
        with self._sessionmaker.begin() as session:
            yield session


__all__ = ["FederationStore"]
