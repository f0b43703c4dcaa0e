import logging

from dynaconf.base import LazySettings

from ..settings import base_url
from .schema import DeliveryStatus, InboxState, Privacy, RelationshipStatus
from .store import FederationStore


def get_store(settings: LazySettings, logger: logging.Logger | None = None) -> FederationStore:
    store = FederationStore(
        settings.database.uri, base_url(settings), logger=logger, echo=settings.database.echo
    )
    store.open(create=settings.database.create_tables)

    return store


__all__ = [
    "DeliveryStatus",
    "FederationStore",
    "InboxState",
    "Privacy",
    "RelationshipStatus",
    "get_store",
]
