# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import logging
from dataclasses import dataclass

import httpx
from dynaconf.base import LazySettings
from prometheus_client import CollectorRegistry

from ..settings import web_url
from ..store import FederationStore, get_store
from .client import FederationClient
from .events import EventListener
from .inbox import InboxProcessor
from .keys import KeyManager
from .outbox import DeliveryWorker, OutboxDispatcher
from .resolver import ActorResolver
from .translator import ObjectTranslator
from .webfinger import WebFingerResolver


@dataclass
class FederationContext:
    """Everything the federation engine needs, created once per process."""

    settings: LazySettings
    store: FederationStore
    client: FederationClient
    keys: KeyManager
    webfinger: WebFingerResolver
    resolver: ActorResolver
    translator: ObjectTranslator
    dispatcher: OutboxDispatcher
    worker: DeliveryWorker
    inbox: InboxProcessor
    listener: EventListener | None
    registry: CollectorRegistry
    logger: logging.Logger

    async def aclose(self) -> None:
        self.worker.stop()
        await self.client.aclose()
        self.store.close()


def create_context(
    settings: LazySettings,
    store: FederationStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    registry: CollectorRegistry | None = None,
    logger: logging.Logger | None = None,
) -> FederationContext:
    logger = logger or logging.getLogger("inkfed")
    registry = registry or CollectorRegistry()
    store = store or get_store(settings, logger=logger)

    client = FederationClient(
        fetch_timeout=settings.federation.fetch_timeout,
        delivery_timeout=settings.delivery.timeout,
        transport=transport,
        logger=logger,
    )
    keys = KeyManager(
        store, key_size=settings["keys"].size, passphrase=settings["keys"].passphrase, logger=logger
    )
    pages = web_url(settings)
    webfinger = WebFingerResolver(store, client, web_url=pages, logger=logger)
    resolver = ActorResolver(
        store,
        client,
        keys,
        webfinger,
        cache_ttl=settings.federation.actor_cache_ttl,
        instance_name=settings.instance.name,
        logger=logger,
    )
    translator = ObjectTranslator(store.iris, web_url=pages)
    worker = DeliveryWorker(
        store,
        client,
        keys,
        max_attempts=settings.delivery.max_attempts,
        backoff_base=settings.delivery.backoff_base,
        backoff_cap=settings.delivery.backoff_cap,
        jitter=settings.delivery.jitter,
        permanent_failure_penalty=settings.delivery.permanent_failure_penalty,
        concurrency=settings.delivery.concurrency,
        poll_interval=settings.delivery.poll_interval,
        registry=registry,
        logger=logger,
    )
    dispatcher = OutboxDispatcher(
        store, resolver, translator, client, keys, on_enqueue=worker.wake, logger=logger
    )
    inbox = InboxProcessor(
        store,
        resolver,
        translator,
        client,
        keys,
        dispatcher,
        max_skew=settings.federation.signature_max_skew,
        claim_lease=settings.federation.claim_lease,
        registry=registry,
        logger=logger,
    )

    listener = None
    if settings.events.redis_url:
        listener = EventListener(
            settings.events.redis_url, settings.events.channel, store, dispatcher, logger=logger
        )

    return FederationContext(
        settings=settings,
        store=store,
        client=client,
        keys=keys,
        webfinger=webfinger,
        resolver=resolver,
        translator=translator,
        dispatcher=dispatcher,
        worker=worker,
        inbox=inbox,
        listener=listener,
        registry=registry,
        logger=logger,
    )


__all__ = ["FederationContext", "create_context"]
