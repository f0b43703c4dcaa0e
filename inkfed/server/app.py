# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
from dynaconf.base import LazySettings
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.routing import Mount, Route
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from ..federation.context import create_context
from ..settings import get_settings
from .activitypub import (
    ActorEndpoint,
    CommentEndpoint,
    EntryEndpoint,
    FollowersEndpoint,
    InboxEndpoint,
    InstanceActorEndpoint,
    OutboxEndpoint,
)
from .functional import FollowEndpoint, LookupEndpoint, health
from .metrics import (
    DeliveryQueueCollector,
    MetricsEndpoint,
    RequestMetricsMiddleware,
    get_metrics_registry,
)
from .nodeinfo import NodeInfoEndpoint, nodeinfo_wellknown
from .webfinger import WebfingerEndpoint

logging.getLogger("multipart").setLevel(logging.CRITICAL)

routes = [
    Mount(
        "/.well-known",
        routes=[
            Route("/nodeinfo", nodeinfo_wellknown, name="nodeinfo"),
            Route("/webfinger", WebfingerEndpoint, name="webfinger"),
        ],
        name="well_known",
    ),
    Mount(
        "/_functional",
        routes=[
            Route("/health", health, name="health"),
            Route("/metrics", MetricsEndpoint, name="metrics"),
            Route("/nodeinfo", NodeInfoEndpoint, name="nodeinfo"),
            Route("/lookup", LookupEndpoint, name="lookup"),
            Route("/follow", FollowEndpoint, name="follow", methods=["POST"]),
        ],
        name="functional",
    ),
    Route("/health", health, name="health"),
    Route("/actor", InstanceActorEndpoint, name="instance_actor"),
    Route("/inbox", InboxEndpoint, name="shared_inbox", methods=["POST"]),
    Route("/users/{username}", ActorEndpoint, name="actor"),
    Route("/users/{username}/inbox", InboxEndpoint, name="inbox", methods=["POST"]),
    Route("/users/{username}/outbox", OutboxEndpoint, name="outbox"),
    Route("/users/{username}/followers", FollowersEndpoint, name="followers"),
    Route("/users/{username}/entries/{entry_id:int}", EntryEndpoint, name="entry"),
    Route("/users/{username}/comments/{comment_id:int}", CommentEndpoint, name="comment"),
]


def create_app(
    settings: LazySettings | None = None, transport: httpx.AsyncBaseTransport | None = None
) -> Starlette:
    """Build the federation service application.

    ``transport`` replaces the network for outgoing requests, e.g. with an
    :class:`httpx.MockTransport` in tests.
    """
    settings = settings or get_settings()

    logging.basicConfig(level=settings.log.level)

    @asynccontextmanager
    async def _lifespan(app: Starlette) -> dict:
        registry = get_metrics_registry()
        ctx = create_context(
            settings, transport=transport, registry=registry, logger=logging.getLogger("inkfed")
        )
        registry.register(DeliveryQueueCollector(ctx.store))

        tasks = []
        if settings.delivery.run_worker:
            tasks.append(asyncio.create_task(ctx.worker.run()))
        if ctx.listener is not None:
            tasks.append(asyncio.create_task(ctx.listener.run()))

        try:
            yield {"federation": ctx, "metrics_registry": registry}
        finally:
            ctx.worker.stop()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await ctx.aclose()

    middlewares = [
        Middleware(ProxyHeadersMiddleware, trusted_hosts=settings.server.trusted_proxies),
        Middleware(RequestMetricsMiddleware),
    ]

    return Starlette(middleware=middlewares, routes=routes, lifespan=_lifespan)


app = create_app()

__all__ = ["app", "create_app"]
