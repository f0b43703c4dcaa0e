# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import logging

import uvicorn
from dynaconf.base import LazySettings

from .app import create_app

logger = logging.getLogger(__name__)


def run_server(settings: LazySettings, host: str | None = None, port: int | None = None):
    """Serve the application, with the delivery worker and event listener in-process.

    The worker and the metrics registry live in the server process, so the
    server always runs a single uvicorn worker.
    """
    if settings.server.workers != 1:
        logger.warning(
            "Ignoring server.workers = %s, the delivery queue needs a single worker",
            settings.server.workers,
        )

    config = uvicorn.Config(
        create_app(settings),
        log_level=settings.log.level.lower(),
        host=host or settings.server.host,
        port=port or settings.server.port,
        # Forwarded headers are handled by the application's own middleware
        proxy_headers=False,
    )
    server = uvicorn.Server(config)
    server.run()
