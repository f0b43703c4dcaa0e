# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import logging
from enum import StrEnum
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler
import typer

from ..settings import base_url, get_settings
from ..store import FederationStore
from . import actor
from . import federation

LogLevel = StrEnum("LogLevel", {name: name for name in logging.getLevelNamesMapping().keys()})

app = typer.Typer()
app.add_typer(actor.app, name="actor")
app.add_typer(federation.app, name="federation")


@app.callback()
def configure_app(
    ctx: typer.Context,
    log_level: LogLevel = typer.Option(
        LogLevel.INFO, help="Log level for CLI output", case_sensitive=False
    ),
    config_file: Optional[Path] = typer.Option(None, help="Path to a TOML configuration file"),
    database: Optional[str] = typer.Option(None, help="URI of the shared database"),
):
    ctx.ensure_object(dict)

    overrides = {}
    overrides["log.level"] = log_level.value
    if database:
        overrides["database.uri"] = database
    ctx.obj["settings"] = get_settings(str(config_file) if config_file else None, **overrides)

    logging.basicConfig(
        level=ctx.obj["settings"].log.level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )
    ctx.obj["log"] = logging.getLogger("inkfed-cli")

    ctx.obj["store"] = FederationStore(
        ctx.obj["settings"].database.uri,
        base_url(ctx.obj["settings"]),
        logger=ctx.obj["log"],
    )


@app.command()
def serve(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, help="Address to bind to instead of server.host"),
    port: Optional[int] = typer.Option(None, help="Port to bind to instead of server.port"),
):
    """Run the federation server, including the delivery worker"""
    from ..server.server import run_server

    ctx.obj["log"].info("Serving %s", base_url(ctx.obj["settings"]))
    run_server(ctx.obj["settings"], host=host, port=port)
