# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import asyncio
import json
from dataclasses import asdict
from datetime import timedelta

import typer

from ..exceptions import FederationError
from ..federation.context import create_context
from ..store.models import utcnow

app = typer.Typer(help="Manage local and cached remote actors")


@app.command()
def keys(
    ctx: typer.Context,
    username: str = typer.Argument(..., help="Local user to manage keys for"),
    force: bool = typer.Option(False, help="Replace an existing keypair (DANGEROUS!)"),
):
    """Generate the signing keypair of a local user"""
    with ctx.obj["store"] as store:
        store.create_tables()
        fed = create_context(ctx.obj["settings"], store=store, logger=ctx.obj["log"])

        user = store.get_user(username)
        if user is None:
            ctx.obj["log"].error("The user %s does not exist", username)
            raise typer.Exit(code=1)

        key_iri, _ = fed.keys.ensure_actor_keys(
            store.iris.actor(username),
            store.iris.key(username),
            handle=f"{username}@{store.iris.host}",
            force=force,
        )

    print(key_iri)


@app.command()
def resolve(
    ctx: typer.Context,
    account: str = typer.Argument(..., help="Handle (user@domain.tld) or IRI of the actor"),
    refresh: bool = typer.Option(False, help="Ignore the cache and fetch again"),
):
    """Resolve an actor and print its cached document"""

    async def _resolve():
        fed = create_context(ctx.obj["settings"], store=store, logger=ctx.obj["log"])
        try:
            if account.startswith("https://") or account.startswith("http://"):
                return await fed.resolver.resolve_remote(account, refresh=refresh)
            return await fed.resolver.resolve_handle(account)
        finally:
            await fed.client.aclose()

    with ctx.obj["store"] as store:
        try:
            found = asyncio.run(_resolve())
        except FederationError as ex:
            ctx.obj["log"].error("Cannot resolve %s: %s", account, ex)
            raise typer.Exit(code=2)

        record = store.get_actor_record(found.iri)

    if found.degraded:
        ctx.obj["log"].warning("%s could not be refreshed, showing cached data", found.iri)
    doc = record.document if record is not None and record.document else asdict(found)
    print(json.dumps(doc, default=str, indent=2))


@app.command()
def prune(
    ctx: typer.Context,
    days: int = typer.Option(30, help="Remove unreferenced actors not fetched for this many days"),
):
    """Drop stale remote actors from the cache"""
    with ctx.obj["store"] as store:
        count = store.prune_remote_actors(utcnow() - timedelta(days=days))

    ctx.obj["log"].info("Pruned %d cached actors", count)
