# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import asyncio
import json
from datetime import timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ..exceptions import FederationError
from ..federation.context import create_context
from ..federation.events import parse_event
from ..federation.outbox import Dead, Delivered
from ..store.models import utcnow
from ..store.schema import DeliveryStatus

app = typer.Typer(help="Manage delivery of outgoing and processing of incoming activities")


@app.command()
def deliveries(
    ctx: typer.Context,
    status: Optional[DeliveryStatus] = typer.Option(None, help="Only show tasks in this state"),
    limit: int = typer.Option(50, help="Number of tasks to show"),
):
    """List the most recent delivery tasks"""
    table = Table(title="Delivery tasks")
    table.add_column("ID", justify="right")
    table.add_column("Activity", justify="left", no_wrap=True)
    table.add_column("Inbox", justify="left", no_wrap=True)
    table.add_column("Status", justify="left")
    table.add_column("Attempts", justify="right")
    table.add_column("Next attempt", justify="left")
    table.add_column("Last error", justify="left")

    with ctx.obj["store"] as store:
        for task in store.list_deliveries(status, limit):
            table.add_row(
                str(task.id),
                task.activity_iri,
                task.inbox,
                task.status,
                str(task.attempts),
                task.next_attempt_at.isoformat(timespec="seconds"),
                task.last_error or "",
            )

    console = Console()
    console.print(table)


@app.command()
def retry(
    ctx: typer.Context,
    inbox: Optional[str] = typer.Option(None, help="Only re-queue tasks for this inbox"),
):
    """Re-queue dead deliveries"""
    with ctx.obj["store"] as store:
        count = store.retry_dead_deliveries(inbox)

    ctx.obj["log"].info("Re-queued %d deliveries", count)


@app.command()
def deliver(ctx: typer.Context):
    """Attempt all due deliveries once"""

    async def _deliver():
        fed = create_context(ctx.obj["settings"], store=store, logger=ctx.obj["log"])
        try:
            return await fed.worker.run_once()
        finally:
            await fed.client.aclose()

    with ctx.obj["store"] as store:
        outcomes = asyncio.run(_deliver())

    delivered = sum(1 for outcome in outcomes if isinstance(outcome, Delivered))
    dead = sum(1 for outcome in outcomes if isinstance(outcome, Dead))
    ctx.obj["log"].info("%d attempted, %d delivered, %d dead", len(outcomes), delivered, dead)


@app.command()
def prune_deliveries(
    ctx: typer.Context,
    days: int = typer.Option(7, help="Remove finished tasks older than this many days"),
):
    """Remove delivered and dead tasks"""
    with ctx.obj["store"] as store:
        store.prune_deliveries(utcnow() - timedelta(days=days))


@app.command()
def prune_activities(ctx: typer.Context):
    """Forget inbound activities older than the deduplication window"""
    window = ctx.obj["settings"].federation.dedup_window
    with ctx.obj["store"] as store:
        store.prune_activities(utcnow() - timedelta(seconds=window))


@app.command()
def publish(
    ctx: typer.Context,
    message: str = typer.Argument(
        ..., help='Event as JSON, e.g. {"event": "entry_published", "entry_id": 1}'
    ),
):
    """Federate a native event, as if it was announced by the application"""

    async def _publish():
        fed = create_context(ctx.obj["settings"], store=store, logger=ctx.obj["log"])
        try:
            return await fed.dispatcher.publish(parse_event(json.loads(message), store))
        finally:
            await fed.client.aclose()

    with ctx.obj["store"] as store:
        try:
            result = asyncio.run(_publish())
        except (ValueError, FederationError) as ex:
            ctx.obj["log"].error("Cannot publish event: %s", ex)
            raise typer.Exit(code=1)

    ctx.obj["log"].info("%s: %s (%d inboxes)", result.activity_iri, result.outcome, result.tasks)


@app.command()
def replay(
    ctx: typer.Context,
    file: typer.FileText = typer.Argument(..., help="JSON file with a logged activity payload"),
):
    """Process a failed inbound activity again"""
    doc = json.load(file)

    async def _replay():
        fed = create_context(ctx.obj["settings"], store=store, logger=ctx.obj["log"])
        try:
            return await fed.inbox.replay(doc)
        finally:
            await fed.client.aclose()

    with ctx.obj["store"] as store:
        try:
            result = asyncio.run(_replay())
        except FederationError as ex:
            ctx.obj["log"].error("Cannot replay activity: %s", ex)
            raise typer.Exit(code=1)

    ctx.obj["log"].info("%s: %s", result.state.value, result.outcome)
    if result.status >= 400:
        raise typer.Exit(code=2)
