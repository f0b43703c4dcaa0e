# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

from typing import ClassVar

from starlette.endpoints import HTTPEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from ..exceptions import NotFoundError
from ..federation.events import EntrySnapshot, comment_snapshot
from ..settings import web_url
from ..store.schema import ACCEPT_TYPES, CONTENT_TYPE, LISTED_PRIVACY, Privacy


def _wants_html(request: Request) -> bool:
    accept = request.headers.get("Accept", "")
    return "text/html" in accept and not any(type_ in accept for type_ in ACCEPT_TYPES)


class ActorEndpoint(HTTPEndpoint):
    async def get(self, request: Request) -> Response:
        ctx = request.state.federation
        username = request.path_params["username"]

        user = ctx.store.get_user(username)
        if user is None:
            return JSONResponse({"error": "Not found"}, 404)
        if _wants_html(request):
            # Browsers get the profile page of the web application
            return RedirectResponse(f"{web_url(ctx.settings)}/{username}", 303)

        actor = ctx.resolver.resolve_local(username)
        doc = ctx.translator.actor_document(actor, manually_approves=user.requires_approval)
        return JSONResponse(doc, media_type=CONTENT_TYPE)


class InstanceActorEndpoint(HTTPEndpoint):
    async def get(self, request: Request) -> JSONResponse:
        ctx = request.state.federation
        actor = ctx.resolver.resolve_instance()
        doc = ctx.translator.actor_document(actor, manually_approves=False)
        return JSONResponse(doc, media_type=CONTENT_TYPE)


class InboxEndpoint(HTTPEndpoint):
    """Receives server-to-server deliveries, for one user or the shared inbox."""

    ACCEPT_TYPES: ClassVar[set[str]] = ACCEPT_TYPES

    def _accepts(self, request: Request) -> bool:
        content_type = request.headers.get("Content-Type")
        if content_type is None:
            return False
        return (
            content_type in self.ACCEPT_TYPES
            or content_type.split(";", 1)[0].strip() in self.ACCEPT_TYPES
        )

    async def post(self, request: Request) -> JSONResponse:
        if not self._accepts(request):
            return JSONResponse({"error": "Wrong Content-Type"}, 415)

        body = await request.body()
        result = await request.state.federation.inbox.process(
            request,
            body,
            recipient=request.path_params.get("username"),
            remote_addr=request.client.host if request.client else None,
        )

        if result.status >= 400:
            return JSONResponse({"error": result.outcome}, result.status)
        return JSONResponse(
            {"status": result.state.value, "outcome": result.outcome}, result.status
        )


class OutboxEndpoint(HTTPEndpoint):
    async def get(self, request: Request) -> JSONResponse:
        ctx = request.state.federation
        username = request.path_params["username"]
        page_size = ctx.settings.outbox.page_size

        user = ctx.store.get_user(username)
        if user is None:
            return JSONResponse({"error": "Not found"}, 404)
        total = ctx.store.count_listed_entries(user.id)

        if "page" not in request.query_params:
            doc = ctx.translator.outbox_collection(username, total, page_size)
            return JSONResponse(doc, media_type=CONTENT_TYPE)

        try:
            page = int(request.query_params["page"])
        except ValueError:
            page = 0
        if page < 1:
            return JSONResponse({"error": "Invalid page"}, 400)

        entries = [
            EntrySnapshot.from_model(entry, user)
            for entry in ctx.store.list_listed_entries(
                user.id, offset=(page - 1) * page_size, limit=page_size
            )
        ]
        doc = ctx.translator.outbox_page(username, entries, page, total, page_size)
        return JSONResponse(doc, media_type=CONTENT_TYPE)


class FollowersEndpoint(HTTPEndpoint):
    async def get(self, request: Request) -> JSONResponse:
        ctx = request.state.federation
        username = request.path_params["username"]

        if ctx.store.get_user(username) is None:
            return JSONResponse({"error": "Not found"}, 404)
        total = ctx.store.count_followers(ctx.store.iris.actor(username))
        return JSONResponse(
            ctx.translator.followers_collection(username, total), media_type=CONTENT_TYPE
        )


class EntryEndpoint(HTTPEndpoint):
    """Serves published entries as Notes; only listed entries are readable without a session."""

    async def get(self, request: Request) -> JSONResponse:
        ctx = request.state.federation
        username = request.path_params["username"]

        user = ctx.store.get_user(username)
        entry = ctx.store.get_entry(request.path_params["entry_id"])
        if (
            user is None
            or entry is None
            or entry.user_id != user.id
            or entry.published_at is None
            or Privacy(entry.privacy) not in LISTED_PRIVACY
        ):
            return JSONResponse({"error": "Not found"}, 404)

        iri = ctx.store.entry_iri(entry, user)
        if entry.deleted_at is not None:
            return JSONResponse(
                ctx.translator.tombstone(iri, entry.deleted_at), 410, media_type=CONTENT_TYPE
            )

        note = ctx.translator.note_for_entry(EntrySnapshot.from_model(entry, user), context=True)
        return JSONResponse(note, media_type=CONTENT_TYPE)


class CommentEndpoint(HTTPEndpoint):
    async def get(self, request: Request) -> JSONResponse:
        ctx = request.state.federation
        username = request.path_params["username"]

        user = ctx.store.get_user(username)
        comment = ctx.store.get_comment(request.path_params["comment_id"])
        if user is None or comment is None or comment.user_id != user.id:
            return JSONResponse({"error": "Not found"}, 404)

        entry = ctx.store.get_entry(comment.entry_id)
        if entry is None or Privacy(entry.privacy) not in LISTED_PRIVACY:
            return JSONResponse({"error": "Not found"}, 404)

        iri = ctx.store.comment_iri(comment, user)
        if comment.deleted_at is not None or entry.deleted_at is not None:
            return JSONResponse(
                ctx.translator.tombstone(iri, comment.deleted_at or entry.deleted_at),
                410,
                media_type=CONTENT_TYPE,
            )

        try:
            snapshot = comment_snapshot(ctx.store, comment)
        except NotFoundError:
            return JSONResponse({"error": "Not found"}, 404)
        note = ctx.translator.note_for_comment(snapshot, context=True)
        return JSONResponse(note, media_type=CONTENT_TYPE)
