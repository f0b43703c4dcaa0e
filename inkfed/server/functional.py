# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

"""Endpoints the Inkwell application calls on behalf of its users.

They are not part of the federation surface and require the shared
``server.internal_token`` as a Bearer token.
"""

import hmac

from starlette.endpoints import HTTPEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse

from ..exceptions import FederationError, NotFoundError
from ..federation.actor import Actor


def health(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


def _actor_summary(actor: Actor) -> dict:
    return {
        "id": actor.iri,
        "type": actor.actor_type,
        "handle": actor.handle,
        "name": actor.name,
        "summary": actor.summary,
        "icon": actor.icon_url,
        "inbox": actor.inbox,
        "degraded": actor.degraded,
    }


class InternalEndpoint(HTTPEndpoint):
    async def dispatch(self) -> None:
        request = Request(self.scope, receive=self.receive)
        token = request.state.federation.settings.server.internal_token

        if not token:
            response = JSONResponse({"error": "Internal API is disabled"}, 403)
        else:
            scheme, _, credentials = request.headers.get("Authorization", "").partition(" ")
            if scheme.lower() == "bearer" and hmac.compare_digest(credentials, token):
                return await super().dispatch()
            response = JSONResponse({"error": "Invalid token"}, 401)

        await response(self.scope, self.receive, self.send)


class LookupEndpoint(InternalEndpoint):
    async def get(self, request: Request) -> JSONResponse:
        handle = request.query_params.get("handle")
        if not handle:
            return JSONResponse({"error": "Handle not provided"}, 400)

        try:
            actor = await request.state.federation.resolver.resolve_handle(handle)
        except ValueError as ex:
            return JSONResponse({"error": str(ex)}, 400)
        except NotFoundError as ex:
            return JSONResponse({"error": str(ex)}, 404)
        except FederationError as ex:
            return JSONResponse({"error": str(ex)}, 502)

        return JSONResponse(_actor_summary(actor))


class FollowEndpoint(InternalEndpoint):
    async def post(self, request: Request) -> JSONResponse:
        try:
            data = await request.json()
            username, handle = data["username"], data["handle"]
        except (ValueError, KeyError, TypeError):
            return JSONResponse({"error": "Expected username and handle"}, 400)

        try:
            actor, relationship = await request.state.federation.dispatcher.follow_remote(
                username, handle
            )
        except ValueError as ex:
            return JSONResponse({"error": str(ex)}, 400)
        except NotFoundError as ex:
            return JSONResponse({"error": str(ex)}, 404)
        except FederationError as ex:
            return JSONResponse({"error": str(ex)}, 502)

        return JSONResponse(
            {
                "status": relationship.status if relationship else "pending",
                "follow": relationship.follow_activity_iri if relationship else None,
                "actor": _actor_summary(actor),
            },
            202,
        )
