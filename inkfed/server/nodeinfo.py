# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

from datetime import timedelta
from importlib.metadata import metadata
from typing import ClassVar

from starlette.endpoints import HTTPEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse

from ..store.models import utcnow


class NodeInfoEndpoint(HTTPEndpoint):
    schema: ClassVar[str] = "http://nodeinfo.diaspora.software/ns/schema/2.1"

    async def get(self, request: Request) -> JSONResponse:
        meta = metadata("Inkfed")
        ctx = request.state.federation
        store = ctx.store
        now = utcnow()

        nodeinfo = {
            "version": "2.1",
            "software": {
                "name": meta["Name"].lower(),
                "version": meta["Version"],
            },
            "protocols": ["activitypub"],
            "services": {"inbound": [], "outbound": []},
            "openRegistrations": ctx.settings.instance.open_registrations,
            "usage": {
                "users": {
                    "total": store.count_users(),
                    "activeHalfyear": store.count_active_users(now - timedelta(days=180)),
                    "activeMonth": store.count_active_users(now - timedelta(days=30)),
                },
                "localPosts": store.count_local_entries(),
                "localComments": store.count_local_comments(),
            },
            "metadata": {
                "nodeName": ctx.settings.instance.name,
                "nodeDescription": ctx.settings.instance.description,
            },
        }

        return JSONResponse(nodeinfo, media_type=f'application/json; profile="{self.schema}#"')


def nodeinfo_wellknown(request: Request) -> JSONResponse:
    return JSONResponse(
        {
            "links": [
                {
                    "rel": NodeInfoEndpoint.schema,
                    "href": str(request.url_for("functional:nodeinfo")),
                }
            ]
        }
    )
