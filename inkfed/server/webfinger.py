# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

from starlette.endpoints import HTTPEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse

from ..exceptions import NotFoundError
from ..store.schema import JRD_CONTENT_TYPE

# WebFinger is queried from browsers of other instances, too
CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}


class WebfingerEndpoint(HTTPEndpoint):
    """Answers ``acct:`` and actor IRI lookups for local users."""

    async def get(self, request: Request) -> JSONResponse:
        resource = request.query_params.get("resource")
        if not resource:
            return JSONResponse({"error": "Resource not provided"}, 400, headers=CORS_HEADERS)

        try:
            jrd = request.state.federation.webfinger.lookup_local(resource)
        except NotFoundError:
            return JSONResponse({"error": "Subject not found"}, 404, headers=CORS_HEADERS)

        rels = request.query_params.getlist("rel")
        if rels:
            jrd["links"] = [link for link in jrd["links"] if link["rel"] in rels]

        return JSONResponse(jrd, media_type=JRD_CONTENT_TYPE, headers=CORS_HEADERS)
