# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import json
import logging
from importlib.metadata import metadata
from pprint import pformat
from urllib.parse import urlparse

import httpx

from ..exceptions import FetchError, MalformedResponseError, NotFoundError
from ..store.schema import ACTIVITY_JSON, CONTENT_TYPE

ACCEPT = ", ".join([CONTENT_TYPE, f"{ACTIVITY_JSON};q=0.9", "application/json;q=0.8"])
MAX_REDIRECTS = 5


class FederationClient:
    """Shared asynchronous HTTP client for talking to remote servers."""

    def __init__(
        self,
        fetch_timeout: float = 5,
        delivery_timeout: float = 10,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: logging.Logger | None = None,
    ):
        self._logger = logger or logging.getLogger(__name__)
        self._fetch_timeout = fetch_timeout
        self._delivery_timeout = delivery_timeout
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    @property
    def _user_agent(self) -> str:
        meta = metadata("Inkfed")
        return f"{meta['Name']}/{meta['Version']}"

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._logger.debug("Creating new HTTP client session")
            self._http_client = httpx.AsyncClient(
                headers={"User-Agent": self._user_agent, "Accept": ACCEPT},
                timeout=self._fetch_timeout,
                transport=self._transport,
            )
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    @staticmethod
    def _check_url(url: str) -> None:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise FetchError(f"Refusing to fetch {url}")

    async def get_json(
        self,
        url: str,
        auth: httpx.Auth | None = None,
        params: dict[str, str] | None = None,
        accept: str | None = None,
    ) -> dict:
        """GET a JSON document, raising FederationError subclasses on failure."""
        self._check_url(url)
        self._logger.debug("Fetching %s", url)

        headers = {"Accept": accept} if accept else None
        # Redirects are followed by hand so that every hop gets its own signature
        for _ in range(MAX_REDIRECTS + 1):
            try:
                response = await self.http_client.get(
                    url, params=params, headers=headers, auth=auth, follow_redirects=False
                )
            except httpx.TimeoutException as ex:
                raise FetchError(f"Timeout fetching {url}") from ex
            except httpx.HTTPError as ex:
                raise FetchError(f"Error fetching {url}: {ex}") from ex

            if not response.has_redirect_location:
                break
            url = str(response.next_request.url)
            params = None
            self._check_url(url)
            self._logger.debug("Following redirect to %s", url)
        else:
            raise FetchError(f"Too many redirects fetching {url}")

        if response.status_code in (404, 410):
            raise NotFoundError(f"{url} not found ({response.status_code})")
        if response.status_code >= 400:
            self._logger.error("Request to %s failed with %d", url, response.status_code)
            raise FetchError(f"Fetching {url} failed with status {response.status_code}")

        try:
            doc = response.json()
        except json.JSONDecodeError as ex:
            raise MalformedResponseError(f"{url} did not return JSON") from ex
        if not isinstance(doc, dict):
            raise MalformedResponseError(f"{url} did not return a JSON object")
        return doc

    async def post_activity(self, inbox: str, payload: dict, auth: httpx.Auth) -> httpx.Response:
        """POST an activity; transport errors propagate for the caller to classify."""
        self._check_url(inbox)
        self._logger.debug("Posting %s to %s", payload.get("id"), inbox)

        response = await self.http_client.post(
            inbox,
            content=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": CONTENT_TYPE},
            auth=auth,
            timeout=self._delivery_timeout,
        )
        if response.status_code >= 400:
            self._logger.error(
                "Delivery to %s failed with %d: %s",
                inbox,
                response.status_code,
                pformat(response.text[:500]),
            )
        return response


__all__ = ["FederationClient"]
