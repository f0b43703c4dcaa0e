# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import logging

from ..exceptions import FetchError, MalformedResponseError, NotFoundError
from ..store import FederationStore
from ..store.schema import ACTIVITY_JSON, CONTENT_TYPE
from .actor import parse_acct
from .client import FederationClient

SELF_TYPES = {ACTIVITY_JSON, CONTENT_TYPE}
PROFILE_PAGE_REL = "http://webfinger.net/rel/profile-page"


class WebFingerResolver:
    def __init__(
        self,
        store: FederationStore,
        client: FederationClient,
        web_url: str | None = None,
        logger: logging.Logger | None = None,
    ):
        self._store = store
        self._client = client
        self._web_url = (web_url or store.iris.base_url).rstrip("/")
        self._logger = logger or logging.getLogger(__name__)

    def _local_username(self, resource: str) -> str | None:
        iris = self._store.iris
        if resource.startswith("acct:"):
            try:
                user, host = parse_acct(resource)
            except ValueError:
                return None
            if host != iris.host.lower():
                return None
            return user.lower()

        if resource == iris.instance_actor:
            return iris.host
        parsed = iris.parse(resource)
        if parsed is not None and parsed[0] == "actor":
            return parsed[1]
        return None

    def lookup_local(self, resource: str) -> dict:
        """Build the JSON Resource Descriptor for a local account."""
        iris = self._store.iris
        username = self._local_username(resource)
        if username is None:
            raise NotFoundError(f"{resource} is not a local resource")

        if username == iris.host:
            actor_iri = iris.instance_actor
            links = []
        else:
            if self._store.get_user(username) is None:
                raise NotFoundError(f"No local user {username}")
            actor_iri = iris.actor(username)
            links = [
                {
                    "rel": PROFILE_PAGE_REL,
                    "type": "text/html",
                    "href": f"{self._web_url}/{username}",
                }
            ]

        return {
            "subject": f"acct:{username}@{iris.host}",
            "aliases": [actor_iri],
            "links": [
                {"rel": "self", "type": ACTIVITY_JSON, "href": actor_iri},
                {"rel": "self", "type": CONTENT_TYPE, "href": actor_iri},
                *links,
            ],
        }

    async def lookup_remote(self, acct: str) -> str:
        """Resolve ``user@host`` to the actor IRI via the host's WebFinger."""
        try:
            user, host = parse_acct(acct)
        except ValueError as ex:
            raise NotFoundError(str(ex)) from ex

        resource = f"acct:{user}@{host}"
        self._logger.info("WebFinger lookup of %s", resource)
        try:
            jrd = await self._client.get_json(
                f"https://{host}/.well-known/webfinger",
                params={"resource": resource},
                accept="application/jrd+json, application/json;q=0.9",
            )
        except NotFoundError:
            raise
        except FetchError:
            self._logger.warning("WebFinger lookup of %s failed", resource)
            raise

        links = jrd.get("links")
        if not isinstance(links, list):
            raise MalformedResponseError(f"WebFinger response for {resource} has no links")
        for link in links:
            if not isinstance(link, dict):
                continue
            if link.get("rel") == "self" and link.get("type") in SELF_TYPES and link.get("href"):
                return link["href"]

        raise MalformedResponseError(f"WebFinger response for {resource} has no actor link")


__all__ = ["WebFingerResolver"]
