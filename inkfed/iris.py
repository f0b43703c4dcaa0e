# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import re
from dataclasses import dataclass
from urllib.parse import urlparse

USERNAME_RE = r"[a-z0-9_][a-z0-9_.-]*"
_LOCAL_PATH_RE = re.compile(
    rf"^/users/(?P<username>{USERNAME_RE})(?:/(?P<kind>entries|comments)/(?P<id>\d+))?/?$"
)


@dataclass(frozen=True)
class LocalIRIs:
    """Derives the IRIs of local actors and objects from the instance base URL."""

    base_url: str

    @property
    def host(self) -> str:
        return urlparse(self.base_url).netloc

    def actor(self, username: str) -> str:
        return f"{self.base_url}/users/{username}"

    def key(self, username: str) -> str:
        return f"{self.actor(username)}#main-key"

    def inbox(self, username: str) -> str:
        return f"{self.actor(username)}/inbox"

    def outbox(self, username: str) -> str:
        return f"{self.actor(username)}/outbox"

    def followers(self, username: str) -> str:
        return f"{self.actor(username)}/followers"

    def following(self, username: str) -> str:
        return f"{self.actor(username)}/following"

    @property
    def shared_inbox(self) -> str:
        return f"{self.base_url}/inbox"

    @property
    def instance_actor(self) -> str:
        return f"{self.base_url}/actor"

    @property
    def instance_key(self) -> str:
        return f"{self.instance_actor}#main-key"

    def entry(self, username: str, entry_id: int) -> str:
        return f"{self.actor(username)}/entries/{entry_id}"

    def comment(self, username: str, comment_id: int) -> str:
        return f"{self.actor(username)}/comments/{comment_id}"

    def is_local(self, iri: str) -> bool:
        url = urlparse(iri)
        return f"{url.scheme}://{url.netloc}" == self.base_url

    def parse(self, iri: str) -> tuple[str, str, int | None] | None:
        """Split a local IRI into (kind, username, id).

        kind is one of ``actor``, ``entries`` or ``comments``. Fragments and
        foreign IRIs yield None.
        """
        if not self.is_local(iri):
            return None
        url = urlparse(iri)
        if url.fragment:
            return None
        match = _LOCAL_PATH_RE.match(url.path)
        if match is None:
            return None
        if match["kind"] is None:
            return "actor", match["username"], None
        return match["kind"], match["username"], int(match["id"])


__all__ = ["LocalIRIs", "USERNAME_RE"]
