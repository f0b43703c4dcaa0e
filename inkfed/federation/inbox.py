# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import json
import logging
from dataclasses import dataclass, replace

from prometheus_client import CollectorRegistry, Counter

from ..exceptions import FederationError, MalformedActivityError, VerificationError
from ..store import FederationStore
from ..store.schema import ACTOR_TYPES, InboxState
from .changes import CreateFollow, Ignored, OrphanObject
from .client import FederationClient
from .events import FollowApproved
from .keys import KeyManager
from .outbox import OutboxDispatcher
from .resolver import ActorResolver
from .signatures import GET_HEADERS, verify_request
from .translator import (
    Create,
    Delete,
    InboundActivity,
    InboundContext,
    ObjectTranslator,
    Update,
    parse_activity,
)


@dataclass(frozen=True)
class InboxResult:
    status: int
    state: InboxState
    outcome: str


class InboxProcessor:
    """Receives activities posted to an inbox and applies them idempotently.

    Every activity walks the states received, verifying, verified or
    rejected, translating, applying, and finally applied or failed. Each
    transition is logged with the activity and actor IRIs.
    """

    def __init__(
        self,
        store: FederationStore,
        resolver: ActorResolver,
        translator: ObjectTranslator,
        client: FederationClient,
        keys: KeyManager,
        dispatcher: OutboxDispatcher,
        max_skew: int = 43200,
        claim_lease: float = 300,
        registry: CollectorRegistry | None = None,
        logger: logging.Logger | None = None,
    ):
        self._store = store
        self._resolver = resolver
        self._translator = translator
        self._client = client
        self._keys = keys
        self._dispatcher = dispatcher
        self._max_skew = max_skew
        self._claim_lease = claim_lease
        self._logger = logger or logging.getLogger(__name__)

        self._outcomes = Counter(
            "federation_inbox_activities",
            "Inbound activities by type and outcome",
            ("type", "outcome"),
            registry=registry or CollectorRegistry(),
        )

    def _transition(
        self,
        activity_iri: str | None,
        actor_iri: str | None,
        state: InboxState,
        outcome: str | None = None,
        level: int = logging.DEBUG,
    ) -> None:
        self._logger.log(
            level,
            "Activity %s from %s: %s%s",
            activity_iri,
            actor_iri,
            state.value,
            f" ({outcome})" if outcome else "",
            extra={
                "activity": activity_iri,
                "actor": actor_iri,
                "state": state.value,
                "outcome": outcome,
            },
        )

    def _result(
        self,
        status: int,
        state: InboxState,
        outcome: str,
        type_: str = "unknown",
        kind: str | None = None,
    ) -> InboxResult:
        self._outcomes.labels(type_, kind or state.value).inc()
        return InboxResult(status, state, outcome)

    async def process(
        self,
        request,
        body: bytes,
        recipient: str | None = None,
        remote_addr: str | None = None,
    ) -> InboxResult:
        """Run one POSTed activity through verification, translation and application."""
        if recipient is not None and self._store.get_user(recipient) is None:
            return self._result(404, InboxState.REJECTED, f"no local user {recipient}")

        try:
            doc = json.loads(body)
            activity = parse_activity(doc)
        except (ValueError, MalformedActivityError) as ex:
            self._logger.info("Malformed activity from %s: %s", remote_addr, ex)
            return self._result(400, InboxState.REJECTED, str(ex), kind="malformed")
        self._transition(activity.id, activity.actor, InboxState.RECEIVED, remote_addr)
        type_ = type(activity).__name__

        if (
            isinstance(activity, Delete)
            and activity.object == activity.actor
            and self._store.get_actor_record(activity.actor) is None
        ):
            # Deleted actors cannot be verified any more, and we know nothing about them
            self._transition(activity.id, activity.actor, InboxState.APPLIED, "unknown actor")
            return self._result(202, InboxState.APPLIED, "unknown actor", type_, "ignored")

        self._transition(activity.id, activity.actor, InboxState.VERIFYING)
        try:
            signer = await verify_request(
                request, self._resolver.resolve_key, body, max_skew=self._max_skew
            )
        except VerificationError as ex:
            self._transition(
                activity.id, activity.actor, InboxState.REJECTED, str(ex), logging.WARNING
            )
            return self._result(401, InboxState.REJECTED, str(ex), type_)
        if signer != activity.actor:
            outcome = f"signed by {signer}, not by the actor"
            self._transition(
                activity.id, activity.actor, InboxState.REJECTED, outcome, logging.WARNING
            )
            return self._result(401, InboxState.REJECTED, outcome, type_)

        return await self.handle(activity, doc, remote_addr)

    async def handle(
        self, activity: InboundActivity, doc: dict, remote_addr: str | None = None
    ) -> InboxResult:
        """Process an activity whose origin is already established."""
        type_ = type(activity).__name__
        claimed = self._store.claim_activity(
            activity.id, type_, activity.actor, doc, remote_addr, lease=self._claim_lease
        )
        if not claimed:
            self._transition(activity.id, activity.actor, InboxState.APPLIED, "duplicate")
            return self._result(202, InboxState.APPLIED, "duplicate", type_, "duplicate")
        self._transition(activity.id, activity.actor, InboxState.VERIFIED)

        try:
            self._transition(activity.id, activity.actor, InboxState.TRANSLATING)
            sender = await self._resolver.resolve_remote(activity.actor)
            activity = await self._dereference(activity)
            if self._is_actor_update(activity):
                await self._resolver.resolve_remote(activity.actor, refresh=True)
                return self._finish(activity, InboxState.APPLIED, "actor refreshed", "applied")

            change = self._translator.from_activity(activity, InboundContext(self._store, sender))
            match change:
                case Ignored(reason=reason):
                    return self._finish(activity, InboxState.APPLIED, reason, "ignored")
                case OrphanObject(object_iri=object_iri, in_reply_to=in_reply_to):
                    outcome = f"orphan {object_iri} (in reply to {in_reply_to})"
                    return self._finish(activity, InboxState.APPLIED, outcome, "orphan")

            self._transition(activity.id, activity.actor, InboxState.APPLYING, type(change).__name__)
            applied = self._store.apply(change)
        except Exception as ex:
            self._logger.exception(
                "Processing %s failed; payload for replay: %s",
                activity.id,
                json.dumps(doc),
                extra={
                    "activity": activity.id,
                    "actor": activity.actor,
                    "state": InboxState.FAILED.value,
                    "outcome": str(ex),
                },
            )
            self._store.mark_activity(activity.id, InboxState.FAILED, str(ex))
            return self._result(500, InboxState.FAILED, str(ex), type_)
        except BaseException:
            # Cancelled mid-way; release the claim so a retry is processed
            self._store.mark_activity(activity.id, InboxState.FAILED, "interrupted")
            raise

        result = self._finish(activity, InboxState.APPLIED, applied.outcome, "applied")
        if isinstance(change, CreateFollow) and change.auto_accept and applied.changed:
            await self._accept_follow(change)
        return result

    def _finish(
        self, activity: InboundActivity, state: InboxState, outcome: str, kind: str
    ) -> InboxResult:
        self._store.mark_activity(activity.id, state, outcome)
        self._transition(activity.id, activity.actor, state, outcome, logging.INFO)
        return self._result(202, state, outcome, type(activity).__name__, kind)

    def _is_actor_update(self, activity: InboundActivity) -> bool:
        return (
            isinstance(activity, Update)
            and isinstance(activity.object, dict)
            and activity.object.get("type") in ACTOR_TYPES
            and activity.object.get("id") == activity.actor
        )

    async def _dereference(self, activity: InboundActivity) -> InboundActivity:
        """Fetch the object of a Create or Update that only references it."""
        if not isinstance(activity, (Create, Update)) or not isinstance(activity.object, str):
            return activity

        self._logger.debug("Dereferencing %s for %s", activity.object, activity.id)
        try:
            auth = self._keys.signer_for(self._resolver.resolve_instance().iri, GET_HEADERS)
            obj = await self._client.get_json(activity.object, auth=auth)
        except FederationError as ex:
            self._logger.info("Cannot dereference %s: %s", activity.object, ex)
            return activity
        return replace(activity, object=obj)

    async def _accept_follow(self, change: CreateFollow) -> None:
        # The follow is committed already; delivery trouble must not change the response
        user = self._store.find_user_by_iri(change.following_iri)
        try:
            await self._dispatcher.publish(
                FollowApproved(user.username, change.follower_iri, change.follow_activity_iri)
            )
        except Exception:
            self._logger.exception("Could not queue Accept for %s", change.follow_activity_iri)

    async def replay(self, doc: dict, remote_addr: str | None = None) -> InboxResult:
        """Process a logged payload again, trusting its actor."""
        activity = parse_activity(doc)
        return await self.handle(activity, doc, remote_addr)


__all__ = ["InboxProcessor", "InboxResult"]
