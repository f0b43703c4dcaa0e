# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import asyncio
import logging
import random
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable

import httpx
import shortuuid
from prometheus_client import CollectorRegistry, Counter

from ..exceptions import FederationError, NotFoundError, SigningError
from ..store import FederationStore
from ..store.models import DeliveryTask, Relationship, utcnow
from ..store.schema import PUBLIC_ALIASES, DeliveryStatus, RelationshipStatus
from .actor import Actor, _link
from .changes import NotApplicable
from .client import FederationClient
from .events import (
    FollowApproved,
    FollowRejected,
    FollowRequested,
    NativeEvent,
    StampAdded,
    StampRemoved,
    Unfollowed,
    UserCreated,
)
from .keys import KeyManager
from .resolver import ActorResolver
from .signatures import GET_HEADERS
from .translator import ObjectTranslator

AUDIENCE_FIELDS = ("to", "cc", "bto", "bcc")
TRANSIENT_STATUSES = {408, 429}


@dataclass(frozen=True)
class DispatchResult:
    activity_iri: str | None
    inboxes: list[str] = field(default_factory=list)
    outcome: str = "queued"

    @property
    def tasks(self) -> int:
        return len(self.inboxes)


@dataclass(frozen=True)
class Delivered:
    status_code: int
    attempts: int


@dataclass(frozen=True)
class Retry:
    next_attempt_at: datetime
    error: str
    attempts: int


@dataclass(frozen=True)
class Dead:
    error: str
    attempts: int


DeliveryOutcome = Delivered | Retry | Dead


class OutboxDispatcher:
    """Turns native events into queued deliveries."""

    def __init__(
        self,
        store: FederationStore,
        resolver: ActorResolver,
        translator: ObjectTranslator,
        client: FederationClient,
        keys: KeyManager,
        on_enqueue: Callable[[], None] | None = None,
        logger: logging.Logger | None = None,
    ):
        self._store = store
        self._iris = store.iris
        self._resolver = resolver
        self._translator = translator
        self._client = client
        self._keys = keys
        self._on_enqueue = on_enqueue
        self._logger = logger or logging.getLogger(__name__)

    async def _resolve_inbox(self, iri: str) -> Actor | None:
        try:
            return await self._resolver.resolve_remote(iri)
        except FederationError as ex:
            self._logger.warning("Skipping recipient %s: %s", iri, ex)
            return None

    async def recipients(self, activity: dict) -> list[str]:
        """Inboxes to deliver an activity to, one per shared inbox."""
        actor_iris = []
        for name in AUDIENCE_FIELDS:
            targets = activity.get(name) or []
            if isinstance(targets, str):
                targets = [targets]
            for target in targets:
                if target in PUBLIC_ALIASES:
                    continue
                if self._iris.is_local(target):
                    actor_iris.extend(self._expand_local_collection(target))
                else:
                    actor_iris.append(target)

        actor_iris = [
            iri for iri in dict.fromkeys(actor_iris) if iri != activity.get("actor")
        ]
        actors = await asyncio.gather(*(self._resolve_inbox(iri) for iri in actor_iris))

        inboxes = {}
        for actor in actors:
            if actor is not None and not actor.is_local:
                inboxes.setdefault(actor.delivery_inbox, actor.iri)
        return list(inboxes)

    def _expand_local_collection(self, iri: str) -> list[str]:
        if not iri.endswith("/followers"):
            return []
        actor_iri = iri.removesuffix("/followers")
        if self._store.find_user_by_iri(actor_iri) is None:
            return []
        return [
            follower
            for follower in self._store.list_followers(actor_iri)
            if not self._iris.is_local(follower)
        ]

    def _record_follow(self, event: FollowRequested) -> Relationship:
        actor_iri = self._iris.actor(event.username)
        existing = self._store.get_relationship(actor_iri, event.target_iri)
        follow_iri = event.follow_iri
        if follow_iri is None and existing is not None:
            follow_iri = existing.follow_activity_iri
        if follow_iri is None:
            follow_iri = f"{actor_iri}#follows/{shortuuid.uuid()}"
        return self._store.request_follow(actor_iri, event.target_iri, follow_iri)

    async def _object_author(self, object_iri: str) -> str | None:
        comment = self._store.find_comment_by_iri(object_iri)
        if comment is not None and comment.remote_author_iri:
            return comment.remote_author_iri

        try:
            auth = self._keys.signer_for(self._resolver.resolve_instance().iri, GET_HEADERS)
            doc = await self._client.get_json(object_iri, auth=auth)
        except FederationError as ex:
            self._logger.warning("Cannot determine author of %s: %s", object_iri, ex)
            return None
        return _link(doc.get("attributedTo"))

    async def _prepare(self, event: NativeEvent) -> NativeEvent:
        """Fill in what the event lacks and apply its local side of the follow state."""
        match event:
            case FollowRequested():
                relationship = self._record_follow(event)
                return replace(event, follow_iri=relationship.follow_activity_iri)

            case FollowApproved(username=username, follower_iri=follower):
                relationship = self._store.set_follow_status(
                    follower, self._iris.actor(username), RelationshipStatus.ACCEPTED
                )
                if relationship is not None and event.follow_iri is None:
                    return replace(event, follow_iri=relationship.follow_activity_iri)

            case FollowRejected(username=username, follower_iri=follower):
                relationship = self._store.remove_follow(follower, self._iris.actor(username))
                if relationship is not None and event.follow_iri is None:
                    return replace(event, follow_iri=relationship.follow_activity_iri)

            case Unfollowed(username=username, target_iri=target):
                relationship = self._store.remove_follow(self._iris.actor(username), target)
                if relationship is not None and event.follow_iri is None:
                    return replace(event, follow_iri=relationship.follow_activity_iri)

            case StampAdded() | StampRemoved() if (
                event.object_author_iri is None and not self._iris.is_local(event.object_iri)
            ):
                return replace(event, object_author_iri=await self._object_author(event.object_iri))

        return event

    async def publish(self, event: NativeEvent) -> DispatchResult:
        """Translate a native event and queue one delivery per recipient inbox.

        Never raises for delivery problems; those are handled by the worker.
        """
        if isinstance(event, UserCreated):
            self._resolver.resolve_local(event.username)
            return DispatchResult(None, outcome="keys ready")

        event = await self._prepare(event)
        activity = self._translator.to_activity(event)
        if isinstance(activity, NotApplicable):
            self._logger.debug("Not federating %s: %s", type(event).__name__, activity.reason)
            return DispatchResult(None, outcome=activity.reason)

        signer = activity["actor"]
        # Make sure the signer has a key before anything is queued
        await self._resolver.resolve_remote(signer)
        inboxes = await self.recipients(activity)
        if not inboxes:
            self._logger.info("%s has no remote recipients", activity["id"])
            return DispatchResult(activity["id"], outcome="no recipients")

        self._store.enqueue_deliveries(activity["id"], activity, signer, inboxes)
        self._logger.info(
            "Queued %s to %d inboxes",
            activity["id"],
            len(inboxes),
            extra={"activity": activity["id"], "actor": signer, "outcome": "queued"},
        )
        if self._on_enqueue is not None:
            self._on_enqueue()
        return DispatchResult(activity["id"], inboxes)

    async def follow_remote(self, username: str, handle: str) -> tuple[Actor, Relationship]:
        """Follow a remote handle on behalf of a local user.

        Resolution failures propagate to the caller so they can be shown to
        the user.
        """
        if self._store.get_user(username) is None:
            raise NotFoundError(f"No local user {username}")

        actor = await self._resolver.resolve_handle(handle)
        if actor.is_local:
            raise ValueError(f"{handle} is a local account")

        await self.publish(FollowRequested(username, actor.iri))
        relationship = self._store.get_relationship(self._iris.actor(username), actor.iri)
        return actor, relationship


class DeliveryWorker:
    """Delivers queued tasks with signed POSTs, retrying with exponential backoff.

    Tasks for one inbox are delivered in creation order; a task waiting for
    its retry holds back the later tasks for the same inbox. Different
    inboxes are served concurrently.
    """

    def __init__(
        self,
        store: FederationStore,
        client: FederationClient,
        keys: KeyManager,
        max_attempts: int = 5,
        backoff_base: float = 30,
        backoff_cap: float = 14400,
        jitter: float = 0.1,
        permanent_failure_penalty: int = 2,
        concurrency: int = 8,
        poll_interval: float = 5,
        registry: CollectorRegistry | None = None,
        logger: logging.Logger | None = None,
    ):
        self._store = store
        self._client = client
        self._keys = keys
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.jitter = jitter
        self.permanent_failure_penalty = permanent_failure_penalty
        self._concurrency = concurrency
        self._poll_interval = poll_interval
        self._logger = logger or logging.getLogger(__name__)

        self._outcomes = Counter(
            "federation_deliveries",
            "Outbound delivery attempts by outcome",
            ("outcome",),
            registry=registry or CollectorRegistry(),
        )
        self._wakeup = asyncio.Event()
        self._stopping = False

    def compute_backoff(self, attempts: int) -> float:
        """Seconds to wait after the given number of failed attempts."""
        delay = self.backoff_base * 2 ** max(attempts - 1, 0)
        delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return min(delay, self.backoff_cap)

    def _fail(self, attempts: int, error: str) -> Retry | Dead:
        attempts = min(attempts, self.max_attempts)
        if attempts >= self.max_attempts:
            return Dead(f"giving up after {attempts} attempts: {error}", attempts)
        next_attempt_at = utcnow() + timedelta(seconds=self.compute_backoff(attempts))
        return Retry(next_attempt_at, error, attempts)

    async def _attempt(self, task: DeliveryTask) -> DeliveryOutcome:
        attempts = task.attempts + 1
        try:
            auth = self._keys.signer_for(task.signer)
        except SigningError as ex:
            return Dead(str(ex), attempts)

        try:
            response = await self._client.post_activity(task.inbox, task.payload, auth)
        except httpx.TimeoutException:
            return self._fail(attempts, "timeout")
        except httpx.HTTPError as ex:
            return self._fail(attempts, f"{type(ex).__name__}: {ex}")
        except FederationError as ex:
            return Dead(str(ex), attempts)

        status = response.status_code
        if 200 <= status < 300:
            return Delivered(status, attempts)
        if status == 410:
            return Dead("inbox is gone (410)", attempts)
        if status >= 500 or status in TRANSIENT_STATUSES:
            return self._fail(attempts, f"status {status}")
        # Permanent failures use up attempts faster
        return self._fail(task.attempts + self.permanent_failure_penalty, f"status {status}")

    async def deliver(self, task: DeliveryTask) -> DeliveryOutcome:
        """Attempt one delivery and record the result on the task."""
        self._logger.debug("Delivering %s to %s", task.activity_iri, task.inbox)
        outcome = await self._attempt(task)
        extra = {"activity": task.activity_iri, "actor": task.signer, "inbox": task.inbox}

        match outcome:
            case Delivered(attempts=attempts):
                self._store.record_delivery_attempt(task.id, DeliveryStatus.DELIVERED, attempts)
                self._outcomes.labels("delivered").inc()
                self._logger.info(
                    "Delivered %s to %s",
                    task.activity_iri,
                    task.inbox,
                    extra={**extra, "outcome": "delivered"},
                )
            case Retry(next_attempt_at=next_attempt_at, error=error, attempts=attempts):
                self._store.record_delivery_attempt(
                    task.id, DeliveryStatus.FAILED, attempts, next_attempt_at, error
                )
                self._outcomes.labels("retry").inc()
                self._logger.warning(
                    "Delivery of %s to %s failed (%s), retrying at %s",
                    task.activity_iri,
                    task.inbox,
                    error,
                    next_attempt_at.isoformat(),
                    extra={**extra, "outcome": "retry"},
                )
            case Dead(error=error, attempts=attempts):
                self._store.record_delivery_attempt(
                    task.id, DeliveryStatus.DEAD, attempts, last_error=error
                )
                self._outcomes.labels("dead").inc()
                self._logger.error(
                    "Delivery of %s to %s is dead: %s",
                    task.activity_iri,
                    task.inbox,
                    error,
                    extra={**extra, "outcome": "dead"},
                )
        return outcome

    async def _deliver_group(
        self, tasks: list[DeliveryTask], now: datetime, semaphore: asyncio.Semaphore
    ) -> list[DeliveryOutcome]:
        outcomes = []
        async with semaphore:
            for task in tasks:
                if task.next_attempt_at > now:
                    break
                outcome = await self.deliver(task)
                outcomes.append(outcome)
                if isinstance(outcome, Retry):
                    break
        return outcomes

    async def run_once(self, now: datetime | None = None) -> list[DeliveryOutcome]:
        """Deliver every task that is due, grouped by inbox."""
        now = now or utcnow()
        groups = self._store.due_deliveries(now)
        if not groups:
            return []

        semaphore = asyncio.Semaphore(self._concurrency)
        results = await asyncio.gather(
            *(self._deliver_group(tasks, now, semaphore) for tasks in groups.values())
        )
        return [outcome for outcomes in results for outcome in outcomes]

    def wake(self) -> None:
        self._wakeup.set()

    async def run(self) -> None:
        self._logger.info("Delivery worker started")
        self._stopping = False
        while not self._stopping:
            self._wakeup.clear()
            try:
                await self.run_once()
            except Exception:
                self._logger.exception("Delivery run failed")
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
        self._logger.info("Delivery worker stopped")

    def stop(self) -> None:
        self._stopping = True
        self._wakeup.set()

    def retry_dead(self, inbox: str | None = None) -> int:
        count = self._store.retry_dead_deliveries(inbox)
        if count:
            self.wake()
        return count

    def prune(self, older_than: datetime) -> int:
        return self._store.prune_deliveries(older_than)


__all__ = [
    "Dead",
    "Delivered",
    "DeliveryWorker",
    "DispatchResult",
    "OutboxDispatcher",
    "Retry",
]
