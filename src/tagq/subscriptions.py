"""Subscription manager: observer ref-counting, refetch policy, eviction."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from tagq.duration import parse_duration
from tagq.executor import RequestExecutor, now_ms
from tagq.registry import EndpointRegistry, QueryEndpoint
from tagq.store import EntryStore
from tagq.types import Duration, FetchResult, QueryEntry, QueryState, QueryStatus

logger = logging.getLogger(__name__)

StateListener = Callable[[QueryState], None]
RefetchPolicy = bool | Duration


class Subscription:
    """Handle for one observer of a cache key."""

    __slots__ = ("_active", "_manager", "_on_change", "args", "endpoint_name", "key")

    def __init__(
        self,
        manager: SubscriptionManager,
        endpoint_name: str,
        args: Any,
        key: str,
        on_change: StateListener | None,
    ) -> None:
        self._manager = manager
        self._on_change = on_change
        self._active = True
        self.endpoint_name = endpoint_name
        self.args = args
        self.key = key

    @property
    def active(self) -> bool:
        return self._active

    @property
    def state(self) -> QueryState:
        """Current state of the entry, read synchronously."""
        return QueryState.from_entry(self._manager.store.get(self.key))

    def unsubscribe(self) -> None:
        """Stop observing. Calling it twice is a no-op."""
        if self._active:
            self._active = False
            self._manager.release(self)

    async def refetch(self) -> FetchResult[Any]:
        """Force a new request for this key, superseding one in flight."""
        return await self._manager.requests.fetch(
            self.endpoint_name, self.args, force=True
        )

    def _deliver(self, state: QueryState) -> None:
        if self._active and self._on_change is not None:
            self._on_change(state)

    def __repr__(self) -> str:
        status = "active" if self._active else "closed"
        return f"Subscription({self.key}, {status})"


class SubscriptionManager:
    """Counts observers per key and decides when to fetch and when to evict."""

    def __init__(
        self,
        store: EntryStore,
        registry: EndpointRegistry,
        requests: RequestExecutor,
        *,
        keep_unused_data_for: int = 60_000,
        refetch_on_mount_or_arg_change: RefetchPolicy = False,
        refetch_on_focus: bool = False,
        refetch_on_reconnect: bool = False,
    ) -> None:
        self.store = store
        self.requests = requests
        self._registry = registry
        self._keep_unused_data_for = keep_unused_data_for
        self._refetch_on_mount = refetch_on_mount_or_arg_change
        self._refetch_on_focus = refetch_on_focus
        self._refetch_on_reconnect = refetch_on_reconnect
        self._observers: dict[str, list[Subscription]] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def subscribe(
        self,
        endpoint_name: str,
        args: Any = None,
        on_change: StateListener | None = None,
    ) -> Subscription:
        """Register an observer; start a fetch if the entry needs one.

        Never blocks: a fetch, if needed, runs in the background and the
        observer is told about each state change.
        """
        endpoint = self._registry.query(endpoint_name)
        key = endpoint.cache_key(args)
        self._cancel_eviction(key)

        entry = self.store.get(key)
        count = (entry.subscriber_count if entry is not None else 0) + 1
        entry = self.store.upsert(
            key, endpoint_name=endpoint.name, args=args, subscriber_count=count
        )

        subscription = Subscription(self, endpoint.name, args, key, on_change)
        self._observers.setdefault(key, []).append(subscription)

        if self._needs_fetch(endpoint, entry, first=count == 1):
            try:
                self.requests.start(endpoint, args, key)
            except Exception:
                subscription.unsubscribe()
                raise
        return subscription

    def release(self, subscription: Subscription) -> None:
        key = subscription.key
        observers = self._observers.get(key)
        if observers is not None and subscription in observers:
            observers.remove(subscription)
            if not observers:
                del self._observers[key]
        else:
            return

        entry = self.store.get(key)
        if entry is None:
            return
        count = max(entry.subscriber_count - 1, 0)
        self.store.upsert(key, subscriber_count=count)
        if count == 0:
            self._schedule_eviction(key)

    def subscriber_count(self, key: str) -> int:
        entry = self.store.get(key)
        return entry.subscriber_count if entry is not None else 0

    def dispatch(self, key: str, entry: QueryEntry | None) -> None:
        """Deliver the entry's new state to every observer of the key."""
        observers = self._observers.get(key)
        if not observers:
            return
        state = QueryState.from_entry(entry)
        for subscription in list(observers):
            try:
                subscription._deliver(state)
            except Exception:
                logger.exception("Observer of %s failed", key)

    def on_settled(self, key: str) -> None:
        """Schedule eviction for entries fetched without any observer."""
        entry = self.store.get(key)
        if entry is not None and entry.subscriber_count == 0:
            if key not in self._timers:
                self._schedule_eviction(key)

    def refetch_on_focus(self) -> list[str]:
        return self._refetch_observed(
            lambda endpoint: _pick(endpoint.refetch_on_focus, self._refetch_on_focus)
        )

    def refetch_on_reconnect(self) -> list[str]:
        return self._refetch_observed(
            lambda endpoint: _pick(
                endpoint.refetch_on_reconnect, self._refetch_on_reconnect
            )
        )

    def reset(self) -> None:
        """Cancel timers and detach every observer after telling it."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        observers, self._observers = self._observers, {}
        cleared = QueryState(status=QueryStatus.UNINITIALIZED)
        for subscriptions in observers.values():
            for subscription in subscriptions:
                try:
                    subscription._deliver(cleared)
                except Exception:
                    logger.exception("Observer of %s failed", subscription.key)
                subscription._active = False

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _needs_fetch(
        self, endpoint: QueryEndpoint, entry: QueryEntry, *, first: bool
    ) -> bool:
        if self.requests.in_flight(entry.key):
            return False
        if entry.status is QueryStatus.UNINITIALIZED or entry.stale:
            return True
        if not first:
            return False

        policy = _pick(endpoint.refetch_on_mount_or_arg_change, self._refetch_on_mount)
        if policy is True:
            return True
        if policy is False or entry.fulfilled_at is None:
            return False
        return now_ms() - entry.fulfilled_at >= parse_duration(policy)

    def _refetch_observed(self, enabled: Callable[[QueryEndpoint], bool]) -> list[str]:
        keys: list[str] = []
        for entry in self.store:
            if entry.subscriber_count == 0:
                continue
            if enabled(self._registry.query(entry.endpoint_name)):
                self.requests.refetch(entry.key)
                keys.append(entry.key)
        return keys

    def _schedule_eviction(self, key: str) -> None:
        self._cancel_eviction(key)
        entry = self.store.get(key)
        if entry is None:
            return
        endpoint = self._registry.query(entry.endpoint_name)
        delay = _pick(endpoint.keep_unused_ms, self._keep_unused_data_for)
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay / 1000, self._evict, key)

    def _cancel_eviction(self, key: str) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _evict(self, key: str) -> None:
        self._timers.pop(key, None)
        entry = self.store.get(key)
        if entry is None or entry.subscriber_count > 0:
            return
        self.store.delete(key)
        self._observers.pop(key, None)
        logger.debug("Evicted %s", key)


def _pick(override: Any, default: Any) -> Any:
    return default if override is None else override
