"""Mutation executor and tag-driven invalidation."""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
from collections.abc import Callable, Iterable
from typing import Any

from tagq.errors import TransportFailure
from tagq.executor import RequestExecutor, now_ms
from tagq.registry import EndpointRegistry
from tagq.store import EntryStore
from tagq.tags import TagLike, as_tags
from tagq.transport import Transport, coerce_result
from tagq.types import MutationEntry, MutationOutcome, QueryStatus, TransportResult

logger = logging.getLogger(__name__)

MutationListener = Callable[[MutationEntry], None]


class MutationExecutor:
    """Runs mutations and propagates their invalidations.

    Invalidation happens only after the transport reported success, and
    then for the whole tag set at once.
    """

    def __init__(
        self,
        store: EntryStore,
        registry: EndpointRegistry,
        transport: Transport,
        requests: RequestExecutor,
        *,
        grace_ms: int = 60_000,
    ) -> None:
        self._store = store
        self._registry = registry
        self._transport = transport
        self._requests = requests
        self._grace_ms = grace_ms
        self._ids = itertools.count(1)
        self._timers: dict[int, asyncio.TimerHandle] = {}

    async def mutate(self, endpoint_name: str, args: Any = None) -> Any:
        """Run the mutation and return its data, raising TransportFailure."""
        outcome = await self.run(endpoint_name, args)
        if not outcome.ok:
            raise TransportFailure(outcome.error, endpoint_name=endpoint_name)
        return outcome.data

    async def run(
        self,
        endpoint_name: str,
        args: Any = None,
        on_change: MutationListener | None = None,
    ) -> MutationOutcome[Any]:
        """Run the mutation and return ``MutationOutcome(data)`` or ``(error)``."""
        endpoint = self._registry.mutation(endpoint_name)
        request = endpoint.request(args)
        entry = MutationEntry(
            request_id=next(self._ids),
            endpoint_name=endpoint_name,
            args=args,
            started_at=now_ms(),
        )
        self._record(entry, on_change)

        try:
            result = coerce_result(await self._transport(request))
        except asyncio.CancelledError:
            self._settle(
                entry, on_change, status=QueryStatus.REJECTED, error="cancelled"
            )
            raise
        except Exception as e:
            result = TransportResult(error=e)

        if not result.ok:
            logger.info("%s failed: %r", endpoint_name, result.error)
            self._settle(
                entry, on_change, status=QueryStatus.REJECTED, error=result.error
            )
            return MutationOutcome(error=result.error, request_id=entry.request_id)

        try:
            data = endpoint.transform(result.data, args)
            tags = endpoint.invalidated_tags(args, data)
        except Exception as e:
            self._settle(entry, on_change, status=QueryStatus.REJECTED, error=e)
            raise

        self._settle(
            entry,
            on_change,
            status=QueryStatus.FULFILLED,
            data=data,
            invalidated=tags,
        )
        self.invalidate(tags)
        return MutationOutcome(data=data, request_id=entry.request_id)

    def invalidate(
        self,
        tags: Iterable[TagLike],
        *,
        exact: bool = False,
    ) -> set[str]:
        """Mark every entry matching ``tags`` stale and refetch observed ones.

        By default (exact=False), invalidating a tag also invalidates
        entries carrying more specific tags: ("Job",) hits ("Job", "42").
        Returns the affected cache keys.
        """
        keys = self._store.keys_for_tags(as_tags(tags), exact=exact)
        for key in sorted(keys):
            entry = self._store.get(key)
            if entry is None:
                continue
            entry = self._store.upsert(key, stale=True)
            if self._requests.in_flight(key):
                # The response in flight may predate this invalidation.
                self._requests.refetch_when_settled(key)
            elif entry.subscriber_count > 0:
                self._requests.refetch(key)
        if keys:
            logger.debug("Invalidated %d entries: %s", len(keys), sorted(keys))
        return keys

    def reset(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _record(self, entry: MutationEntry, on_change: MutationListener | None) -> None:
        self._store.put_mutation(entry)
        if on_change is not None:
            try:
                on_change(entry)
            except Exception:
                logger.exception("Mutation observer failed for %s", entry.endpoint_name)

    def _settle(
        self,
        entry: MutationEntry,
        on_change: MutationListener | None,
        **changes: Any,
    ) -> None:
        settled = dataclasses.replace(entry, settled_at=now_ms(), **changes)
        self._record(settled, on_change)
        loop = asyncio.get_running_loop()
        self._timers[entry.request_id] = loop.call_later(
            self._grace_ms / 1000, self._discard, entry.request_id
        )

    def _discard(self, request_id: int) -> None:
        self._timers.pop(request_id, None)
        self._store.delete_mutation(request_id)
