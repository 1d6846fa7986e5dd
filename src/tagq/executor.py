"""Request executor: query fetches with deduplication and supersession."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from tagq.errors import RequestAborted, StaleResponseDiscarded, TransportFailure
from tagq.registry import EndpointRegistry, QueryEndpoint
from tagq.store import EntryStore
from tagq.transport import Transport, coerce_result
from tagq.types import FetchResult, QueryStatus, Request, TransportResult

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class _InFlight:
    request_id: int
    future: asyncio.Future[FetchResult[Any]]


class RequestExecutor:
    """Issues transport calls for queries.

    Concurrent fetches of one key share a single transport call. When a
    newer request for a key is started while an older one is in flight,
    the older response is discarded and its waiters receive the newer
    result instead.
    """

    def __init__(
        self,
        store: EntryStore,
        registry: EndpointRegistry,
        transport: Transport,
        *,
        on_settled: Callable[[str], None] | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._transport = transport
        self._on_settled = on_settled
        self._ids = itertools.count(1)
        self._in_flight: dict[str, _InFlight] = {}
        self._refetch_after_settle: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    async def fetch(
        self,
        endpoint_name: str,
        args: Any = None,
        *,
        force: bool = False,
    ) -> FetchResult[Any]:
        """Return cached data for (endpoint, args) or fetch it.

        Joins an in-flight request for the same key unless ``force`` is
        set, in which case a new request supersedes it. Raises
        TransportFailure if the request that wins fails.
        """
        endpoint = self._registry.query(endpoint_name)
        key = endpoint.cache_key(args)

        if not force:
            in_flight = self._in_flight.get(key)
            if in_flight is not None:
                return await asyncio.shield(in_flight.future)
            entry = self._store.get(key)
            if (
                entry is not None
                and entry.status is QueryStatus.FULFILLED
                and not entry.stale
            ):
                return FetchResult(data=entry.data, from_cache=True)

        future = self.start(endpoint, args, key)
        return await asyncio.shield(future)

    def start(
        self,
        endpoint: QueryEndpoint,
        args: Any,
        key: str | None = None,
    ) -> asyncio.Future[FetchResult[Any]]:
        """Start a new request for the key without waiting for it.

        Must be called from a running event loop. Errors raised while
        building the request propagate here, before the entry is touched.
        """
        key = key or endpoint.cache_key(args)
        request = endpoint.request(args)
        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        future: asyncio.Future[FetchResult[Any]] = loop.create_future()
        self._in_flight[key] = _InFlight(request_id, future)

        self._store.upsert(
            key,
            endpoint_name=endpoint.name,
            args=args,
            status=QueryStatus.PENDING,
            request_id=request_id,
            started_at=now_ms(),
        )

        task = loop.create_task(
            self._run(endpoint, args, request, key, request_id, future)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return future

    def refetch(self, key: str) -> asyncio.Future[FetchResult[Any]] | None:
        """Start a request for an existing entry, joining one in flight."""
        in_flight = self._in_flight.get(key)
        if in_flight is not None:
            return in_flight.future
        entry = self._store.get(key)
        if entry is None:
            return None
        endpoint = self._registry.query(entry.endpoint_name)
        return self.start(endpoint, entry.args, key)

    def refetch_when_settled(self, key: str) -> None:
        """Invalidate the key again once its in-flight request settles."""
        if key in self._in_flight:
            self._refetch_after_settle.add(key)

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def reset(self) -> None:
        """Forget in-flight requests; their responses will be discarded."""
        self._in_flight.clear()
        self._refetch_after_settle.clear()

    async def close(self) -> None:
        """Cancel running transport calls."""
        self.reset()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _run(
        self,
        endpoint: QueryEndpoint,
        args: Any,
        request: Request,
        key: str,
        request_id: int,
        future: asyncio.Future[FetchResult[Any]],
    ) -> None:
        try:
            result = coerce_result(await self._transport(request))
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            raise
        except Exception as e:
            result = TransportResult(error=e)

        try:
            self._check_current(key, request_id)
        except StaleResponseDiscarded as e:
            logger.debug("Discarding response: %s", e)
            self._follow_latest(key, future)
            return

        del self._in_flight[key]
        if result.ok:
            self._fulfill(endpoint, args, key, result.data, future)
        else:
            logger.info("%s failed: %r", key, result.error)
            self._store.upsert(
                key,
                endpoint_name=endpoint.name,
                args=args,
                status=QueryStatus.REJECTED,
                error=result.error,
                request_id=None,
            )
            _fail(
                future,
                TransportFailure(result.error, endpoint_name=endpoint.name, key=key),
            )
        self._after_settle(key)

    def _fulfill(
        self,
        endpoint: QueryEndpoint,
        args: Any,
        key: str,
        payload: Any,
        future: asyncio.Future[FetchResult[Any]],
    ) -> None:
        try:
            data = endpoint.transform(payload, args)
            tags = endpoint.provided_tags(args, data)
        except Exception as e:
            logger.exception("%s: response handling failed", key)
            self._store.upsert(
                key,
                endpoint_name=endpoint.name,
                args=args,
                status=QueryStatus.REJECTED,
                error=e,
                request_id=None,
            )
            _fail(future, e)
            return

        self._store.upsert(
            key,
            endpoint_name=endpoint.name,
            args=args,
            status=QueryStatus.FULFILLED,
            data=data,
            error=None,
            tags=tags,
            fulfilled_at=now_ms(),
            request_id=None,
            stale=False,
        )
        if not future.done():
            future.set_result(FetchResult(data=data, from_cache=False))

    def _check_current(self, key: str, request_id: int) -> None:
        current = self._in_flight.get(key)
        if current is None or current.request_id != request_id:
            raise StaleResponseDiscarded(key, request_id)

    def _follow_latest(
        self, key: str, future: asyncio.Future[FetchResult[Any]]
    ) -> None:
        """Resolve a superseded request's waiters with the winning result."""
        current = self._in_flight.get(key)
        if current is not None:
            current.future.add_done_callback(lambda src: _copy(src, future))
            return

        entry = self._store.get(key)
        if entry is None:
            _fail(future, RequestAborted(key))
        elif entry.status is QueryStatus.FULFILLED:
            future.set_result(FetchResult(data=entry.data, from_cache=False))
        elif entry.status is QueryStatus.REJECTED:
            _fail(
                future,
                TransportFailure(entry.error, endpoint_name=entry.endpoint_name, key=key),
            )
        else:
            _fail(future, RequestAborted(key))

    def _after_settle(self, key: str) -> None:
        if key in self._refetch_after_settle:
            self._refetch_after_settle.discard(key)
            entry = self._store.upsert(key, stale=True)
            if entry.subscriber_count > 0:
                self.refetch(key)
        if self._on_settled is not None:
            self._on_settled(key)


def _fail(future: asyncio.Future[Any], error: BaseException) -> None:
    if future.done():
        return
    future.set_exception(error)
    # Background requests may have no waiter; mark the exception retrieved
    # to avoid "Future exception was never retrieved" warnings.
    future.exception()


def _copy(src: asyncio.Future[Any], dst: asyncio.Future[Any]) -> None:
    if dst.done():
        return
    if src.cancelled():
        dst.cancel()
        return
    error = src.exception()
    if error is not None:
        _fail(dst, error)
    else:
        dst.set_result(src.result())
