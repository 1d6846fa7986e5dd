"""CacheNamespace - one query cache per resource family.

Provides:
- CacheNamespace: entry store, tag index, executors and subscriptions for
  one family of endpoints (jobs, users, contracts, ...)
- @ns.query / @ns.mutation: decorators declaring endpoints
- NamespaceRegistry: process-wide lookup of namespaces by name
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Iterable, Iterator
from typing import Any

from tagq.duration import parse_duration
from tagq.errors import ConfigurationError
from tagq.executor import RequestExecutor, now_ms
from tagq.mutations import MutationExecutor, MutationListener
from tagq.registry import (
    Endpoint,
    EndpointRegistry,
    MutationEndpoint,
    QueryEndpoint,
    RequestBuilder,
    ResponseTransform,
    TagsSpec,
)
from tagq.store import EntryStore
from tagq.subscriptions import StateListener, Subscription, SubscriptionManager
from tagq.tags import TagLike
from tagq.transport import Transport
from tagq.types import (
    Duration,
    FetchResult,
    MutationEntry,
    MutationOutcome,
    QueryState,
    QueryStatus,
)

logger = logging.getLogger(__name__)


class EndpointHandle:
    """An endpoint declared on a namespace, callable like the operation itself."""

    def __init__(self, namespace: CacheNamespace, endpoint: Endpoint) -> None:
        self._namespace = namespace
        self._endpoint = endpoint

    @property
    def name(self) -> str:
        return self._endpoint.name

    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    async def __call__(self, args: Any = None) -> Any:
        if isinstance(self._endpoint, QueryEndpoint):
            result = await self._namespace.fetch(self.name, args)
            return result.data
        return await self._namespace.mutate(self.name, args)

    def subscribe(
        self, args: Any = None, on_change: StateListener | None = None
    ) -> Subscription:
        return self._namespace.subscribe_query(self.name, args, on_change)

    async def run(
        self, args: Any = None, on_change: MutationListener | None = None
    ) -> MutationOutcome[Any]:
        return await self._namespace.run_mutation(self.name, args, on_change)

    def state(self, args: Any = None) -> QueryState:
        return self._namespace.get_state(self.name, args)

    def cache_key(self, args: Any = None) -> str:
        if not isinstance(self._endpoint, QueryEndpoint):
            raise ConfigurationError(f"{self.name!r} is a mutation, not a query")
        return self._endpoint.cache_key(args)

    def __repr__(self) -> str:
        return f"<{self._endpoint.kind} {self._namespace.name}.{self.name}>"


class CacheNamespace:
    """A tag-indexed query cache for one family of endpoints.

    Usage:
        jobs = CacheNamespace("jobs", transport=HttpTransport(API_URL + "/jobs"))

        @jobs.query(provides=lambda args, resp: [tag("Job", "LIST")])
        def get_jobs(filters):
            return Request(url="", params=filters)

        @jobs.mutation(invalidates=lambda args, resp: [tag("Job", args["id"])])
        def update_job_status(args):
            return Request(url=f"/{args['id']}/status", method="PATCH",
                           body={"status": args["status"]})

        sub = get_jobs.subscribe({"page": 1}, on_change=render)
        await update_job_status({"id": "42", "status": "paused"})
    """

    def __init__(
        self,
        name: str,
        *,
        transport: Transport,
        endpoints: Iterable[Endpoint] = (),
        keep_unused_data_for: Duration = "60s",
        refetch_on_mount_or_arg_change: bool | Duration = False,
        refetch_on_focus: bool = False,
        refetch_on_reconnect: bool = False,
        mutation_grace: Duration = "60s",
    ) -> None:
        if not name:
            raise ValueError("namespace name must not be empty")
        if not isinstance(refetch_on_mount_or_arg_change, bool):
            parse_duration(refetch_on_mount_or_arg_change)

        self._name = name
        self._transport = transport
        self._store = EntryStore()
        self._registry = EndpointRegistry(endpoints)
        self._requests = RequestExecutor(
            self._store,
            self._registry,
            transport,
            on_settled=self._on_settled,
        )
        self._subscriptions = SubscriptionManager(
            self._store,
            self._registry,
            self._requests,
            keep_unused_data_for=parse_duration(keep_unused_data_for),
            refetch_on_mount_or_arg_change=refetch_on_mount_or_arg_change,
            refetch_on_focus=refetch_on_focus,
            refetch_on_reconnect=refetch_on_reconnect,
        )
        self._mutations = MutationExecutor(
            self._store,
            self._registry,
            transport,
            self._requests,
            grace_ms=parse_duration(mutation_grace),
        )
        self._store.set_listener(self._subscriptions.dispatch)

    @property
    def name(self) -> str:
        return self._name

    @property
    def store(self) -> EntryStore:
        return self._store

    @property
    def registry(self) -> EndpointRegistry:
        return self._registry

    # -------------------------------------------------------------------------
    # Declaration
    # -------------------------------------------------------------------------

    def add_endpoint(self, endpoint: Endpoint) -> EndpointHandle:
        self._registry.register(endpoint)
        return EndpointHandle(self, endpoint)

    def endpoint(self, name: str) -> EndpointHandle:
        return EndpointHandle(self, self._registry.get(name))

    def query(
        self,
        *,
        name: str | None = None,
        provides: TagsSpec = (),
        transform_response: ResponseTransform | None = None,
        refetch_on_mount_or_arg_change: bool | Duration | None = None,
        refetch_on_focus: bool | None = None,
        refetch_on_reconnect: bool | None = None,
        keep_unused_data_for: Duration | None = None,
        serialize_args: Callable[[Any], str] | None = None,
    ) -> Callable[[RequestBuilder], EndpointHandle]:
        """Decorator declaring a query whose function builds the request."""

        def decorator(fn: RequestBuilder) -> EndpointHandle:
            handle = self.add_endpoint(
                QueryEndpoint(
                    name=name or fn.__name__,
                    build_request=fn,
                    provides=provides,
                    transform_response=transform_response,
                    refetch_on_mount_or_arg_change=refetch_on_mount_or_arg_change,
                    refetch_on_focus=refetch_on_focus,
                    refetch_on_reconnect=refetch_on_reconnect,
                    keep_unused_data_for=keep_unused_data_for,
                    serialize_args=serialize_args,
                )
            )
            return functools.update_wrapper(handle, fn)

        return decorator

    def mutation(
        self,
        *,
        name: str | None = None,
        invalidates: TagsSpec = (),
        transform_response: ResponseTransform | None = None,
    ) -> Callable[[RequestBuilder], EndpointHandle]:
        """Decorator declaring a mutation whose function builds the request."""

        def decorator(fn: RequestBuilder) -> EndpointHandle:
            handle = self.add_endpoint(
                MutationEndpoint(
                    name=name or fn.__name__,
                    build_request=fn,
                    invalidates=invalidates,
                    transform_response=transform_response,
                )
            )
            return functools.update_wrapper(handle, fn)

        return decorator

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def subscribe_query(
        self,
        endpoint_name: str,
        args: Any = None,
        on_change: StateListener | None = None,
    ) -> Subscription:
        """Observe (endpoint, args); ``on_change`` gets every state transition."""
        self._registry.freeze()
        return self._subscriptions.subscribe(endpoint_name, args, on_change)

    async def fetch(
        self,
        endpoint_name: str,
        args: Any = None,
        *,
        force: bool = False,
    ) -> FetchResult[Any]:
        """Fetch without subscribing. Raises TransportFailure on error."""
        self._registry.freeze()
        return await self._requests.fetch(endpoint_name, args, force=force)

    def prefetch(
        self,
        endpoint_name: str,
        args: Any = None,
        *,
        force: bool = False,
    ) -> None:
        """Start loading (endpoint, args) in the background if not cached."""
        self._registry.freeze()
        endpoint = self._registry.query(endpoint_name)
        key = endpoint.cache_key(args)
        entry = self._store.get(key)
        if self._requests.in_flight(key) and not force:
            return
        if (
            not force
            and entry is not None
            and entry.status is QueryStatus.FULFILLED
            and not entry.stale
        ):
            return
        self._requests.start(endpoint, args, key)

    def get_state(self, endpoint_name: str, args: Any = None) -> QueryState:
        key = self._registry.query(endpoint_name).cache_key(args)
        return QueryState.from_entry(self._store.get(key))

    def set_query_data(
        self, endpoint_name: str, args: Any, data: Any
    ) -> QueryState:
        """Write data for (endpoint, args) as if it had just been fetched."""
        endpoint = self._registry.query(endpoint_name)
        key = endpoint.cache_key(args)
        entry = self._store.upsert(
            key,
            endpoint_name=endpoint.name,
            args=args,
            status=QueryStatus.FULFILLED,
            data=data,
            error=None,
            tags=endpoint.provided_tags(args, data),
            fulfilled_at=now_ms(),
            stale=False,
        )
        self._on_settled(key)
        return QueryState.from_entry(entry)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def mutate(self, endpoint_name: str, args: Any = None) -> Any:
        """Run a mutation and return its data. Raises TransportFailure."""
        self._registry.freeze()
        return await self._mutations.mutate(endpoint_name, args)

    async def run_mutation(
        self,
        endpoint_name: str,
        args: Any = None,
        on_change: MutationListener | None = None,
    ) -> MutationOutcome[Any]:
        """Run a mutation; transport failures come back as ``outcome.error``."""
        self._registry.freeze()
        return await self._mutations.run(endpoint_name, args, on_change)

    def get_mutation(self, request_id: int) -> MutationEntry | None:
        return self._store.get_mutation(request_id)

    def invalidate(self, tags: Iterable[TagLike], *, exact: bool = False) -> set[str]:
        """Invalidate cache entries by tags.

        Usage:
            ns.invalidate([tag("Job", "42")])
            ns.invalidate(["Job"])  # every Job entry
        """
        return self._mutations.invalidate(tags, exact=exact)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def on_focus(self) -> list[str]:
        """Refetch observed entries whose endpoints refetch on focus."""
        return self._subscriptions.refetch_on_focus()

    def on_reconnect(self) -> list[str]:
        """Refetch observed entries whose endpoints refetch on reconnect."""
        return self._subscriptions.refetch_on_reconnect()

    def reset(self) -> None:
        """Drop all cached state, e.g. after logout."""
        self._requests.reset()
        self._mutations.reset()
        self._subscriptions.reset()
        dropped = self._store.clear()
        logger.debug("Reset %s: dropped %d entries", self._name, len(dropped))

    async def close(self) -> None:
        self.reset()
        await self._requests.close()
        aclose = getattr(self._transport, "aclose", None)
        if aclose is not None:
            await aclose()

    def _on_settled(self, key: str) -> None:
        self._subscriptions.on_settled(key)

    def __repr__(self) -> str:
        return f"CacheNamespace({self._name!r}, endpoints={len(self._registry)})"


class NamespaceRegistry:
    """Holds namespaces by name for the lifetime of the process."""

    def __init__(self) -> None:
        self._namespaces: dict[str, CacheNamespace] = {}

    def register(self, namespace: CacheNamespace) -> CacheNamespace:
        if namespace.name in self._namespaces:
            raise ConfigurationError(f"Duplicate namespace {namespace.name!r}")
        self._namespaces[namespace.name] = namespace
        return namespace

    def get(self, name: str) -> CacheNamespace:
        try:
            return self._namespaces[name]
        except KeyError:
            raise ConfigurationError(f"Unknown namespace {name!r}") from None

    def names(self) -> list[str]:
        return list(self._namespaces)

    def reset_all(self) -> None:
        for namespace in self._namespaces.values():
            namespace.reset()

    async def aclose_all(self) -> None:
        namespaces = list(self._namespaces.values())
        self._namespaces.clear()
        for namespace in namespaces:
            await namespace.close()

    def __contains__(self, name: object) -> bool:
        return name in self._namespaces

    def __iter__(self) -> Iterator[CacheNamespace]:
        return iter(list(self._namespaces.values()))

    def __len__(self) -> int:
        return len(self._namespaces)


def create_namespace(
    name: str,
    *,
    transport: Transport,
    registry: NamespaceRegistry | None = None,
    **options: Any,
) -> CacheNamespace:
    """Create a namespace and register it on ``registry`` when given.

    Args:
        name: Namespace name, unique within the registry
        transport: Async callable performing requests
        registry: Registry to add the namespace to
        **options: Passed to CacheNamespace

    Returns:
        The new namespace
    """
    namespace = CacheNamespace(name, transport=transport, **options)
    if registry is not None:
        registry.register(namespace)
    return namespace


__all__ = [
    "CacheNamespace",
    "EndpointHandle",
    "NamespaceRegistry",
    "create_namespace",
]
