"""Endpoint declarations and the registry that holds them."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, Union

from tagq.codec import encode_key
from tagq.duration import parse_duration
from tagq.errors import ConfigurationError
from tagq.tags import TagLike, as_tags
from tagq.types import Duration, Request, Tag

RequestBuilder = Callable[[Any], Union[Request, str]]
TagsSpec = Union[Iterable[TagLike], Callable[[Any, Any], Iterable[TagLike]]]
ResponseTransform = Callable[[Any, Any], Any]


def _resolve_tags(spec: TagsSpec, args: Any, response: Any) -> frozenset[Tag]:
    if callable(spec):
        return as_tags(list(spec(args, response) or ()))
    return as_tags(spec)


def _parse_option(name: str, option: str, value: Duration) -> int:
    try:
        return parse_duration(value)
    except ValueError as e:
        raise ConfigurationError(f"{name}: invalid {option} {value!r}") from e


def _build(builder: RequestBuilder, name: str, args: Any) -> Request:
    built = builder(args)
    if isinstance(built, str):
        return Request(url=built, endpoint_name=name, args=args)
    if not isinstance(built, Request):
        raise ConfigurationError(
            f"{name}: build_request must return a Request or URL string, "
            f"got {type(built).__name__}"
        )
    return Request(
        url=built.url,
        method=built.method,
        params=built.params,
        body=built.body,
        headers=dict(built.headers),
        endpoint_name=name,
        args=args,
    )


@dataclass(frozen=True, slots=True)
class QueryEndpoint:
    """Declaration of a read operation.

    ``provides`` is a static list of tags or ``(args, response) -> tags``,
    evaluated once per successful fetch. ``None`` policy fields fall back
    to the namespace defaults.
    """

    name: str
    build_request: RequestBuilder
    provides: TagsSpec = ()
    transform_response: ResponseTransform | None = None
    refetch_on_mount_or_arg_change: bool | Duration | None = None
    refetch_on_focus: bool | None = None
    refetch_on_reconnect: bool | None = None
    keep_unused_data_for: Duration | None = None
    serialize_args: Callable[[Any], str] | None = None
    keep_unused_ms: int | None = field(default=None, init=False, repr=False)

    kind = "query"

    def __post_init__(self) -> None:
        policy = self.refetch_on_mount_or_arg_change
        if policy is not None and not isinstance(policy, bool):
            _parse_option(self.name, "refetch_on_mount_or_arg_change", policy)
        if self.keep_unused_data_for is not None:
            object.__setattr__(
                self,
                "keep_unused_ms",
                _parse_option(
                    self.name, "keep_unused_data_for", self.keep_unused_data_for
                ),
            )

    def cache_key(self, args: Any) -> str:
        return encode_key(self.name, args, self.serialize_args)

    def request(self, args: Any) -> Request:
        return _build(self.build_request, self.name, args)

    def transform(self, data: Any, args: Any) -> Any:
        if self.transform_response is None:
            return data
        return self.transform_response(data, args)

    def provided_tags(self, args: Any, response: Any) -> frozenset[Tag]:
        return _resolve_tags(self.provides, args, response)


@dataclass(frozen=True, slots=True)
class MutationEndpoint:
    """Declaration of a write operation.

    ``invalidates`` is a static list of tags or ``(args, response) -> tags``,
    evaluated only after the mutation succeeded.
    """

    name: str
    build_request: RequestBuilder
    invalidates: TagsSpec = ()
    transform_response: ResponseTransform | None = None

    kind = "mutation"

    def request(self, args: Any) -> Request:
        return _build(self.build_request, self.name, args)

    def transform(self, data: Any, args: Any) -> Any:
        if self.transform_response is None:
            return data
        return self.transform_response(data, args)

    def invalidated_tags(self, args: Any, response: Any) -> frozenset[Tag]:
        return _resolve_tags(self.invalidates, args, response)


Endpoint = Union[QueryEndpoint, MutationEndpoint]


class EndpointRegistry:
    """Name -> declaration map, frozen once the namespace starts serving."""

    def __init__(self, endpoints: Iterable[Endpoint] = ()) -> None:
        self._endpoints: dict[str, Endpoint] = {}
        self._frozen = False
        for endpoint in endpoints:
            self.register(endpoint)

    def register(self, endpoint: Endpoint) -> Endpoint:
        if self._frozen:
            raise ConfigurationError(
                f"Cannot register {endpoint.name!r}: registry is frozen"
            )
        if not endpoint.name:
            raise ConfigurationError("Endpoint name must not be empty")
        if endpoint.name in self._endpoints:
            raise ConfigurationError(f"Duplicate endpoint {endpoint.name!r}")
        self._endpoints[endpoint.name] = endpoint
        return endpoint

    def freeze(self) -> None:
        self._frozen = True

    def get(self, name: str) -> Endpoint:
        try:
            return self._endpoints[name]
        except KeyError:
            raise ConfigurationError(f"Unknown endpoint {name!r}") from None

    def query(self, name: str) -> QueryEndpoint:
        endpoint = self.get(name)
        if not isinstance(endpoint, QueryEndpoint):
            raise ConfigurationError(f"{name!r} is a mutation, not a query")
        return endpoint

    def mutation(self, name: str) -> MutationEndpoint:
        endpoint = self.get(name)
        if not isinstance(endpoint, MutationEndpoint):
            raise ConfigurationError(f"{name!r} is a query, not a mutation")
        return endpoint

    def __contains__(self, name: object) -> bool:
        return name in self._endpoints

    def __iter__(self) -> Iterator[Endpoint]:
        return iter(self._endpoints.values())

    def __len__(self) -> int:
        return len(self._endpoints)


__all__ = ["EndpointRegistry", "MutationEndpoint", "QueryEndpoint"]
