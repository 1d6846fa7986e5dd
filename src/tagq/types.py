"""Core types for the tagq query cache."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, NewType, TypeVar

T = TypeVar("T")

# Branded tag type - compile-time enforcement only
if TYPE_CHECKING:
    Tag = NewType("Tag", tuple[str, ...])
else:
    Tag = tuple

# Duration type alias
Duration = str | int | timedelta  # "30s", "5m", "2h", "1d", milliseconds or timedelta


class QueryStatus(str, Enum):
    """Lifecycle status of a query or mutation entry."""

    UNINITIALIZED = "uninitialized"
    PENDING = "pending"
    FULFILLED = "fulfilled"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class QueryEntry:
    """A cached query result with metadata.

    ``data`` survives re-fetches and failures; only a successful response
    replaces it.
    """

    key: str
    endpoint_name: str
    args: Any
    status: QueryStatus = QueryStatus.UNINITIALIZED
    data: Any = None
    error: Any = None
    tags: frozenset[Tag] = frozenset()
    fulfilled_at: int | None = None  # Unix timestamp ms
    started_at: int | None = None
    request_id: int | None = None  # in-flight request, if any
    stale: bool = False
    subscriber_count: int = 0


@dataclass(frozen=True, slots=True)
class MutationEntry:
    """Record of a single mutation call."""

    request_id: int
    endpoint_name: str
    args: Any
    status: QueryStatus = QueryStatus.PENDING
    data: Any = None
    error: Any = None
    invalidated: frozenset[Tag] = frozenset()
    started_at: int | None = None
    settled_at: int | None = None


@dataclass(frozen=True, slots=True)
class QueryState:
    """Snapshot delivered to query observers."""

    status: QueryStatus
    data: Any = None
    error: Any = None
    is_stale: bool = False
    fulfilled_at: int | None = None

    @classmethod
    def from_entry(cls, entry: QueryEntry | None) -> QueryState:
        if entry is None:
            return cls(status=QueryStatus.UNINITIALIZED)
        return cls(
            status=entry.status,
            data=entry.data,
            error=entry.error,
            is_stale=entry.stale,
            fulfilled_at=entry.fulfilled_at,
        )

    @property
    def is_loading(self) -> bool:
        """True while the first request for the key is in flight."""
        return self.status is QueryStatus.PENDING and self.fulfilled_at is None

    @property
    def is_fetching(self) -> bool:
        return self.status is QueryStatus.PENDING


@dataclass(frozen=True, slots=True)
class FetchResult(Generic[T]):
    """Result of a query fetch."""

    data: T
    from_cache: bool


@dataclass(frozen=True, slots=True)
class MutationOutcome(Generic[T]):
    """Result of ``run_mutation``: exactly one of data/error is meaningful."""

    data: T | None = None
    error: Any = None
    request_id: int | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class Request:
    """Wire-level request description handed to the transport."""

    url: str = ""
    method: str = "GET"
    params: dict[str, Any] | None = None
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    endpoint_name: str = ""
    args: Any = None


@dataclass(frozen=True, slots=True)
class TransportResult:
    """What a transport returns: a payload or an error detail."""

    data: Any = None
    error: Any = None

    @property
    def ok(self) -> bool:
        return self.error is None
