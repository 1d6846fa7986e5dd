"""Exception types raised by tagq."""

from __future__ import annotations

from typing import Any


class TagqError(Exception):
    """Base class for all tagq errors."""


class InvalidArgumentShape(TagqError, TypeError):
    """Query arguments cannot be encoded into a cache key."""


class ConfigurationError(TagqError, LookupError):
    """Duplicate, missing or misused endpoint/namespace declaration."""


class TransportFailure(TagqError):
    """The transport reported an error for a query or mutation.

    ``error`` carries the transport's own detail unchanged.
    """

    def __init__(
        self,
        error: Any,
        *,
        endpoint_name: str,
        key: str | None = None,
    ) -> None:
        super().__init__(f"{endpoint_name} failed: {error!r}")
        self.error = error
        self.endpoint_name = endpoint_name
        self.key = key


class RequestAborted(TagqError):
    """The cache was reset while the awaited request was in flight."""

    def __init__(self, key: str) -> None:
        super().__init__(f"request for {key} aborted by reset")
        self.key = key


class StaleResponseDiscarded(TagqError):
    """A response arrived for a request that has since been superseded.

    Internal signal only; never surfaced to consumers.
    """

    def __init__(self, key: str, request_id: int) -> None:
        super().__init__(f"response for {key} (request {request_id}) superseded")
        self.key = key
        self.request_id = request_id


__all__ = [
    "ConfigurationError",
    "InvalidArgumentShape",
    "RequestAborted",
    "StaleResponseDiscarded",
    "TagqError",
    "TransportFailure",
]
