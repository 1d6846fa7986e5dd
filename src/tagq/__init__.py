"""tagq - Tag-indexed query cache with declarative invalidation."""

import logging

from tagq.api import CacheNamespace, EndpointHandle, NamespaceRegistry, create_namespace

# Key codec
from tagq.codec import canonicalize, encode_key

# Duration parsing
from tagq.duration import parse_duration

# Errors
from tagq.errors import (
    ConfigurationError,
    InvalidArgumentShape,
    RequestAborted,
    StaleResponseDiscarded,
    TagqError,
    TransportFailure,
)

# Engine components
from tagq.executor import RequestExecutor
from tagq.mutations import MutationExecutor
from tagq.registry import EndpointRegistry, MutationEndpoint, QueryEndpoint
from tagq.store import EntryStore, TagIndex
from tagq.subscriptions import Subscription, SubscriptionManager
from tagq.tags import as_tag, define_tags, deserialize_tag, serialize_tag, tag

# Transports
from tagq.transport import HttpTransport, Transport, bearer_token

# Core types
from tagq.types import (
    Duration,
    FetchResult,
    MutationEntry,
    MutationOutcome,
    QueryEntry,
    QueryState,
    QueryStatus,
    Request,
    Tag,
    TransportResult,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    "CacheNamespace",
    "ConfigurationError",
    "Duration",
    "EndpointHandle",
    "EndpointRegistry",
    "EntryStore",
    "FetchResult",
    "HttpTransport",
    "InvalidArgumentShape",
    "MutationEndpoint",
    "MutationEntry",
    "MutationExecutor",
    "MutationOutcome",
    "NamespaceRegistry",
    "QueryEndpoint",
    "QueryEntry",
    "QueryState",
    "QueryStatus",
    "Request",
    "RequestAborted",
    "RequestExecutor",
    "StaleResponseDiscarded",
    "Subscription",
    "SubscriptionManager",
    "Tag",
    "TagIndex",
    "TagqError",
    "Transport",
    "TransportFailure",
    "TransportResult",
    "as_tag",
    "bearer_token",
    "canonicalize",
    "create_namespace",
    "define_tags",
    "deserialize_tag",
    "encode_key",
    "parse_duration",
    "serialize_tag",
    "tag",
]
