"""Tests for package exports."""

import logging


def test_public_api_importable() -> None:
    """Test that the public API is exported from the package root."""
    from tagq import (
        CacheNamespace,
        EndpointHandle,
        HttpTransport,
        MutationEndpoint,
        NamespaceRegistry,
        QueryEndpoint,
        QueryState,
        TransportFailure,
        create_namespace,
        tag,
    )

    # Just verify they're importable
    assert CacheNamespace is not None
    assert EndpointHandle is not None
    assert HttpTransport is not None
    assert MutationEndpoint is not None
    assert NamespaceRegistry is not None
    assert QueryEndpoint is not None
    assert QueryState is not None
    assert TransportFailure is not None
    assert create_namespace is not None
    assert tag is not None


def test_all_names_resolve() -> None:
    import tagq

    for name in tagq.__all__:
        assert hasattr(tagq, name), name


def test_library_logger_is_silent_by_default() -> None:
    import tagq  # noqa: F401

    handlers = logging.getLogger("tagq").handlers
    assert any(isinstance(h, logging.NullHandler) for h in handlers)
