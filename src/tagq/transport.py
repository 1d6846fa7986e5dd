"""Transport protocol and the httpx-based HTTP transport."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from tagq.types import Request, TransportResult

HeaderHook = Callable[[dict[str, str], Request], "dict[str, str] | None"]


@runtime_checkable
class Transport(Protocol):
    """Async callable that performs one request."""

    async def __call__(self, request: Request) -> TransportResult:
        """Perform the request and report its payload or error."""
        ...


def coerce_result(result: Any) -> TransportResult:
    """Accept a TransportResult or a ``{"data": ...}``/``{"error": ...}`` mapping."""
    if isinstance(result, TransportResult):
        return result
    if isinstance(result, Mapping) and ("data" in result or "error" in result):
        return TransportResult(data=result.get("data"), error=result.get("error"))
    raise TypeError(
        f"Transport must return TransportResult or a data/error mapping, "
        f"got {type(result).__name__}"
    )


def bearer_token(get_token: Callable[[], str | None]) -> HeaderHook:
    """Build a ``prepare_headers`` hook that injects ``Authorization: Bearer``.

    The token is read on every request, so a login/logout is picked up
    without rebuilding the transport.
    """

    def prepare(headers: dict[str, str], request: Request) -> dict[str, str]:
        token = get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    return prepare


class HttpTransport:
    """Transport that performs requests with an ``httpx.AsyncClient``."""

    def __init__(
        self,
        base_url: str,
        *,
        prepare_headers: HeaderHook | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        client: Any = None,  # httpx.AsyncClient
    ) -> None:
        import httpx

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Accept": "application/json",
                **(headers or {}),
            },
            timeout=timeout,
        )
        self._prepare_headers = prepare_headers

    async def __call__(self, request: Request) -> TransportResult:
        import httpx

        headers = dict(request.headers)
        if self._prepare_headers is not None:
            headers = self._prepare_headers(headers, request) or headers

        params = {
            key: value
            for key, value in (request.params or {}).items()
            if value is not None
        }
        try:
            response = await self._client.request(
                request.method,
                request.url,
                params=params or None,
                json=request.body,
                headers=headers,
            )
        except httpx.HTTPError as e:
            return TransportResult(error={"status": "FETCH_ERROR", "error": str(e)})

        payload = _decode(response)
        if not response.is_success:
            return TransportResult(
                error={"status": response.status_code, "data": payload}
            )
        return TransportResult(data=payload)

    async def aclose(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()


def _decode(response: Any) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


__all__ = ["HttpTransport", "Transport", "bearer_token", "coerce_result"]
