"""Tests for the request executor."""

import asyncio
from typing import Any

import pytest

from tagq import (
    ConfigurationError,
    EndpointRegistry,
    EntryStore,
    QueryEndpoint,
    QueryStatus,
    Request,
    RequestAborted,
    RequestExecutor,
    TransportFailure,
    TransportResult,
)


class GatedTransport:
    """Transport whose calls stay pending until the test answers them."""

    def __init__(self) -> None:
        self.pending: list[tuple[Request, asyncio.Future[Any]]] = []

    async def __call__(self, request: Request) -> TransportResult:
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self.pending.append((request, future))
        return await future

    def respond(self, index: int, result: TransportResult) -> None:
        self.pending[index][1].set_result(result)


def _registry() -> EndpointRegistry:
    return EndpointRegistry(
        [
            QueryEndpoint(
                name="getJobs",
                build_request=lambda filters: Request(url="", params=filters),
                provides=lambda args, resp: [
                    *[("Job", job["id"]) for job in resp.get("jobs", [])],
                    ("Job", "LIST"),
                ],
            ),
            QueryEndpoint(
                name="getJobAnalytics",
                build_request=lambda _: "/analytics",
                provides=["JobAnalytics"],
                transform_response=lambda data, args: data["analytics"],
            ),
        ]
    )


def _executor(transport: Any) -> tuple[RequestExecutor, EntryStore]:
    store = EntryStore()
    return RequestExecutor(store, _registry(), transport), store


KEY = 'getJobs({"page":1})'


class TestDeduplication:
    """Concurrent identical fetches share one transport call."""

    async def test_three_concurrent_callers_one_call(self) -> None:
        calls = 0

        async def transport(request: Request) -> TransportResult:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return TransportResult(data={"jobs": [{"id": 1}]})

        executor, _ = _executor(transport)
        results = await asyncio.gather(
            *(executor.fetch("getJobs", {"page": 1}) for _ in range(3))
        )

        assert calls == 1
        assert all(r.data == {"jobs": [{"id": 1}]} for r in results)
        assert all(r.data is results[0].data for r in results)

    async def test_second_fetch_served_from_cache(self) -> None:
        calls = 0

        async def transport(request: Request) -> TransportResult:
            nonlocal calls
            calls += 1
            return TransportResult(data={"jobs": []})

        executor, _ = _executor(transport)
        first = await executor.fetch("getJobs", {"page": 1})
        second = await executor.fetch("getJobs", {"page": 1})

        assert calls == 1
        assert first.from_cache is False
        assert second.from_cache is True

    async def test_reordered_args_share_entry(self) -> None:
        calls = 0

        async def transport(request: Request) -> TransportResult:
            nonlocal calls
            calls += 1
            return TransportResult(data={"jobs": []})

        executor, store = _executor(transport)
        await executor.fetch("getJobs", {"page": 1, "status": ["open"]})
        await executor.fetch("getJobs", {"status": ["open"], "page": 1})
        assert calls == 1
        assert len(store) == 1

    async def test_different_args_are_separate(self) -> None:
        calls = 0

        async def transport(request: Request) -> TransportResult:
            nonlocal calls
            calls += 1
            return TransportResult(data={"jobs": []})

        executor, _ = _executor(transport)
        await executor.fetch("getJobs", {"page": 1})
        await executor.fetch("getJobs", {"page": 2})
        assert calls == 2

    async def test_cancelled_caller_does_not_abort_shared_fetch(self) -> None:
        gated = GatedTransport()
        executor, _ = _executor(gated)

        first = asyncio.create_task(executor.fetch("getJobs", {"page": 1}))
        second = asyncio.create_task(executor.fetch("getJobs", {"page": 1}))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        first.cancel()
        gated.respond(0, TransportResult(data={"jobs": []}))

        assert (await second).data == {"jobs": []}
        assert len(gated.pending) == 1
        with pytest.raises(asyncio.CancelledError):
            await first


class TestRaceResolution:
    """The last-issued request for a key wins."""

    async def test_late_first_response_is_discarded(self) -> None:
        gated = GatedTransport()
        executor, store = _executor(gated)

        first = asyncio.create_task(executor.fetch("getJobs", {"page": 1}))
        await asyncio.sleep(0)
        second = asyncio.create_task(
            executor.fetch("getJobs", {"page": 1}, force=True)
        )
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert len(gated.pending) == 2

        gated.respond(1, TransportResult(data={"jobs": [], "n": 2}))
        await asyncio.sleep(0)
        gated.respond(0, TransportResult(data={"jobs": [], "n": 1}))

        assert (await second).data["n"] == 2
        assert (await first).data["n"] == 2
        assert store.get(KEY).data["n"] == 2
        assert store.get(KEY).status is QueryStatus.FULFILLED

    async def test_early_superseded_response_waits_for_newer(self) -> None:
        gated = GatedTransport()
        executor, store = _executor(gated)

        first = asyncio.create_task(executor.fetch("getJobs", {"page": 1}))
        await asyncio.sleep(0)
        second = asyncio.create_task(
            executor.fetch("getJobs", {"page": 1}, force=True)
        )
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        gated.respond(0, TransportResult(data={"jobs": [], "n": 1}))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        # The superseded response never reaches the store.
        assert store.get(KEY).status is QueryStatus.PENDING
        assert store.get(KEY).data is None
        assert not first.done()

        gated.respond(1, TransportResult(data={"jobs": [], "n": 2}))
        assert (await first).data["n"] == 2
        assert (await second).data["n"] == 2

    async def test_reset_discards_in_flight_response(self) -> None:
        gated = GatedTransport()
        executor, store = _executor(gated)

        task = asyncio.create_task(executor.fetch("getJobs", {"page": 1}))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        executor.reset()
        store.clear()
        gated.respond(0, TransportResult(data={"jobs": []}))

        with pytest.raises(RequestAborted):
            await task
        assert store.get(KEY) is None


class TestFailures:
    """Transport failures are stored without losing cached data."""

    async def test_failure_keeps_last_data(self) -> None:
        results = [
            TransportResult(data={"jobs": [{"id": 1}]}),
            TransportResult(error={"status": 500, "data": "boom"}),
        ]

        async def transport(request: Request) -> TransportResult:
            return results.pop(0)

        executor, store = _executor(transport)
        await executor.fetch("getJobs", {"page": 1})

        with pytest.raises(TransportFailure) as exc_info:
            await executor.fetch("getJobs", {"page": 1}, force=True)

        assert exc_info.value.error == {"status": 500, "data": "boom"}
        assert exc_info.value.key == KEY
        entry = store.get(KEY)
        assert entry.status is QueryStatus.REJECTED
        assert entry.data == {"jobs": [{"id": 1}]}
        assert entry.error == {"status": 500, "data": "boom"}
        assert ("Job", "1") in entry.tags

    async def test_success_clears_error(self) -> None:
        results = [
            TransportResult(error="offline"),
            TransportResult(data={"jobs": []}),
        ]

        async def transport(request: Request) -> TransportResult:
            return results.pop(0)

        executor, store = _executor(transport)
        with pytest.raises(TransportFailure):
            await executor.fetch("getJobs", {"page": 1})
        await executor.fetch("getJobs", {"page": 1})

        entry = store.get(KEY)
        assert entry.status is QueryStatus.FULFILLED
        assert entry.error is None

    async def test_raising_transport_is_a_failure(self) -> None:
        error = ConnectionError("reset by peer")

        async def transport(request: Request) -> TransportResult:
            raise error

        executor, store = _executor(transport)
        with pytest.raises(TransportFailure) as exc_info:
            await executor.fetch("getJobs", {"page": 1})
        assert exc_info.value.error is error
        assert store.get(KEY).error is error

    async def test_concurrent_waiters_all_see_failure(self) -> None:
        calls = 0

        async def transport(request: Request) -> TransportResult:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return TransportResult(error="down")

        executor, _ = _executor(transport)
        results = await asyncio.gather(
            *(executor.fetch("getJobs", {"page": 1}) for _ in range(3)),
            return_exceptions=True,
        )
        assert calls == 1
        assert all(isinstance(r, TransportFailure) for r in results)

    async def test_response_handling_error_propagates(self) -> None:
        async def transport(request: Request) -> TransportResult:
            return TransportResult(data={"unexpected": True})

        executor, store = _executor(transport)
        with pytest.raises(KeyError):
            await executor.fetch("getJobAnalytics")
        assert store.get("getJobAnalytics(null)").status is QueryStatus.REJECTED


class TestRequestBuilding:
    """Errors while building a request reach the caller untouched."""

    @staticmethod
    def _setup(build_request: Any) -> tuple[RequestExecutor, EntryStore, list]:
        calls: list[Request] = []

        async def transport(request: Request) -> TransportResult:
            calls.append(request)
            return TransportResult(data=None)

        store = EntryStore()
        registry = EndpointRegistry(
            [QueryEndpoint(name="getJob", build_request=build_request)]
        )
        return RequestExecutor(store, registry, transport), store, calls

    async def test_bad_builder_result_raises_configuration_error(self) -> None:
        executor, store, calls = self._setup(lambda id: 42)

        with pytest.raises(ConfigurationError, match="Request or URL"):
            await executor.fetch("getJob", "1")

        assert calls == []
        assert store.get('getJob("1")') is None
        assert not executor.in_flight('getJob("1")')

    async def test_builder_exception_propagates(self) -> None:
        executor, store, calls = self._setup(lambda args: args["id"])

        with pytest.raises(KeyError):
            await executor.fetch("getJob", {})

        assert calls == []
        assert len(store) == 0


class TestEntryUpdates:
    """Successful fetches populate entries and tags."""

    async def test_tags_computed_from_payload(self) -> None:
        async def transport(request: Request) -> TransportResult:
            return TransportResult(data={"jobs": [{"id": 1}, {"id": 2}]})

        executor, store = _executor(transport)
        await executor.fetch("getJobs", {"page": 1})

        entry = store.get(KEY)
        assert entry.tags == {("Job", "1"), ("Job", "2"), ("Job", "LIST")}
        assert store.tag_index.keys_for_tag(("Job", "2")) == {KEY}
        assert entry.fulfilled_at is not None
        assert entry.request_id is None

    async def test_refetch_replaces_tag_set(self) -> None:
        payloads = [{"jobs": [{"id": 1}]}, {"jobs": [{"id": 2}]}]

        async def transport(request: Request) -> TransportResult:
            return TransportResult(data=payloads.pop(0))

        executor, store = _executor(transport)
        await executor.fetch("getJobs", {"page": 1})
        await executor.fetch("getJobs", {"page": 1}, force=True)

        assert store.tag_index.keys_for_tag(("Job", "1")) == frozenset()
        assert store.tag_index.keys_for_tag(("Job", "2")) == {KEY}

    async def test_transform_response(self) -> None:
        async def transport(request: Request) -> TransportResult:
            return TransportResult(data={"analytics": {"totalJobs": 3}})

        executor, _ = _executor(transport)
        result = await executor.fetch("getJobAnalytics")
        assert result.data == {"totalJobs": 3}

    async def test_mapping_result_accepted(self) -> None:
        async def transport(request: Request) -> dict:
            return {"data": {"jobs": []}}

        executor, _ = _executor(transport)
        assert (await executor.fetch("getJobs", {"page": 1})).data == {"jobs": []}

    async def test_stale_entry_is_refetched(self) -> None:
        calls = 0

        async def transport(request: Request) -> TransportResult:
            nonlocal calls
            calls += 1
            return TransportResult(data={"jobs": []})

        executor, store = _executor(transport)
        await executor.fetch("getJobs", {"page": 1})
        store.upsert(KEY, stale=True)
        result = await executor.fetch("getJobs", {"page": 1})

        assert calls == 2
        assert result.from_cache is False
        assert store.get(KEY).stale is False

    async def test_request_passed_to_transport(self) -> None:
        seen: list[Request] = []

        async def transport(request: Request) -> TransportResult:
            seen.append(request)
            return TransportResult(data={"jobs": []})

        executor, _ = _executor(transport)
        await executor.fetch("getJobs", {"page": 1})
        assert seen[0].endpoint_name == "getJobs"
        assert seen[0].params == {"page": 1}
