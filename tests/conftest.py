"""Shared pytest fixtures."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from tagq import (
    CacheNamespace,
    MutationEndpoint,
    QueryEndpoint,
    Request,
    TransportResult,
    define_tags,
)


class UserServer:
    """In-memory stand-in for the users API, used as a transport."""

    def __init__(self) -> None:
        self.users: dict[str, dict[str, Any]] = {
            f"u{i}": {"id": f"u{i}", "status": "pending"} for i in range(1, 6)
        }
        self.calls: list[Request] = []
        self.fail_with: Any = None

    def count(self, endpoint_name: str) -> int:
        return sum(1 for r in self.calls if r.endpoint_name == endpoint_name)

    async def __call__(self, request: Request) -> TransportResult:
        self.calls.append(request)
        await asyncio.sleep(0)
        if self.fail_with is not None:
            return TransportResult(error=self.fail_with)

        if request.endpoint_name == "getUsers":
            status = (request.params or {}).get("status")
            users = [
                dict(u)
                for u in self.users.values()
                if status is None or u["status"] == status
            ]
            return TransportResult(data=users)
        if request.endpoint_name == "getUser":
            user = self.users.get(request.url.strip("/"))
            if user is None:
                return TransportResult(error={"status": 404, "data": None})
            return TransportResult(data=dict(user))
        if request.endpoint_name == "updateUserStatus":
            user_id = request.url.strip("/").split("/")[0]
            self.users[user_id]["status"] = request.body["status"]
            return TransportResult(data=dict(self.users[user_id]))
        return TransportResult(error={"status": 404, "data": request.url})


def user_endpoints() -> list[QueryEndpoint | MutationEndpoint]:
    return [
        QueryEndpoint(
            name="getUsers",
            build_request=lambda filters: Request(url="", params=filters),
            provides=lambda args, users: [
                *[("User", u["id"]) for u in users],
                ("User", "LIST"),
            ],
        ),
        QueryEndpoint(
            name="getUser",
            build_request=lambda id: f"/{id}",
            provides=lambda id, user: [("User", id)],
        ),
        QueryEndpoint(
            name="getUserAnalytics",
            build_request=lambda _: "/analytics",
            provides=["UserAnalytics"],
        ),
        MutationEndpoint(
            name="updateUserStatus",
            build_request=lambda args: Request(
                url=f"/{args['id']}/status",
                method="PATCH",
                body={"status": args["status"]},
            ),
            invalidates=lambda args, user: [("User", args["id"]), "User:LIST"],
        ),
    ]


@pytest.fixture
def server() -> UserServer:
    """Create a fresh user server for each test."""
    return UserServer()


@pytest.fixture
def users(server: UserServer) -> CacheNamespace:
    """Create a users namespace with a short eviction grace period."""
    return CacheNamespace(
        "users",
        transport=server,
        endpoints=user_endpoints(),
        keep_unused_data_for="20ms",
        mutation_grace="20ms",
    )


@pytest.fixture
def settle() -> Callable[[], Awaitable[None]]:
    """Let pending background tasks run to completion."""

    async def run() -> None:
        for _ in range(10):
            await asyncio.sleep(0)

    return run


@pytest.fixture
def tags() -> dict:
    """Create common tag definitions for tests."""
    return define_tags(
        {
            "user": lambda id: ("User", id),
            "users": lambda: ("User", "LIST"),
            "job": lambda id: ("Job", id),
        }
    )
