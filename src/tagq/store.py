"""Entry store and tag index.

Both structures are only touched from synchronous methods, so under the
asyncio event loop every upsert/delete (including the tag index
reconciliation it implies) is a single atomic step.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Iterable, Iterator
from typing import Any

from tagq.tags import is_tag_prefix
from tagq.types import MutationEntry, QueryEntry, Tag

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, QueryEntry | None], None]


class TagIndex:
    """Reverse index from tag to the cache keys currently carrying it."""

    def __init__(self) -> None:
        self._keys: dict[Tag, set[str]] = {}

    def add_tag(self, tag: Tag, key: str) -> None:
        self._keys.setdefault(tag, set()).add(key)

    def remove_tag(self, tag: Tag, key: str) -> None:
        keys = self._keys.get(tag)
        if keys is None:
            return
        keys.discard(key)
        if not keys:
            del self._keys[tag]

    def keys_for_tag(self, tag: Tag) -> frozenset[str]:
        """Keys carrying exactly this tag. Unknown tags yield an empty set."""
        return frozenset(self._keys.get(tag, ()))

    def keys_matching(self, tag: Tag) -> frozenset[str]:
        """Keys carrying this tag or any tag it is a prefix of.

        keys_matching(("Job",)) covers ("Job",), ("Job", "42") and
        ("Job", "LIST").
        """
        result: set[str] = set()
        for indexed, keys in self._keys.items():
            if is_tag_prefix(tag, indexed):
                result |= keys
        return frozenset(result)

    def tags(self) -> frozenset[Tag]:
        return frozenset(self._keys)

    def clear(self) -> None:
        self._keys.clear()

    def __len__(self) -> int:
        return len(self._keys)


class EntryStore:
    """Holds query entries, mutation entries and the tag index for them."""

    def __init__(self, on_change: ChangeListener | None = None) -> None:
        self._queries: dict[str, QueryEntry] = {}
        self._mutations: dict[int, MutationEntry] = {}
        self._index = TagIndex()
        self._on_change = on_change

    @property
    def tag_index(self) -> TagIndex:
        return self._index

    def set_listener(self, on_change: ChangeListener | None) -> None:
        self._on_change = on_change

    # -------------------------------------------------------------------------
    # Query entries
    # -------------------------------------------------------------------------

    def get(self, key: str) -> QueryEntry | None:
        return self._queries.get(key)

    def upsert(self, key: str, **patch: Any) -> QueryEntry:
        """Create or update the entry for ``key``.

        Creating an entry requires ``endpoint_name`` (and usually ``args``)
        in the patch. A changed ``tags`` set is reconciled into the tag index
        before this method returns.
        """
        old = self._queries.get(key)
        if old is None:
            if "endpoint_name" not in patch:
                raise KeyError(f"No entry for {key!r} and no endpoint_name given")
            new = QueryEntry(key=key, **patch)
        else:
            new = dataclasses.replace(old, **patch)

        old_tags = old.tags if old is not None else frozenset()
        if new.tags != old_tags:
            for t in old_tags - new.tags:
                self._index.remove_tag(t, key)
            for t in new.tags - old_tags:
                self._index.add_tag(t, key)

        self._queries[key] = new
        if old is None or _observable(old) != _observable(new):
            self._notify(key, new)
        return new

    def delete(self, key: str) -> QueryEntry | None:
        entry = self._queries.pop(key, None)
        if entry is None:
            return None
        for t in entry.tags:
            self._index.remove_tag(t, key)
        return entry

    def keys(self) -> list[str]:
        return list(self._queries)

    def __contains__(self, key: object) -> bool:
        return key in self._queries

    def __iter__(self) -> Iterator[QueryEntry]:
        return iter(list(self._queries.values()))

    def __len__(self) -> int:
        return len(self._queries)

    def keys_for_tags(self, tags: Iterable[Tag], *, exact: bool = False) -> set[str]:
        keys: set[str] = set()
        for t in tags:
            if exact:
                keys |= self._index.keys_for_tag(t)
            else:
                keys |= self._index.keys_matching(t)
        return keys

    # -------------------------------------------------------------------------
    # Mutation entries
    # -------------------------------------------------------------------------

    def get_mutation(self, request_id: int) -> MutationEntry | None:
        return self._mutations.get(request_id)

    def put_mutation(self, entry: MutationEntry) -> None:
        self._mutations[entry.request_id] = entry

    def delete_mutation(self, request_id: int) -> None:
        self._mutations.pop(request_id, None)

    def mutations(self) -> list[MutationEntry]:
        return list(self._mutations.values())

    # -------------------------------------------------------------------------

    def clear(self) -> list[str]:
        """Drop everything. Returns the query keys that were present."""
        keys = list(self._queries)
        self._queries.clear()
        self._mutations.clear()
        self._index.clear()
        return keys

    def _notify(self, key: str, entry: QueryEntry | None) -> None:
        if self._on_change is not None:
            self._on_change(key, entry)


def _observable(entry: QueryEntry) -> tuple[Any, ...]:
    """The part of an entry observers care about."""
    return (
        entry.status,
        id(entry.data),
        id(entry.error),
        entry.stale,
        entry.fulfilled_at,
    )
