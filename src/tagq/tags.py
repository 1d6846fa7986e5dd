"""Tag construction, parsing and matching."""

from collections.abc import Callable, Iterable
from typing import Any

from tagq.types import Tag

_ESCAPE_MAP = {"\\": "\\\\", ":": "\\:"}
_UNESCAPE_MAP = {"\\\\": "\\", "\\:": ":"}

TagLike = Tag | tuple[Any, ...] | str


def tag(type_: str, id: Any = None) -> Tag:
    """Build a tag for a resource type, optionally narrowed to one item.

    tag("Job")        # ("Job",)       - the whole collection
    tag("Job", 42)    # ("Job", "42")  - a single job
    tag("Job", "LIST")
    """
    if id is None:
        return Tag((type_,))
    return Tag((type_, str(id)))


def as_tag(value: TagLike) -> Tag:
    """Normalize a tuple or "Type:id" string into a Tag."""
    if isinstance(value, str):
        return deserialize_tag(value)
    if isinstance(value, tuple):
        if not value:
            raise ValueError("Tag must have at least one part")
        return Tag(tuple(str(part) for part in value))
    raise TypeError(f"Expected tag tuple or string, got {type(value).__name__}")


def as_tags(values: Iterable[TagLike] | None) -> frozenset[Tag]:
    if not values:
        return frozenset()
    return frozenset(as_tag(v) for v in values)


def define_tags(
    definitions: dict[str, Callable[..., tuple[Any, ...]]],
) -> dict[str, Callable[..., Tag]]:
    """
    Define the tags of a resource family in one place.

    Example:
        tags = define_tags({
            "job": lambda id: ("Job", id),
            "jobs": lambda: ("Job", "LIST"),
            "job_applications": lambda job_id: ("JobApplication", job_id),
        })

        tags["job"](42)   # Tag: ("Job", "42")
        tags["jobs"]()    # Tag: ("Job", "LIST")
    """
    result: dict[str, Callable[..., Tag]] = {}
    for name, fn in definitions.items():

        def make_tag(*args: Any, _fn: Callable[..., tuple[Any, ...]] = fn) -> Tag:
            return as_tag(tuple(_fn(*args)))

        result[name] = make_tag
    return result


def serialize_tag(tag: Tag) -> str:
    """Serialize tag tuple to its "Type:id" string form."""

    def escape(part: str) -> str:
        result = part
        for char, escaped in _ESCAPE_MAP.items():
            result = result.replace(char, escaped)
        return result

    return ":".join(escape(str(p)) for p in tag)


def deserialize_tag(serialized: str) -> Tag:
    """Parse a "Type:id" string back to a tag tuple."""
    if not serialized:
        raise ValueError("Tag string must not be empty")
    parts: list[str] = []
    current = ""
    i = 0

    while i < len(serialized):
        if serialized[i] == "\\":
            escaped = serialized[i : i + 2]
            if escaped in _UNESCAPE_MAP:
                current += _UNESCAPE_MAP[escaped]
                i += 2
                continue
            current += serialized[i]
            i += 1
        elif serialized[i] == ":":
            parts.append(current)
            current = ""
            i += 1
        else:
            current += serialized[i]
            i += 1

    parts.append(current)
    return Tag(tuple(parts))


def is_tag_prefix(parent: Tag, child: Tag) -> bool:
    """Check if parent is a prefix of child (for invalidation)."""
    if len(parent) > len(child):
        return False
    return child[: len(parent)] == parent
