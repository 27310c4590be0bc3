"""Argument canonicalization and record key construction.

Key conventions:
    root field with args        -> user({"id":"u1"})
    page record (root parent)   -> @.posts({"after":null,"first":2})
    page record (entity parent) -> @.User:u1.posts({"first":2})
    page edge record            -> @.posts({"first":2}).edges.0
    connection identity         -> @connection.posts({"category":"tech"})
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Mapping

from graph_cache.core.constants import (
    CONNECTION_PREFIX,
    EDGE_INFIX,
    PAGE_PREFIX,
    REF_FIELD,
    ROOT_ID,
)


def _json_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def stable_stringify(value: Any) -> str:
    """Serialize *value* as JSON with keys sorted at every depth.

    The result is independent of input key order, which makes it usable
    as part of a record key.
    """
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    )


def storage_key(field_name: str, args: Mapping[str, Any]) -> str:
    """Field key on a record snapshot: bare name without args, ``name({...})`` with args."""
    if not args:
        return field_name
    return f"{field_name}({stable_stringify(dict(args))})"


def page_key(field_name: str, parent_id: str, args: Mapping[str, Any]) -> str:
    """Key of one concrete page record (all arguments, pagination included)."""
    prefix = PAGE_PREFIX if parent_id == ROOT_ID else f"{PAGE_PREFIX}{parent_id}."
    return f"{prefix}{field_name}({stable_stringify(dict(args))})"


def connection_key(key_part: str, parent_id: str, identity_args: Mapping[str, Any]) -> str:
    """Key of a logical connection (identity arguments only)."""
    prefix = CONNECTION_PREFIX if parent_id == ROOT_ID else f"{CONNECTION_PREFIX}{parent_id}."
    return f"{prefix}{key_part}({stable_stringify(dict(identity_args))})"


def edge_key(page: str, index: int) -> str:
    return f"{page}{EDGE_INFIX}{index}"


def synthetic_edge_key(connection: str, node_key: str) -> str:
    """Edge key for an edge added by an optimistic or committed connection edit."""
    return f"{connection}{EDGE_INFIX}{node_key}"


def split_args(
    args: Mapping[str, Any],
    pagination_args: Iterable[str],
    filters: Iterable[str] | None = None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split *args* into ``(identity_args, pagination_args)``.

    With explicit *filters* only those names count as identity; otherwise
    every non-pagination argument does.
    """
    pagination = frozenset(pagination_args)
    window = {name: value for name, value in args.items() if name in pagination}
    if filters is not None:
        wanted = list(filters)
        identity = {name: args[name] for name in wanted if name in args}
    else:
        identity = {name: value for name, value in args.items() if name not in pagination}
    return identity, window


def is_leading_window(args: Mapping[str, Any]) -> bool:
    """True when *args* select the first page of a list: no cursor, offset or later page."""
    if any(args.get(name) is not None for name in ("after", "before")):
        return False
    return not args.get("offset") and args.get("page") in (None, 0, 1)


def parse_key_args(key: str) -> dict[str, Any] | None:
    """Recover the argument object serialized at the end of a page or connection key."""
    if not key.endswith("})"):
        return None
    start = key.rfind("({")
    while start >= 0:
        try:
            value = json.loads(key[start + 1 : -1])
        except ValueError:
            start = key.rfind("({", 0, start)
            continue
        return value if isinstance(value, dict) else None
    return None


def make_ref(key: str) -> dict[str, str]:
    return {REF_FIELD: key}


def is_ref(value: Any) -> bool:
    return isinstance(value, dict) and isinstance(value.get(REF_FIELD), str)


def parse_entity_key(key: str) -> tuple[str | None, str | None]:
    """Split ``Type:id`` into its parts; non-entity keys yield ``(None, None)``."""
    if key.startswith(ROOT_ID) or ":" not in key:
        return None, None
    typename, _, entity_id = key.partition(":")
    return (typename or None), (entity_id or None)
