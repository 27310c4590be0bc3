"""Connection composer.

Read-time aggregation of the page records mounted for one connection
identity. Pages are concatenated and deduplicated on every ``get_view``;
the composer never writes to the Graph or the layer stack.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Protocol, runtime_checkable

from graph_cache.core.constants import (
    BACKWARD_ARGS,
    CONNECTION_EDGES,
    CONNECTION_NODE,
    CONNECTION_PAGE_INFO,
    DEFAULT_PAGINATION_ARGS,
    REF_FIELD,
)
from graph_cache.core.enums import CompositionMode, DedupeStrategy
from graph_cache.core.optimistic import ConnectionEdge, ConnectionOp, apply_connection_ops
from graph_cache.core.params import is_ref, parse_key_args, split_args, stable_stringify

logger = logging.getLogger(__name__)


@runtime_checkable
class RecordSource(Protocol):
    """Resolved record access used by composers (the layer stack)."""

    def resolve(self, key: str) -> dict[str, Any] | None: ...

    def connection_ops(self, connection: str) -> list[ConnectionOp]: ...


@dataclass(frozen=True)
class ConnectionView:
    """Composed state of one connection."""

    key: str
    edges: list[ConnectionEdge]
    page_info: dict[str, Any] | None
    fields: dict[str, Any]
    pages: list[str]


@dataclass
class _PageSlot:
    key: str
    seq: int
    window: dict[str, Any] = field(default_factory=dict)

    @property
    def backward(self) -> bool:
        return any(self.window.get(name) is not None for name in BACKWARD_ARGS)

    @property
    def number(self) -> Any:
        for name in ("page", "offset"):
            value = self.window.get(name)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return value
        return None


class ConnectionComposer:
    """Composes the pages of one connection identity.

    Args:
        key: Connection identity key.
        source: Resolved record access (Graph plus optimistic layers).
        mode: ``infinite`` concatenates every mounted page, ``page`` shows
            only the active page.
        dedupe: Edge attribute used to drop later duplicates.
        pagination_args: Argument names that select a page window.
        filters: Explicit identity argument names, when configured.
        on_change: Called with the connection key when mounts change.
    """

    def __init__(
        self,
        key: str,
        source: RecordSource,
        *,
        mode: CompositionMode = CompositionMode.INFINITE,
        dedupe: DedupeStrategy = DedupeStrategy.CURSOR,
        pagination_args: Iterable[str] = DEFAULT_PAGINATION_ARGS,
        filters: Iterable[str] | None = None,
        on_change: Callable[[str], None] | None = None,
    ) -> None:
        self._key = key
        self._source = source
        self._mode = CompositionMode(mode)
        self._dedupe = DedupeStrategy(dedupe)
        self._pagination_args = frozenset(pagination_args)
        self._filters = tuple(filters) if filters is not None else None
        self._identity = parse_key_args(key)
        self._on_change = on_change
        self._pages: dict[str, _PageSlot] = {}
        self._active: str | None = None
        self._seq = 0

    @property
    def key(self) -> str:
        return self._key

    @property
    def mode(self) -> CompositionMode:
        return self._mode

    @property
    def dedupe(self) -> DedupeStrategy:
        return self._dedupe

    @property
    def active_page(self) -> str | None:
        return self._active

    @property
    def pages(self) -> list[str]:
        """Mounted page keys in composition order."""
        return [slot.key for slot in self._ordered()]

    def has_page(self, page_key: str) -> bool:
        return page_key in self._pages

    # --- mounts ---

    def add_page(self, page_key: str, args: dict[str, Any] | None = None) -> bool:
        """Mount *page_key*; *args* defaults to the arguments serialized in the key.

        Pages whose identity arguments differ from this connection's are
        ignored. In page mode the added page becomes the active page.
        """
        if args is None:
            args = parse_key_args(page_key) or {}
        identity, window = split_args(args, self._pagination_args, self._filters)
        if self._identity is not None and stable_stringify(identity) != stable_stringify(self._identity):
            logger.warning("Page %s does not belong to connection %s; ignored", page_key, self._key)
            return False

        changed = False
        if page_key not in self._pages:
            self._seq += 1
            self._pages[page_key] = _PageSlot(key=page_key, seq=self._seq, window=window)
            changed = True
        if self._mode is CompositionMode.PAGE and self._active != page_key:
            self._active = page_key
            changed = True
        if changed:
            self._notify()
        return True

    def remove_page(self, page_key: str) -> bool:
        """Unmount *page_key*; removing an absent page is a logged no-op."""
        if self._pages.pop(page_key, None) is None:
            logger.warning("Remove ignored: page %s is not mounted on %s", page_key, self._key)
            return False
        if self._active == page_key:
            self._active = None
        self._notify()
        return True

    def set_active_page(self, page_key: str | None) -> bool:
        """Select the page shown in page mode (None shows no page)."""
        if page_key is not None and page_key not in self._pages:
            logger.warning("Activation ignored: page %s is not mounted on %s", page_key, self._key)
            return False
        if self._active != page_key:
            self._active = page_key
            self._notify()
        return True

    def clear(self) -> None:
        if self._pages:
            self._pages.clear()
            self._active = None
            self._notify()

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self._key)

    # --- ordering ---

    def _ordered(self) -> list[_PageSlot]:
        slots = sorted(self._pages.values(), key=lambda slot: slot.seq)
        backward = [slot for slot in slots if slot.backward]
        forward = [slot for slot in slots if not slot.backward]

        if forward and all(slot.number is not None for slot in forward):
            forward.sort(key=lambda slot: slot.number)
        else:
            forward = self._chain(forward)

        # each backward page was requested before everything loaded so far
        return list(reversed(backward)) + forward

    def _chain(self, slots: list[_PageSlot]) -> list[_PageSlot]:
        """Order forward pages so each ``after`` cursor follows the page ending with it."""
        heads = [slot for slot in slots if slot.window.get("after") is None]
        rest = [slot for slot in slots if slot.window.get("after") is not None]
        ordered: list[_PageSlot] = []
        for head in heads or rest[:1]:
            ordered.append(head)
            if head in rest:
                rest.remove(head)
            while rest:
                end = self._end_cursor(ordered[-1].key)
                follower = next((slot for slot in rest if slot.window.get("after") == end), None)
                if follower is None:
                    break
                ordered.append(follower)
                rest.remove(follower)
        return ordered + rest

    def _end_cursor(self, page_key: str) -> Any:
        record = self._source.resolve(page_key)
        if not record:
            return None
        page_info = record.get(CONNECTION_PAGE_INFO)
        if isinstance(page_info, dict) and page_info.get("endCursor") is not None:
            return page_info["endCursor"]
        edges = self._page_edges(page_key, record)
        return edges[-1].cursor if edges else None

    # --- view ---

    def _page_edges(self, page_key: str, record: dict[str, Any]) -> list[ConnectionEdge]:
        edges = []
        for ref in record.get(CONNECTION_EDGES) or ():
            if not is_ref(ref):
                continue
            edge_key = ref[REF_FIELD]
            edge = self._source.resolve(edge_key)
            if edge is None:
                continue
            node = edge.get(CONNECTION_NODE)
            node_key = node[REF_FIELD] if is_ref(node) else None
            edges.append(ConnectionEdge(key=edge_key, node=node_key, fields=edge))
        return edges

    def _dedupe_key(self, edge: ConnectionEdge) -> Any:
        if self._dedupe is DedupeStrategy.NODE:
            return edge.node
        if self._dedupe is DedupeStrategy.EDGE_REF:
            return edge.key
        return edge.cursor

    def get_view(self) -> ConnectionView:
        """Compose the mounted pages, then apply committed and optimistic edits."""
        if self._mode is CompositionMode.PAGE:
            slots = [self._pages[self._active]] if self._active in self._pages else []
        else:
            slots = self._ordered()

        edges: list[ConnectionEdge] = []
        seen: set[Any] = set()
        latest: tuple[int, dict[str, Any]] | None = None
        for slot in slots:
            record = self._source.resolve(slot.key)
            if record is None:
                continue
            if latest is None or slot.seq > latest[0]:
                latest = (slot.seq, record)
            for edge in self._page_edges(slot.key, record):
                marker = self._dedupe_key(edge)
                if marker is not None:
                    if marker in seen:
                        continue
                    seen.add(marker)
                edges.append(edge)

        info: dict[str, Any] = {}
        if latest is not None:
            info = {name: value for name, value in latest[1].items() if name != CONNECTION_EDGES}

        edges, info = apply_connection_ops(edges, info, self._source.connection_ops(self._key))
        page_info = info.pop(CONNECTION_PAGE_INFO, None)
        return ConnectionView(
            key=self._key,
            edges=edges,
            page_info=page_info,
            fields=info,
            pages=[slot.key for slot in slots],
        )
