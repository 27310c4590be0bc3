"""Per-subscriber session.

A Session owns the connection composers of one live query. Composers are
created on demand per connection identity and reused for repeated mounts;
closing the session drops them without touching stored records.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Mapping

from graph_cache.core.constants import DEFAULT_PAGINATION_ARGS
from graph_cache.core.enums import CompositionMode, DedupeStrategy
from graph_cache.planning.plan import PlanField
from graph_cache.session.composer import ConnectionComposer, ConnectionView, RecordSource


class Session:
    """Registry of the connection composers mounted by one subscriber.

    Args:
        source: Resolved record access shared with the cache.
        default_mode: Mode for composers created without an explicit one.
        default_dedupe: Dedupe strategy for composers created without one.
        pagination_args: Argument names that select a page window.
        on_change: Called with a connection key when its mounts change.
    """

    def __init__(
        self,
        source: RecordSource,
        *,
        default_mode: CompositionMode = CompositionMode.INFINITE,
        default_dedupe: DedupeStrategy = DedupeStrategy.CURSOR,
        pagination_args: Iterable[str] = DEFAULT_PAGINATION_ARGS,
        on_change: Callable[[str], None] | None = None,
    ) -> None:
        self._source = source
        self._default_mode = default_mode
        self._default_dedupe = default_dedupe
        self._pagination_args = frozenset(pagination_args)
        self._on_change = on_change
        self._composers: dict[str, ConnectionComposer] = {}
        self._closed = False

    def composer(
        self,
        key: str,
        *,
        mode: CompositionMode | None = None,
        dedupe: DedupeStrategy | None = None,
        filters: Iterable[str] | None = None,
        pagination_args: Iterable[str] | None = None,
    ) -> ConnectionComposer:
        """Return the composer for connection *key*, creating it on first use."""
        existing = self._composers.get(key)
        if existing is not None:
            return existing
        composer = ConnectionComposer(
            key,
            self._source,
            mode=mode or self._default_mode,
            dedupe=dedupe or self._default_dedupe,
            pagination_args=pagination_args if pagination_args is not None else self._pagination_args,
            filters=filters,
            on_change=self._on_change,
        )
        self._composers[key] = composer
        return composer

    def mount(
        self,
        plan_field: PlanField,
        parent_id: str,
        variables: Mapping[str, Any] | None,
    ) -> ConnectionComposer:
        """Mount the page *variables* select for a connection field under *parent_id*."""
        spec = plan_field.connection_spec
        args = plan_field.build_args(variables)
        composer = self.composer(
            plan_field.connection_key(parent_id, variables),
            mode=spec.mode,
            dedupe=spec.dedupe,
            filters=spec.filters,
            pagination_args=spec.pagination_args,
        )
        composer.add_page(plan_field.page_key(parent_id, variables), args)
        return composer

    def view(self, key: str) -> ConnectionView | None:
        composer = self._composers.get(key)
        return composer.get_view() if composer is not None else None

    def get(self, key: str) -> ConnectionComposer | None:
        return self._composers.get(key)

    @property
    def connection_keys(self) -> list[str]:
        return list(self._composers)

    def mounted_pages(self) -> set[str]:
        """Every page key mounted by this session's composers."""
        pages: set[str] = set()
        for composer in self._composers.values():
            pages.update(composer.pages)
        return pages

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Drop every composer; stored pages and entities are kept."""
        self._composers.clear()
        self._closed = True

    def __len__(self) -> int:
        return len(self._composers)

    def __contains__(self, key: object) -> bool:
        return key in self._composers
