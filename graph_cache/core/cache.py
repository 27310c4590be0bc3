"""Cache facade.

The Cache wires one Graph, one optimistic LayerStack, the plan registry,
normalizer, materializer and operations together and exposes the public
read, write, watch and execute surface.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable, Mapping

from graphql import DocumentNode

from graph_cache.core.config import CacheConfig
from graph_cache.core.constants import (
    CONNECTION_EDITS_FIELD,
    CONNECTION_PAGES_FIELD,
    CONNECTION_PREFIX,
    OPERATION_ROOT_IDS,
    REF_FIELD,
)
from graph_cache.core.exceptions import GraphCacheError
from graph_cache.core.graph import Graph
from graph_cache.core.identity import IdentityResolver
from graph_cache.core.inspector import Inspector
from graph_cache.core.normalizer import Normalizer, NormalizeResult
from graph_cache.core.operations import OperationResult, Operations
from graph_cache.core.optimistic import BuilderContext, LayerStack, OptimisticBuilder, OptimisticTransaction
from graph_cache.core.registry import PlanRegistry
from graph_cache.core.snapshot import dehydrate, hydrate
from graph_cache.mapping.materializer import DocumentWatch, Materializer, Scheduler
from graph_cache.mapping.views import LiveView
from graph_cache.planning.plan import Plan
from graph_cache.session.session import Session

logger = logging.getLogger(__name__)

Document = str | DocumentNode | Plan


def _refs(value: Any) -> Iterable[str]:
    if isinstance(value, dict):
        ref = value.get(REF_FIELD)
        if isinstance(ref, str) and len(value) == 1:
            yield ref
            return
        for item in value.values():
            yield from _refs(item)
    elif isinstance(value, list):
        for item in value:
            yield from _refs(item)


class QueryWatch:
    """Handle returned by ``Cache.watch_query`` and ``Cache.watch_fragment``.

    The watch owns a Session, so connection pages requested by successive
    ``update`` calls accumulate (infinite mode) or switch (page mode).
    """

    def __init__(
        self,
        cache: Cache,
        plan: Plan,
        variables: Mapping[str, Any] | None,
        on_data: Callable[[LiveView], None],
        on_error: Callable[[GraphCacheError], None] | None,
        immediate: bool,
        root_id: str | None = None,
    ) -> None:
        self._cache = cache
        self.plan = plan
        self.session = cache.create_session()
        self._on_data = on_data
        self._on_error = on_error
        self._watch: DocumentWatch = cache.materializer.watch(
            plan, variables, self._emit, root_id=root_id, session=self.session
        )
        if immediate and not self._watch.missing:
            self._emit(self._watch.view)

    @property
    def variables(self) -> dict[str, Any]:
        return dict(self._watch.variables)

    @property
    def view(self) -> LiveView:
        return self._watch.view

    @property
    def signature(self) -> str:
        return self.plan.signature(self._watch.variables, canonical=True)

    @property
    def active(self) -> bool:
        return self._watch.active

    def update(self, variables: Mapping[str, Any] | None = None, immediate: bool = True) -> None:
        """Switch the watch to *variables* and re-read synchronously."""
        if variables is not None:
            self._watch.variables = dict(variables)
        changed = self._watch.refresh()
        if immediate and changed and not self._watch.missing:
            self._emit(self._watch.view)

    def unsubscribe(self) -> None:
        if not self._watch.active:
            return
        self._watch.unsubscribe()
        self.session.close()
        self._cache._watches.discard(self)
        if self.session in self._cache._sessions:
            self._cache._sessions.remove(self.session)

    def _emit(self, view: LiveView) -> None:
        self._on_data(view)

    def _error(self, error: GraphCacheError) -> None:
        if self._on_error is not None:
            self._on_error(error)


class Cache:
    """Normalized GraphQL cache.

    Args:
        config: Cache configuration; defaults to ``CacheConfig()``.
        transport: Object with ``http`` (and ``ws`` for subscriptions).
        scheduler: Schedules notification flushes; see ``Materializer``.
        clock: Monotonic clock used by the read windows.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        transport: Any = None,
        *,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CacheConfig()
        self.identity = IdentityResolver(self.config.keys, self.config.interfaces)
        self.graph = Graph()
        self.stack = LayerStack(self.graph, self.identity)
        self.registry = PlanRegistry(self.config)
        self.normalizer = Normalizer(self.graph, self.identity)
        self.materializer = Materializer(self.stack, self.identity, scheduler=scheduler)
        self.operations = Operations(
            self.registry,
            self.normalizer,
            self.materializer,
            self.stack,
            self.config,
            transport,
            clock=clock,
            on_query_error=self._on_query_error,
        )
        self._sessions: list[Session] = []
        self._watches: set[QueryWatch] = set()
        self._hydrated_views: list[LiveView] = []

    @classmethod
    def from_config(cls, config: CacheConfig, transport: Any = None, **kwargs: Any) -> Cache:
        """Create a Cache from a CacheConfig.

        Args:
            config: CacheConfig instance
            transport: Transport for network operations

        Returns:
            Cache instance
        """
        return cls(config, transport, **kwargs)

    # --- planning & identity ---

    def compile(self, document: Document, fragment_name: str | None = None) -> Plan:
        return self.registry.get(document, fragment_name)

    def identify(self, obj: Any) -> str | None:
        """Entity key of *obj*, or None when it has no identity."""
        return self.identity.identify(obj)

    # --- queries ---

    def read_query(self, query: Document, variables: Mapping[str, Any] | None = None) -> dict[str, Any] | None:
        """Plain data for *query* from resolved records, or None when incomplete."""
        result = self.materializer.read_document(self.compile(query), variables)
        return None if result.missing else result.data

    def write_query(
        self,
        query: Document,
        data: Mapping[str, Any],
        variables: Mapping[str, Any] | None = None,
    ) -> NormalizeResult:
        result = self.normalizer.normalize_document(self.compile(query), variables, data)
        self.materializer.settle()
        return result

    def has_document(self, query: Document, variables: Mapping[str, Any] | None = None) -> bool:
        """Check that the Graph holds every field and the exact pages *query* selects."""
        return self.normalizer.has_document(self.compile(query), variables)

    def watch_query(
        self,
        query: Document,
        variables: Mapping[str, Any] | None = None,
        *,
        on_data: Callable[[LiveView], None],
        on_error: Callable[[GraphCacheError], None] | None = None,
        immediate: bool = True,
    ) -> QueryWatch:
        """Call *on_data* with a live view of *query* now and after each change."""
        watch = QueryWatch(self, self.compile(query), variables, on_data, on_error, immediate)
        self._watches.add(watch)
        return watch

    def _on_query_error(self, signature: str, error: GraphCacheError) -> None:
        for watch in list(self._watches):
            if watch.signature == signature:
                watch._error(error)

    # --- fragments ---

    def read_fragment(
        self,
        id: str,
        fragment: Document,
        variables: Mapping[str, Any] | None = None,
        fragment_name: str | None = None,
    ) -> dict[str, Any] | None:
        """Plain data for *fragment* read from the entity *id*, or None when incomplete."""
        result = self.materializer.read_document(self.compile(fragment, fragment_name), variables, root_id=id)
        return None if result.missing else result.data

    def write_fragment(
        self,
        id: str,
        fragment: Document,
        data: Mapping[str, Any],
        variables: Mapping[str, Any] | None = None,
        fragment_name: str | None = None,
    ) -> NormalizeResult:
        result = self.normalizer.normalize_document(
            self.compile(fragment, fragment_name), variables, data, root_id=id
        )
        self.materializer.settle()
        return result

    def watch_fragment(
        self,
        id: str,
        fragment: Document,
        variables: Mapping[str, Any] | None = None,
        *,
        on_data: Callable[[LiveView], None],
        fragment_name: str | None = None,
        immediate: bool = True,
    ) -> QueryWatch:
        """Call *on_data* with a live view of *fragment* read from the entity *id*.

        The returned handle supports ``update(variables)`` and ``unsubscribe()``
        like the one from ``watch_query``.
        """
        watch = QueryWatch(
            self, self.compile(fragment, fragment_name), variables, on_data, None, immediate, root_id=id
        )
        self._watches.add(watch)
        return watch

    # --- optimistic ---

    def modify_optimistic(
        self, builder: Callable[[OptimisticBuilder, BuilderContext], Any]
    ) -> OptimisticTransaction:
        """Apply *builder* as an optimistic layer; commit or revert the returned handle."""
        return self.stack.modify_optimistic(builder)

    # --- sessions ---

    def create_session(self) -> Session:
        """New Session over the resolved records; mount changes notify watchers."""
        session = Session(
            self.stack,
            default_mode=self.config.default_mode,
            default_dedupe=self.config.default_dedupe,
            pagination_args=self.config.pagination_args,
            on_change=lambda key: self.materializer.notify({key}),
        )
        self._sessions = [live for live in self._sessions if not live.closed]
        self._sessions.append(session)
        return session

    # --- operations ---

    def execute_query(
        self, query: Document, variables: Mapping[str, Any] | None = None, policy: Any = None, **kwargs: Any
    ) -> OperationResult:
        result = self.operations.execute_query(query, variables, policy, **kwargs)
        self.materializer.settle()
        return result

    async def execute_query_async(
        self, query: Document, variables: Mapping[str, Any] | None = None, policy: Any = None, **kwargs: Any
    ) -> OperationResult:
        return await self.operations.execute_query_async(query, variables, policy, **kwargs)

    def execute_mutation(
        self, query: Document, variables: Mapping[str, Any] | None = None, **kwargs: Any
    ) -> OperationResult:
        result = self.operations.execute_mutation(query, variables, **kwargs)
        self.materializer.settle()
        return result

    async def execute_mutation_async(
        self, query: Document, variables: Mapping[str, Any] | None = None, **kwargs: Any
    ) -> OperationResult:
        return await self.operations.execute_mutation_async(query, variables, **kwargs)

    def execute_subscription(
        self, query: Document, variables: Mapping[str, Any] | None = None, **kwargs: Any
    ) -> Any:
        return self.operations.execute_subscription(query, variables, **kwargs)

    # --- snapshots ---

    def dehydrate(self) -> dict[str, Any]:
        """JSON-serializable snapshot of every Graph record."""
        return dehydrate(self.graph)

    def hydrate(self, snapshot: Any, materialize: bool = False) -> int:
        """Replace the Graph with *snapshot* and open the hydration window.

        With *materialize*, a record view is built for every key and kept
        referenced by the cache so later reads return the same objects.

        Raises:
            SnapshotError: If the snapshot is malformed.
        """
        count = hydrate(self.graph, snapshot)
        self.operations.start_hydration()
        self._hydrated_views = []
        if materialize:
            for key in self.graph.keys():
                view = self.materializer.materialize_record(key)
                if view is not None:
                    self._hydrated_views.append(view)
        self.materializer.settle()
        logger.debug("Hydrated %d records", count)
        return count

    # --- maintenance ---

    @property
    def is_hydrating(self) -> bool:
        """True while the post-hydration read window is open."""
        return self.operations.is_hydrating

    def inspect(self) -> Inspector:
        return Inspector(self.graph, self.stack, self.config)

    def flush(self) -> int:
        """Deliver pending change notifications now."""
        return self.materializer.flush()

    def gc(self) -> list[str]:
        """Remove records no root, live session or active layer can reach.

        Roots are the operation root records, pages mounted by open
        sessions, dependencies of live watches and keys touched by active
        layers. Connection records survive while any of their pages does or
        while they hold committed edits; the nodes those edits reference
        are kept too.

        Returns:
            The removed record keys.
        """
        self._sessions = [session for session in self._sessions if not session.closed]
        roots = set(OPERATION_ROOT_IDS.values())
        for session in self._sessions:
            roots |= session.mounted_pages()
        for watch in self.materializer.watches:
            roots |= watch.dependencies
        roots |= self.stack.touched_keys()

        reachable = self._mark(roots)
        connections = [key for key in self.graph.keys() if key.startswith(CONNECTION_PREFIX)]
        for key in connections:
            record = self.graph.get_record(key) or {}
            edits = record.get(CONNECTION_EDITS_FIELD) or []
            if edits or reachable & set(record.get(CONNECTION_PAGES_FIELD) or ()):
                reachable.add(key)
                nodes = {edit["node"] for edit in edits if edit.get("node")}
                reachable |= self._mark(nodes - reachable)

        removed = [key for key in self.graph.keys() if key not in reachable]
        for key in removed:
            self.graph.delete_record(key)
        for key in connections:
            record = self.graph.get_record(key)
            if record is None:
                continue
            pages = record.get(CONNECTION_PAGES_FIELD) or []
            kept = [page for page in pages if self.graph.has_record(page)]
            if kept != pages:
                self.graph.put_record(key, {CONNECTION_PAGES_FIELD: kept})
        logger.debug("Garbage collection removed %d records", len(removed))
        return removed

    def _mark(self, roots: Iterable[str]) -> set[str]:
        seen: set[str] = set()
        pending = list(roots)
        while pending:
            key = pending.pop()
            if key in seen:
                continue
            record = self.graph.get_record(key)
            if record is None:
                continue
            seen.add(key)
            pending.extend(_refs(record))
        return seen
