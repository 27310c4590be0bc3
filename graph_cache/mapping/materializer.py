"""Materializer - resolved records and plans to live views.

Reads go through the optimistic layer stack, so views always show the
Graph with every active layer applied. Views are cached weakly and
updated in place. Change notifications are coalesced: every key touched
within one event-loop tick is flushed once, producing at most one
callback per affected view.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import weakref
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from graph_cache.core.constants import (
    CONNECTION_EDGES,
    CONNECTION_PAGE_INFO,
    REF_FIELD,
    TYPENAME_FIELD,
)
from graph_cache.core.enums import FieldKind
from graph_cache.core.identity import IdentityResolver
from graph_cache.core.normalizer import root_id_for
from graph_cache.core.optimistic import LayerStack
from graph_cache.core.params import is_ref
from graph_cache.mapping.views import LiveView
from graph_cache.planning.plan import Plan, PlanField
from graph_cache.session.composer import ConnectionComposer
from graph_cache.session.session import Session

logger = logging.getLogger(__name__)

Scheduler = Callable[[Callable[[], None]], Any]
ViewCallback = Callable[[Any], None]


@dataclass
class ReadResult:
    """Plain data read for a plan plus the keys it depends on."""

    data: dict[str, Any] | None
    missing: bool = False
    dependencies: set[str] = field(default_factory=set)


@dataclass
class _ReadContext:
    variables: dict[str, Any]
    session: Session | None
    dependencies: set[str] = field(default_factory=set)
    missing: bool = False


class DocumentWatch:
    """Live subscription to one plan read; see ``Materializer.watch``."""

    def __init__(
        self,
        materializer: Materializer,
        plan: Plan,
        variables: Mapping[str, Any] | None,
        callback: ViewCallback,
        root_id: str | None,
        session: Session | None,
    ) -> None:
        self._materializer = materializer
        self.plan = plan
        self.variables = dict(variables or {})
        self.root_id = root_id
        self.session = session
        self._callback = callback
        self.view = LiveView()
        self.missing = True
        self.dependencies: set[str] = set()
        self.active = True

    def refresh(self) -> bool:
        """Re-read the plan; returns True when the view changed."""
        result = self._materializer.read_document(self.plan, self.variables, self.root_id, self.session)
        self.dependencies = result.dependencies
        was_missing = self.missing
        self.missing = result.missing
        changed = self.view._overlay(result.data)
        return changed or was_missing != self.missing

    def update(self, variables: Mapping[str, Any] | None) -> None:
        """Switch to new *variables*; the view is re-read synchronously."""
        self.variables = dict(variables or {})
        if self.refresh():
            self._emit()

    def _emit(self) -> None:
        self._callback(self.view)

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._materializer._watches.discard(self)


class Materializer:
    """Builds and maintains identity-stable views.

    Args:
        stack: Layer stack over the Graph; all reads resolve through it.
        identity: Resolver for type guard checks.
        scheduler: Schedules a flush callback. Defaults to ``call_soon`` on
            the running event loop; without a loop, pending changes are
            delivered by ``settle()`` once a write or layer transition ends,
            or earlier by an explicit ``flush()``.
    """

    def __init__(
        self,
        stack: LayerStack,
        identity: IdentityResolver,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._stack = stack
        self._identity = identity
        self._scheduler = scheduler
        self._records: weakref.WeakValueDictionary[str, LiveView] = weakref.WeakValueDictionary()
        self._documents: weakref.WeakValueDictionary[tuple[Any, ...], LiveView] = weakref.WeakValueDictionary()
        self._subscribers: dict[str, list[ViewCallback]] = {}
        self._watches: set[DocumentWatch] = set()
        self._pending: set[str] = set()
        self._scheduled = False
        stack.graph.add_listener(self.notify)
        stack.add_listener(self._layers_changed)

    # --- records ---

    def materialize_record(self, key: str) -> LiveView | None:
        """Live view of the resolved record at *key* (same object while referenced)."""
        record = self._stack.resolve(key)
        view = self._records.get(key)
        if record is None:
            if view is not None:
                view._overlay({})
            return None
        if view is None:
            view = LiveView()
            self._records[key] = view
        view._overlay(copy.deepcopy(record))
        return view

    # --- documents ---

    def read_document(
        self,
        plan: Plan,
        variables: Mapping[str, Any] | None = None,
        root_id: str | None = None,
        session: Session | None = None,
    ) -> ReadResult:
        """Read *plan* from resolved records into plain data."""
        ctx = _ReadContext(variables=dict(variables or {}), session=session)
        parent = root_id_for(plan, root_id)
        ctx.dependencies.add(parent)
        record = self._stack.resolve(parent)
        if record is None:
            return ReadResult(data=None, missing=True, dependencies=ctx.dependencies)
        data = self._read_fields(parent, record, plan.root, ctx, root_typename=plan.root_typename)
        return ReadResult(data=data, missing=ctx.missing, dependencies=ctx.dependencies)

    def materialize_document(
        self,
        plan: Plan,
        variables: Mapping[str, Any] | None = None,
        root_id: str | None = None,
        session: Session | None = None,
    ) -> LiveView | None:
        """Identity-stable view of a plan read, refreshed on every call."""
        result = self.read_document(plan, variables, root_id, session)
        if result.data is None:
            return None
        cache_key = (plan.id, plan.signature(variables), root_id, id(session) if session else None)
        view = self._documents.get(cache_key)
        if view is None:
            view = LiveView()
            self._documents[cache_key] = view
        view._overlay(result.data)
        return view

    def watch(
        self,
        plan: Plan,
        variables: Mapping[str, Any] | None,
        callback: ViewCallback,
        root_id: str | None = None,
        session: Session | None = None,
    ) -> DocumentWatch:
        """Keep a view of *plan* current; *callback* gets the view after each change."""
        watch = DocumentWatch(self, plan, variables, callback, root_id, session)
        watch.refresh()
        self._watches.add(watch)
        return watch

    # --- subscriptions ---

    def subscribe(self, key: str, callback: ViewCallback) -> Callable[[], None]:
        """Call *callback* with the record view of *key* after each change to it."""
        self._subscribers.setdefault(key, []).append(callback)

        def _unsubscribe() -> None:
            callbacks = self._subscribers.get(key)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[key]

        return _unsubscribe

    def notify(self, keys: set[str]) -> None:
        """Mark *keys* as changed and schedule one flush for the current tick."""
        self._pending |= keys
        if self._scheduled:
            return
        if self._scheduler is not None:
            self._scheduled = True
            self._scheduler(self.flush)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._scheduled = True
        loop.call_soon(self.flush)

    def settle(self) -> int:
        """Flush now when neither a scheduler nor an event loop will."""
        if self._scheduler is not None or self._scheduled or not self._pending:
            return 0
        return self.flush()

    def _layers_changed(self, keys: set[str]) -> None:
        self.notify(keys)
        self.settle()

    @property
    def pending(self) -> set[str]:
        return set(self._pending)

    def flush(self) -> int:
        """Deliver pending changes; returns the number of callbacks made."""
        self._scheduled = False
        if not self._pending:
            return 0
        touched, self._pending = self._pending, set()
        delivered = 0

        for key in touched:
            if key in self._records:
                self.materialize_record(key)

        for key in touched & set(self._subscribers):
            view = self.materialize_record(key)
            for callback in list(self._subscribers.get(key, ())):
                callback(view)
                delivered += 1

        for watch in list(self._watches):
            if not watch.active or not (watch.dependencies & touched):
                continue
            if watch.refresh():
                watch._emit()
                delivered += 1

        logger.debug("Flushed %d changed keys, %d notifications", len(touched), delivered)
        return delivered

    def refresh_all(self) -> None:
        """Mark every watched dependency and record view as changed."""
        keys = set(self._records.keys()) | set(self._subscribers)
        for watch in self._watches:
            keys |= watch.dependencies
        self.notify(keys)

    @property
    def watches(self) -> list[DocumentWatch]:
        return [watch for watch in self._watches if watch.active]

    # --- reading ---

    def _read_fields(
        self,
        record_key: str,
        record: Mapping[str, Any],
        selection: tuple[PlanField, ...],
        ctx: _ReadContext,
        root_typename: str | None = None,
    ) -> dict[str, Any]:
        out: dict[str, Any] = {}
        typename = record.get(TYPENAME_FIELD)
        for plan_field in selection:
            if not self._identity.matches(typename, plan_field.type_condition):
                continue
            if plan_field.field_name == TYPENAME_FIELD:
                out[plan_field.response_key] = typename if typename is not None else root_typename
                continue
            if plan_field.kind is FieldKind.CONNECTION:
                out[plan_field.response_key] = self._read_connection(record_key, record, plan_field, ctx)
                continue

            store_key = plan_field.storage_key(ctx.variables)
            if store_key not in record:
                ctx.missing = True
                continue
            value = record[store_key]
            if plan_field.kind is FieldKind.SCALAR:
                out[plan_field.response_key] = copy.deepcopy(value)
            else:
                out[plan_field.response_key] = self._read_value(
                    f"{record_key}.{store_key}", value, plan_field.selection, ctx
                )
        return out

    def _read_value(
        self,
        path: str,
        value: Any,
        selection: tuple[PlanField, ...],
        ctx: _ReadContext,
    ) -> Any:
        if value is None:
            return None
        if isinstance(value, list):
            return [self._read_value(f"{path}.{index}", item, selection, ctx) for index, item in enumerate(value)]
        if is_ref(value):
            key = value[REF_FIELD]
            ctx.dependencies.add(key)
            record = self._stack.resolve(key)
            if record is None:
                # dangling reference
                ctx.missing = True
                return None
            return self._read_fields(key, record, selection, ctx)
        if isinstance(value, dict):
            return self._read_fields(path, value, selection, ctx)
        return copy.deepcopy(value)

    def _read_connection(
        self,
        parent_key: str,
        parent: Mapping[str, Any],
        plan_field: PlanField,
        ctx: _ReadContext,
    ) -> Any:
        store_key = plan_field.storage_key(ctx.variables)
        if parent.get(store_key, False) is None:
            return None

        conn_key = plan_field.connection_key(parent_key, ctx.variables)
        page_key = plan_field.page_key(parent_key, ctx.variables)
        ctx.dependencies.update((conn_key, page_key))
        if ctx.session is not None:
            composer = ctx.session.mount(plan_field, parent_key, ctx.variables)
        else:
            spec = plan_field.connection_spec
            composer = ConnectionComposer(
                conn_key,
                self._stack,
                mode=spec.mode,
                dedupe=spec.dedupe,
                pagination_args=spec.pagination_args,
                filters=spec.filters,
            )
            composer.add_page(page_key, plan_field.build_args(ctx.variables))

        view = composer.get_view()
        ctx.dependencies.update(view.pages)
        ctx.dependencies.update(edge.key for edge in view.edges)
        if self._stack.resolve(page_key) is None:
            ctx.missing = True
            if not view.edges and not view.fields and view.page_info is None:
                return None

        out: dict[str, Any] = {}
        typename = view.fields.get(TYPENAME_FIELD)
        for sub in plan_field.selection:
            if not self._identity.matches(typename, sub.type_condition):
                continue
            if sub.field_name == CONNECTION_EDGES:
                out[sub.response_key] = [
                    self._read_fields(edge.key, edge.fields, sub.selection, ctx) for edge in view.edges
                ]
            elif sub.field_name == CONNECTION_PAGE_INFO:
                out[sub.response_key] = (
                    self._read_value(f"{conn_key}.{CONNECTION_PAGE_INFO}", view.page_info, sub.selection, ctx)
                    if sub.kind is not FieldKind.SCALAR
                    else copy.deepcopy(view.page_info)
                )
            elif sub.field_name == TYPENAME_FIELD:
                out[sub.response_key] = typename
            else:
                sub_key = sub.storage_key(ctx.variables)
                if sub_key not in view.fields:
                    ctx.missing = True
                    continue
                if sub.kind is FieldKind.SCALAR:
                    out[sub.response_key] = copy.deepcopy(view.fields[sub_key])
                    continue
                out[sub.response_key] = self._read_value(
                    f"{conn_key}.{sub_key}", view.fields[sub_key], sub.selection, ctx
                )
        return out
