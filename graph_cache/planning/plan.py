"""Compiled plan data classes.

Frozen dataclasses describing a compiled document. A Plan is built once per
document by ``compile_plan`` and treated as immutable data afterwards;
variables only ever flow through ``PlanField.build_args``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping

from graph_cache.core.constants import DEFAULT_PAGINATION_ARGS
from graph_cache.core.enums import CompositionMode, DedupeStrategy, FieldKind
from graph_cache.core.params import (
    connection_key,
    page_key,
    split_args,
    stable_stringify,
    storage_key,
)
from graph_cache.planning.args import ArgBuilder


@dataclass(frozen=True)
class ConnectionSpec:
    """``@connection`` settings of one connection field."""

    key: str
    filters: tuple[str, ...] | None = None
    mode: CompositionMode = CompositionMode.INFINITE
    dedupe: DedupeStrategy = DedupeStrategy.CURSOR
    pagination_args: frozenset[str] = DEFAULT_PAGINATION_ARGS


@dataclass(frozen=True)
class PlanField:
    """One compiled selection.

    ``kind`` is the variant tag: scalar leaves, links to nested objects (or
    lists of them) and connections. ``type_condition`` is set for fields
    selected under an inline fragment or fragment spread.
    """

    response_key: str
    field_name: str
    kind: FieldKind = FieldKind.SCALAR
    args: ArgBuilder = field(default_factory=ArgBuilder)
    selection: tuple[PlanField, ...] = ()
    type_condition: str | None = None
    connection: ConnectionSpec | None = None

    @property
    def is_connection(self) -> bool:
        return self.kind is FieldKind.CONNECTION

    def build_args(self, variables: Mapping[str, Any] | None) -> dict[str, Any]:
        return self.args(variables)

    @staticmethod
    def stringify_args(args: Mapping[str, Any]) -> str:
        """Canonical string for *args*, independent of key order."""
        return stable_stringify(dict(args))

    def storage_key(self, variables: Mapping[str, Any] | None) -> str:
        return storage_key(self.field_name, self.build_args(variables))

    def connection_args(self, args: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        """Split built *args* into ``(identity_args, window_args)``."""
        spec = self.connection_spec
        return split_args(args, spec.pagination_args, spec.filters)

    def page_key(self, parent_id: str, variables: Mapping[str, Any] | None) -> str:
        return page_key(self.field_name, parent_id, self.build_args(variables))

    def connection_key(self, parent_id: str, variables: Mapping[str, Any] | None) -> str:
        identity, _ = self.connection_args(self.build_args(variables))
        return connection_key(self.connection_spec.key, parent_id, identity)

    def child(self, response_key: str) -> PlanField | None:
        for sub in self.selection:
            if sub.response_key == response_key:
                return sub
        return None

    @property
    def connection_spec(self) -> ConnectionSpec:
        if self.connection is None:
            return ConnectionSpec(key=self.response_key)
        return self.connection


@dataclass(frozen=True)
class Plan:
    """Compiled, validated document plan."""

    operation: str
    name: str | None
    root_typename: str
    root: tuple[PlanField, ...]
    network_query: str
    fingerprint: str
    id: int
    variable_names: tuple[str, ...] = ()
    window_variables: frozenset[str] = frozenset()

    def signature(self, variables: Mapping[str, Any] | None = None, canonical: bool = False) -> str:
        """Plan id plus the document's variables; ``canonical`` drops pagination variables."""
        mask = set(self.variable_names)
        if canonical:
            mask -= self.window_variables
        values = {name: value for name, value in (variables or {}).items() if name in mask}
        mode = "canonical" if canonical else "strict"
        return f"{self.id}|{mode}|{stable_stringify(values)}"

    def iter_fields(self) -> Iterator[PlanField]:
        """Depth-first walk over every field in the plan."""
        stack = list(reversed(self.root))
        while stack:
            current = stack.pop()
            yield current
            stack.extend(reversed(current.selection))

    @property
    def connections(self) -> list[PlanField]:
        return [plan_field for plan_field in self.iter_fields() if plan_field.is_connection]
