"""Optimistic layer stack.

Each optimistic transaction records its entity and connection operations
into a layer. Layers sit above the Graph and are never written into it:
reads resolve a key by replaying every active layer over the Graph
snapshot, in stack order. Committing re-runs the builder against the
Graph itself with the server payload; reverting just drops the layer.

Layer lifecycle:
    created -> applied -> committed
                       -> reverted
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from graph_cache.core.constants import (
    CONNECTION_CURSOR,
    CONNECTION_EDITS_FIELD,
    CONNECTION_NODE,
    CONNECTION_PAGE_INFO,
    CONNECTION_PREFIX,
    DELETE_FIELD,
    ID_FIELD,
    ROOT_ID,
    TYPENAME_FIELD,
)
from graph_cache.core.enums import LayerState, Phase
from graph_cache.core.exceptions import IdentityError, LayerStateError
from graph_cache.core.graph import Graph
from graph_cache.core.identity import IdentityResolver
from graph_cache.core.params import connection_key, make_ref, parse_entity_key, synthetic_edge_key

logger = logging.getLogger(__name__)

ChangeListener = Callable[[set[str]], None]
EntityTarget = str | Mapping[str, Any]
PatchInput = Mapping[str, Any] | Callable[[dict[str, Any]], Mapping[str, Any] | None]

MERGE = "merge"
REPLACE = "replace"
POSITIONS = ("start", "end", "before", "after")


# --- Operations ---


@dataclass(frozen=True)
class EntityOp:
    """A recorded entity patch (``fields`` set) or delete marker (``fields`` None)."""

    key: str
    fields: dict[str, Any] | None = None
    mode: str = MERGE

    @property
    def is_delete(self) -> bool:
        return self.fields is None


@dataclass(frozen=True)
class ConnectionOp:
    """A recorded connection edit: ``add``, ``remove`` or ``patch``."""

    kind: str
    connection: str
    node: str | None = None
    position: str = "end"
    anchor: str | None = None
    edge: dict[str, Any] | None = None
    fields: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"op": self.kind}
        if self.kind == "patch":
            data["fields"] = copy.deepcopy(self.fields or {})
            return data
        data["node"] = self.node
        if self.kind == "add":
            data["position"] = self.position
            data["anchor"] = self.anchor
            data["edge"] = copy.deepcopy(self.edge)
        return data

    @classmethod
    def from_dict(cls, connection: str, data: Mapping[str, Any]) -> ConnectionOp:
        return cls(
            kind=data["op"],
            connection=connection,
            node=data.get("node"),
            position=data.get("position") or "end",
            anchor=data.get("anchor"),
            edge=data.get("edge"),
            fields=data.get("fields"),
        )


@dataclass
class Layer:
    """One optimistic transaction's recorded operations."""

    id: int
    builder: Callable[..., Any]
    state: LayerState = LayerState.CREATED
    entity_ops: list[EntityOp] = field(default_factory=list)
    connection_ops: list[ConnectionOp] = field(default_factory=list)

    @property
    def touched(self) -> set[str]:
        keys = {op.key for op in self.entity_ops}
        keys.update(op.connection for op in self.connection_ops)
        return keys


@dataclass(frozen=True)
class BuilderContext:
    """Second argument passed to optimistic builders."""

    phase: Phase
    data: Any = None


# --- Resolution ---


def _identity_fields(key: str) -> dict[str, Any]:
    typename, entity_id = parse_entity_key(key)
    if typename is None:
        return {}
    return {TYPENAME_FIELD: typename, ID_FIELD: entity_id}


def apply_entity_op(current: dict[str, Any] | None, op: EntityOp) -> dict[str, Any] | None:
    """Apply one entity operation to a resolved record (returns a new dict)."""
    if op.is_delete:
        return None
    fields = op.fields or {}
    if op.mode == REPLACE:
        base = _identity_fields(op.key)
        base.update(fields)
        merged = base
    else:
        merged = dict(current) if current is not None else _identity_fields(op.key)
        merged.update(fields)
    return {name: value for name, value in merged.items() if value is not DELETE_FIELD}


def resolve(graph: Graph, layers: Iterable[Layer], key: str) -> dict[str, Any] | None:
    """Resolve *key* as the Graph snapshot with every layer replayed over it.

    Merge patches shallow-merge, replace patches discard earlier fields and
    delete markers remove the record until a later layer writes it again.
    """
    base = graph.get_record(key)
    current = dict(base) if base is not None else None
    for layer in layers:
        for op in layer.entity_ops:
            if op.key == key:
                current = apply_entity_op(current, op)
    return current


# --- Connection edits ---


@dataclass(frozen=True)
class ConnectionEdge:
    """One edge of a composed connection view."""

    key: str
    node: str | None
    fields: dict[str, Any]

    @property
    def cursor(self) -> Any:
        return self.fields.get(CONNECTION_CURSOR)


def _synthetic_edge(op: ConnectionOp) -> ConnectionEdge:
    typename, _ = parse_entity_key(op.node or "")
    fields: dict[str, Any] = {}
    if typename:
        fields[TYPENAME_FIELD] = f"{typename}Edge"
    fields[CONNECTION_CURSOR] = None
    fields.update(op.edge or {})
    fields[CONNECTION_NODE] = make_ref(op.node or "")
    return ConnectionEdge(key=synthetic_edge_key(op.connection, op.node or ""), node=op.node, fields=fields)


def _index_of(edges: Sequence[ConnectionEdge], node: str | None) -> int:
    for index, edge in enumerate(edges):
        if edge.node == node:
            return index
    return -1


def apply_connection_ops(
    edges: Sequence[ConnectionEdge],
    info: Mapping[str, Any],
    ops: Iterable[ConnectionOp],
) -> tuple[list[ConnectionEdge], dict[str, Any]]:
    """Apply connection edits to a composed edge list and connection fields.

    ``add`` is deduplicated by node: re-adding a present node updates its
    edge fields in place. ``remove`` drops the first matching edge. ``patch``
    shallow-merges connection fields, ``pageInfo`` field by field.
    """
    result = list(edges)
    fields = dict(info)
    for op in ops:
        if op.kind == "add":
            index = _index_of(result, op.node)
            if index >= 0:
                if op.edge:
                    existing = result[index]
                    result[index] = ConnectionEdge(
                        key=existing.key,
                        node=existing.node,
                        fields={**existing.fields, **op.edge, CONNECTION_NODE: existing.fields.get(CONNECTION_NODE)},
                    )
                continue
            edge = _synthetic_edge(op)
            if op.position == "start":
                result.insert(0, edge)
            elif op.position in ("before", "after"):
                anchor = _index_of(result, op.anchor) if op.anchor else -1
                if anchor >= 0:
                    result.insert(anchor if op.position == "before" else anchor + 1, edge)
                elif op.position == "before":
                    # missing anchor falls back to start
                    result.insert(0, edge)
                else:
                    result.append(edge)
            else:
                result.append(edge)
        elif op.kind == "remove":
            index = _index_of(result, op.node)
            if index >= 0:
                del result[index]
        elif op.kind == "patch":
            for name, value in (op.fields or {}).items():
                if name == CONNECTION_PAGE_INFO and isinstance(value, Mapping):
                    page_info = dict(fields.get(CONNECTION_PAGE_INFO) or {})
                    page_info.update(value)
                    fields[CONNECTION_PAGE_INFO] = page_info
                else:
                    fields[name] = value
    return result, fields


def compact_edits(edits: Sequence[Mapping[str, Any]], op: ConnectionOp) -> list[dict[str, Any]]:
    """Fold *op* into the committed *edits* of a connection.

    The result holds at most one ``remove`` and one ``add`` per node and a
    single merged ``patch``, so replaying it stays proportional to the
    nodes edited rather than to the number of commits.
    """
    result = [dict(entry) for entry in edits]
    if op.kind == "patch":
        patches = [
            ConnectionOp(kind="patch", connection=op.connection, fields=entry.get("fields"))
            for entry in result
            if entry["op"] == "patch"
        ]
        _, fields = apply_connection_ops([], {}, [*patches, op])
        return [entry for entry in result if entry["op"] != "patch"] + [{"op": "patch", "fields": fields}]

    added = next(
        (index for index, entry in enumerate(result) if entry["op"] == "add" and entry.get("node") == op.node),
        None,
    )
    if op.kind == "add":
        if added is None:
            result.append(op.to_dict())
        else:
            # re-adding a present node only updates its edge fields
            edge = {**(result[added].get("edge") or {}), **(op.edge or {})}
            result[added]["edge"] = edge or None
        return result

    if added is not None:
        dropped = result.pop(added)
        for entry in result:
            if entry["op"] == "add" and entry.get("anchor") == op.node and entry.get("position") in ("before", "after"):
                entry["position"], entry["anchor"] = dropped.get("position"), dropped.get("anchor")
    result = [entry for entry in result if not (entry["op"] == "remove" and entry.get("node") == op.node)]
    result.append(op.to_dict())
    return result


def supersede_edits(
    edits: Sequence[Mapping[str, Any]], nodes: set[str], reset: bool = False
) -> list[dict[str, Any]]:
    """Committed *edits* still in force after a server page listing *nodes* was written.

    Edits on nodes the page lists are dropped; with *reset* (a leading page
    was refetched) every edit is dropped.
    """
    if reset:
        return []
    return [dict(entry) for entry in edits if entry.get("node") not in nodes]


# --- Builder ---


class ConnectionEditor:
    """Edits one connection from inside an optimistic builder."""

    def __init__(self, builder: OptimisticBuilder, key: str) -> None:
        self._builder = builder
        self._key = key

    @property
    def key(self) -> str:
        return self._key

    def add_node(
        self,
        node: EntityTarget,
        position: str = "end",
        anchor: EntityTarget | None = None,
        edge: Mapping[str, Any] | None = None,
    ) -> None:
        """Insert *node* at *position*; ``before``/``after`` are relative to *anchor*."""
        if position not in POSITIONS:
            raise ValueError(f"Unknown position '{position}', expected one of {POSITIONS}")
        node_key = self._builder._ensure_entity(node)
        if node_key is None:
            return
        anchor_key = None
        if anchor is not None:
            anchor_key = anchor if isinstance(anchor, str) else self._builder._identity.identify(anchor)
        self._builder._record_connection(
            ConnectionOp(
                kind="add",
                connection=self._key,
                node=node_key,
                position=position,
                anchor=anchor_key,
                edge=dict(edge) if edge else None,
            )
        )

    def remove_node(self, ref: EntityTarget) -> None:
        node_key = self._builder._key_of(ref)
        if node_key is None:
            return
        self._builder._record_connection(ConnectionOp(kind="remove", connection=self._key, node=node_key))

    def patch(self, patch: PatchInput) -> None:
        """Shallow-merge connection fields; a callable receives the fields patched so far."""
        delta = patch(self._builder._stack.connection_fields(self._key)) if callable(patch) else patch
        if not delta:
            return
        self._builder._record_connection(ConnectionOp(kind="patch", connection=self._key, fields=dict(delta)))


class OptimisticBuilder:
    """Mutation interface handed to optimistic builders.

    In the optimistic phase operations are recorded into the layer; in the
    commit phase they are written straight into the Graph.
    """

    def __init__(self, stack: LayerStack, layer: Layer, phase: Phase) -> None:
        self._stack = stack
        self._layer = layer
        self._phase = phase
        self._identity = stack.identity
        self.errors: list[IdentityError] = []

    @property
    def phase(self) -> Phase:
        return self._phase

    def patch(self, target: EntityTarget, patch: PatchInput, mode: str = MERGE) -> None:
        """Patch an entity; a callable receives a copy of the current record."""
        if mode not in (MERGE, REPLACE):
            raise ValueError(f"Unknown patch mode '{mode}'")
        key = self._key_of(target)
        if key is None:
            return
        if callable(patch):
            delta = patch(copy.deepcopy(self._current(key) or {}))
        else:
            delta = patch
        if not delta:
            return
        self._record_entity(EntityOp(key=key, fields=dict(delta), mode=mode))

    def delete(self, target: EntityTarget) -> None:
        key = self._key_of(target)
        if key is None:
            return
        self._record_entity(EntityOp(key=key))

    def connection(
        self,
        identity_key: str | None = None,
        *,
        parent: EntityTarget | None = None,
        key: str | None = None,
        filters: Mapping[str, Any] | None = None,
    ) -> ConnectionEditor:
        """Open an editor for a connection.

        Either pass a full connection identity key, or ``key`` (the field name
        or ``@connection(key:)`` value) with an optional ``parent`` and the
        identity ``filters``. The parent defaults to the query root.
        """
        if identity_key is not None:
            return ConnectionEditor(self, identity_key)
        if key is None:
            raise ValueError("connection() needs an identity key or key=")
        if parent is None or parent == "Query":
            parent_id = ROOT_ID
        elif isinstance(parent, str):
            parent_id = parent
        else:
            parent_id = self._identity.require(parent)
        return ConnectionEditor(self, connection_key(key, parent_id, dict(filters or {})))

    # --- internals ---

    def _current(self, key: str) -> dict[str, Any] | None:
        if self._phase is Phase.COMMIT:
            return self._stack.graph.get_record(key)
        return resolve(self._stack.graph, [*self._stack.layers, self._layer], key)

    def _key_of(self, target: EntityTarget) -> str | None:
        if isinstance(target, str):
            return target
        try:
            return self._identity.require(target)
        except IdentityError as exc:
            logger.warning("Skipping optimistic operation on layer %d: %s", self._layer.id, exc)
            self.errors.append(exc)
            return None

    def _ensure_entity(self, node: EntityTarget) -> str | None:
        key = self._key_of(node)
        if key is None or isinstance(node, str):
            return key
        fields = {name: value for name, value in node.items() if name not in (TYPENAME_FIELD, ID_FIELD)}
        if fields:
            self._record_entity(EntityOp(key=key, fields=fields))
        return key

    def _record_entity(self, op: EntityOp) -> None:
        if self._phase is Phase.COMMIT:
            self._stack._write_entity(op)
        else:
            self._layer.entity_ops.append(op)

    def _record_connection(self, op: ConnectionOp) -> None:
        if self._phase is Phase.COMMIT:
            self._stack._write_connection(op)
        else:
            self._layer.connection_ops.append(op)


# --- Stack ---


class OptimisticTransaction:
    """Handle returned by ``LayerStack.modify_optimistic``."""

    def __init__(self, stack: LayerStack, layer: Layer, errors: list[IdentityError]) -> None:
        self._stack = stack
        self._layer = layer
        self.errors = errors

    @property
    def id(self) -> int:
        return self._layer.id

    @property
    def state(self) -> LayerState:
        return self._layer.state

    def commit(self, data: Any = None) -> None:
        """Re-run the builder against the Graph with *data* and drop the layer.

        Raises:
            LayerStateError: If the layer was already committed or reverted.
        """
        self._stack.commit(self._layer, data)

    def revert(self) -> bool:
        """Drop the layer; returns False when it is no longer active."""
        return self._stack.revert(self._layer.id)


class LayerStack:
    """Ordered stack of optimistic layers above a Graph.

    Args:
        graph: Base record store.
        identity: Resolver used by builders to key entity targets.
    """

    def __init__(self, graph: Graph, identity: IdentityResolver) -> None:
        self.graph = graph
        self.identity = identity
        self._layers: list[Layer] = []
        self._next_id = 1
        self._version = 0
        self._memo: dict[str, tuple[int, int, dict[str, Any] | None]] = {}
        self._listeners: list[ChangeListener] = []

    # --- listeners ---

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Register *listener* for the keys touched by layer changes."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _changed(self, keys: set[str]) -> None:
        self._version += 1
        self._memo.clear()
        if keys:
            for listener in list(self._listeners):
                listener(keys)

    # --- reads ---

    @property
    def layers(self) -> list[Layer]:
        """Active layers in stack order."""
        return list(self._layers)

    @property
    def version(self) -> int:
        return self._version

    def __len__(self) -> int:
        return len(self._layers)

    def resolve(self, key: str) -> dict[str, Any] | None:
        """Resolved record for *key*; memoized until the stack or the record changes."""
        if not self._layers:
            return self.graph.get_record(key)
        graph_version = self.graph.version(key)
        cached = self._memo.get(key)
        if cached is not None and cached[0] == self._version and cached[1] == graph_version:
            return cached[2]
        value = resolve(self.graph, self._layers, key)
        self._memo[key] = (self._version, graph_version, value)
        return value

    def committed_ops(self, connection: str) -> list[ConnectionOp]:
        record = self.graph.get_record(connection) if connection.startswith(CONNECTION_PREFIX) else None
        if not record:
            return []
        return [ConnectionOp.from_dict(connection, entry) for entry in record.get(CONNECTION_EDITS_FIELD) or ()]

    def layer_ops(self, connection: str) -> list[ConnectionOp]:
        return [op for layer in self._layers for op in layer.connection_ops if op.connection == connection]

    def connection_ops(self, connection: str) -> list[ConnectionOp]:
        """Committed edits followed by active layer edits for *connection*."""
        return self.committed_ops(connection) + self.layer_ops(connection)

    def connection_fields(self, connection: str) -> dict[str, Any]:
        """Connection fields as patched so far by committed and active edits."""
        _, fields = apply_connection_ops([], {}, [op for op in self.connection_ops(connection) if op.kind == "patch"])
        return fields

    def touched_keys(self) -> set[str]:
        keys: set[str] = set()
        for layer in self._layers:
            keys |= layer.touched
        return keys

    # --- transitions ---

    def modify_optimistic(self, builder: Callable[[OptimisticBuilder, BuilderContext], Any]) -> OptimisticTransaction:
        """Run *builder* in the optimistic phase and push its layer."""
        layer = Layer(id=self._next_id, builder=builder)
        self._next_id += 1
        tx = OptimisticBuilder(self, layer, Phase.OPTIMISTIC)
        builder(tx, BuilderContext(phase=Phase.OPTIMISTIC))
        layer.state = LayerState.APPLIED
        self._layers.append(layer)
        logger.debug(
            "Applied optimistic layer %d (%d entity ops, %d connection ops)",
            layer.id,
            len(layer.entity_ops),
            len(layer.connection_ops),
        )
        self._changed(layer.touched)
        return OptimisticTransaction(self, layer, tx.errors)

    def commit(self, layer: Layer, data: Any = None) -> None:
        if layer.state is not LayerState.APPLIED:
            raise LayerStateError(layer.id, layer.state.value, "commit")
        touched = layer.touched
        try:
            layer.builder(OptimisticBuilder(self, layer, Phase.COMMIT), BuilderContext(phase=Phase.COMMIT, data=data))
        finally:
            self._layers.remove(layer)
            layer.state = LayerState.COMMITTED
            logger.debug("Committed optimistic layer %d", layer.id)
            self._changed(touched)

    def revert(self, layer_id: int) -> bool:
        """Drop layer *layer_id*; unknown or finished layers are a logged no-op."""
        for layer in self._layers:
            if layer.id == layer_id:
                break
        else:
            logger.warning("Revert ignored: optimistic layer %d is not active", layer_id)
            return False
        self._layers.remove(layer)
        layer.state = LayerState.REVERTED
        logger.debug("Reverted optimistic layer %d", layer.id)
        self._changed(layer.touched)
        return True

    def clear(self) -> None:
        touched = self.touched_keys()
        for layer in self._layers:
            layer.state = LayerState.REVERTED
        self._layers.clear()
        self._changed(touched)

    # --- commit-phase writes ---

    def _write_entity(self, op: EntityOp) -> None:
        if op.is_delete:
            self.graph.delete_record(op.key)
            return
        fields = dict(op.fields or {})
        if op.mode == REPLACE:
            record = _identity_fields(op.key)
            record.update(fields)
            self.graph.replace_record(op.key, record)
            return
        if not self.graph.has_record(op.key):
            fields = {**_identity_fields(op.key), **fields}
        self.graph.put_record(op.key, fields)

    def _write_connection(self, op: ConnectionOp) -> None:
        record = self.graph.get_record(op.connection) or {}
        edits = compact_edits(record.get(CONNECTION_EDITS_FIELD) or (), op)
        self.graph.put_record(op.connection, {CONNECTION_EDITS_FIELD: edits})

    def inspect(self) -> list[dict[str, Any]]:
        return [
            {
                "id": layer.id,
                "state": layer.state.value,
                "entity_ops": [
                    {"key": op.key, "mode": "delete" if op.is_delete else op.mode, "fields": copy.deepcopy(op.fields)}
                    for op in layer.entity_ops
                ],
                "connection_ops": [{"connection": op.connection, **op.to_dict()} for op in layer.connection_ops],
                "touched": sorted(layer.touched),
            }
            for layer in self._layers
        ]
