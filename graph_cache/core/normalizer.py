"""Response normalization.

Walks a response payload guided by a compiled plan and writes entity
records, page records and edge records into the Graph. Pages are written
wholesale under their page key and never merged with other pages; joining
pages into one list happens at read time in the session composer.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from graph_cache.core.constants import (
    CONNECTION_EDGES,
    CONNECTION_EDITS_FIELD,
    CONNECTION_NODE,
    CONNECTION_PAGES_FIELD,
    EDGE_INFIX,
    ID_FIELD,
    OPERATION_ROOT_IDS,
    REF_FIELD,
    ROOT_ID,
    TYPENAME_FIELD,
)
from graph_cache.core.enums import FieldKind
from graph_cache.core.exceptions import IdentityError, PlanError
from graph_cache.core.graph import Graph
from graph_cache.core.identity import IdentityResolver
from graph_cache.core.optimistic import supersede_edits
from graph_cache.core.params import edge_key, is_leading_window, is_ref, make_ref, page_key
from graph_cache.planning.plan import Plan, PlanField

logger = logging.getLogger(__name__)

_SKIPPED = object()


@dataclass
class NormalizeResult:
    """Outcome of one ``normalize_document`` call."""

    touched: set[str] = field(default_factory=set)
    pages: list[str] = field(default_factory=list)
    skipped: list[IdentityError] = field(default_factory=list)


def root_id_for(plan: Plan, root_id: str | None = None) -> str:
    """Record key a plan's root selection reads from and writes to."""
    if root_id is not None:
        return root_id
    if plan.operation == "fragment":
        raise PlanError(f"Fragment plan '{plan.name}' needs an explicit entity key")
    return OPERATION_ROOT_IDS.get(plan.operation, ROOT_ID)


class Normalizer:
    """Writes plan-shaped payloads into a Graph.

    Args:
        graph: Target record store.
        identity: Resolver used to key entity objects.
    """

    def __init__(self, graph: Graph, identity: IdentityResolver) -> None:
        self._graph = graph
        self._identity = identity

    def normalize_document(
        self,
        plan: Plan,
        variables: Mapping[str, Any] | None,
        data: Mapping[str, Any] | None,
        root_id: str | None = None,
    ) -> NormalizeResult:
        """Write *data* into the graph.

        Entity objects are merged field by field under their entity key;
        every connection field overwrites exactly one page record. Objects
        whose configured identity function yields no id are skipped and
        reported on ``NormalizeResult.skipped``.
        """
        result = NormalizeResult()
        if data is None:
            return result
        parent = root_id_for(plan, root_id)
        values = dict(variables or {})

        fields = self._build_fields(parent, plan.root, data, values, result)
        if fields:
            self._put(parent, fields, result)
        logger.debug(
            "Normalized %s into %d records (%d pages, %d skipped)",
            plan.name or plan.operation,
            len(result.touched),
            len(result.pages),
            len(result.skipped),
        )
        return result

    def has_document(
        self,
        plan: Plan,
        variables: Mapping[str, Any] | None,
        root_id: str | None = None,
    ) -> bool:
        """Check that every field *plan* selects is present in the graph.

        Connections require the exact page the variables request; a page
        with a missing edge or node counts as absent.
        """
        parent = root_id_for(plan, root_id)
        record = self._graph.get_record(parent)
        if record is None:
            return False
        return self._has_fields(parent, record, plan.root, dict(variables or {}))

    # --- writes ---

    def _put(self, key: str, fields: dict[str, Any], result: NormalizeResult) -> None:
        self._graph.put_record(key, fields)
        result.touched.add(key)

    def _build_fields(
        self,
        record_key: str,
        selection: tuple[PlanField, ...],
        obj: Mapping[str, Any],
        variables: dict[str, Any],
        result: NormalizeResult,
    ) -> dict[str, Any]:
        out: dict[str, Any] = {}
        typename = obj.get(TYPENAME_FIELD)
        if isinstance(typename, str):
            out[TYPENAME_FIELD] = typename
        for plan_field in selection:
            if plan_field.response_key not in obj:
                continue
            if not self._identity.matches(typename, plan_field.type_condition):
                continue
            value = obj[plan_field.response_key]
            store_key = plan_field.storage_key(variables)

            if plan_field.kind is FieldKind.SCALAR:
                out[store_key] = copy.deepcopy(value)
            elif plan_field.kind is FieldKind.LINK:
                linked = self._link(f"{record_key}.{store_key}", plan_field.selection, value, variables, result)
                if linked is not _SKIPPED:
                    out[store_key] = linked
            else:
                out[store_key] = self._connection(record_key, plan_field, value, variables, result)
        return out

    def _link(
        self,
        path: str,
        selection: tuple[PlanField, ...],
        value: Any,
        variables: dict[str, Any],
        result: NormalizeResult,
    ) -> Any:
        if value is None:
            return None
        if isinstance(value, list):
            items = [
                self._link(f"{path}.{index}", selection, item, variables, result)
                for index, item in enumerate(value)
            ]
            return [item for item in items if item is not _SKIPPED]
        if not isinstance(value, dict):
            return copy.deepcopy(value)

        key = self._identity.identify(value)
        if key is None and self._identity.has_keyer(value.get(TYPENAME_FIELD)):
            error = IdentityError(value.get(TYPENAME_FIELD), "identity function returned no id")
            logger.warning("Skipping object at %s: %s", path, error)
            result.skipped.append(error)
            return _SKIPPED

        fields = self._build_fields(key or path, selection, value, variables, result)
        if key is None:
            # no identity: kept inline under the parent
            return fields
        if value.get(ID_FIELD) is not None:
            fields.setdefault(ID_FIELD, value[ID_FIELD])
        self._put(key, fields, result)
        return make_ref(key)

    def _connection(
        self,
        parent_key: str,
        plan_field: PlanField,
        value: Any,
        variables: dict[str, Any],
        result: NormalizeResult,
    ) -> Any:
        if not isinstance(value, dict):
            return copy.deepcopy(value)

        args = plan_field.build_args(variables)
        page = page_key(plan_field.field_name, parent_key, args)
        fields: dict[str, Any] = {}
        typename = value.get(TYPENAME_FIELD)
        if isinstance(typename, str):
            fields[TYPENAME_FIELD] = typename
        for sub in plan_field.selection:
            if sub.response_key not in value:
                continue
            if not self._identity.matches(typename, sub.type_condition):
                continue
            sub_value = value[sub.response_key]
            store_key = sub.storage_key(variables)

            if sub.field_name == CONNECTION_EDGES and sub.kind is FieldKind.LINK and isinstance(sub_value, list):
                fields[store_key] = self._edges(page, sub, sub_value, variables, result)
            elif sub.kind is FieldKind.SCALAR:
                fields[store_key] = copy.deepcopy(sub_value)
            elif sub.kind is FieldKind.LINK:
                linked = self._link(f"{page}.{store_key}", sub.selection, sub_value, variables, result)
                if linked is not _SKIPPED:
                    fields[store_key] = linked
            else:
                fields[store_key] = self._connection(page, sub, sub_value, variables, result)

        previous = self._graph.get_record(page)
        self._graph.replace_record(page, fields)
        result.touched.add(page)
        result.pages.append(page)
        if previous is not None:
            self._drop_stale_edges(page, previous, fields)
        self._register_page(
            plan_field.connection_key(parent_key, variables),
            page,
            self._page_nodes(fields),
            is_leading_window(args),
            result,
        )
        return make_ref(page)

    def _register_page(
        self,
        connection: str,
        page: str,
        nodes: set[str],
        leading: bool,
        result: NormalizeResult,
    ) -> None:
        record = self._graph.get_record(connection) or {}
        update: dict[str, Any] = {}
        pages = list(record.get(CONNECTION_PAGES_FIELD) or ())
        if page not in pages:
            update[CONNECTION_PAGES_FIELD] = [*pages, page]
        edits = record.get(CONNECTION_EDITS_FIELD) or []
        if edits:
            # server data supersedes committed edits on the nodes it lists
            kept = supersede_edits(edits, nodes, reset=leading)
            if len(kept) != len(edits):
                logger.debug("Page %s superseded %d committed edits on %s", page, len(edits) - len(kept), connection)
                update[CONNECTION_EDITS_FIELD] = kept
        if update:
            self._put(connection, update, result)

    def _page_nodes(self, fields: Mapping[str, Any]) -> set[str]:
        nodes: set[str] = set()
        for ref in fields.get(CONNECTION_EDGES) or ():
            edge = self._graph.get_record(ref[REF_FIELD]) if is_ref(ref) else None
            node = (edge or {}).get(CONNECTION_NODE)
            if is_ref(node):
                nodes.add(node[REF_FIELD])
        return nodes

    def _edges(
        self,
        page: str,
        edges_field: PlanField,
        edges: list[Any],
        variables: dict[str, Any],
        result: NormalizeResult,
    ) -> list[dict[str, str]]:
        refs = []
        for index, edge in enumerate(edges):
            if not isinstance(edge, dict):
                continue
            own_key = self._identity.identify(edge)
            key = own_key or edge_key(page, index)
            fields = self._build_fields(key, edges_field.selection, edge, variables, result)
            if own_key is not None:
                self._put(own_key, fields, result)
            else:
                self._graph.replace_record(key, fields)
                result.touched.add(key)
            refs.append(make_ref(key))
        return refs

    def _drop_stale_edges(self, page: str, previous: Mapping[str, Any], current: Mapping[str, Any]) -> None:
        kept = {ref[REF_FIELD] for ref in current.get(CONNECTION_EDGES) or () if is_ref(ref)}
        prefix = f"{page}{EDGE_INFIX}"
        for ref in previous.get(CONNECTION_EDGES) or ():
            if is_ref(ref) and ref[REF_FIELD] not in kept and ref[REF_FIELD].startswith(prefix):
                self._graph.delete_record(ref[REF_FIELD])

    # --- presence ---

    def _has_fields(
        self,
        record_key: str,
        record: Mapping[str, Any],
        selection: tuple[PlanField, ...],
        variables: dict[str, Any],
    ) -> bool:
        typename = record.get(TYPENAME_FIELD)
        for plan_field in selection:
            if plan_field.field_name == TYPENAME_FIELD:
                continue
            if not self._identity.matches(typename, plan_field.type_condition):
                continue
            store_key = plan_field.storage_key(variables)
            if store_key not in record:
                return False
            value = record[store_key]
            if plan_field.kind is FieldKind.SCALAR or value is None:
                continue
            if plan_field.kind is FieldKind.CONNECTION:
                expected = plan_field.page_key(record_key, variables)
                if not is_ref(value) or value[REF_FIELD] != expected:
                    return False
                page = self._graph.get_record(expected)
                if page is None or not self._has_fields(expected, page, plan_field.selection, variables):
                    return False
            elif not self._has_value(f"{record_key}.{store_key}", value, plan_field.selection, variables):
                return False
        return True

    def _has_value(
        self,
        path: str,
        value: Any,
        selection: tuple[PlanField, ...],
        variables: dict[str, Any],
    ) -> bool:
        if value is None:
            return True
        if isinstance(value, list):
            return all(
                self._has_value(f"{path}.{index}", item, selection, variables)
                for index, item in enumerate(value)
            )
        if is_ref(value):
            key = value[REF_FIELD]
            record = self._graph.get_record(key)
            return record is not None and self._has_fields(key, record, selection, variables)
        if isinstance(value, dict):
            return self._has_fields(path, value, selection, variables)
        return True
