"""Document compiler.

Compiles a GraphQL document (text or parsed ``DocumentNode``) into a
``Plan``: fragments are inlined with their type conditions kept as field
guards, sibling selections sharing a response key are merged, and
``@connection`` annotations become connection fields.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from graphql import (
    DirectiveNode,
    DocumentNode,
    FieldNode,
    FragmentDefinitionNode,
    FragmentSpreadNode,
    GraphQLError,
    InlineFragmentNode,
    NameNode,
    OperationDefinitionNode,
    SelectionSetNode,
    parse,
    print_ast,
)

from graph_cache.core.constants import (
    CONNECTION_DIRECTIVE,
    DEFAULT_PAGINATION_ARGS,
    TYPENAME_FIELD,
)
from graph_cache.core.enums import CompositionMode, DedupeStrategy, FieldKind
from graph_cache.core.exceptions import PlanError
from graph_cache.planning.args import ArgBuilder, LoweredValue, collect_variables, constant_value, lower_value
from graph_cache.planning.plan import ConnectionSpec, Plan, PlanField

logger = logging.getLogger(__name__)

_ROOT_TYPENAMES = {
    "query": "Query",
    "mutation": "Mutation",
    "subscription": "Subscription",
}

_CONNECTION_ARGS = frozenset({"key", "filters", "mode", "dedupe"})


def compile_plan(
    document: str | DocumentNode,
    fragment_name: str | None = None,
    *,
    pagination_args: Iterable[str] = DEFAULT_PAGINATION_ARGS,
    default_mode: CompositionMode = CompositionMode.INFINITE,
    default_dedupe: DedupeStrategy = DedupeStrategy.CURSOR,
) -> Plan:
    """Compile *document* into a Plan.

    Args:
        document: Query, mutation, subscription or fragment document.
        fragment_name: Fragment to compile when the document holds fragments.
            Required when it holds more than one and no operation.
        pagination_args: Argument names treated as page window arguments.
        default_mode: Composition mode for connections without ``mode:``.
        default_dedupe: Dedupe strategy for connections without ``dedupe:``.

    Raises:
        PlanError: If the document cannot be parsed or its selections are
            inconsistent.
    """
    doc = _parse(document)
    compiler = _Compiler(
        doc,
        pagination_args=frozenset(pagination_args),
        default_mode=CompositionMode(default_mode),
        default_dedupe=DedupeStrategy(default_dedupe),
    )
    plan = compiler.compile(fragment_name)
    logger.debug("Compiled %s plan %s (id=%d)", plan.operation, plan.name or "<anonymous>", plan.id)
    return plan


def _parse(document: str | DocumentNode) -> DocumentNode:
    if isinstance(document, DocumentNode):
        return document
    try:
        return parse(document)
    except GraphQLError as exc:
        raise PlanError(f"Invalid GraphQL document: {exc.message}") from exc


def fnv1a32(text: str) -> int:
    """32-bit FNV-1a hash."""
    value = 0x811C9DC5
    for char in text:
        value ^= ord(char)
        value = (value * 0x01000193) & 0xFFFFFFFF
    return value


class _Compiler:
    def __init__(
        self,
        doc: DocumentNode,
        *,
        pagination_args: frozenset[str],
        default_mode: CompositionMode,
        default_dedupe: DedupeStrategy,
    ) -> None:
        self._doc = doc
        self._pagination_args = pagination_args
        self._default_mode = default_mode
        self._default_dedupe = default_dedupe
        self._operations = [d for d in doc.definitions if isinstance(d, OperationDefinitionNode)]
        self._fragments: dict[str, FragmentDefinitionNode] = {}
        for definition in doc.definitions:
            if isinstance(definition, FragmentDefinitionNode):
                self._fragments[definition.name.value] = definition
        self._defaults: dict[str, LoweredValue] = {}

    def compile(self, fragment_name: str | None) -> Plan:
        if not self._operations and not self._fragments:
            raise PlanError("Document contains no operation or fragment definitions")

        declared: tuple[str, ...] = ()
        if fragment_name is not None or not self._operations:
            fragment = self._pick_fragment(fragment_name)
            operation = "fragment"
            name: str | None = fragment.name.value
            root_typename = fragment.type_condition.name.value
            selection_set = fragment.selection_set
            visiting = {fragment.name.value}
        else:
            if len(self._operations) > 1:
                raise PlanError("Document contains multiple operations")
            op = self._operations[0]
            operation = op.operation.value
            name = op.name.value if op.name else None
            root_typename = _ROOT_TYPENAMES.get(operation, "Query")
            selection_set = op.selection_set
            visiting = set()
            for definition in op.variable_definitions or ():
                var_name = definition.variable.name.value
                declared += (var_name,)
                if definition.default_value is not None:
                    self._defaults[var_name] = lower_value(definition.default_value)

        lowered = self._lower(selection_set, None, visiting)
        # A guard naming the root type always matches the root record
        lowered = [_with_guard(f, None) if f.type_condition == root_typename else f for f in lowered]
        root = _merge(lowered)

        fingerprint = _fingerprint_plan(root, operation, root_typename)
        referenced: set[str] = set()
        window: set[str] = set()
        for plan_field in _walk(root):
            for _, value in plan_field.args.entries:
                referenced |= collect_variables(value)
            if plan_field.is_connection and plan_field.connection is not None:
                window |= plan_field.args.variables_for(plan_field.connection.pagination_args)

        variable_names = declared + tuple(sorted(referenced - set(declared)))
        return Plan(
            operation=operation,
            name=name,
            root_typename=root_typename,
            root=root,
            network_query=print_ast(self._network_document()),
            fingerprint=fingerprint,
            id=fnv1a32(fingerprint),
            variable_names=variable_names,
            window_variables=frozenset(window),
        )

    def _pick_fragment(self, fragment_name: str | None) -> FragmentDefinitionNode:
        if fragment_name is None:
            if len(self._fragments) > 1:
                raise PlanError("Document contains multiple fragments; a fragment name is required")
            return next(iter(self._fragments.values()))
        try:
            return self._fragments[fragment_name]
        except KeyError:
            raise PlanError(f"Unknown fragment: {fragment_name}") from None

    # --- lowering ---

    def _lower(
        self,
        selection_set: SelectionSetNode | None,
        guard: str | None,
        visiting: set[str],
    ) -> list[PlanField]:
        fields: list[PlanField] = []
        if selection_set is None:
            return fields
        for selection in selection_set.selections:
            if isinstance(selection, FieldNode):
                fields.append(self._lower_field(selection, guard, visiting))
            elif isinstance(selection, InlineFragmentNode):
                inner = selection.type_condition.name.value if selection.type_condition else guard
                fields.extend(self._lower(selection.selection_set, inner, visiting))
            elif isinstance(selection, FragmentSpreadNode):
                spread = selection.name.value
                fragment = self._fragments.get(spread)
                if fragment is None:
                    raise PlanError(f"Unknown fragment: {spread}")
                if spread in visiting:
                    raise PlanError(f"Fragment cycle detected at: {spread}")
                fields.extend(
                    self._lower(
                        fragment.selection_set,
                        fragment.type_condition.name.value,
                        visiting | {spread},
                    )
                )
        return fields

    def _lower_field(self, node: FieldNode, guard: str | None, visiting: set[str]) -> PlanField:
        field_name = node.name.value
        response_key = node.alias.value if node.alias else field_name
        args = ArgBuilder(
            tuple((arg.name.value, lower_value(arg.value, self._defaults)) for arg in node.arguments or ())
        )
        directive = _find_directive(node, CONNECTION_DIRECTIVE)

        if node.selection_set is None:
            if directive is not None:
                raise PlanError(f"@connection cannot be applied to scalar field '{response_key}'")
            return PlanField(
                response_key=response_key,
                field_name=field_name,
                kind=FieldKind.SCALAR,
                args=args,
                type_condition=guard,
            )

        children = _merge(self._lower(node.selection_set, None, visiting))
        if directive is None:
            return PlanField(
                response_key=response_key,
                field_name=field_name,
                kind=FieldKind.LINK,
                args=args,
                selection=children,
                type_condition=guard,
            )
        return PlanField(
            response_key=response_key,
            field_name=field_name,
            kind=FieldKind.CONNECTION,
            args=args,
            selection=children,
            type_condition=guard,
            connection=self._connection_spec(directive, response_key),
        )

    def _connection_spec(self, directive: DirectiveNode, response_key: str) -> ConnectionSpec:
        values: dict[str, Any] = {}
        for arg in directive.arguments or ():
            arg_name = arg.name.value
            if arg_name not in _CONNECTION_ARGS:
                raise PlanError(f"Unknown @connection argument '{arg_name}' on '{response_key}'")
            values[arg_name] = constant_value(arg.value)

        key = values.get("key") or response_key
        if not isinstance(key, str):
            raise PlanError(f"@connection key must be a string on '{response_key}'")

        filters = values.get("filters")
        if filters is not None:
            if not isinstance(filters, list) or not all(isinstance(f, str) for f in filters):
                raise PlanError(f"@connection filters must be a list of strings on '{response_key}'")
            filters = tuple(filters)

        try:
            mode = CompositionMode(values["mode"]) if "mode" in values else self._default_mode
            dedupe = DedupeStrategy(values["dedupe"]) if "dedupe" in values else self._default_dedupe
        except ValueError as exc:
            raise PlanError(f"Invalid @connection argument on '{response_key}': {exc}") from None

        return ConnectionSpec(
            key=key,
            filters=filters,
            mode=mode,
            dedupe=dedupe,
            pagination_args=self._pagination_args,
        )

    # --- network document ---

    def _network_document(self) -> DocumentNode:
        definitions = []
        for definition in self._doc.definitions:
            if isinstance(definition, OperationDefinitionNode):
                definitions.append(
                    OperationDefinitionNode(
                        operation=definition.operation,
                        name=definition.name,
                        variable_definitions=definition.variable_definitions,
                        directives=definition.directives,
                        selection_set=_network_selection_set(definition.selection_set, add_typename=False),
                    )
                )
            elif isinstance(definition, FragmentDefinitionNode):
                definitions.append(
                    FragmentDefinitionNode(
                        name=definition.name,
                        variable_definitions=definition.variable_definitions,
                        type_condition=definition.type_condition,
                        directives=definition.directives,
                        selection_set=_network_selection_set(definition.selection_set, add_typename=True),
                    )
                )
            else:
                definitions.append(definition)
        return DocumentNode(definitions=tuple(definitions))


def _find_directive(node: FieldNode, name: str) -> DirectiveNode | None:
    for directive in node.directives or ():
        if directive.name.value == name:
            return directive
    return None


def _network_selection_set(selection_set: SelectionSetNode, add_typename: bool) -> SelectionSetNode:
    selections = []
    has_typename = False
    for selection in selection_set.selections:
        if isinstance(selection, FieldNode):
            if selection.name.value == TYPENAME_FIELD and selection.alias is None:
                has_typename = True
            selections.append(
                FieldNode(
                    alias=selection.alias,
                    name=selection.name,
                    arguments=selection.arguments,
                    directives=tuple(
                        d for d in selection.directives or () if d.name.value != CONNECTION_DIRECTIVE
                    ),
                    selection_set=(
                        _network_selection_set(selection.selection_set, add_typename=True)
                        if selection.selection_set is not None
                        else None
                    ),
                )
            )
        elif isinstance(selection, InlineFragmentNode):
            selections.append(
                InlineFragmentNode(
                    type_condition=selection.type_condition,
                    directives=selection.directives,
                    selection_set=_network_selection_set(selection.selection_set, add_typename=False),
                )
            )
        else:
            selections.append(selection)
    if add_typename and not has_typename:
        selections.insert(0, FieldNode(name=NameNode(value=TYPENAME_FIELD), arguments=(), directives=()))
    return SelectionSetNode(selections=tuple(selections))


# --- merging ---


def _with_guard(plan_field: PlanField, guard: str | None) -> PlanField:
    return PlanField(
        response_key=plan_field.response_key,
        field_name=plan_field.field_name,
        kind=plan_field.kind,
        args=plan_field.args,
        selection=plan_field.selection,
        type_condition=guard,
        connection=plan_field.connection,
    )


def _merge(fields: list[PlanField]) -> tuple[PlanField, ...]:
    """Merge fields sharing response key and guard, keeping first-seen order."""
    merged: dict[tuple[str, str | None], PlanField] = {}
    for plan_field in fields:
        slot = (plan_field.response_key, plan_field.type_condition)
        existing = merged.get(slot)
        if existing is None:
            merged[slot] = plan_field
            continue
        _check_compatible(existing, plan_field)
        merged[slot] = PlanField(
            response_key=existing.response_key,
            field_name=existing.field_name,
            kind=existing.kind,
            args=existing.args,
            selection=_merge(list(existing.selection) + list(plan_field.selection)),
            type_condition=existing.type_condition,
            connection=existing.connection,
        )
    return tuple(merged.values())


def _check_compatible(first: PlanField, second: PlanField) -> None:
    key = first.response_key
    if first.field_name != second.field_name:
        raise PlanError(
            f"Conflicting selections for '{key}': fields '{first.field_name}' and '{second.field_name}'"
        )
    if first.args.signature() != second.args.signature():
        raise PlanError(f"Conflicting arguments for '{key}'")
    if first.is_connection != second.is_connection:
        raise PlanError(f"Conflicting @connection annotations for '{key}'")
    if first.connection != second.connection:
        raise PlanError(f"Conflicting @connection settings for '{key}'")
    if (first.kind is FieldKind.SCALAR) != (second.kind is FieldKind.SCALAR):
        raise PlanError(f"Conflicting selection sets for '{key}'")


# --- fingerprint ---


def _walk(fields: Iterable[PlanField]) -> Iterable[PlanField]:
    for plan_field in fields:
        yield plan_field
        yield from _walk(plan_field.selection)


def _fingerprint_field(plan_field: PlanField) -> str:
    parts = [plan_field.response_key, plan_field.field_name]
    if plan_field.type_condition:
        parts.append(f"@{plan_field.type_condition}")
    if plan_field.connection is not None:
        parts.append(f"@connection[{plan_field.connection.key}]")
    if plan_field.args.entries:
        parts.append(f"({plan_field.args.signature()})")
    if plan_field.selection:
        children = sorted(plan_field.selection, key=lambda f: (f.response_key, f.field_name))
        parts.append("{" + ",".join(_fingerprint_field(child) for child in children) + "}")
    return ":".join(parts)


def _fingerprint_plan(root: tuple[PlanField, ...], operation: str, root_typename: str) -> str:
    ordered = sorted(root, key=lambda f: (f.response_key, f.field_name))
    return f"{operation}:{root_typename}:[" + ",".join(_fingerprint_field(f) for f in ordered) + "]"

