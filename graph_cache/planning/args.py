"""Argument lowering.

GraphQL argument value nodes are lowered at compile time into plain
tuples so that compiled plans carry no AST objects at runtime:

    ("const", value)
    ("var", name, default)
    ("list", (item, ...))
    ("object", ((name, item), ...))
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from graphql import (
    BooleanValueNode,
    EnumValueNode,
    FloatValueNode,
    IntValueNode,
    ListValueNode,
    NullValueNode,
    ObjectValueNode,
    StringValueNode,
    ValueNode,
    VariableNode,
)

from graph_cache.core.exceptions import PlanError

LoweredValue = tuple[Any, ...]

_MISSING = object()


def lower_value(node: ValueNode, defaults: Mapping[str, LoweredValue] | None = None) -> LoweredValue:
    """Lower a GraphQL value node; variable defaults are captured from *defaults*."""
    if isinstance(node, VariableNode):
        name = node.name.value
        default = (defaults or {}).get(name)
        return ("var", name, default)
    if isinstance(node, NullValueNode):
        return ("const", None)
    if isinstance(node, IntValueNode):
        return ("const", int(node.value))
    if isinstance(node, FloatValueNode):
        return ("const", float(node.value))
    if isinstance(node, (StringValueNode, EnumValueNode)):
        return ("const", node.value)
    if isinstance(node, BooleanValueNode):
        return ("const", bool(node.value))
    if isinstance(node, ListValueNode):
        return ("list", tuple(lower_value(item, defaults) for item in node.values))
    if isinstance(node, ObjectValueNode):
        return (
            "object",
            tuple((field.name.value, lower_value(field.value, defaults)) for field in node.fields),
        )
    raise PlanError(f"Unsupported argument value node: {type(node).__name__}")


def constant_value(node: ValueNode) -> Any:
    """Evaluate a value node that must not reference variables (directive arguments)."""
    lowered = lower_value(node)
    value = evaluate(lowered, {})
    if value is _MISSING or _references_variables(lowered):
        raise PlanError("Directive arguments must be constant values")
    return value


def _references_variables(lowered: LoweredValue) -> bool:
    tag = lowered[0]
    if tag == "var":
        return True
    if tag == "list":
        return any(_references_variables(item) for item in lowered[1])
    if tag == "object":
        return any(_references_variables(item) for _, item in lowered[1])
    return False


def evaluate(lowered: LoweredValue, variables: Mapping[str, Any]) -> Any:
    """Evaluate a lowered value; returns ``_MISSING`` for an unset variable."""
    tag = lowered[0]
    if tag == "const":
        return lowered[1]
    if tag == "var":
        name, default = lowered[1], lowered[2]
        if name in variables:
            return variables[name]
        if default is not None:
            return evaluate(default, variables)
        return _MISSING
    if tag == "list":
        items = []
        for item in lowered[1]:
            value = evaluate(item, variables)
            items.append(None if value is _MISSING else value)
        return items
    if tag == "object":
        out: dict[str, Any] = {}
        for name, item in lowered[1]:
            value = evaluate(item, variables)
            if value is not _MISSING:
                out[name] = value
        return out
    raise PlanError(f"Unknown lowered value tag: {tag!r}")


def collect_variables(lowered: LoweredValue) -> set[str]:
    """Names of the variables referenced by a lowered value."""
    tag = lowered[0]
    if tag == "var":
        return {lowered[1]}
    if tag == "list":
        names: set[str] = set()
        for item in lowered[1]:
            names |= collect_variables(item)
        return names
    if tag == "object":
        names = set()
        for _, item in lowered[1]:
            names |= collect_variables(item)
        return names
    return set()


@dataclass(frozen=True)
class ArgBuilder:
    """Builds a field's argument dict from operation variables.

    Arguments keep document order; arguments bound to unset variables are
    omitted, explicit nulls are preserved.
    """

    entries: tuple[tuple[str, LoweredValue], ...] = ()

    def __call__(self, variables: Mapping[str, Any] | None) -> dict[str, Any]:
        if not self.entries:
            return {}
        variables = variables or {}
        out: dict[str, Any] = {}
        for name, lowered in self.entries:
            value = evaluate(lowered, variables)
            if value is not _MISSING:
                out[name] = value
        return out

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.entries)

    def variables_for(self, arg_names: frozenset[str] | set[str]) -> set[str]:
        """Variables referenced by the arguments named in *arg_names*."""
        names: set[str] = set()
        for name, lowered in self.entries:
            if name in arg_names:
                names |= collect_variables(lowered)
        return names

    def signature(self) -> str:
        """Structural signature (variable names, not values) used to detect conflicts."""
        return ",".join(f"{name}:{_signature(lowered)}" for name, lowered in sorted(self.entries))


def _signature(lowered: LoweredValue) -> str:
    tag = lowered[0]
    if tag == "var":
        return f"${lowered[1]}"
    if tag == "const":
        return repr(lowered[1])
    if tag == "list":
        return "[" + ",".join(_signature(item) for item in lowered[1]) + "]"
    return "{" + ",".join(f"{name}:{_signature(item)}" for name, item in sorted(lowered[1])) + "}"
