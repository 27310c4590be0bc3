"""Planning layer - compile GraphQL documents into immutable plans."""

from __future__ import annotations

from graph_cache.planning.args import ArgBuilder
from graph_cache.planning.compiler import compile_plan
from graph_cache.planning.plan import ConnectionSpec, Plan, PlanField

__all__ = [
    "compile_plan",
    "Plan",
    "PlanField",
    "ConnectionSpec",
    "ArgBuilder",
]
