"""Plan registry - compiles and caches document plans.

Lookup convention:
    document text       -> LRU cache keyed by (text, fragment name)
    parsed DocumentNode -> LRU cache keyed by node identity

A plan evicted from the text cache stays reachable while something else
holds it, so a watch compiled earlier keeps sharing its plan with new
callers. An evicted node entry compiles again on next use.
"""

from __future__ import annotations

import weakref
from collections import OrderedDict
from functools import lru_cache
from typing import Any

from graphql import DocumentNode

from graph_cache.core.config import CacheConfig
from graph_cache.planning.compiler import compile_plan
from graph_cache.planning.plan import Plan


class PlanRegistry:
    """Compiles documents into plans, memoized by document identity.

    The same document text yields the same ``Plan`` instance for as long as
    the plan is cached or referenced; the same ``DocumentNode`` object does
    while its entry is cached. Variables never trigger recompilation. Both
    caches hold at most ``plan_cache_size`` entries.

    Args:
        config: Cache configuration supplying pagination arguments,
            connection defaults and the cache size.
    """

    def __init__(self, config: CacheConfig) -> None:
        self._config = config
        self._by_node: OrderedDict[tuple[int, str | None], tuple[DocumentNode, Plan]] = OrderedDict()
        self._live: weakref.WeakValueDictionary[tuple[str, str | None], Plan] = weakref.WeakValueDictionary()
        self._compile_text = lru_cache(maxsize=config.plan_cache_size)(self._intern)

    def get(self, document: str | DocumentNode | Plan, fragment_name: str | None = None) -> Plan:
        """Return the plan for *document*, compiling it on first use.

        Raises:
            PlanError: If the document cannot be compiled.
        """
        if isinstance(document, Plan):
            return document
        if isinstance(document, str):
            return self._compile_text(document, fragment_name)

        slot = (id(document), fragment_name)
        cached = self._by_node.get(slot)
        if cached is not None and cached[0] is document:
            self._by_node.move_to_end(slot)
            return cached[1]
        plan = self._compile(document, fragment_name)
        # The node is held so its id() cannot be reused by another document
        self._by_node[slot] = (document, plan)
        if len(self._by_node) > self._config.plan_cache_size:
            self._by_node.popitem(last=False)
        return plan

    def _intern(self, text: str, fragment_name: str | None) -> Plan:
        key = (text, fragment_name)
        plan = self._live.get(key)
        if plan is None:
            plan = self._compile(text, fragment_name)
            self._live[key] = plan
        return plan

    def _compile(self, document: Any, fragment_name: str | None) -> Plan:
        return compile_plan(
            document,
            fragment_name,
            pagination_args=self._config.pagination_args,
            default_mode=self._config.default_mode,
            default_dedupe=self._config.default_dedupe,
        )

    def clear(self) -> None:
        self._compile_text.cache_clear()
        self._by_node.clear()
        self._live.clear()

    def __len__(self) -> int:
        """Number of cached plans."""
        return self._compile_text.cache_info().currsize + len(self._by_node)
