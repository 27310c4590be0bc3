"""Read-only inspection surface for tests and tooling."""

from __future__ import annotations

import copy
from typing import Any

from graph_cache.core.config import CacheConfig
from graph_cache.core.constants import CONNECTION_PAGES_FIELD, CONNECTION_PREFIX, ROOT_ID
from graph_cache.core.graph import Graph
from graph_cache.core.optimistic import LayerStack
from graph_cache.core.params import parse_entity_key


class Inspector:
    """Enumerates stored records, pages, connections and active layers."""

    def __init__(self, graph: Graph, stack: LayerStack, config: CacheConfig) -> None:
        self._graph = graph
        self._stack = stack
        self._config = config

    def entity_keys(self, typename: str | None = None) -> list[str]:
        """Entity keys (``Type:id``), optionally only those of *typename*."""
        keys = []
        for key in self._graph.keys():
            key_type, _ = parse_entity_key(key)
            if key_type is None:
                continue
            if typename is None or key_type == typename:
                keys.append(key)
        return sorted(keys)

    def record(self, key: str, resolved: bool = False) -> dict[str, Any] | None:
        """Copy of the stored record, or of the layer-resolved record."""
        value = self._stack.resolve(key) if resolved else self._graph.get_record(key)
        return copy.deepcopy(value) if value is not None else None

    def connection_keys(self) -> list[str]:
        return sorted(key for key in self._graph.keys() if key.startswith(CONNECTION_PREFIX))

    def pages(self, connection_key: str) -> list[str]:
        """Stored page records written for *connection_key*, in write order."""
        record = self._graph.get_record(connection_key) or {}
        return [page for page in record.get(CONNECTION_PAGES_FIELD) or () if self._graph.has_record(page)]

    def root(self) -> dict[str, Any] | None:
        return self.record(ROOT_ID)

    def layers(self) -> list[dict[str, Any]]:
        return self._stack.inspect()

    def config(self) -> dict[str, Any]:
        return self._config.model_dump(exclude={"keys"}) | {"keys": sorted(self._config.keys)}
