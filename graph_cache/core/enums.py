"""Cache enumerations."""

from __future__ import annotations

from enum import Enum


class CompositionMode(str, Enum):
    """How a composer exposes the pages mounted for one connection."""

    INFINITE = "infinite"
    PAGE = "page"


class DedupeStrategy(str, Enum):
    """Which edge attribute identifies duplicates when pages are concatenated."""

    CURSOR = "cursor"
    NODE = "node"
    EDGE_REF = "edgeRef"


class CachePolicy(str, Enum):
    """Read policies understood by ``Cache.execute_query``."""

    CACHE_FIRST = "cache-first"
    CACHE_ONLY = "cache-only"
    NETWORK_ONLY = "network-only"
    CACHE_AND_NETWORK = "cache-and-network"


class FieldKind(str, Enum):
    """Variant of a compiled plan field."""

    SCALAR = "scalar"
    LINK = "link"
    CONNECTION = "connection"


class Phase(str, Enum):
    """Phase an optimistic builder is running in."""

    OPTIMISTIC = "optimistic"
    COMMIT = "commit"


class LayerState(str, Enum):
    CREATED = "created"
    APPLIED = "applied"
    COMMITTED = "committed"
    REVERTED = "reverted"
