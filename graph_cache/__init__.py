"""GraphCache - normalized GraphQL client cache."""

from __future__ import annotations

from graph_cache.adapters.protocol import (
    AsyncTransport,
    OperationRequest,
    SubscriptionTransport,
    Transport,
    TransportResult,
)
from graph_cache.core.cache import Cache, QueryWatch
from graph_cache.core.config import CacheConfig
from graph_cache.core.enums import CachePolicy, CompositionMode, DedupeStrategy, LayerState, Phase
from graph_cache.core.exceptions import (
    CacheMissError,
    GraphCacheError,
    IdentityError,
    LayerError,
    LayerStateError,
    PlanError,
    SnapshotError,
    StaleResponseError,
    TransportError,
)
from graph_cache.core.graph import Graph
from graph_cache.core.inspector import Inspector
from graph_cache.core.normalizer import NormalizeResult
from graph_cache.core.operations import OperationResult
from graph_cache.core.optimistic import OptimisticBuilder, OptimisticTransaction
from graph_cache.mapping.materializer import Materializer
from graph_cache.mapping.views import LiveView
from graph_cache.planning.plan import Plan, PlanField
from graph_cache.session.composer import ConnectionComposer
from graph_cache.session.session import Session

__all__ = [
    # Cache
    "Cache",
    "CacheConfig",
    "QueryWatch",
    "OperationResult",
    "NormalizeResult",
    # Store
    "Graph",
    "Inspector",
    # Planning
    "Plan",
    "PlanField",
    # Optimistic
    "OptimisticBuilder",
    "OptimisticTransaction",
    # Composition
    "Session",
    "ConnectionComposer",
    # Views
    "Materializer",
    "LiveView",
    # Transport
    "Transport",
    "AsyncTransport",
    "SubscriptionTransport",
    "OperationRequest",
    "TransportResult",
    # Enums
    "CachePolicy",
    "CompositionMode",
    "DedupeStrategy",
    "LayerState",
    "Phase",
    # Exceptions
    "GraphCacheError",
    "PlanError",
    "IdentityError",
    "CacheMissError",
    "LayerError",
    "LayerStateError",
    "TransportError",
    "StaleResponseError",
    "SnapshotError",
]
