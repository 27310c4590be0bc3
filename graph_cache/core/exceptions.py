"""GraphCache exception hierarchy.

All exceptions are GraphCache-specific. Transport failures are wrapped in
``TransportError`` before they reach callers.
"""

from __future__ import annotations

from typing import Any


class GraphCacheError(Exception):
    """Base exception for all GraphCache errors."""


# --- Planning ---


class PlanError(GraphCacheError):
    """Raised when a document cannot be compiled into a consistent plan."""


# --- Identity ---


class IdentityError(GraphCacheError):
    """Raised when an object has no resolvable entity key.

    Normalization and optimistic builders absorb this error: the object is
    skipped and sibling writes proceed.
    """

    def __init__(self, typename: str | None, detail: str) -> None:
        self.typename = typename
        super().__init__(f"Cannot identify {typename or '<untyped>'} object: {detail}")


# --- Reads ---


class CacheMissError(GraphCacheError):
    """Raised when a cache-only read finds no satisfying record."""

    def __init__(self, signature: str) -> None:
        self.signature = signature
        super().__init__(f"Cache miss: no data available for cache-only query {signature}")


# --- Optimistic layers ---


class LayerError(GraphCacheError):
    """Base for optimistic layer errors."""


class LayerStateError(LayerError):
    """Raised on invalid optimistic layer state transitions."""

    def __init__(self, layer_id: int, current_state: str, attempted_action: str) -> None:
        self.layer_id = layer_id
        self.current_state = current_state
        self.attempted_action = attempted_action
        super().__init__(
            f"Cannot {attempted_action} optimistic layer {layer_id} in state '{current_state}'"
        )


# --- Transport ---


class TransportError(GraphCacheError):
    """Raised when the transport fails or returns GraphQL errors."""

    def __init__(
        self,
        *,
        network_error: BaseException | None = None,
        graphql_errors: list[Any] | None = None,
        response: Any = None,
    ) -> None:
        self.network_error = network_error
        self.graphql_errors = graphql_errors or []
        self.response = response
        super().__init__(self._build_message())

    def _build_message(self) -> str:
        if self.network_error is not None:
            return f"[Network] {self.network_error}"
        lines = []
        for error in self.graphql_errors:
            message = error.get("message") if isinstance(error, dict) else str(error)
            lines.append(f"[GraphQL] {message}")
        return "\n".join(lines)


class StaleResponseError(GraphCacheError):
    """Raised for a response that arrived after a newer request for the same signature."""

    def __init__(self, signature: str) -> None:
        self.signature = signature
        super().__init__(f"Response ignored: newer request in flight for {signature}")


# --- Snapshots ---


class SnapshotError(GraphCacheError):
    """Raised when a snapshot passed to ``hydrate`` is malformed."""
