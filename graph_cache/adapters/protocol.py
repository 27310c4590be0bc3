"""Transport protocols.

Transports are supplied by the caller; the cache only normalizes what they
return. ``http`` handles queries and mutations, ``ws`` subscriptions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, runtime_checkable

from graph_cache.core.exceptions import TransportError


@dataclass(frozen=True)
class OperationRequest:
    """One operation sent through a transport."""

    query: str
    variables: dict[str, Any] = field(default_factory=dict)
    operation_type: str = "query"
    operation_name: str | None = None


@dataclass(frozen=True)
class TransportResult:
    """Response of a transport call: ``data`` and/or an ``error``."""

    data: dict[str, Any] | None = None
    error: TransportError | None = None


@runtime_checkable
class Subscription(Protocol):
    def unsubscribe(self) -> None:
        """Stop receiving values."""
        ...


@runtime_checkable
class Observable(Protocol):
    def subscribe(self, observer: Observer) -> Subscription:
        """Start delivering values to *observer*."""
        ...


@runtime_checkable
class Observer(Protocol):
    def next(self, value: Any) -> None: ...

    def error(self, error: BaseException) -> None: ...

    def complete(self) -> None: ...


@runtime_checkable
class Transport(Protocol):
    """Synchronous transport protocol."""

    def http(self, request: OperationRequest) -> Any:
        """Execute a query or mutation; returns a result mapping or TransportResult."""
        ...


@runtime_checkable
class AsyncTransport(Protocol):
    """Asynchronous transport protocol."""

    async def http(self, request: OperationRequest) -> Any:
        """Execute a query or mutation asynchronously."""
        ...


@runtime_checkable
class SubscriptionTransport(Protocol):
    """Transport able to stream subscription payloads."""

    def ws(self, request: OperationRequest) -> Observable:
        """Open a subscription stream."""
        ...


HttpCallable = Callable[[OperationRequest], Any | Awaitable[Any]]


def coerce_result(raw: Any) -> TransportResult:
    """Normalize a transport return value into a TransportResult.

    Accepts a TransportResult, a GraphQL response mapping (``data`` plus
    optional ``errors``) or a ``{"data", "error"}`` mapping.
    """
    if isinstance(raw, TransportResult):
        return raw
    if not isinstance(raw, Mapping):
        return TransportResult(error=TransportError(network_error=TypeError(f"Unexpected transport result: {raw!r}")))

    data = raw.get("data")
    error = raw.get("error")
    if isinstance(error, TransportError):
        return TransportResult(data=data, error=error)
    if isinstance(error, BaseException):
        return TransportResult(data=data, error=TransportError(network_error=error, response=raw))
    errors = raw.get("errors")
    if errors:
        return TransportResult(data=data, error=TransportError(graphql_errors=list(errors), response=raw))
    return TransportResult(data=data)
