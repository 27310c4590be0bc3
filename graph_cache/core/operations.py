"""Operation execution.

Operations resolves a document to its plan, consults the cache according to
the read policy, calls the transport and writes the response back through
the Normalizer. Queries, mutations and subscriptions each have one entry
point; queries and mutations also have an ``async`` variant that awaits
asynchronous transports.

Read windows:
    hydration window  -> after ``hydrate()``, cached data is served for any
                         policy without a network request
    suspension window -> a signature that received a response within
                         ``suspension_timeout`` is answered from cache
"""

from __future__ import annotations

import inspect
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from graph_cache.adapters.protocol import (
    HttpCallable,
    Observer,
    OperationRequest,
    Subscription,
    coerce_result,
)
from graph_cache.core.config import CacheConfig
from graph_cache.core.enums import CachePolicy
from graph_cache.core.exceptions import (
    CacheMissError,
    GraphCacheError,
    PlanError,
    StaleResponseError,
    TransportError,
)
from graph_cache.core.normalizer import Normalizer
from graph_cache.core.optimistic import LayerStack, OptimisticTransaction
from graph_cache.core.registry import PlanRegistry
from graph_cache.mapping.materializer import Materializer
from graph_cache.planning.plan import Plan

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
QueryErrorHook = Callable[[str, GraphCacheError], None]


@dataclass
class OperationResult:
    """Outcome of one operation.

    ``source`` is ``"cache"`` when the data was served without a request and
    ``"network"`` otherwise. GraphQL responses can carry data and errors at
    the same time, so both may be set.
    """

    data: Any = None
    error: GraphCacheError | None = None
    source: str = "network"

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> Any:
        """Return ``data``, or raise ``error`` when one is set."""
        if self.error is not None:
            raise self.error
        return self.data


@dataclass
class _Pending:
    """A query that still needs its network request."""

    plan: Plan
    variables: dict[str, Any]
    signature: str
    canonical: str
    epoch: int
    request: OperationRequest


class _SubscriptionObserver:
    """Writes each subscription payload to the cache before forwarding it."""

    def __init__(
        self,
        operations: Operations,
        plan: Plan,
        variables: dict[str, Any],
        on_data: Callable[[OperationResult], None],
        on_error: Callable[[GraphCacheError], None] | None,
        on_complete: Callable[[], None] | None,
    ) -> None:
        self._operations = operations
        self._plan = plan
        self._variables = variables
        self._on_data = on_data
        self._on_error = on_error
        self._on_complete = on_complete

    def next(self, value: Any) -> None:
        result = coerce_result(value)
        if result.data is not None and result.error is None:
            self._operations.normalizer.normalize_document(self._plan, self._variables, result.data)
        self._on_data(OperationResult(data=result.data, error=result.error))

    def error(self, error: BaseException) -> None:
        wrapped = error if isinstance(error, GraphCacheError) else TransportError(network_error=error)
        if self._on_error is not None:
            self._on_error(wrapped)
        else:
            logger.warning("Unhandled subscription error for %s: %s", self._plan.name, wrapped)

    def complete(self) -> None:
        if self._on_complete is not None:
            self._on_complete()


class Operations:
    """Executes queries, mutations and subscriptions against one cache.

    Args:
        registry: Plan registry for document lookup.
        normalizer: Writes responses into the Graph.
        materializer: Reads plans back from resolved records.
        stack: Optimistic layer stack used by mutations.
        config: Cache configuration (default policy and read windows).
        transport: Object with ``http`` and optionally ``ws``.
        clock: Monotonic clock in seconds.
        on_query_error: Called with the canonical signature of a failed query.
    """

    def __init__(
        self,
        registry: PlanRegistry,
        normalizer: Normalizer,
        materializer: Materializer,
        stack: LayerStack,
        config: CacheConfig,
        transport: Any = None,
        *,
        clock: Clock = time.monotonic,
        on_query_error: QueryErrorHook | None = None,
    ) -> None:
        self.registry = registry
        self.normalizer = normalizer
        self.materializer = materializer
        self.stack = stack
        self.config = config
        self.transport = transport
        self._clock = clock
        self._on_query_error = on_query_error
        self._epochs: dict[str, int] = {}
        self._epoch_counter = itertools.count(1)
        self._last_emit: dict[str, float] = {}
        self._hydrated_at: float | None = None

    # --- read windows ---

    def start_hydration(self) -> None:
        """Open the hydration window; called after a snapshot is loaded."""
        self._hydrated_at = self._clock()

    @property
    def is_hydrating(self) -> bool:
        if self._hydrated_at is None:
            return False
        if self._clock() - self._hydrated_at <= self.config.hydration_timeout:
            return True
        self._hydrated_at = None
        return False

    def _within_suspension(self, signature: str) -> bool:
        last = self._last_emit.get(signature)
        return last is not None and self._clock() - last <= self.config.suspension_timeout

    def _mark_emitted(self, signature: str) -> None:
        now = self._clock()
        expired = [key for key, at in self._last_emit.items() if now - at > self.config.suspension_timeout]
        for key in expired:
            del self._last_emit[key]
        self._last_emit[signature] = now

    # --- queries ---

    def execute_query(
        self,
        query: Any,
        variables: Mapping[str, Any] | None = None,
        policy: CachePolicy | str | None = None,
        *,
        on_cached_data: Callable[[Any], None] | None = None,
    ) -> OperationResult:
        """Run a query under *policy* (defaults to the configured policy).

        Raises:
            CacheMissError: If a ``cache-only`` read finds no complete data.
            PlanError: If *query* is not a query document.
        """
        outcome = self._prepare_query(query, variables, policy, on_cached_data)
        if isinstance(outcome, OperationResult):
            return outcome
        http = self._http()
        try:
            raw = self._call_http(http, outcome.request)
        except Exception as exc:
            return self._query_failed(outcome, exc)
        return self._complete_query(outcome, raw)

    async def execute_query_async(
        self,
        query: Any,
        variables: Mapping[str, Any] | None = None,
        policy: CachePolicy | str | None = None,
        *,
        on_cached_data: Callable[[Any], None] | None = None,
    ) -> OperationResult:
        """Async variant of ``execute_query``; awaits the transport when needed."""
        outcome = self._prepare_query(query, variables, policy, on_cached_data)
        if isinstance(outcome, OperationResult):
            return outcome
        http = self._http()
        try:
            raw = await self._call_http_async(http, outcome.request)
        except Exception as exc:
            return self._query_failed(outcome, exc)
        return self._complete_query(outcome, raw)

    def _prepare_query(
        self,
        query: Any,
        variables: Mapping[str, Any] | None,
        policy: CachePolicy | str | None,
        on_cached_data: Callable[[Any], None] | None,
    ) -> OperationResult | _Pending:
        plan = self._plan(query, "query")
        values = dict(variables or {})
        policy = CachePolicy(policy or self.config.cache_policy)
        signature = plan.signature(values)
        canonical = plan.signature(values, canonical=True)

        hydrating = self.is_hydrating
        cached = None
        if policy is not CachePolicy.NETWORK_ONLY or hydrating:
            cached = self.materializer.read_document(plan, values)
        hit = cached is not None and cached.data is not None and not cached.missing

        if hit and (hydrating or self._within_suspension(signature)):
            logger.debug("Serving %s from cache inside read window", signature)
            return OperationResult(data=cached.data, source="cache")

        if policy is CachePolicy.CACHE_ONLY:
            if not hit:
                error = CacheMissError(signature)
                self._report(canonical, error)
                raise error
            return OperationResult(data=cached.data, source="cache")

        if policy is CachePolicy.CACHE_FIRST and hit:
            return OperationResult(data=cached.data, source="cache")

        if policy is CachePolicy.CACHE_AND_NETWORK and hit and on_cached_data is not None:
            on_cached_data(cached.data)

        # epochs are unique across keys so a dropped entry never matches a late response
        epoch = next(self._epoch_counter)
        self._epochs[canonical] = epoch
        request = OperationRequest(
            query=plan.network_query,
            variables=values,
            operation_type="query",
            operation_name=plan.name,
        )
        return _Pending(plan, values, signature, canonical, epoch, request)

    def _complete_query(self, pending: _Pending, raw: Any) -> OperationResult:
        if self._epochs.get(pending.canonical) != pending.epoch:
            logger.debug("Dropping stale response for %s", pending.signature)
            return OperationResult(error=StaleResponseError(pending.signature))
        del self._epochs[pending.canonical]

        result = coerce_result(raw)
        self._mark_emitted(pending.signature)
        if result.data is None:
            if result.error is not None:
                self._report(pending.canonical, result.error)
            return OperationResult(error=result.error)

        self.normalizer.normalize_document(pending.plan, pending.variables, result.data)
        read = self.materializer.read_document(pending.plan, pending.variables)
        if read.data is None:
            error = TransportError(
                network_error=ValueError(
                    "Failed to read the query back after writing it; "
                    "the response may lack __typename or id fields"
                ),
                response=raw,
            )
            self._report(pending.canonical, error)
            return OperationResult(error=error)
        return OperationResult(data=read.data, error=result.error)

    def _query_failed(self, pending: _Pending, exc: Exception) -> OperationResult:
        if self._epochs.get(pending.canonical) != pending.epoch:
            return OperationResult(error=StaleResponseError(pending.signature))
        del self._epochs[pending.canonical]
        error = TransportError(network_error=exc)
        self._report(pending.canonical, error)
        return OperationResult(error=error)

    def _report(self, canonical: str, error: GraphCacheError) -> None:
        logger.debug("Query %s failed: %s", canonical, error)
        if self._on_query_error is not None:
            self._on_query_error(canonical, error)

    # --- mutations ---

    def execute_mutation(
        self,
        query: Any,
        variables: Mapping[str, Any] | None = None,
        *,
        optimistic: Callable[..., Any] | None = None,
    ) -> OperationResult:
        """Run a mutation; an *optimistic* builder is applied until the response arrives."""
        http = self._http()
        plan, values, request, tx = self._prepare_mutation(query, variables, optimistic)
        try:
            raw = self._call_http(http, request)
        except Exception as exc:
            return self._mutation_failed(tx, exc)
        return self._complete_mutation(plan, values, tx, raw)

    async def execute_mutation_async(
        self,
        query: Any,
        variables: Mapping[str, Any] | None = None,
        *,
        optimistic: Callable[..., Any] | None = None,
    ) -> OperationResult:
        """Async variant of ``execute_mutation``."""
        http = self._http()
        plan, values, request, tx = self._prepare_mutation(query, variables, optimistic)
        try:
            raw = await self._call_http_async(http, request)
        except Exception as exc:
            return self._mutation_failed(tx, exc)
        return self._complete_mutation(plan, values, tx, raw)

    def _prepare_mutation(
        self,
        query: Any,
        variables: Mapping[str, Any] | None,
        optimistic: Callable[..., Any] | None,
    ) -> tuple[Plan, dict[str, Any], OperationRequest, OptimisticTransaction | None]:
        plan = self._plan(query, "mutation")
        values = dict(variables or {})
        request = OperationRequest(
            query=plan.network_query,
            variables=values,
            operation_type="mutation",
            operation_name=plan.name,
        )
        tx = self.stack.modify_optimistic(optimistic) if optimistic is not None else None
        return plan, values, request, tx

    def _complete_mutation(
        self,
        plan: Plan,
        values: dict[str, Any],
        tx: OptimisticTransaction | None,
        raw: Any,
    ) -> OperationResult:
        result = coerce_result(raw)
        if result.data is None or result.error is not None:
            if tx is not None:
                tx.revert()
            return OperationResult(data=result.data, error=result.error)

        self.normalizer.normalize_document(plan, values, result.data)
        if tx is not None:
            tx.commit(result.data)
        return OperationResult(data=result.data)

    def _mutation_failed(self, tx: OptimisticTransaction | None, exc: Exception) -> OperationResult:
        if tx is not None:
            tx.revert()
        return OperationResult(error=TransportError(network_error=exc))

    # --- subscriptions ---

    def execute_subscription(
        self,
        query: Any,
        variables: Mapping[str, Any] | None = None,
        *,
        on_data: Callable[[OperationResult], None],
        on_error: Callable[[GraphCacheError], None] | None = None,
        on_complete: Callable[[], None] | None = None,
    ) -> Subscription:
        """Subscribe through ``transport.ws``; every payload is normalized first.

        Raises:
            GraphCacheError: If the transport has no ``ws`` method.
        """
        plan = self._plan(query, "subscription")
        ws = getattr(self.transport, "ws", None)
        if ws is None:
            raise GraphCacheError("Subscriptions need a transport with a 'ws' method")
        values = dict(variables or {})
        request = OperationRequest(
            query=plan.network_query,
            variables=values,
            operation_type="subscription",
            operation_name=plan.name,
        )
        observer: Observer = _SubscriptionObserver(self, plan, values, on_data, on_error, on_complete)
        return ws(request).subscribe(observer)

    # --- helpers ---

    def _plan(self, query: Any, operation: str) -> Plan:
        plan = self.registry.get(query)
        if plan.operation != operation:
            raise PlanError(f"Expected a {operation} document, got {plan.operation} '{plan.name}'")
        return plan

    def _http(self) -> HttpCallable:
        http = getattr(self.transport, "http", None)
        if http is None:
            raise GraphCacheError("No transport configured for network requests")
        return http

    def _call_http(self, http: HttpCallable, request: OperationRequest) -> Any:
        raw = http(request)
        if inspect.isawaitable(raw):
            if inspect.iscoroutine(raw):
                raw.close()
            raise TypeError("Transport returned an awaitable; use the async operation methods")
        return raw

    async def _call_http_async(self, http: HttpCallable, request: OperationRequest) -> Any:
        raw = http(request)
        if inspect.isawaitable(raw):
            raw = await raw
        return raw

