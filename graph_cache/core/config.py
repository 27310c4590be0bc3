"""Cache configuration.

CacheConfig is a Pydantic model for type-safe cache configuration. It is
supplied once at construction and read-only afterwards.
"""

from __future__ import annotations

from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field, field_validator

from graph_cache.core.constants import DEFAULT_PAGINATION_ARGS
from graph_cache.core.enums import CachePolicy, CompositionMode, DedupeStrategy

IdentityFunction = Callable[[dict[str, Any]], Any]


class CacheConfig(BaseModel):
    """Configuration for a cache instance."""

    model_config = ConfigDict(frozen=True)

    keys: dict[str, IdentityFunction] = Field(default_factory=dict)
    interfaces: dict[str, list[str]] = Field(default_factory=dict)
    pagination_args: frozenset[str] = DEFAULT_PAGINATION_ARGS
    default_mode: CompositionMode = CompositionMode.INFINITE
    default_dedupe: DedupeStrategy = DedupeStrategy.CURSOR
    cache_policy: CachePolicy = CachePolicy.CACHE_FIRST
    hydration_timeout: float = 0.1
    suspension_timeout: float = 1.0
    plan_cache_size: int = 256

    @field_validator("hydration_timeout", "suspension_timeout")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("timeouts must be >= 0")
        return value

    @field_validator("interfaces")
    @classmethod
    def _single_interface_per_type(cls, value: dict[str, list[str]]) -> dict[str, list[str]]:
        owners: dict[str, str] = {}
        for interface, implementors in value.items():
            for typename in implementors:
                if typename in owners and owners[typename] != interface:
                    raise ValueError(
                        f"type '{typename}' is listed under interfaces "
                        f"'{owners[typename]}' and '{interface}'"
                    )
                owners[typename] = interface
        return value
