"""Unit tests for CacheConfig."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from graph_cache.core.config import CacheConfig
from graph_cache.core.constants import DEFAULT_PAGINATION_ARGS
from graph_cache.core.enums import CachePolicy, CompositionMode, DedupeStrategy


class TestCacheConfig:
    def test_defaults(self) -> None:
        config = CacheConfig()
        assert config.keys == {}
        assert config.interfaces == {}
        assert config.pagination_args == DEFAULT_PAGINATION_ARGS
        assert config.default_mode is CompositionMode.INFINITE
        assert config.default_dedupe is DedupeStrategy.CURSOR
        assert config.cache_policy is CachePolicy.CACHE_FIRST
        assert config.hydration_timeout == 0.1
        assert config.suspension_timeout == 1.0

    def test_string_enums_coerced(self) -> None:
        config = CacheConfig(default_mode="page", default_dedupe="node", cache_policy="cache-and-network")
        assert config.default_mode is CompositionMode.PAGE
        assert config.default_dedupe is DedupeStrategy.NODE
        assert config.cache_policy is CachePolicy.CACHE_AND_NETWORK

    def test_key_functions(self) -> None:
        config = CacheConfig(keys={"Book": lambda obj: obj["isbn"]})
        assert config.keys["Book"]({"isbn": "978"}) == "978"

    def test_pagination_args_from_list(self) -> None:
        config = CacheConfig(pagination_args=["cursor", "limit"])
        assert config.pagination_args == frozenset({"cursor", "limit"})

    def test_negative_timeout_rejected(self) -> None:
        with pytest.raises(ValidationError, match="timeouts"):
            CacheConfig(suspension_timeout=-1)

    def test_type_under_two_interfaces_rejected(self) -> None:
        with pytest.raises(ValidationError, match="AudioPost"):
            CacheConfig(interfaces={"Post": ["AudioPost"], "Media": ["AudioPost"]})

    def test_unknown_policy_rejected(self) -> None:
        with pytest.raises(ValidationError):
            CacheConfig(cache_policy="cache-sometimes")

    def test_frozen(self) -> None:
        config = CacheConfig()
        with pytest.raises(ValidationError):
            config.hydration_timeout = 5
