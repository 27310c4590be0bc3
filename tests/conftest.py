"""Shared test fixtures."""

from __future__ import annotations

from typing import Any

import pytest

from graph_cache.core.cache import Cache
from graph_cache.core.config import CacheConfig
from graph_cache.core.graph import Graph
from graph_cache.core.identity import IdentityResolver
from graph_cache.core.normalizer import Normalizer
from graph_cache.core.optimistic import LayerStack
from graph_cache.core.registry import PlanRegistry

POSTS_QUERY = """
query Posts($category: String, $first: Int, $after: String, $before: String, $last: Int) {
  posts(category: $category, first: $first, after: $after, before: $before, last: $last) @connection {
    edges {
      cursor
      node {
        id
        title
      }
    }
    pageInfo {
      startCursor
      endCursor
      hasNextPage
      hasPreviousPage
    }
  }
}
"""

USER_QUERY = """
query User($id: ID!) {
  user(id: $id) {
    id
    name
    email
  }
}
"""


class FakeTransport:
    """Records requests and answers them from a queue of canned responses."""

    def __init__(self, responses: list[Any] | None = None) -> None:
        self.responses = list(responses or [])
        self.requests: list[Any] = []

    def http(self, request: Any) -> Any:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


def _make_post(post_id: str, title: str | None = None) -> dict[str, Any]:
    return {"__typename": "Post", "id": post_id, "title": title or f"Post {post_id}"}


def _make_page(
    ids: list[str],
    *,
    has_next: bool = False,
    has_previous: bool = False,
    cursor_prefix: str = "c",
) -> dict[str, Any]:
    """Relay connection payload for the posts with *ids*; cursors are ``c<id>``."""
    edges = [
        {"__typename": "PostEdge", "cursor": f"{cursor_prefix}{post_id}", "node": _make_post(post_id)}
        for post_id in ids
    ]
    return {
        "__typename": "PostConnection",
        "edges": edges,
        "pageInfo": {
            "__typename": "PageInfo",
            "startCursor": edges[0]["cursor"] if edges else None,
            "endCursor": edges[-1]["cursor"] if edges else None,
            "hasNextPage": has_next,
            "hasPreviousPage": has_previous,
        },
    }


@pytest.fixture
def config() -> CacheConfig:
    return CacheConfig()


@pytest.fixture
def graph() -> Graph:
    return Graph()


@pytest.fixture
def identity() -> IdentityResolver:
    return IdentityResolver()


@pytest.fixture
def stack(graph: Graph, identity: IdentityResolver) -> LayerStack:
    return LayerStack(graph, identity)


@pytest.fixture
def normalizer(graph: Graph, identity: IdentityResolver) -> Normalizer:
    return Normalizer(graph, identity)


@pytest.fixture
def registry(config: CacheConfig) -> PlanRegistry:
    return PlanRegistry(config)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def cache(config: CacheConfig, transport: FakeTransport) -> Cache:
    """Cache with manual notification flushing."""
    return Cache(config, transport, scheduler=lambda flush: None)


@pytest.fixture
def posts_query() -> str:
    return POSTS_QUERY


@pytest.fixture
def user_query() -> str:
    return USER_QUERY


@pytest.fixture
def post_page():
    """Helper building Relay connection payloads.

    Usage:
        post_page(["1", "2"], has_next=True)
    """
    return _make_page


@pytest.fixture
def post():
    """Helper building a ``Post`` object: ``post("1", "Title")``."""
    return _make_post
