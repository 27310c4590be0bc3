"""Unit tests for the Normalizer."""

from __future__ import annotations

import copy
import logging

import pytest

from graph_cache.core.exceptions import IdentityError, PlanError
from graph_cache.core.graph import Graph
from graph_cache.core.identity import IdentityResolver
from graph_cache.core.normalizer import Normalizer, root_id_for
from graph_cache.core.optimistic import LayerStack
from graph_cache.core.registry import PlanRegistry
from graph_cache.mapping.materializer import Materializer

P1 = '@.posts({"category":"tech","first":2})'
P2 = '@.posts({"after":"c2","category":"tech","first":2})'
TECH = '@connection.posts({"category":"tech"})'
NEW_POST = {"__typename": "Post", "id": "9", "title": "Post 9"}


@pytest.fixture
def user_data() -> dict:
    return {"user": {"__typename": "User", "id": "1", "name": "Ann", "email": "ann@example.com"}}


class TestEntities:
    def test_entity_written_under_its_key(
        self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph, user_query: str, user_data: dict
    ) -> None:
        normalizer.normalize_document(registry.get(user_query), {"id": "1"}, user_data)
        assert graph.get_record("@") == {'user({"id":"1"})': {"__ref": "User:1"}}
        assert graph.get_record("User:1") == {
            "__typename": "User",
            "id": "1",
            "name": "Ann",
            "email": "ann@example.com",
        }

    def test_entities_merge_across_documents(
        self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph, user_query: str, user_data: dict
    ) -> None:
        normalizer.normalize_document(registry.get(user_query), {"id": "1"}, user_data)
        normalizer.normalize_document(
            registry.get('{ viewer { id avatar } }'),
            {},
            {"viewer": {"__typename": "User", "id": "1", "avatar": "a.png"}},
        )
        record = graph.get_record("User:1")
        assert record["name"] == "Ann"
        assert record["avatar"] == "a.png"
        assert graph.get_record("@")["viewer"] == {"__ref": "User:1"}

    def test_objects_without_identity_stay_inline(
        self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph
    ) -> None:
        normalizer.normalize_document(
            registry.get("{ settings { theme } }"), {}, {"settings": {"theme": "dark"}}
        )
        assert graph.get_record("@") == {"settings": {"theme": "dark"}}
        assert graph.keys() == ["@"]

    def test_lists_of_entities(self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph) -> None:
        normalizer.normalize_document(
            registry.get("{ users { id name } }"),
            {},
            {"users": [{"__typename": "User", "id": "1", "name": "Ann"}, None, {"__typename": "User", "id": "2", "name": "Bob"}]},
        )
        assert graph.get_record("@")["users"] == [{"__ref": "User:1"}, None, {"__ref": "User:2"}]

    def test_unselected_fields_ignored(self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph) -> None:
        normalizer.normalize_document(
            registry.get('{ user(id: "1") { id } }'),
            {},
            {"user": {"__typename": "User", "id": "1", "secret": "x"}},
        )
        assert "secret" not in graph.get_record("User:1")

    def test_scalar_values_are_copied(self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph) -> None:
        data = {"user": {"__typename": "User", "id": "1", "tags": ["a"]}}
        normalizer.normalize_document(registry.get('{ user(id: "1") { id tags } }'), {}, data)
        data["user"]["tags"].append("b")
        assert graph.get_record("User:1")["tags"] == ["a"]

    def test_none_data_is_a_no_op(self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph, user_query: str) -> None:
        result = normalizer.normalize_document(registry.get(user_query), {"id": "1"}, None)
        assert result.touched == set()
        assert len(graph) == 0

    def test_type_guards_filter_fields(self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph) -> None:
        plan = registry.get('{ node(id: "1") { id ... on Post { title } ... on Comment { body } } }')
        normalizer.normalize_document(
            plan, {}, {"node": {"__typename": "Post", "id": "1", "title": "T", "body": "ignored"}}
        )
        assert graph.get_record("Post:1") == {"__typename": "Post", "id": "1", "title": "T"}

    def test_interface_implementors_keyed_by_interface(self, graph: Graph, registry: PlanRegistry) -> None:
        normalizer = Normalizer(graph, IdentityResolver(interfaces={"Post": ["AudioPost", "VideoPost"]}))
        normalizer.normalize_document(
            registry.get("{ feed { id ... on AudioPost { duration } ... on VideoPost { resolution } } }"),
            {},
            {
                "feed": [
                    {"__typename": "AudioPost", "id": "1", "duration": 30},
                    {"__typename": "VideoPost", "id": "2", "resolution": "4k"},
                ]
            },
        )
        assert graph.get_record("@")["feed"] == [{"__ref": "Post:1"}, {"__ref": "Post:2"}]
        assert graph.get_record("Post:1") == {"__typename": "AudioPost", "id": "1", "duration": 30}


class TestIdentityErrors:
    def test_object_without_key_is_skipped(self, graph: Graph, registry: PlanRegistry, caplog) -> None:
        normalizer = Normalizer(graph, IdentityResolver(keys={"Post": lambda obj: obj.get("slug")}))
        plan = registry.get("{ featured { slug title } author { id name } }")
        with caplog.at_level(logging.WARNING, logger="graph_cache.core.normalizer"):
            result = normalizer.normalize_document(
                plan,
                {},
                {
                    "featured": {"__typename": "Post", "title": "No slug"},
                    "author": {"__typename": "User", "id": "1", "name": "Ann"},
                },
            )
        assert len(result.skipped) == 1
        assert isinstance(result.skipped[0], IdentityError)
        assert "featured" not in graph.get_record("@")
        assert graph.get_record("User:1")["name"] == "Ann"
        assert "Skipping object" in caplog.text

    def test_list_item_without_key_is_dropped(self, graph: Graph, registry: PlanRegistry) -> None:
        normalizer = Normalizer(graph, IdentityResolver(keys={"Post": lambda obj: obj.get("slug")}))
        normalizer.normalize_document(
            registry.get("{ posts { slug } }"),
            {},
            {"posts": [{"__typename": "Post", "slug": "a"}, {"__typename": "Post"}]},
        )
        assert graph.get_record("@")["posts"] == [{"__ref": "Post:a"}]


class TestConnections:
    def test_page_record_layout(
        self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph, posts_query: str, post_page
    ) -> None:
        result = normalizer.normalize_document(
            registry.get(posts_query), {"category": "tech", "first": 2}, {"posts": post_page(["1", "2"], has_next=True)}
        )
        assert result.pages == [P1]
        assert graph.get_record("@") == {'posts({"category":"tech","first":2})': {"__ref": P1}}
        assert graph.get_record(P1) == {
            "__typename": "PostConnection",
            "edges": [{"__ref": f"{P1}.edges.0"}, {"__ref": f"{P1}.edges.1"}],
            "pageInfo": {
                "__typename": "PageInfo",
                "startCursor": "c1",
                "endCursor": "c2",
                "hasNextPage": True,
                "hasPreviousPage": False,
            },
        }
        assert graph.get_record(f"{P1}.edges.0") == {
            "__typename": "PostEdge",
            "cursor": "c1",
            "node": {"__ref": "Post:1"},
        }
        assert graph.get_record("Post:2") == {"__typename": "Post", "id": "2", "title": "Post 2"}

    def test_page_registered_on_connection_record(
        self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph, posts_query: str, post_page
    ) -> None:
        plan = registry.get(posts_query)
        normalizer.normalize_document(plan, {"category": "tech", "first": 2}, {"posts": post_page(["1", "2"])})
        normalizer.normalize_document(
            plan, {"category": "tech", "first": 2, "after": "c2"}, {"posts": post_page(["3", "4"])}
        )
        assert graph.get_record(TECH) == {"pages": [P1, P2]}

    def test_idempotent(
        self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph, posts_query: str, post_page
    ) -> None:
        plan = registry.get(posts_query)
        variables = {"category": "tech", "first": 2}
        normalizer.normalize_document(plan, variables, {"posts": post_page(["1", "2"])})
        once = copy.deepcopy(graph.inspect())
        normalizer.normalize_document(plan, variables, {"posts": post_page(["1", "2"])})
        assert graph.inspect() == once

    def test_pages_are_independent(
        self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph, posts_query: str, post_page
    ) -> None:
        plan = registry.get(posts_query)
        normalizer.normalize_document(plan, {"category": "tech", "first": 2}, {"posts": post_page(["1", "2"])})
        first_page = copy.deepcopy(graph.get_record(P1))
        first_edges = [copy.deepcopy(graph.get_record(ref["__ref"])) for ref in first_page["edges"]]

        normalizer.normalize_document(
            plan, {"category": "tech", "first": 2, "after": "c2"}, {"posts": post_page(["3", "4"])}
        )
        assert graph.get_record(P1) == first_page
        assert [graph.get_record(ref["__ref"]) for ref in first_page["edges"]] == first_edges

    def test_rewrite_drops_stale_edges(
        self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph, posts_query: str, post_page
    ) -> None:
        plan = registry.get(posts_query)
        variables = {"category": "tech", "first": 2}
        normalizer.normalize_document(plan, variables, {"posts": post_page(["1", "2", "3"])})
        normalizer.normalize_document(plan, variables, {"posts": post_page(["1"])})
        assert graph.get_record(P1)["edges"] == [{"__ref": f"{P1}.edges.0"}]
        assert not graph.has_record(f"{P1}.edges.1")
        assert not graph.has_record(f"{P1}.edges.2")

    def test_nested_connection_under_entity(
        self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph, post_page
    ) -> None:
        plan = registry.get(
            '{ user(id: "1") { id posts(first: 2) @connection { edges { cursor node { id title } } } } }'
        )
        normalizer.normalize_document(
            plan, {}, {"user": {"__typename": "User", "id": "1", "posts": post_page(["1"])}}
        )
        page = '@.User:1.posts({"first":2})'
        assert graph.get_record("User:1")['posts({"first":2})'] == {"__ref": page}
        assert graph.get_record("@connection.User:1.posts({})") == {"pages": [page]}

    def test_null_connection(self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph, posts_query: str) -> None:
        normalizer.normalize_document(registry.get(posts_query), {"first": 2}, {"posts": None})
        assert graph.get_record("@") == {'posts({"first":2})': None}


class TestCommittedEdits:
    @pytest.fixture
    def feed(
        self,
        normalizer: Normalizer,
        registry: PlanRegistry,
        stack: LayerStack,
        identity: IdentityResolver,
        posts_query: str,
        post_page,
    ):
        """Write a tech page and return a reader of the composed node ids."""
        plan = registry.get(posts_query)
        materializer = Materializer(stack, identity, scheduler=lambda flush: None)

        def write(ids: list[str], **variables) -> None:
            normalizer.normalize_document(
                plan, {"category": "tech", "first": 2, **variables}, {"posts": post_page(ids)}
            )

        def read(**variables) -> list[str]:
            data = materializer.read_document(plan, {"category": "tech", "first": 2, **variables}).data
            return [edge["node"]["id"] for edge in data["posts"]["edges"]]

        write(["1", "2"])
        return write, read

    def test_refetch_restores_removed_node(self, feed, stack: LayerStack) -> None:
        write, read = feed
        stack.modify_optimistic(lambda b, ctx: b.connection(TECH).remove_node("Post:1")).commit()
        assert read() == ["2"]

        write(["1", "2"])
        assert read() == ["1", "2"]
        assert stack.committed_ops(TECH) == []

    def test_leading_refetch_drops_committed_add(self, feed, stack: LayerStack) -> None:
        write, read = feed
        stack.modify_optimistic(lambda b, ctx: b.connection(TECH).add_node(NEW_POST, position="start")).commit()
        assert read() == ["9", "1", "2"]

        write(["1", "2"])
        assert read() == ["1", "2"]

    def test_later_page_drops_only_edits_it_covers(self, feed, stack: LayerStack, graph: Graph) -> None:
        write, read = feed
        stack.modify_optimistic(
            lambda b, ctx: (
                b.connection(TECH).add_node(NEW_POST, position="start"),
                b.connection(TECH).remove_node("Post:3"),
            )
        ).commit()

        write(["3", "4"], after="c2")
        assert [op.node for op in stack.committed_ops(TECH)] == ["Post:9"]
        assert read(after="c2") == ["9", "3", "4"]
        assert graph.get_record(TECH)["pages"] == [P1, P2]


class TestRoots:
    def test_mutation_root(self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph) -> None:
        normalizer.normalize_document(
            registry.get('mutation { likePost(id: "1") { id likes } }'),
            {},
            {"likePost": {"__typename": "Post", "id": "1", "likes": 3}},
        )
        assert graph.get_record("@mutation") == {'likePost({"id":"1"})': {"__ref": "Post:1"}}
        assert graph.get_record("Post:1")["likes"] == 3
        assert not graph.has_record("@")

    def test_fragment_needs_root_id(self, registry: PlanRegistry) -> None:
        with pytest.raises(PlanError, match="entity key"):
            root_id_for(registry.get("fragment F on Post { id }"))

    def test_fragment_written_to_entity(self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph) -> None:
        normalizer.normalize_document(
            registry.get("fragment F on Post { id title }"),
            {},
            {"__typename": "Post", "id": "1", "title": "T"},
            root_id="Post:1",
        )
        assert graph.get_record("Post:1") == {"__typename": "Post", "id": "1", "title": "T"}


class TestHasDocument:
    def test_present(
        self, normalizer: Normalizer, registry: PlanRegistry, user_query: str, user_data: dict
    ) -> None:
        plan = registry.get(user_query)
        normalizer.normalize_document(plan, {"id": "1"}, user_data)
        assert normalizer.has_document(plan, {"id": "1"}) is True
        assert normalizer.has_document(plan, {"id": "2"}) is False

    def test_missing_field(self, normalizer: Normalizer, registry: PlanRegistry, user_query: str, user_data: dict) -> None:
        normalizer.normalize_document(registry.get(user_query), {"id": "1"}, user_data)
        wider = registry.get("query User($id: ID!) { user(id: $id) { id name phone } }")
        assert normalizer.has_document(wider, {"id": "1"}) is False

    def test_requires_exact_page(
        self, normalizer: Normalizer, registry: PlanRegistry, posts_query: str, post_page
    ) -> None:
        plan = registry.get(posts_query)
        normalizer.normalize_document(plan, {"category": "tech", "first": 2}, {"posts": post_page(["1", "2"])})
        assert normalizer.has_document(plan, {"category": "tech", "first": 2}) is True
        assert normalizer.has_document(plan, {"category": "tech", "first": 2, "after": "c2"}) is False

    def test_dangling_entity(
        self, normalizer: Normalizer, registry: PlanRegistry, graph: Graph, user_query: str, user_data: dict
    ) -> None:
        plan = registry.get(user_query)
        normalizer.normalize_document(plan, {"id": "1"}, user_data)
        graph.delete_record("User:1")
        assert normalizer.has_document(plan, {"id": "1"}) is False

    def test_empty_graph(self, normalizer: Normalizer, registry: PlanRegistry, user_query: str) -> None:
        assert normalizer.has_document(registry.get(user_query), {"id": "1"}) is False
