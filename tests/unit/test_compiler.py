"""Unit tests for the document compiler."""

from __future__ import annotations

import pytest
from graphql import DocumentNode, parse

from graph_cache.core.enums import CompositionMode, DedupeStrategy, FieldKind
from graph_cache.core.exceptions import PlanError
from graph_cache.planning.compiler import compile_plan, fnv1a32
from graph_cache.planning.plan import Plan


class TestCompileOperation:
    def test_query_plan(self, posts_query: str) -> None:
        plan = compile_plan(posts_query)
        assert plan.operation == "query"
        assert plan.name == "Posts"
        assert plan.root_typename == "Query"
        posts = plan.root[0]
        assert posts.kind is FieldKind.CONNECTION
        assert posts.connection is not None
        assert posts.connection.key == "posts"
        assert posts.connection.mode is CompositionMode.INFINITE
        assert posts.connection.dedupe is DedupeStrategy.CURSOR

    def test_variables(self, posts_query: str) -> None:
        plan = compile_plan(posts_query)
        assert plan.variable_names == ("category", "first", "after", "before", "last")
        assert plan.window_variables == frozenset({"first", "after", "before", "last"})

    def test_mutation_root(self) -> None:
        plan = compile_plan('mutation { likePost(id: "1") { id likes } }')
        assert plan.operation == "mutation"
        assert plan.root_typename == "Mutation"

    def test_subscription_root(self) -> None:
        plan = compile_plan("subscription { postAdded { id } }")
        assert plan.root_typename == "Subscription"

    def test_parsed_document_accepted(self, posts_query: str) -> None:
        assert compile_plan(parse(posts_query)).id == compile_plan(posts_query).id

    def test_nested_field_kinds(self) -> None:
        plan = compile_plan('{ user(id: "1") { id posts(first: 2) @connection { edges { cursor } } } }')
        user = plan.root[0]
        assert user.kind is FieldKind.LINK
        assert user.child("id").kind is FieldKind.SCALAR
        assert user.child("posts").is_connection
        assert [field.response_key for field in plan.connections] == ["posts"]


class TestArgumentsAndKeys:
    def test_variable_default_applies(self) -> None:
        plan = compile_plan("query($first: Int = 10) { posts(first: $first) @connection { edges { cursor } } }")
        assert plan.root[0].build_args({}) == {"first": 10}

    def test_storage_key_uses_args(self) -> None:
        plan = compile_plan("query($id: ID) { user(id: $id) { id } }")
        assert plan.root[0].storage_key({"id": "1"}) == 'user({"id":"1"})'

    def test_aliases_become_separate_fields(self) -> None:
        plan = compile_plan('{ a: user(id: "1") { id } b: user(id: "2") { id } }')
        assert [field.response_key for field in plan.root] == ["a", "b"]
        assert plan.root[0].storage_key({}) != plan.root[1].storage_key({})

    def test_page_and_connection_keys(self, posts_query: str) -> None:
        posts = compile_plan(posts_query).root[0]
        variables = {"category": "tech", "first": 2, "after": "c2"}
        assert posts.page_key("@", variables) == '@.posts({"after":"c2","category":"tech","first":2})'
        assert posts.connection_key("@", variables) == '@connection.posts({"category":"tech"})'


class TestConnectionDirective:
    def test_directive_arguments(self) -> None:
        plan = compile_plan(
            """
            query($category: String, $first: Int) {
              posts(category: $category, sort: "new", first: $first)
                @connection(key: "feed", filters: ["category"], mode: "page", dedupe: "node") {
                edges { cursor }
              }
            }
            """
        )
        spec = plan.root[0].connection
        assert spec is not None
        assert spec.key == "feed"
        assert spec.filters == ("category",)
        assert spec.mode is CompositionMode.PAGE
        assert spec.dedupe is DedupeStrategy.NODE
        key = plan.root[0].connection_key("@", {"category": "tech", "first": 2})
        assert key == '@connection.feed({"category":"tech"})'

    def test_compile_defaults_apply(self) -> None:
        plan = compile_plan(
            "{ posts(first: 2) @connection { edges { cursor } } }",
            default_mode="page",
            default_dedupe="edgeRef",
        )
        spec = plan.root[0].connection
        assert spec.mode is CompositionMode.PAGE
        assert spec.dedupe is DedupeStrategy.EDGE_REF

    def test_scalar_field_rejected(self) -> None:
        with pytest.raises(PlanError, match="scalar"):
            compile_plan("{ count @connection }")

    def test_unknown_argument_rejected(self) -> None:
        with pytest.raises(PlanError, match="Unknown @connection argument"):
            compile_plan("{ posts @connection(size: 1) { edges { cursor } } }")

    def test_invalid_mode_rejected(self) -> None:
        with pytest.raises(PlanError):
            compile_plan('{ posts @connection(mode: "pages") { edges { cursor } } }')

    def test_variable_argument_rejected(self) -> None:
        with pytest.raises(PlanError):
            compile_plan("query($k: String) { posts @connection(key: $k) { edges { cursor } } }")

    def test_conflicting_annotations_rejected(self) -> None:
        with pytest.raises(PlanError, match="@connection"):
            compile_plan("{ posts @connection { edges { cursor } } posts { edges { cursor } } }")

    def test_conflicting_settings_rejected(self) -> None:
        with pytest.raises(PlanError, match="@connection"):
            compile_plan(
                '{ posts @connection(key: "a") { edges { cursor } } posts @connection(key: "b") { pageInfo { endCursor } } }'
            )


class TestSelectionMerging:
    def test_same_field_merged(self) -> None:
        plan = compile_plan('{ user(id: "1") { id } user(id: "1") { name } }')
        assert len(plan.root) == 1
        assert [field.response_key for field in plan.root[0].selection] == ["id", "name"]

    def test_conflicting_arguments_rejected(self) -> None:
        with pytest.raises(PlanError, match="Conflicting arguments"):
            compile_plan('{ user(id: "1") { id } user(id: "2") { name } }')

    def test_conflicting_field_names_rejected(self) -> None:
        with pytest.raises(PlanError, match="Conflicting selections"):
            compile_plan("{ x: name x: email }")

    def test_inline_fragments_become_guards(self) -> None:
        plan = compile_plan('{ node(id: "1") { id ... on Post { title } ... on Comment { body } } }')
        guards = {field.response_key: field.type_condition for field in plan.root[0].selection}
        assert guards == {"id": None, "title": "Post", "body": "Comment"}

    def test_root_guard_dropped(self) -> None:
        plan = compile_plan("{ ... on Query { viewer { id } } }")
        assert plan.root[0].type_condition is None


class TestFragments:
    DOCUMENT = """
    query { user(id: "1") { ...UserFields } }
    fragment UserFields on User { id name }
    """

    def test_spread_inlined_with_guard(self) -> None:
        plan = compile_plan(self.DOCUMENT)
        fields = plan.root[0].selection
        assert [field.response_key for field in fields] == ["id", "name"]
        assert {field.type_condition for field in fields} == {"User"}

    def test_fragment_plan(self) -> None:
        plan = compile_plan(self.DOCUMENT, "UserFields")
        assert plan.operation == "fragment"
        assert plan.name == "UserFields"
        assert plan.root_typename == "User"
        assert [field.response_key for field in plan.root] == ["id", "name"]

    def test_single_fragment_document(self) -> None:
        plan = compile_plan("fragment PostFields on Post { id title }")
        assert plan.operation == "fragment"

    def test_multiple_fragments_need_a_name(self) -> None:
        with pytest.raises(PlanError, match="fragment name is required"):
            compile_plan("fragment A on Post { id } fragment B on Post { title }")

    def test_unknown_fragment_name(self) -> None:
        with pytest.raises(PlanError, match="Unknown fragment"):
            compile_plan(self.DOCUMENT, "Missing")

    def test_unknown_spread(self) -> None:
        with pytest.raises(PlanError, match="Unknown fragment"):
            compile_plan("{ user { ...Missing } }")

    def test_fragment_cycle(self) -> None:
        with pytest.raises(PlanError, match="cycle"):
            compile_plan(
                """
                query { user { ...A } }
                fragment A on User { id ...B }
                fragment B on User { name ...A }
                """
            )


class TestDocumentErrors:
    def test_syntax_error(self) -> None:
        with pytest.raises(PlanError, match="Invalid GraphQL document"):
            compile_plan("{ user(")

    def test_empty_document(self) -> None:
        with pytest.raises(PlanError, match="no operation"):
            compile_plan(DocumentNode(definitions=()))

    def test_multiple_operations(self) -> None:
        with pytest.raises(PlanError, match="multiple operations"):
            compile_plan("query A { a } query B { b }")


class TestNetworkQuery:
    def test_connection_directive_stripped(self, posts_query: str) -> None:
        assert "@connection" not in compile_plan(posts_query).network_query

    def test_typename_added_to_nested_selections(self, posts_query: str) -> None:
        network = compile_plan(posts_query).network_query
        # posts, edges, node, pageInfo
        assert network.count("__typename") == 4

    def test_typename_not_added_to_root(self) -> None:
        network = compile_plan("{ version }").network_query
        assert "__typename" not in network

    def test_existing_typename_not_duplicated(self) -> None:
        network = compile_plan('{ user(id: "1") { __typename id } }').network_query
        assert network.count("__typename") == 1

    def test_network_query_parses(self, posts_query: str) -> None:
        parse(compile_plan(posts_query).network_query)


class TestPlanIdentity:
    def test_fnv1a32(self) -> None:
        assert fnv1a32("") == 0x811C9DC5
        assert fnv1a32("a") == 0xE40C292C

    def test_id_ignores_whitespace(self) -> None:
        assert compile_plan("{ user { id } }").id == compile_plan("{\n  user {\n    id\n  }\n}").id

    def test_id_depends_on_arguments(self) -> None:
        assert compile_plan('{ user(id: "1") { id } }').id != compile_plan('{ user(id: "2") { id } }').id

    def test_strict_signature_includes_pagination(self, posts_query: str) -> None:
        plan = compile_plan(posts_query)
        first = plan.signature({"category": "tech", "first": 2})
        second = plan.signature({"category": "tech", "first": 2, "after": "c2"})
        assert first != second

    def test_canonical_signature_drops_pagination(self, posts_query: str) -> None:
        plan = compile_plan(posts_query)
        first = plan.signature({"category": "tech", "first": 2}, canonical=True)
        second = plan.signature({"category": "tech", "first": 5, "after": "c2"}, canonical=True)
        assert first == second
        assert first != plan.signature({"category": "news"}, canonical=True)

    def test_signature_ignores_undeclared_variables(self, posts_query: str) -> None:
        plan = compile_plan(posts_query)
        assert plan.signature({"first": 2, "unused": 1}) == plan.signature({"first": 2})

    def test_plan_is_immutable(self, posts_query: str) -> None:
        plan: Plan = compile_plan(posts_query)
        with pytest.raises(AttributeError):
            plan.name = "Other"  # type: ignore[misc]
