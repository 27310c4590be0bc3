"""Record, field and key constants shared across the cache."""

from __future__ import annotations

ROOT_ID = "@"
MUTATION_ROOT_ID = "@mutation"
SUBSCRIPTION_ROOT_ID = "@subscription"

OPERATION_ROOT_IDS = {
    "query": ROOT_ID,
    "mutation": MUTATION_ROOT_ID,
    "subscription": SUBSCRIPTION_ROOT_ID,
}

TYPENAME_FIELD = "__typename"
ID_FIELD = "id"
ALT_ID_FIELD = "_id"
REF_FIELD = "__ref"

IDENTITY_FIELDS = frozenset({TYPENAME_FIELD, ID_FIELD})

CONNECTION_DIRECTIVE = "connection"
CONNECTION_EDGES = "edges"
CONNECTION_PAGE_INFO = "pageInfo"
CONNECTION_NODE = "node"
CONNECTION_CURSOR = "cursor"

# Namespaces for page records and connection identity records
PAGE_PREFIX = "@."
CONNECTION_PREFIX = "@connection."
EDGE_INFIX = ".edges."

# Fields of a connection identity record
CONNECTION_PAGES_FIELD = "pages"
CONNECTION_EDITS_FIELD = "edits"

DEFAULT_PAGINATION_ARGS = frozenset({"first", "last", "before", "after", "offset", "page"})

# Pagination arguments that make a page extend the list backwards (prepend)
BACKWARD_ARGS = frozenset({"before", "last"})


class _DeleteField:
    """Marker value: passing it to ``Graph.put_record`` removes the field."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()
