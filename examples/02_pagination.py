"""
Example 02: Paginated Connections

This example demonstrates how pages of a @connection field are stored as
separate records and composed into one list by a watch.
"""

from graph_cache import Cache

POSTS_QUERY = """
query Posts($category: String, $first: Int, $after: String) {
  posts(category: $category, first: $first, after: $after) @connection {
    edges {
      cursor
      node {
        id
        title
      }
    }
    pageInfo {
      endCursor
      hasNextPage
    }
  }
}
"""


def page(ids, has_next):
    edges = [
        {"__typename": "PostEdge", "cursor": f"c{i}", "node": {"__typename": "Post", "id": i, "title": f"Post {i}"}}
        for i in ids
    ]
    return {
        "posts": {
            "__typename": "PostConnection",
            "edges": edges,
            "pageInfo": {"__typename": "PageInfo", "endCursor": edges[-1]["cursor"], "hasNextPage": has_next},
        }
    }


def show(view):
    titles = [edge["node"]["title"] for edge in view["posts"]["edges"]]
    print(f"  feed: {titles} hasNextPage={view['posts']['pageInfo']['hasNextPage']}")


def main():
    cache = Cache(scheduler=lambda flush: None)

    print("=== Paginated Connections ===\n")

    first = {"category": "tech", "first": 2}
    second = {"category": "tech", "first": 2, "after": "c2"}
    cache.write_query(POSTS_QUERY, page(["1", "2"], True), first)
    cache.write_query(POSTS_QUERY, page(["3", "4"], False), second)

    # Each page is its own record; the connection record lists them
    inspector = cache.inspect()
    for key in inspector.connection_keys():
        print(f"Connection {key}")
        for page_key in inspector.pages(key):
            print(f"  page {page_key}")
    print()

    # A watch accumulates pages as its variables move forward
    watch = cache.watch_query(POSTS_QUERY, first, on_data=show)
    watch.update(second)
    print()

    # A page written later updates the composed view
    cache.write_query(POSTS_QUERY, page(["3", "5"], False), second)
    cache.flush()
    watch.unsubscribe()


if __name__ == "__main__":
    main()
