"""
Example 03: Optimistic Updates

This example demonstrates optimistic layers: edits shown immediately over
the cached data and then committed or reverted.
"""

from graph_cache import Cache

TODO_QUERY = """
query Todo($id: ID!) {
  todo(id: $id) {
    id
    text
    done
  }
}
"""

TOGGLE = """
mutation Toggle($id: ID!) {
  toggleTodo(id: $id) {
    id
    done
  }
}
"""


class SlowTransport:
    """Prints the cache state seen while the mutation is in flight."""

    cache: Cache

    def http(self, request):
        print(f"  in flight: {self.cache.read_query(TODO_QUERY, {'id': '1'})}")
        if request.variables.get("fail"):
            raise ConnectionError("server unavailable")
        return {"data": {"toggleTodo": {"__typename": "Todo", "id": "1", "done": True}}}


def main():
    transport = SlowTransport()
    cache = Cache(transport=transport, scheduler=lambda flush: None)
    transport.cache = cache
    cache.write_query(
        TODO_QUERY, {"todo": {"__typename": "Todo", "id": "1", "text": "Write docs", "done": False}}, {"id": "1"}
    )

    print("=== Optimistic Updates ===\n")

    # Layers apply on top of the graph without changing it
    tx = cache.modify_optimistic(lambda b, ctx: b.patch("Todo:1", {"text": "Write better docs"}))
    print(f"With layer: {cache.read_query(TODO_QUERY, {'id': '1'})}")
    print(f"Stored:     {cache.inspect().record('Todo:1')}")
    tx.revert()
    print(f"Reverted:   {cache.read_query(TODO_QUERY, {'id': '1'})}\n")

    # Mutations apply the builder until the response arrives
    print("Successful mutation:")
    cache.execute_mutation(TOGGLE, {"id": "1"}, optimistic=lambda b, ctx: b.patch("Todo:1", {"done": True}))
    print(f"  after: {cache.read_query(TODO_QUERY, {'id': '1'})}\n")

    cache.write_fragment("Todo:1", "fragment T on Todo { done }", {"__typename": "Todo", "done": False})
    print("Failed mutation rolls back:")
    result = cache.execute_mutation(
        TOGGLE, {"id": "1", "fail": True}, optimistic=lambda b, ctx: b.patch("Todo:1", {"done": True})
    )
    print(f"  error: {result.error}")
    print(f"  after: {cache.read_query(TODO_QUERY, {'id': '1'})}")


if __name__ == "__main__":
    main()
