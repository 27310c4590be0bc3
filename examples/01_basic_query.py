"""
Example 01: Basic Query Execution

This example demonstrates executing a query through a transport and reading
the normalized result back from the cache.
"""

from graph_cache import Cache, CacheConfig, OperationRequest

USER_QUERY = """
query User($id: ID!) {
  user(id: $id) {
    id
    name
    email
  }
}
"""

USERS = {
    "1": {"__typename": "User", "id": "1", "name": "Alice", "email": "alice@example.com"},
    "2": {"__typename": "User", "id": "2", "name": "Bob", "email": "bob@example.com"},
}


class InMemoryTransport:
    """Answers User queries from a dict instead of the network."""

    def http(self, request: OperationRequest) -> dict:
        print(f"  -> network: {request.operation_name} {request.variables}")
        return {"data": {"user": USERS.get(request.variables["id"])}}


def main():
    cache = Cache(CacheConfig(), InMemoryTransport())

    print("=== Basic Query Execution ===\n")

    # execute_query: cache-first, goes to the network on a miss
    result = cache.execute_query(USER_QUERY, {"id": "1"})
    print(f"execute_query result: {result.data}\n")

    # A second execution is answered from the cache
    result = cache.execute_query(USER_QUERY, {"id": "1"})
    print(f"cached result: {result.data}\n")

    # read_query: cache only, None when incomplete
    print(f"read_query(id=1): {cache.read_query(USER_QUERY, {'id': '1'})}")
    print(f"read_query(id=2): {cache.read_query(USER_QUERY, {'id': '2'})}\n")

    # Records are stored once per entity
    print(f"Entities: {cache.inspect().entity_keys()}")
    print(f"User:1 record: {cache.inspect().record('User:1')}")


if __name__ == "__main__":
    main()
