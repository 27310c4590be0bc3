"""
Example 04: Snapshots

This example demonstrates dehydrating a cache to JSON and hydrating a new
cache from it, e.g. to hand server-rendered data to a client.
"""

import json

from graph_cache import Cache, SnapshotError

USER_QUERY = """
query User($id: ID!) {
  user(id: $id) {
    id
    name
  }
}
"""


def main():
    server = Cache()
    server.write_query(USER_QUERY, {"user": {"__typename": "User", "id": "1", "name": "Alice"}}, {"id": "1"})

    print("=== Snapshots ===\n")

    payload = json.dumps(server.dehydrate())
    print(f"Snapshot: {payload}\n")

    client = Cache()
    count = client.hydrate(json.loads(payload))
    print(f"Hydrated {count} records")
    print(f"read_query: {client.read_query(USER_QUERY, {'id': '1'})}\n")

    try:
        client.hydrate({"version": 2, "records": []})
    except SnapshotError as e:
        print(f"Rejected snapshot: {e}")


if __name__ == "__main__":
    main()
