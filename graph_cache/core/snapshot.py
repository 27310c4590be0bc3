"""Graph snapshots.

Snapshot format (JSON-serializable):
    {"version": 1, "records": [[key, fields], ...]}

Page and connection identity records travel with the entities, so page keys
survive a dehydrate/hydrate round trip unchanged.
"""

from __future__ import annotations

import copy
from typing import Any, Literal

from pydantic import BaseModel, ValidationError

from graph_cache.core.exceptions import SnapshotError
from graph_cache.core.graph import Graph

SNAPSHOT_VERSION = 1


class Snapshot(BaseModel):
    """Validated snapshot payload."""

    version: Literal[1]
    records: list[tuple[str, dict[str, Any]]]


def dehydrate(graph: Graph) -> dict[str, Any]:
    """Export every record of *graph*."""
    return {
        "version": SNAPSHOT_VERSION,
        "records": [[key, copy.deepcopy(graph.get_record(key))] for key in graph.keys()],
    }


def hydrate(graph: Graph, snapshot: Any) -> int:
    """Replace the contents of *graph* with *snapshot*; returns the record count.

    Raises:
        SnapshotError: If the snapshot does not match the snapshot format.
    """
    try:
        parsed = Snapshot.model_validate(snapshot)
    except ValidationError as exc:
        raise SnapshotError(f"Invalid snapshot: {exc.error_count()} validation error(s)") from exc

    graph.clear()
    for key, fields in parsed.records:
        graph.replace_record(key, copy.deepcopy(fields))
    return len(parsed.records)
