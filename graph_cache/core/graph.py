"""Normalized record store.

Records are flat mappings keyed by entity key (``Type:id``), page key or
edge key. Link fields hold ``{"__ref": key}`` values; the Graph never
follows them and knows nothing about plans or pagination.
"""

from __future__ import annotations

import logging
import weakref
from typing import Any, Callable, Iterator, Mapping

from graph_cache.core.constants import DELETE_FIELD, ID_FIELD

logger = logging.getLogger(__name__)

ChangeListener = Callable[[set[str]], None]


class LiveRecord(dict):  # type: ignore[type-arg]
    """Dict view of one stored record, updated in place by later writes.

    A removed record leaves the view empty.
    """

    def _overlay(self, snapshot: Mapping[str, Any]) -> None:
        for name in [name for name in self if name not in snapshot]:
            dict.__delitem__(self, name)
        dict.update(self, snapshot)


def _normalize_id(value: Any) -> Any:
    return str(value) if value is not None else None


class Graph:
    """Key -> record store with merge-on-write semantics.

    No cross-key transactionality is provided here; callers that need
    atomic multi-key writes coordinate them above the Graph.
    """

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._versions: dict[str, int] = {}
        self._views: weakref.WeakValueDictionary[str, LiveRecord] = weakref.WeakValueDictionary()
        self._listeners: list[ChangeListener] = []

    # --- listeners ---

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Register *listener* for the set of keys touched by each write."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _emit(self, keys: set[str]) -> None:
        for listener in list(self._listeners):
            listener(keys)

    # --- reads ---

    def get_record(self, key: str) -> dict[str, Any] | None:
        """Return the stored record for *key* (do not mutate it), or None."""
        return self._records.get(key)

    def has_record(self, key: str) -> bool:
        return key in self._records

    def version(self, key: str) -> int:
        """Monotonic write counter for *key* (0 when never written)."""
        return self._versions.get(key, 0)

    def keys(self) -> list[str]:
        return list(self._records.keys())

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._records))

    # --- writes ---

    def put_record(self, key: str, fields: Mapping[str, Any]) -> bool:
        """Merge *fields* into the record at *key*, creating it if absent.

        ``DELETE_FIELD`` values remove the field. Returns True when the
        stored record changed.
        """
        existing = self._records.get(key)
        current = existing if existing is not None else {}
        changed = existing is None

        for name, value in fields.items():
            if value is DELETE_FIELD:
                if name in current:
                    del current[name]
                    changed = True
                continue
            if name == ID_FIELD:
                value = _normalize_id(value)
                if value is None:
                    if name in current:
                        del current[name]
                        changed = True
                    continue
            if name not in current or current[name] != value:
                current[name] = value
                changed = True

        if existing is None:
            self._records[key] = current
        if changed:
            self._touch(key)
        return changed

    def replace_record(self, key: str, fields: Mapping[str, Any]) -> bool:
        """Overwrite the record at *key* wholesale."""
        snapshot = {name: value for name, value in fields.items() if value is not DELETE_FIELD}
        if ID_FIELD in snapshot:
            snapshot[ID_FIELD] = _normalize_id(snapshot[ID_FIELD])
        if self._records.get(key) == snapshot and key in self._records:
            return False
        self._records[key] = snapshot
        self._touch(key)
        return True

    def delete_record(self, key: str) -> bool:
        """Remove the record at *key*.

        References to it from other records are left dangling; readers treat
        them as missing.
        """
        if key not in self._records:
            return False
        del self._records[key]
        self._versions[key] = self._versions.get(key, 0) + 1
        view = self._views.pop(key, None)
        if view is not None:
            view._overlay({})
        self._emit({key})
        return True

    def clear(self) -> None:
        """Drop all records; live views are emptied in place."""
        touched = set(self._records)
        for view in list(self._views.values()):
            view._overlay({})
        self._records.clear()
        self._views.clear()
        for key in touched:
            self._versions[key] = self._versions.get(key, 0) + 1
        if touched:
            self._emit(touched)

    def _touch(self, key: str) -> None:
        self._versions[key] = self._versions.get(key, 0) + 1
        view = self._views.get(key)
        if view is not None:
            view._overlay(self._records[key])
        self._emit({key})

    # --- views ---

    def materialize_record(self, key: str) -> LiveRecord | None:
        """Return the live view of *key*; the same object for every call while referenced."""
        snapshot = self._records.get(key)
        if snapshot is None:
            return None
        view = self._views.get(key)
        if view is None:
            view = LiveRecord()
            view._overlay(snapshot)
            self._views[key] = view
        return view

    def inspect(self) -> dict[str, Any]:
        """Debug snapshot of all records (shallow copies)."""
        return {"records": {key: dict(record) for key, record in self._records.items()}}
