"""Identity-stable view objects.

A LiveView is a dict that the materializer updates in place, so callers
holding a reference keep seeing current data. Nested objects are synced
recursively and keep their identity while their position is unchanged.
"""

from __future__ import annotations

from typing import Any, Mapping


class LiveView(dict):  # type: ignore[type-arg]
    """Dict updated in place by the materializer."""

    def _overlay(self, data: Mapping[str, Any] | None) -> bool:
        """Sync this view to *data*; returns True when anything changed."""
        data = data or {}
        changed = False
        for name in [name for name in self if name not in data]:
            dict.__delitem__(self, name)
            changed = True
        for name, value in data.items():
            current = self.get(name, _ABSENT)
            synced, value_changed = _sync(current, value)
            if value_changed or current is _ABSENT:
                dict.__setitem__(self, name, synced)
                changed = True
        return changed


class _Absent:
    __slots__ = ()


_ABSENT = _Absent()


def to_view(value: Any) -> Any:
    """Wrap plain dicts (at any depth) in LiveView objects."""
    if isinstance(value, dict):
        view = LiveView()
        for name, item in value.items():
            dict.__setitem__(view, name, to_view(item))
        return view
    if isinstance(value, list):
        return [to_view(item) for item in value]
    return value


def _sync(current: Any, value: Any) -> tuple[Any, bool]:
    """Return ``(object to store, changed)`` reusing *current* where possible."""
    if isinstance(current, LiveView) and isinstance(value, dict):
        return current, current._overlay(value)
    if isinstance(current, list) and isinstance(value, list):
        changed = len(current) != len(value)
        items = []
        for index, item in enumerate(value):
            if index < len(current):
                synced, item_changed = _sync(current[index], item)
                changed = changed or item_changed or synced is not current[index]
            else:
                synced = to_view(item)
            items.append(synced)
        if changed:
            current[:] = items
        return current, changed
    if current is _ABSENT or type(current) is not type(value) or current != value:
        return to_view(value), True
    return current, False
