"""Entity identity resolution.

Maps a response object to its entity key ``Typename:id`` using the per-type
identity functions and the interface map from ``CacheConfig``.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping

from graph_cache.core.constants import ALT_ID_FIELD, ID_FIELD, TYPENAME_FIELD
from graph_cache.core.exceptions import IdentityError


class IdentityResolver:
    """Resolves entity keys for typed response objects.

    Args:
        keys: Type name -> identity function returning an id or None.
        interfaces: Interface name -> list of implementing type names.
            Implementors are keyed under the interface name.
    """

    def __init__(
        self,
        keys: Mapping[str, Callable[[dict[str, Any]], Any]] | None = None,
        interfaces: Mapping[str, list[str]] | None = None,
    ) -> None:
        self._keys = dict(keys or {})
        self._interfaces = {name: list(types) for name, types in (interfaces or {}).items()}
        self._canonical: dict[str, str] = {}
        for interface, implementors in self._interfaces.items():
            for typename in implementors:
                self._canonical[typename] = interface

    def canonical_typename(self, typename: str) -> str:
        """Return the interface a type is stored under, or the type itself."""
        return self._canonical.get(typename, typename)

    def implementors(self, typename: str) -> list[str]:
        """Concrete types stored under *typename* (itself when not an interface)."""
        return list(self._interfaces.get(typename, [typename]))

    def matches(self, typename: str | None, type_condition: str | None) -> bool:
        """Check whether an object of *typename* satisfies a fragment type condition.

        Untyped objects satisfy every condition.
        """
        if type_condition is None:
            return True
        if typename is None or typename == type_condition:
            return True
        if self._canonical.get(typename) == type_condition:
            return True
        # abstract record read through a concrete fragment
        return type_condition in self._interfaces.get(typename, ())

    def has_keyer(self, typename: str | None) -> bool:
        """Check whether a custom identity function is configured for *typename*."""
        if typename is None:
            return False
        return typename in self._keys or self.canonical_typename(typename) in self._keys

    def identify(self, obj: Any) -> str | None:
        """Return the entity key of *obj*, or None when it has no resolvable identity."""
        if not isinstance(obj, dict):
            return None
        typename = obj.get(TYPENAME_FIELD)
        if not isinstance(typename, str) or not typename:
            return None

        canonical = self.canonical_typename(typename)
        keyer = self._keys.get(typename) or self._keys.get(canonical)
        if keyer is not None:
            entity_id = keyer(obj)
        else:
            entity_id = obj.get(ID_FIELD)
            if entity_id is None:
                entity_id = obj.get(ALT_ID_FIELD)

        if entity_id is None or entity_id == "":
            return None
        return f"{canonical}:{entity_id}"

    def require(self, obj: Any) -> str:
        """Like ``identify`` but raises ``IdentityError`` instead of returning None."""
        key = self.identify(obj)
        if key is None:
            typename = obj.get(TYPENAME_FIELD) if isinstance(obj, dict) else None
            raise IdentityError(typename, "no __typename/id or configured key function")
        return key

    @property
    def keys(self) -> dict[str, Callable[[dict[str, Any]], Any]]:
        return dict(self._keys)

    @property
    def interfaces(self) -> dict[str, list[str]]:
        return {name: list(types) for name, types in self._interfaces.items()}
