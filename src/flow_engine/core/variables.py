"""
Per-run variable store.

Names are case-sensitive. Dotted names starting with one of the known
namespaces (contact, user, flow, conversation) read collaborator data; any
other name is a run-local binding (input captures, API responses, numbered
template placeholders).
"""

import copy
from typing import Any, Dict, Iterable, Optional

from .errors import VariableError

NAMESPACES = ("contact", "user", "flow", "conversation")

_MISSING = object()


def _walk(value: Any, path: Iterable[str]) -> Any:
    for key in path:
        if isinstance(value, dict):
            if key not in value:
                return _MISSING
            value = value[key]
        elif isinstance(value, list) and key.isdigit() and int(key) < len(value):
            value = value[int(key)]
        else:
            return _MISSING
    return value


class VariableStore:
    """Flat, namespaced key -> value binding table scoped to one run."""

    def __init__(
        self,
        namespaces: Optional[Dict[str, Dict[str, Any]]] = None,
        local: Optional[Dict[str, Any]] = None,
    ):
        self._namespaces: Dict[str, Dict[str, Any]] = {name: {} for name in NAMESPACES}
        for name, data in (namespaces or {}).items():
            if name not in NAMESPACES:
                raise VariableError(f"Unknown namespace: {name}")
            self._namespaces[name] = dict(data or {})
        self._local: Dict[str, Any] = dict(local or {})

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> "VariableStore":
        """Rebuild a store from a persisted snapshot."""
        data = copy.deepcopy(snapshot or {})
        namespaces = {name: data.pop(name) for name in NAMESPACES if isinstance(data.get(name), dict)}
        return cls(namespaces=namespaces, local=data)

    def get(self, name: str) -> Any:
        """Return the bound value, or None when the name is unbound."""
        value = self.lookup(name)
        return None if value is _MISSING else value

    def has(self, name: str) -> bool:
        return self.lookup(name) is not _MISSING

    def lookup(self, name: str) -> Any:
        if name in self._local:
            return self._local[name]

        head, _, rest = name.partition(".")
        if head in self._namespaces:
            if not rest:
                return self._namespaces[head]
            return _walk(self._namespaces[head], rest.split("."))

        if rest and head in self._local:
            return _walk(self._local[head], rest.split("."))

        return _MISSING

    def set(self, name: str, value: Any) -> None:
        head = name.partition(".")[0]
        if head in self._namespaces:
            raise VariableError(f"'{name}' is in the read-only '{head}' namespace")
        self._local[name] = value

    def update_namespace(self, namespace: str, fields: Dict[str, Any]) -> None:
        """Refresh collaborator-backed data, e.g. after a contact update."""
        if namespace not in self._namespaces:
            raise VariableError(f"Unknown namespace: {namespace}")
        self._namespaces[namespace].update(fields)

    def merge(self, bindings: Dict[str, Any]) -> None:
        """
        Merge bindings into the store.

        Namespace keys may be given nested ({"contact": {"name": ...}}) or
        dotted ({"contact.name": ...}). Other keys become run-local.
        """
        for key, value in (bindings or {}).items():
            head, _, rest = key.partition(".")
            if head not in self._namespaces:
                self._local[key] = value
            elif not rest:
                if not isinstance(value, dict):
                    raise VariableError(f"Namespace '{head}' must be merged as an object")
                self._namespaces[head].update(value)
            else:
                target = self._namespaces[head]
                *parents, leaf = rest.split(".")
                for part in parents:
                    target = target.setdefault(part, {})
                target[leaf] = value

    def snapshot(self) -> Dict[str, Any]:
        """Immutable copy of every binding, namespaces nested."""
        data = copy.deepcopy(self._local)
        for name, values in self._namespaces.items():
            data[name] = copy.deepcopy(values)
        return data

    def __contains__(self, name: str) -> bool:
        return self.has(name)
