"""
{{placeholder}} resolution against a variable store.
"""

import json
import re
from enum import Enum
from typing import Any, List

from .variables import VariableStore

PLACEHOLDER = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


class UnresolvedPolicy(str, Enum):
    """What to render for a placeholder with no binding."""
    EMPTY = "empty"
    LITERAL = "literal"


def to_text(value: Any) -> str:
    """Render a bound value the way it should appear in a message."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def placeholders(text: str) -> List[str]:
    """Names referenced by `text`, in order of appearance."""
    if not text:
        return []
    return PLACEHOLDER.findall(text)


class TemplateResolver:
    """Single-pass placeholder substitution."""

    def __init__(self, policy: UnresolvedPolicy = UnresolvedPolicy.EMPTY):
        self.policy = policy

    def resolve(self, text: str, store: VariableStore) -> str:
        """
        Substitute every {{name}} in `text`.

        Substituted values are never rescanned, so a value that itself
        contains "{{" is rendered verbatim.
        """
        if not text or "{{" not in text:
            return text

        def replace(match: "re.Match[str]") -> str:
            name = match.group(1)
            if store.has(name):
                return to_text(store.get(name))
            if self.policy == UnresolvedPolicy.LITERAL:
                return match.group(0)
            return ""

        return PLACEHOLDER.sub(replace, text)

    def resolve_value(self, value: Any, store: VariableStore) -> Any:
        """Resolve every string inside a nested dict/list structure."""
        if isinstance(value, str):
            return self.resolve(value, store)
        if isinstance(value, dict):
            return {key: self.resolve_value(item, store) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(item, store) for item in value]
        return value

    def lookup(self, reference: str, store: VariableStore) -> Any:
        """
        Resolve a variable reference to its runtime value.

        Accepts a bare or dotted name, a lone {{name}} token (value returned
        untouched), or text mixing tokens and literals (rendered to a string).
        """
        reference = (reference or "").strip()
        match = PLACEHOLDER.fullmatch(reference)
        if match:
            return store.get(match.group(1))
        if "{{" in reference:
            return TemplateResolver(UnresolvedPolicy.EMPTY).resolve(reference, store)
        return store.get(reference)
