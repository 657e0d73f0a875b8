"""Value resolution against the feature and payload JSON trees.

A reference is resolved in `features` first and then in `payload`. Paths
are dotted strings walked one segment at a time; each segment matches a key
exactly, or failing that by canonical form (alphanumerics only, lowercased),
so "meta.candles_since_cross" finds "meta.candlesSinceCross". List segments
index numerically. Anything that does not end in a number is unresolved
(None), never an error.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from core.rules.models import RefObject

_NON_ALNUM = re.compile(r"[^a-z0-9]", re.IGNORECASE)

_MISSING = object()


def canonical_key(key: str) -> str:
    """Canonical form of a key: alphanumerics only, lowercased."""
    return _NON_ALNUM.sub("", key).lower()


def _as_number(value: Any) -> float | None:
    """Return value as a float when it is a non-NaN number. Bools are not numbers."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return float(value)
    return None


def _step(container: Any, segment: str) -> Any:
    """Descend one path segment, or return _MISSING."""
    if isinstance(container, Mapping):
        if segment in container:
            return container[segment]
        wanted = canonical_key(segment)
        for key in container:
            if isinstance(key, str) and canonical_key(key) == wanted:
                return container[key]
        return _MISSING

    if isinstance(container, Sequence) and not isinstance(container, (str, bytes)):
        try:
            index = int(segment)
        except ValueError:
            return _MISSING
        if 0 <= index < len(container):
            return container[index]
        return _MISSING

    return _MISSING


def lookup(root: Any, segments: Sequence[str]) -> Any:
    """Walk `segments` from `root`. Returns None when any step is missing."""
    current = root
    for segment in segments:
        if current is None:
            return None
        current = _step(current, str(segment))
        if current is _MISSING:
            return None
    return current


def split_path(path: str) -> list[str]:
    return [segment for segment in path.split(".") if segment != ""]


@dataclass(frozen=True)
class ResolutionContext:
    """The two JSON roots a rule is evaluated against."""

    features: Any = None
    payload: Any = None

    def with_features(self, features: Any) -> ResolutionContext:
        """Same payload, different features root (higher-timeframe recursion)."""
        return ResolutionContext(features=features, payload=self.payload)


class ValueResolver:
    """Resolves value references and series names inside a context."""

    def __init__(self, context: ResolutionContext):
        self.context = context

    def resolve_path(self, path: str) -> float | None:
        """Resolve a dotted path to a number, features before payload."""
        segments = split_path(path)
        if not segments:
            return None

        for root in (self.context.features, self.context.payload):
            value = lookup(root, segments)
            if value is not None:
                return _as_number(value)
        return None

    def resolve(self, ref: Any) -> float | None:
        """Resolve a value reference to a number.

        Args:
            ref: A number, a dotted path string, a RefObject, or a raw
                {"value"} / {"path"} dict.

        Returns:
            The number, or None when unresolved.
        """
        if isinstance(ref, RefObject):
            ref = {"value": ref.value, "path": ref.path}

        if isinstance(ref, dict):
            literal = _as_number(ref.get("value"))
            if literal is not None:
                return literal
            path = ref.get("path")
            if isinstance(path, str) and path:
                return self.resolve_path(path)
            return None

        if isinstance(ref, str):
            return self.resolve_path(ref)

        return _as_number(ref)

    def number_at(self, *segments: str) -> float | None:
        """Number at a fixed path inside the features root only."""
        return _as_number(lookup(self.context.features, segments))

    def subtree(self, *segments: str) -> Any:
        """Raw value at a fixed path inside the features root."""
        return lookup(self.context.features, segments)

    def series(self, name: str) -> list[float] | None:
        """Numeric sequence at features.series.<name>.

        The name is one segment, so names like "EMA(9)" are matched whole.
        Entries are coerced to float and non-numeric ones dropped.
        """
        raw = lookup(self.context.features, ("series", name))
        if not isinstance(raw, Sequence) or isinstance(raw, (str, bytes)):
            return None

        values: list[float] = []
        for item in raw:
            number = _coerce(item)
            if number is not None:
                values.append(number)
        return values


def _coerce(item: Any) -> float | None:
    """Coerce a series entry to float, None when it is not numeric."""
    if isinstance(item, str):
        try:
            item = float(item)
        except ValueError:
            return None
    return _as_number(item)
