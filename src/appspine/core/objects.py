"""Helpers for nested manifest dictionaries.

``deep_merge`` is JSON-merge-patch without deletes: mappings merge
recursively, everything else (lists included) is replaced.
``managed_view`` projects a live object onto the shape of a desired one,
which is how compare-and-patch decides whether the fields the engine manages
already match.
"""

from __future__ import annotations

import copy
from typing import Any


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict with *patch* merged over *base*."""
    result = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


_MISSING = object()


def managed_view(live: Any, desired: Any) -> Any:
    """Project *live* onto the keys present in *desired*.

    Keys of *live* that *desired* does not mention are ignored; a key missing
    from *live* shows up as a sentinel so the views differ.
    """
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return _MISSING
        return {k: managed_view(live.get(k, _MISSING), v) for k, v in desired.items()}
    return live


def matches_desired(live: dict[str, Any], desired: dict[str, Any]) -> bool:
    """True when every field of *desired* has the same value in *live*."""
    return managed_view(live, desired) == desired


def get_path(obj: dict[str, Any], *path: str, default: Any = None) -> Any:
    cur: Any = obj
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur
