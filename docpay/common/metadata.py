"""Merge helper for the free-form `metadata` bags stored on orders."""

from copy import deepcopy
from typing import Any


def merge_metadata(existing: dict[str, Any] | None, patch: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict with `patch` deep-merged over `existing`.

    Nested dicts merge key by key; any other value in `patch` replaces the old
    one. Neither input is mutated, so the result can be assigned back to a JSON
    column and SQLAlchemy sees a fresh object.
    """

    merged = deepcopy(existing) if existing else {}
    for key, value in patch.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = merge_metadata(current, value)
        else:
            merged[key] = deepcopy(value)
    return merged
