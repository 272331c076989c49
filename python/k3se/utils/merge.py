"""
k3se/utils/merge.py

Combines a cluster-wide configuration fragment with a node-specific one.

The rules are driven by the pydantic field schema, so they apply unchanged to
ServerConfig and AgentConfig:
  - list fields are concatenated, base first, without de-duplication
  - scalar fields take the override value unless it is empty / zero / False
"""

from __future__ import annotations

from typing import Any, Dict, TypeVar

from k3se.models.k3s import Fragment

F = TypeVar("F", bound=Fragment)


def merge_fragments(base: F, override: F) -> F:
    """
    Overlay `override` onto `base` and return a new fragment.

    Neither input is modified; lists in the result are fresh objects.

    Args:
        base: Cluster-wide settings.
        override: Node-specific settings of the same fragment type.

    Returns:
        The effective settings.
    """
    if type(base) is not type(override):
        raise TypeError(
            f"cannot merge {type(override).__name__} into {type(base).__name__}"
        )

    merged: Dict[str, Any] = {}
    for name in type(base).model_fields:
        base_val = getattr(base, name)
        over_val = getattr(override, name)
        if isinstance(base_val, list):
            merged[name] = list(base_val) + list(over_val)
        elif over_val:
            merged[name] = over_val
        else:
            merged[name] = base_val

    return type(base).model_validate(merged)
