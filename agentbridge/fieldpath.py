"""
Dotted-path access over plain value trees (dicts, lists, scalars).

Rule conditions read fields like ``target.content.length`` and rule
modifications write fields like ``target.path``. Both operate on the
JSON view of an intent, never on model attributes.
"""

from __future__ import annotations

import copy
from typing import Any


class _Missing:
    """Sentinel for an unresolvable path."""

    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __str__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def _step(node: Any, segment: str) -> Any:
    if isinstance(node, dict):
        if segment in node:
            return node[segment]
        if segment == "length":
            return len(node)
        return MISSING

    if isinstance(node, (list, tuple)):
        if segment == "length":
            return len(node)
        if segment.isdigit() and int(segment) < len(node):
            return node[int(segment)]
        return MISSING

    if isinstance(node, str) and segment == "length":
        return len(node)

    return MISSING


def get_path(tree: Any, path: str) -> Any:
    """Resolve `path` in `tree`, returning MISSING when any segment is absent.

    A ``None`` value counts as absent for every segment after it.
    """
    node = tree
    for segment in path.split("."):
        if node is None or node is MISSING:
            return MISSING
        node = _step(node, segment)
    return node


def set_path(tree: dict, path: str, value: Any) -> None:
    """Set `path` in `tree` in place, creating intermediate dicts as needed."""
    parts = path.split(".")
    node = tree
    for part in parts[:-1]:
        nxt = node.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            node[part] = nxt
        node = nxt
    node[parts[-1]] = value


def with_modifications(tree: dict, modifications: dict[str, Any]) -> dict:
    """Deep-copy `tree` and apply every `path -> value` modification to the copy."""
    modified = copy.deepcopy(tree)
    for path, value in modifications.items():
        set_path(modified, path, copy.deepcopy(value))
    return modified


def stringify(value: Any) -> str:
    """Render a tree value the way rule regexes see it."""
    if value is MISSING:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
