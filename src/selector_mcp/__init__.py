"""Selector MCP - browser automation tools with natural-language element lookup."""

from selector_mcp.errors import (
    InputError,
    NoMatchError,
    ResolutionError,
    SelectorError,
    SnapshotUnavailableError,
)
from selector_mcp.matcher import (
    AccessibilityNode,
    SelectorResult,
    find_best_match,
    find_match,
    match_selector,
    to_selector_result,
)

__version__ = "0.1.0"

__all__ = [
    "AccessibilityNode",
    "InputError",
    "NoMatchError",
    "ResolutionError",
    "SelectorError",
    "SelectorResult",
    "SnapshotUnavailableError",
    "find_best_match",
    "find_match",
    "match_selector",
    "to_selector_result",
]
