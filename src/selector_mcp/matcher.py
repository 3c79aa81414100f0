"""Accessibility-tree matching for natural-language element lookups.

Given the accessibility snapshot of a page and a free-text prompt such as
"login button", locate the node the user most likely means and turn it into a
locator string that the browser can resolve for later actions.

Two strategies are available:

* ``first`` walks the tree in pre-order and returns the first node whose name
  or role contains the prompt (case-insensitive). Earlier, shallower nodes win
  ties. This is the default behaviour of the ``get_selector`` tool.
* ``scored`` ranks every node by word overlap with the prompt and reports the
  overlap ratio as ``confidence``.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel

from selector_mcp.errors import InputError, NoMatchError, SnapshotUnavailableError


logger = logging.getLogger(__name__)

DEFAULT_REF_PREFIX = "aria-ref="
MATCH_STRATEGIES = ("first", "scored")

_TOKEN_RE = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True)
class AccessibilityNode:
    """One node of an accessibility snapshot.

    Refs are only meaningful for the snapshot that produced them; a navigation
    or DOM mutation invalidates them.
    """

    name: Optional[str] = None
    role: Optional[str] = None
    ref: Optional[str] = None
    children: Tuple["AccessibilityNode", ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccessibilityNode":
        """Build a tree from nested ``role``/``name``/``ref``/``children`` dicts."""
        children = tuple(cls.from_dict(child) for child in data.get("children") or [])
        return cls(
            name=data.get("name"),
            role=data.get("role"),
            ref=data.get("ref"),
            children=children,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.role is not None:
            data["role"] = self.role
        if self.name is not None:
            data["name"] = self.name
        if self.ref is not None:
            data["ref"] = self.ref
        if self.children:
            data["children"] = [child.to_dict() for child in self.children]
        return data

    def iter_nodes(self) -> Iterator["AccessibilityNode"]:
        """Yield this node and its descendants in pre-order."""
        stack: List[AccessibilityNode] = [self]
        while stack:
            node = stack.pop()
            yield node
            # Reversed so the leftmost child is visited first.
            stack.extend(reversed(node.children))


class SelectorResult(BaseModel):
    """Locator and metadata for a matched node."""

    selector: str
    description: str
    role: Optional[str] = None
    confidence: Optional[float] = None


def normalize_prompt(prompt: Optional[str]) -> str:
    if not isinstance(prompt, str) or not prompt.strip():
        raise InputError()
    return prompt.strip().lower()


def _node_matches(node: AccessibilityNode, prompt_lower: str) -> bool:
    name = (node.name or "").lower()
    role = (node.role or "").lower()
    if prompt_lower in name or prompt_lower in role:
        return True
    # "submit button" finds the button named "Submit"; only the whole label counts.
    return bool(name and role) and prompt_lower == f"{name} {role}"


def find_match(
    root: Optional[AccessibilityNode], prompt: str
) -> Optional[AccessibilityNode]:
    """Return the first node in pre-order whose name or role contains ``prompt``.

    Raises:
        InputError: ``prompt`` is empty or whitespace-only.
        SnapshotUnavailableError: ``root`` is ``None``.

    Returns:
        The matching node, or ``None`` when nothing in the tree matches.
    """
    prompt_lower = normalize_prompt(prompt)
    if root is None:
        raise SnapshotUnavailableError()

    for node in root.iter_nodes():
        if _node_matches(node, prompt_lower):
            return node
    return None


def _tokens(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


def score_node(node: AccessibilityNode, prompt: str) -> float:
    """Word-overlap score of ``node`` against ``prompt`` in [0, 1]."""
    prompt_lower = normalize_prompt(prompt)
    if _node_matches(node, prompt_lower):
        return 1.0
    prompt_tokens = set(_tokens(prompt_lower))
    if not prompt_tokens:
        return 0.0
    node_tokens = set(_tokens(node.name or "")) | set(_tokens(node.role or ""))
    return len(prompt_tokens & node_tokens) / len(prompt_tokens)


def find_best_match(
    root: Optional[AccessibilityNode], prompt: str
) -> Optional[Tuple[AccessibilityNode, float]]:
    """Return the highest scoring node and its score, or ``None``.

    Ties are broken by pre-order position, so the scored strategy agrees with
    :func:`find_match` whenever a node contains the full prompt.
    """
    normalize_prompt(prompt)
    if root is None:
        raise SnapshotUnavailableError()

    best: Optional[AccessibilityNode] = None
    best_score = 0.0
    for node in root.iter_nodes():
        score = score_node(node, prompt)
        if score > best_score:
            best, best_score = node, score
            if score >= 1.0:
                break
    if best is None:
        return None
    return best, best_score


def build_selector(node: AccessibilityNode, ref_prefix: str = DEFAULT_REF_PREFIX) -> str:
    """Locator string for ``node``.

    Nodes carrying a ref are addressed through ``ref_prefix``; otherwise a
    Playwright role selector is synthesized from role and name.
    """
    if node.ref:
        return f"{ref_prefix}{node.ref}"
    role = node.role or "generic"
    if node.name:
        escaped = node.name.replace("\\", "\\\\").replace('"', '\\"')
        # Trailing "s" makes Playwright compare the name exactly.
        return f'role={role}[name="{escaped}"s]'
    return f"role={role}"


def to_selector_result(
    node: AccessibilityNode,
    ref_prefix: str = DEFAULT_REF_PREFIX,
    confidence: Optional[float] = 1.0,
) -> SelectorResult:
    return SelectorResult(
        selector=build_selector(node, ref_prefix),
        description=node.name or node.role or "",
        role=node.role,
        confidence=confidence,
    )


def match_selector(
    root: Optional[AccessibilityNode],
    prompt: str,
    strategy: str = "first",
    ref_prefix: str = DEFAULT_REF_PREFIX,
) -> SelectorResult:
    """Run a matching strategy and convert the hit into a :class:`SelectorResult`.

    Raises:
        InputError: empty prompt.
        SnapshotUnavailableError: no snapshot tree was supplied.
        NoMatchError: no node matched; the message embeds ``prompt``.
        ValueError: unknown ``strategy``.
    """
    if strategy not in MATCH_STRATEGIES:
        raise ValueError(f"Unknown match strategy: {strategy}")

    if strategy == "scored":
        found = find_best_match(root, prompt)
        if found is None:
            raise NoMatchError(prompt)
        node, score = found
        logger.debug("Scored match for %r: role=%s name=%s score=%.2f", prompt, node.role, node.name, score)
        return to_selector_result(node, ref_prefix, confidence=round(score, 4))

    node = find_match(root, prompt)
    if node is None:
        raise NoMatchError(prompt)
    logger.debug("First match for %r: role=%s name=%s ref=%s", prompt, node.role, node.name, node.ref)
    return to_selector_result(node, ref_prefix)
