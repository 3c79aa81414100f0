"""Accessibility snapshot capture and ref resolution against a live Playwright page."""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Locator, Page

from selector_mcp.errors import ResolutionError
from selector_mcp.matcher import DEFAULT_REF_PREFIX, AccessibilityNode


logger = logging.getLogger(__name__)

ROOT_ROLE = "document"

_LINE_RE = re.compile(r"^(?P<indent>\s*)-\s+(?P<rest>.*?)\s*$")
_ITEM_RE = re.compile(
    r'^(?P<role>[A-Za-z][\w-]*)'
    r'(?:\s+"(?P<name>(?:[^"\\]|\\.)*)")?'
    r"(?P<attrs>(?:\s*\[[^\]]*\])*)"
    r"\s*(?::\s*(?P<text>.*))?$"
)
_REF_RE = re.compile(r"\[ref=(?P<ref>[^\]\s]+)\]")


def _split_quoted_item(rest: str) -> Tuple[str, Optional[str]]:
    """Unwrap a YAML single-quoted entry such as ``'link "a: b"': text``."""
    if not rest.startswith("'"):
        return rest, None
    pos = 1
    while True:
        idx = rest.find("'", pos)
        if idx == -1:
            return rest[1:], ""
        if rest[idx + 1 : idx + 2] == "'":
            pos = idx + 2
            continue
        return rest[1:idx].replace("''", "'"), rest[idx + 1 :]


def _clean_text(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        text = text[1:-1]
    return text or None


def _parse_line(line: str) -> Optional[Tuple[int, Dict[str, Any]]]:
    match = _LINE_RE.match(line)
    if not match:
        return None
    indent = len(match.group("indent").replace("\t", "    "))
    body, tail = _split_quoted_item(match.group("rest"))
    item = _ITEM_RE.match(body)
    if not item:
        # Property lines like "- /url: /docs" carry no node.
        return None

    text = item.group("text")
    if tail is not None:
        tail = tail.strip()
        text = tail[1:] if tail.startswith(":") else None

    name = item.group("name")
    if name is not None:
        name = name.replace('\\"', '"').replace("\\\\", "\\")
    else:
        name = _clean_text(text)

    ref_match = _REF_RE.search(item.group("attrs") or "")
    node = {
        "role": item.group("role"),
        "name": name,
        "ref": ref_match.group("ref") if ref_match else None,
        "children": [],
    }
    return indent, node


def parse_aria_snapshot(text: Optional[str]) -> Optional[AccessibilityNode]:
    """Parse Playwright ARIA snapshot YAML into a tree under a ``document`` root.

    Returns ``None`` when the text holds no nodes.
    """
    if not text or not text.strip():
        return None

    root: Dict[str, Any] = {"role": ROOT_ROLE, "name": "", "children": []}
    stack: List[Tuple[int, Dict[str, Any]]] = [(-1, root)]
    for line in text.splitlines():
        parsed = _parse_line(line)
        if parsed is None:
            continue
        indent, node = parsed
        while stack[-1][0] >= indent:
            stack.pop()
        stack[-1][1]["children"].append(node)
        stack.append((indent, node))

    if not root["children"]:
        return None
    return AccessibilityNode.from_dict(root)


async def capture_aria_text(page: Page) -> str:
    """ARIA snapshot YAML of the page body.

    ``mode="ai"`` tags each element with ``[ref=eN]``, addressable afterwards
    through ``aria-ref=eN``. Releases without the ``mode`` keyword get the
    plain snapshot, whose nodes carry no refs.
    """
    locator = page.locator("body")
    try:
        return await locator.aria_snapshot(mode="ai") or ""
    except TypeError:
        logger.debug("aria_snapshot(mode='ai') unsupported; falling back to plain snapshot")
    return await locator.aria_snapshot() or ""


async def capture_snapshot(page: Page) -> Optional[AccessibilityNode]:
    """Fresh accessibility tree for ``page``, or ``None`` if the page exposes nothing."""
    return parse_aria_snapshot(await capture_aria_text(page))


def count_nodes(root: Optional[AccessibilityNode]) -> int:
    if root is None:
        return 0
    return sum(1 for _ in root.iter_nodes())


def prune_snapshot(
    root: Optional[AccessibilityNode], max_nodes: int
) -> Tuple[Optional[AccessibilityNode], bool, int]:
    """Keep the first ``max_nodes`` nodes in pre-order.

    Returns the pruned tree, whether anything was dropped, and the number of
    nodes kept. ``max_nodes <= 0`` disables pruning.
    """
    if root is None:
        return None, False, 0
    if max_nodes <= 0:
        return root, False, count_nodes(root)

    included = 0
    truncated = False

    def prune(node: AccessibilityNode) -> Optional[AccessibilityNode]:
        nonlocal included, truncated
        if included >= max_nodes:
            truncated = True
            return None
        included += 1

        kept = []
        for child in node.children:
            if included >= max_nodes:
                truncated = True
                break
            pruned_child = prune(child)
            if pruned_child is not None:
                kept.append(pruned_child)

        return AccessibilityNode(
            name=node.name, role=node.role, ref=node.ref, children=tuple(kept)
        )

    return prune(root), truncated, included


def ref_locator(page: Page, ref: str, prefix: str = DEFAULT_REF_PREFIX) -> Locator:
    """Locator for a snapshot ref.

    Refs already carrying ``prefix`` (as returned by ``get_selector``) and
    synthesized ``role=`` selectors are used unchanged.
    """
    if not ref or not ref.strip():
        raise ResolutionError(ref or "", "empty reference")
    ref = ref.strip()
    if ref.startswith(prefix) or ref.startswith("role="):
        return page.locator(ref)
    return page.locator(f"{prefix}{ref}")


async def resolve_ref(page: Page, ref: str, prefix: str = DEFAULT_REF_PREFIX) -> Locator:
    """Resolve ``ref`` to a locator that currently matches an element.

    Raises:
        ResolutionError: the ref is stale or the element is gone.
    """
    locator = ref_locator(page, ref, prefix)
    try:
        count = await locator.count()
    except PlaywrightError as exc:
        raise ResolutionError(ref, str(exc)) from exc
    if count == 0:
        raise ResolutionError(ref, "element not found on the current page")
    return locator
