"""Selector MCP Server - Main server implementation."""

import asyncio
import hashlib
import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from mcp.server.fastmcp import Context, FastMCP
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from pydantic import BaseModel

from selector_mcp.errors import InputError, SelectorError, SnapshotUnavailableError
from selector_mcp.matcher import MATCH_STRATEGIES, match_selector, normalize_prompt
from selector_mcp.session import BROWSER_TYPES, BrowserSession, Config
from selector_mcp.snapshot import (
    capture_aria_text,
    parse_aria_snapshot,
    prune_snapshot,
    resolve_ref,
)


logger = logging.getLogger(__name__)

POST_ACTION_LOAD_TIMEOUT_MS = 5000


class ActionResult(BaseModel):
    """Result of a page action, with the page state afterwards."""

    success: bool
    message: Optional[str] = None
    url: Optional[str] = None
    snapshot: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


class SnapshotResult(BaseModel):
    """Accessibility snapshot of the current page."""

    success: bool
    url: Optional[str] = None
    snapshot: Optional[str] = None
    tree: Optional[Dict[str, Any]] = None
    node_count: int = 0
    truncated: bool = False
    error: Optional[str] = None
    error_type: Optional[str] = None


class PDFResult(BaseModel):
    """PDF generation result."""

    success: bool
    artifact_path: Optional[str] = None
    byte_size: Optional[int] = None
    sha256: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


class SelectorLookupResult(BaseModel):
    """Outcome of a natural-language element lookup."""

    success: bool
    prompt: str
    selector: Optional[str] = None
    description: Optional[str] = None
    role: Optional[str] = None
    confidence: Optional[float] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


def get_session(ctx: Context) -> BrowserSession:
    """Get the browser session from context."""
    return ctx.request_context.lifespan_context


def _error_type(exc: Exception) -> str:
    if isinstance(exc, SelectorError):
        return exc.error_type
    return "browser_error"


def _action_error(exc: Exception) -> ActionResult:
    return ActionResult(success=False, error=str(exc), error_type=_error_type(exc))


def format_page_snapshot(url: str, title: str, aria_text: str) -> str:
    """Render page state the way clients expect to read it back."""
    return (
        f"- Page URL: {url}\n"
        f"- Page Title: {title}\n"
        f"- Page Snapshot\n"
        f"```yaml\n{aria_text}\n```"
    )


async def _page_snapshot_text(page: Page) -> str:
    return format_page_snapshot(page.url, await page.title(), await capture_aria_text(page))


async def _run_and_wait(
    session: BrowserSession,
    message: str,
    action: Callable[[Page], Awaitable[Any]],
    snapshot: bool = True,
) -> ActionResult:
    """Run ``action`` on the current page, let it settle, and report the result."""
    page = await session.ensure_page()
    await action(page)
    try:
        await page.wait_for_load_state(
            "load", timeout=min(session.config.timeout, POST_ACTION_LOAD_TIMEOUT_MS)
        )
    except PlaywrightError as exc:
        logger.debug("Page did not settle after %r: %s", message, exc)

    result = ActionResult(success=True, message=message, url=page.url)
    if snapshot:
        result.snapshot = await _page_snapshot_text(page)
    return result


def _make_artifact_path(output_dir: Path, label: str, suffix: str) -> Path:
    """Create a unique file path inside the output directory."""
    output_dir.mkdir(parents=True, exist_ok=True)
    timestamp = time.strftime("%Y%m%dT%H%M%S", time.gmtime())
    safe_label = "".join(ch if ch.isalnum() or ch in {"-", "_"} else "_" for ch in label.lower())
    return output_dir / f"{timestamp}_{safe_label or 'page'}_{uuid.uuid4().hex[:8]}{suffix}"


# Navigation tools
async def browser_navigate(url: str, ctx: Context) -> ActionResult:
    """Navigate the browser to a URL.

    Args:
        url: The URL to navigate to (e.g., "https://example.com", "data:text/html,...")
        ctx: MCP context containing the browser session

    Returns:
        ActionResult with the final URL and an accessibility snapshot of the loaded page
    """
    session = get_session(ctx)
    try:
        return await _run_and_wait(session, f"Navigated to {url}", lambda page: page.goto(url))
    except Exception as e:
        return _action_error(e)


async def browser_go_back(ctx: Context) -> ActionResult:
    """Go back to the previous page in browser history."""
    session = get_session(ctx)
    try:
        return await _run_and_wait(session, "Navigated back", lambda page: page.go_back())
    except Exception as e:
        return _action_error(e)


async def browser_go_forward(ctx: Context) -> ActionResult:
    """Go forward to the next page in browser history."""
    session = get_session(ctx)
    try:
        return await _run_and_wait(session, "Navigated forward", lambda page: page.go_forward())
    except Exception as e:
        return _action_error(e)


# Snapshot and lookup tools
async def browser_snapshot(ctx: Context) -> SnapshotResult:
    """Capture an accessibility snapshot of the current page.

    This is better than a screenshot for locating elements: every interactive
    node carries a ``ref`` that the click, hover, type and drag tools accept.
    Refs are only valid until the page navigates or changes.

    Args:
        ctx: MCP context containing the browser session

    Returns:
        SnapshotResult with the YAML snapshot, a (possibly pruned) node tree and node count
    """
    session = get_session(ctx)
    try:
        page = await session.ensure_page()
        aria_text = await capture_aria_text(page)
        tree = parse_aria_snapshot(aria_text)
        pruned, truncated, node_count = prune_snapshot(
            tree, session.config.max_accessibility_nodes
        )
        return SnapshotResult(
            success=True,
            url=page.url,
            snapshot=format_page_snapshot(page.url, await page.title(), aria_text),
            tree=pruned.to_dict() if pruned else None,
            node_count=node_count,
            truncated=truncated,
        )
    except Exception as e:
        return SnapshotResult(success=False, error=str(e), error_type=_error_type(e))


async def get_selector(prompt: str, ctx: Context) -> SelectorLookupResult:
    """Get a selector for an element from a natural language description.

    The current page's accessibility tree is searched in document order and the
    first element whose name or role contains the description is returned.

    Args:
        prompt: Natural language description of the element to find (e.g., "login button", "email input field")
        ctx: MCP context containing the browser session

    Returns:
        SelectorLookupResult with ``selector`` (e.g. "aria-ref=e4"), ``description``,
        ``role`` and ``confidence``, or ``error``/``error_type`` when nothing matched
    """
    session = get_session(ctx)
    cfg = session.config
    try:
        normalize_prompt(prompt)
        root = await session.snapshot()
        if root is None:
            raise SnapshotUnavailableError(
                f"No elements found matching the description: {prompt}"
            )
        result = match_selector(
            root, prompt, strategy=cfg.match_strategy, ref_prefix=cfg.ref_prefix
        )
    except InputError as e:
        return SelectorLookupResult(
            success=False,
            prompt=prompt,
            error=f"{e} (prompt: {prompt!r})",
            error_type=e.error_type,
        )
    except SelectorError as e:
        logger.info("No selector for %r: %s", prompt, e)
        return SelectorLookupResult(
            success=False, prompt=prompt, error=str(e), error_type=e.error_type
        )
    except Exception as e:
        logger.error("Selector lookup failed for %r: %s", prompt, e)
        return SelectorLookupResult(
            success=False,
            prompt=prompt,
            error=f"Failed to find selector for prompt: {prompt}: {e}",
            error_type="browser_error",
        )

    return SelectorLookupResult(success=True, prompt=prompt, **result.model_dump())


# Element interaction tools
async def browser_click(element: str, ref: str, ctx: Context) -> ActionResult:
    """Click an element on the page.

    Args:
        element: Human-readable element description used to obtain permission to interact with the element
        ref: Exact target element reference from the page snapshot (or a selector from get_selector)
        ctx: MCP context containing the browser session

    Returns:
        ActionResult with a confirmation message and the page snapshot after the click
    """
    session = get_session(ctx)

    async def action(page: Page):
        locator = await resolve_ref(page, ref, session.config.ref_prefix)
        await locator.click()

    try:
        return await _run_and_wait(session, f'"{element}" clicked', action)
    except Exception as e:
        return _action_error(e)


async def browser_hover(element: str, ref: str, ctx: Context) -> ActionResult:
    """Hover over an element on the page.

    Args:
        element: Human-readable element description used to obtain permission to interact with the element
        ref: Exact target element reference from the page snapshot
        ctx: MCP context containing the browser session
    """
    session = get_session(ctx)

    async def action(page: Page):
        locator = await resolve_ref(page, ref, session.config.ref_prefix)
        await locator.hover()

    try:
        return await _run_and_wait(session, f'Hovered over "{element}"', action)
    except Exception as e:
        return _action_error(e)


async def browser_type(
    element: str, ref: str, text: str, ctx: Context, submit: bool = False
) -> ActionResult:
    """Type text into an editable element, replacing its current value.

    Args:
        element: Human-readable element description used to obtain permission to interact with the element
        ref: Exact target element reference from the page snapshot
        text: Text to type into the element
        ctx: MCP context containing the browser session
        submit: Whether to submit entered text (press Enter after)
    """
    session = get_session(ctx)

    async def action(page: Page):
        locator = await resolve_ref(page, ref, session.config.ref_prefix)
        await locator.fill(text)
        if submit:
            await locator.press("Enter")

    try:
        return await _run_and_wait(session, f'Typed "{text}" into "{element}"', action)
    except Exception as e:
        return _action_error(e)


async def browser_drag(
    start_element: str, start_ref: str, end_element: str, end_ref: str, ctx: Context
) -> ActionResult:
    """Drag one element and drop it onto another.

    Args:
        start_element: Human-readable source element description
        start_ref: Exact source element reference from the page snapshot
        end_element: Human-readable target element description
        end_ref: Exact target element reference from the page snapshot
        ctx: MCP context containing the browser session
    """
    session = get_session(ctx)
    prefix = session.config.ref_prefix

    async def action(page: Page):
        source = await resolve_ref(page, start_ref, prefix)
        target = await resolve_ref(page, end_ref, prefix)
        await source.drag_to(target)

    try:
        return await _run_and_wait(
            session, f'Dragged "{start_element}" to "{end_element}"', action
        )
    except Exception as e:
        return _action_error(e)


async def browser_press_key(key: str, ctx: Context) -> ActionResult:
    """Press a key on the keyboard.

    Args:
        key: Name of the key to press or a character to generate (e.g., "ArrowLeft", "a", "Control+s")
        ctx: MCP context containing the browser session
    """
    session = get_session(ctx)
    try:
        return await _run_and_wait(
            session, f"Pressed key {key}", lambda page: page.keyboard.press(key)
        )
    except Exception as e:
        return _action_error(e)


async def browser_wait(time: float, ctx: Context) -> ActionResult:
    """Wait for a specified time in seconds (capped at the configured maximum)."""
    session = get_session(ctx)
    seconds = max(0.0, min(time, session.config.max_wait_seconds))
    await asyncio.sleep(seconds)
    return ActionResult(success=True, message=f"Waited for {seconds:g} seconds")


async def browser_save_as_pdf(ctx: Context) -> PDFResult:
    """Save the current page as a PDF file (Chromium only).

    Returns:
        PDFResult with the path of the saved file, its size and sha256 digest
    """
    session = get_session(ctx)
    try:
        page = await session.ensure_page()
        pdf_bytes = await page.pdf()
        artifact_path = _make_artifact_path(session.config.output_dir, "page", ".pdf")
        artifact_path.write_bytes(pdf_bytes)
        return PDFResult(
            success=True,
            artifact_path=str(artifact_path),
            byte_size=len(pdf_bytes),
            sha256=hashlib.sha256(pdf_bytes).hexdigest(),
        )
    except Exception as e:
        return PDFResult(success=False, error=str(e), error_type=_error_type(e))


async def browser_close(ctx: Context) -> ActionResult:
    """Close the browser. The next tool call starts a fresh one."""
    session = get_session(ctx)
    await session.close()
    return ActionResult(success=True, message="Page closed")


TOOLS = (
    browser_navigate,
    browser_go_back,
    browser_go_forward,
    browser_snapshot,
    browser_click,
    browser_hover,
    browser_type,
    browser_drag,
    browser_press_key,
    browser_wait,
    browser_save_as_pdf,
    browser_close,
    get_selector,
)


def create_server(
    config: Optional[Config] = None, session: Optional[BrowserSession] = None
) -> FastMCP:
    """Build a FastMCP server whose tools all act on ``session``."""
    session = session or BrowserSession(config)

    @asynccontextmanager
    async def browser_lifespan(server: FastMCP) -> AsyncIterator[BrowserSession]:
        """Manage browser lifecycle."""
        try:
            yield session
        finally:
            logger.info("Shutting down browser...")
            await session.close()

    server = FastMCP("Selector MCP Server", lifespan=browser_lifespan)
    for tool in TOOLS:
        server.add_tool(tool)

    @server.resource(
        "browser://console",
        name="Page console",
        description="Console messages logged by the current page",
        mime_type="text/plain",
    )
    def console_log() -> str:
        return session.console_text()

    return server


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Selector MCP Server")
    parser.add_argument("transport", choices=["stdio", "http"], help="Transport type")
    parser.add_argument(
        "--host", default="0.0.0.0", help="Host for HTTP transport"
    )
    parser.add_argument(
        "--port", type=int, default=8000, help="Port for HTTP transport"
    )
    parser.add_argument("--headed", action="store_true", help="Run in headed mode")
    parser.add_argument(
        "--browser",
        choices=list(BROWSER_TYPES),
        default="chromium",
        help="Browser type",
    )
    parser.add_argument(
        "--timeout", type=int, default=30000, help="Default timeout (ms)"
    )
    parser.add_argument(
        "--channel",
        choices=[
            "chrome",
            "chrome-beta",
            "chrome-dev",
            "chrome-canary",
            "msedge",
            "msedge-beta",
            "msedge-dev",
            "msedge-canary",
        ],
        help="Browser channel (use real Chrome/Edge instead of bundled Chromium)",
    )
    parser.add_argument(
        "--user-data-dir",
        type=str,
        help="Path to a browser user data directory (enables a persistent context)",
    )
    parser.add_argument(
        "--max-accessibility-nodes",
        type=int,
        default=500,
        help="Maximum nodes included in snapshot trees (<=0 disables)",
    )
    parser.add_argument(
        "--ref-prefix",
        default="aria-ref=",
        help="Locator prefix joined with snapshot refs to address elements",
    )
    parser.add_argument(
        "--match-strategy",
        choices=list(MATCH_STRATEGIES),
        default="first",
        help="get_selector strategy: first pre-order substring match, or word-overlap scoring",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        help="Directory for saved PDFs (defaults to ./tmp/selector_mcp)",
    )

    args = parser.parse_args()

    # Setup logging before emitting any log lines
    logging.basicConfig(level=logging.INFO)

    config = Config(
        headless=not args.headed,
        browser_type=args.browser,
        timeout=args.timeout,
        channel=args.channel,
        user_data_dir=args.user_data_dir,
        max_accessibility_nodes=args.max_accessibility_nodes,
        ref_prefix=args.ref_prefix,
        match_strategy=args.match_strategy,
        output_dir=args.output_dir,
    )
    logger.info("Output directory: %s", config.output_dir)
    server = create_server(config)

    if args.transport == "stdio":
        server.run()
    else:
        # HTTP transport using StreamableHTTP
        import uvicorn

        app = server.streamable_http_app()
        uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
