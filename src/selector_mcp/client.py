"""Client binding: drive a selector MCP server over stdio and look up selectors."""

import asyncio
import json
import logging
import sys
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from selector_mcp.errors import SelectorError
from selector_mcp.matcher import SelectorResult


logger = logging.getLogger(__name__)

# Failures a retry cannot fix.
NON_RETRYABLE_ERRORS = {"input_error", "no_match"}


class SelectorLookupError(SelectorError):
    """Raised by :meth:`SelectorFinder.find_selector` when no selector could be obtained."""

    error_type = "lookup_failure"

    def __init__(self, prompt: str, cause: Optional[str] = None, error_type: Optional[str] = None):
        self.prompt = prompt
        self.cause = cause
        if error_type:
            self.error_type = error_type
        super().__init__(f"Failed to find selector for prompt: {prompt}")


@dataclass
class SelectorFinderOptions:
    """Options for :class:`SelectorFinder`. ``timeout`` and ``retry_delay`` are in ms."""

    headless: bool = False
    timeout: int = 30000
    retries: int = 3
    retry_delay: int = 1000
    debug: bool = False
    command: str = sys.executable
    args: List[str] = field(default_factory=lambda: ["-m", "selector_mcp.server", "stdio"])

    def server_args(self) -> List[str]:
        args = list(self.args)
        if not self.headless:
            args.append("--headed")
        args.extend(["--timeout", str(self.timeout)])
        return args


class SelectorFinder:
    """Find element selectors from natural language via the ``get_selector`` tool.

    Usage::

        async with SelectorFinder(SelectorFinderOptions(headless=True)) as finder:
            await finder.call_tool("browser_navigate", {"url": "https://example.com"})
            result = await finder.find_selector("more information link")
    """

    def __init__(self, options: Optional[SelectorFinderOptions] = None):
        self.options = options or SelectorFinderOptions()
        self.session: Optional[ClientSession] = None
        self._exit_stack: Optional[AsyncExitStack] = None

    async def init(self):
        """Start the server process and initialize the MCP session."""
        if self.session is not None:
            return
        params = StdioServerParameters(
            command=self.options.command, args=self.options.server_args()
        )
        stack = AsyncExitStack()
        try:
            read, write = await stack.enter_async_context(stdio_client(params))
            session = await stack.enter_async_context(
                ClientSession(
                    read,
                    write,
                    read_timeout_seconds=timedelta(milliseconds=self.options.timeout),
                )
            )
            await session.initialize()
        except BaseException:
            await stack.aclose()
            raise
        self._exit_stack = stack
        self.session = session

    async def call_tool(self, name: str, arguments: Optional[dict] = None) -> dict:
        """Call a server tool and decode its JSON result."""
        if self.session is None:
            raise RuntimeError("SelectorFinder is not initialized; call init() first")
        response = await self.session.call_tool(name, arguments or {})
        if not response.content:
            return {"success": False, "error": f"Empty response from {name}"}
        text = response.content[0].text
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return {"success": not response.isError, "error": text if response.isError else None, "text": text}

    async def find_selector(self, prompt: str) -> SelectorResult:
        """Return the selector for the element described by ``prompt``.

        Transport and browser failures are retried ``options.retries`` times;
        empty prompts and lookups that found nothing are not.

        Raises:
            SelectorLookupError: the server reported a failure or every attempt failed.
        """
        attempts = max(1, self.options.retries)
        last_error: Optional[str] = None
        last_type: Optional[str] = None
        for attempt in range(1, attempts + 1):
            try:
                payload = await self.call_tool("get_selector", {"prompt": prompt})
            except Exception as exc:
                last_error, last_type = str(exc), "transport_error"
                if self.options.debug:
                    logger.error("Error finding selector (attempt %d/%d): %s", attempt, attempts, exc)
            else:
                if payload.get("success"):
                    return SelectorResult(
                        selector=payload["selector"],
                        description=payload.get("description") or "",
                        role=payload.get("role"),
                        confidence=payload.get("confidence"),
                    )
                last_error = payload.get("error")
                last_type = payload.get("error_type")
                if self.options.debug:
                    logger.error("Error finding selector: %s", last_error)
                if last_type in NON_RETRYABLE_ERRORS:
                    break

            if attempt < attempts:
                await asyncio.sleep(self.options.retry_delay / 1000)

        raise SelectorLookupError(prompt, cause=last_error, error_type=last_type)

    async def close(self):
        """Shut down the session and the server process."""
        stack, self._exit_stack, self.session = self._exit_stack, None, None
        if stack is not None:
            await stack.aclose()

    async def __aenter__(self) -> "SelectorFinder":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
