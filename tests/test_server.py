from pathlib import Path
from types import SimpleNamespace

import pytest
from playwright.async_api import Error as PlaywrightError

from selector_mcp import server as srv
from selector_mcp.session import BrowserSession, Config

SUBMIT_PAGE = '- button "Submit" [ref=s1e4]\n- textbox "Email" [ref=s1e5]\n- link "Docs" [ref=s1e6]'

EXPECTED_TOOLS = {
    "browser_navigate",
    "browser_go_back",
    "browser_go_forward",
    "browser_snapshot",
    "browser_click",
    "browser_hover",
    "browser_type",
    "browser_drag",
    "browser_press_key",
    "browser_wait",
    "browser_save_as_pdf",
    "browser_close",
    "get_selector",
}


class FakeLocator:
    def __init__(self, page, selector):
        self.page = page
        self.selector = selector

    async def aria_snapshot(self, mode="default"):
        self.page.snapshot_calls += 1
        self.page.snapshot_modes.append(mode)
        return self.page.aria_yaml

    async def count(self):
        if self.page.stale:
            raise PlaywrightError(f"Stale aria-ref {self.selector}")
        return 1 if self.selector in self.page.present else 0

    async def click(self):
        self.page.actions.append(("click", self.selector))

    async def hover(self):
        self.page.actions.append(("hover", self.selector))

    async def fill(self, text):
        self.page.actions.append(("fill", self.selector, text))

    async def press(self, key):
        self.page.actions.append(("press", self.selector, key))

    async def drag_to(self, target):
        self.page.actions.append(("drag", self.selector, target.selector))


class FakePage:
    def __init__(self, aria_yaml=SUBMIT_PAGE, present=("aria-ref=s1e4", "aria-ref=s1e5", "aria-ref=s1e6")):
        self.url = "about:blank"
        self.aria_yaml = aria_yaml
        self.present = set(present)
        self.stale = False
        self.actions = []
        self.history = []
        self.snapshot_calls = 0
        self.snapshot_modes = []
        self.keyboard = SimpleNamespace(press=self._press_key)

    def is_closed(self):
        return False

    def locator(self, selector):
        return FakeLocator(self, selector)

    async def title(self):
        return "Title"

    async def goto(self, url):
        self.history.append(self.url)
        self.url = url

    async def go_back(self):
        if self.history:
            self.url = self.history.pop()

    async def go_forward(self):
        self.actions.append(("forward",))

    async def wait_for_load_state(self, state, timeout=None):
        self.actions.append(("wait", state))

    async def pdf(self):
        return b"%PDF-1.4 fake"

    async def _press_key(self, key):
        self.actions.append(("key", key))


def _ctx(session):
    return SimpleNamespace(request_context=SimpleNamespace(lifespan_context=session))


@pytest.fixture
def page():
    return FakePage()


@pytest.fixture
def session(page, tmp_path):
    browser_session = BrowserSession(Config(output_dir=str(tmp_path), max_wait_seconds=0.01))
    browser_session.page = page
    return browser_session


@pytest.mark.asyncio
async def test_tool_list():
    server = srv.create_server(Config())

    tools = await server.list_tools()

    assert EXPECTED_TOOLS <= {tool.name for tool in tools}
    for tool in tools:
        assert tool.description
        assert tool.inputSchema["type"] == "object"
        assert "ctx" not in tool.inputSchema.get("properties", {})


@pytest.mark.asyncio
async def test_get_selector_schema_requires_prompt():
    server = srv.create_server(Config())

    tools = {tool.name: tool for tool in await server.list_tools()}

    assert tools["get_selector"].inputSchema["required"] == ["prompt"]


@pytest.mark.asyncio
async def test_resources_list():
    server = srv.create_server(Config())

    resources = await server.list_resources()

    assert [str(r.uri).rstrip("/") for r in resources] == ["browser://console"]
    assert resources[0].mimeType == "text/plain"


def test_console_messages_are_collected(session):
    session._handle_console(SimpleNamespace(type="log", text="hello"))
    session._handle_console(SimpleNamespace(type="error", text="boom"))

    assert session.console_text() == "[log] hello\n[error] boom"


@pytest.mark.asyncio
async def test_browser_navigate(session, page):
    url = "data:text/html,<html><title>Title</title><body>Hello, world!</body></html>"

    result = await srv.browser_navigate(url, _ctx(session))

    assert result.success is True
    assert result.url == url
    assert "Page URL:" in result.snapshot
    assert 'button "Submit"' in result.snapshot
    assert ("wait", "load") in page.actions


@pytest.mark.asyncio
async def test_history_navigation(session, page):
    await srv.browser_navigate("https://example.com/a", _ctx(session))

    back = await srv.browser_go_back(_ctx(session))
    forward = await srv.browser_go_forward(_ctx(session))

    assert back.url == "about:blank"
    assert forward.success is True
    assert ("forward",) in page.actions


@pytest.mark.asyncio
async def test_navigation_failure_is_structured(session, page):
    async def broken_goto(url):
        raise PlaywrightError("net::ERR_NAME_NOT_RESOLVED")

    page.goto = broken_goto

    result = await srv.browser_navigate("https://nowhere.invalid", _ctx(session))

    assert result.success is False
    assert result.error_type == "browser_error"
    assert "ERR_NAME_NOT_RESOLVED" in result.error


@pytest.mark.asyncio
async def test_browser_click(session, page):
    result = await srv.browser_click("Submit button", "s1e4", _ctx(session))

    assert result.success is True
    assert "Submit button" in result.message
    assert ("click", "aria-ref=s1e4") in page.actions


@pytest.mark.asyncio
async def test_click_accepts_get_selector_output(session, page):
    found = await srv.get_selector("docs", _ctx(session))

    result = await srv.browser_click("Docs link", found.selector, _ctx(session))

    assert result.success is True
    assert ("click", "aria-ref=s1e6") in page.actions


@pytest.mark.asyncio
async def test_click_missing_ref(session, page):
    result = await srv.browser_click("Gone", "s1e99", _ctx(session))

    assert result.success is False
    assert result.error_type == "resolution_failure"
    assert "s1e99" in result.error
    assert not any(action[0] == "click" for action in page.actions)


@pytest.mark.asyncio
async def test_click_stale_ref(session, page):
    page.stale = True

    result = await srv.browser_click("Submit button", "s1e4", _ctx(session))

    assert result.success is False
    assert result.error_type == "resolution_failure"


@pytest.mark.asyncio
async def test_browser_hover(session, page):
    result = await srv.browser_hover("Docs", "s1e6", _ctx(session))

    assert result.message == 'Hovered over "Docs"'
    assert ("hover", "aria-ref=s1e6") in page.actions


@pytest.mark.asyncio
async def test_browser_type_with_submit(session, page):
    result = await srv.browser_type("Email", "s1e5", "me@example.com", _ctx(session), submit=True)

    assert result.success is True
    assert page.actions[:2] == [
        ("fill", "aria-ref=s1e5", "me@example.com"),
        ("press", "aria-ref=s1e5", "Enter"),
    ]


@pytest.mark.asyncio
async def test_browser_type_without_submit(session, page):
    await srv.browser_type("Email", "s1e5", "me@example.com", _ctx(session))

    assert not any(action[0] == "press" for action in page.actions)


@pytest.mark.asyncio
async def test_browser_drag(session, page):
    result = await srv.browser_drag("Submit", "s1e4", "Docs", "s1e6", _ctx(session))

    assert result.message == 'Dragged "Submit" to "Docs"'
    assert ("drag", "aria-ref=s1e4", "aria-ref=s1e6") in page.actions


@pytest.mark.asyncio
async def test_browser_press_key(session, page):
    result = await srv.browser_press_key("ArrowDown", _ctx(session))

    assert result.success is True
    assert ("key", "ArrowDown") in page.actions


@pytest.mark.asyncio
async def test_browser_wait_is_capped(session):
    result = await srv.browser_wait(5, _ctx(session))

    assert result.success is True
    assert result.message == "Waited for 0.01 seconds"


@pytest.mark.asyncio
async def test_browser_snapshot(session):
    result = await srv.browser_snapshot(_ctx(session))

    assert result.success is True
    assert result.node_count == 4
    assert result.truncated is False
    assert result.tree["children"][0] == {"role": "button", "name": "Submit", "ref": "s1e4"}
    assert "- Page Title: Title" in result.snapshot


@pytest.mark.asyncio
async def test_browser_snapshot_is_pruned(session):
    session.config.max_accessibility_nodes = 2

    result = await srv.browser_snapshot(_ctx(session))

    assert result.truncated is True
    assert result.node_count == 2
    assert len(result.tree["children"]) == 1


@pytest.mark.asyncio
async def test_save_as_pdf(session, tmp_path):
    result = await srv.browser_save_as_pdf(_ctx(session))

    assert result.success is True
    path = Path(result.artifact_path)
    assert path.parent == tmp_path
    assert path.read_bytes() == b"%PDF-1.4 fake"
    assert result.byte_size == len(b"%PDF-1.4 fake")


@pytest.mark.asyncio
async def test_browser_close(session):
    result = await srv.browser_close(_ctx(session))

    assert result.success is True
    assert session.page is None


@pytest.mark.asyncio
async def test_get_selector_success(session, page):
    result = await srv.get_selector("submit button", _ctx(session))

    assert result.success is True
    assert page.snapshot_modes == ["ai"]
    assert result.selector == "aria-ref=s1e4"
    assert result.description == "Submit"
    assert result.role == "button"
    assert result.confidence == 1.0


@pytest.mark.asyncio
async def test_get_selector_no_match(session):
    result = await srv.get_selector("cancel", _ctx(session))

    assert result.success is False
    assert result.error_type == "no_match"
    assert "cancel" in result.error
    assert result.selector is None


@pytest.mark.asyncio
@pytest.mark.parametrize("prompt", ["", "   "])
async def test_get_selector_blank_prompt(session, page, prompt):
    result = await srv.get_selector(prompt, _ctx(session))

    assert result.success is False
    assert result.error_type == "input_error"
    assert page.snapshot_calls == 0


@pytest.mark.asyncio
async def test_get_selector_empty_page(session, page):
    page.aria_yaml = ""

    result = await srv.get_selector("submit", _ctx(session))

    assert result.success is False
    assert result.error_type == "snapshot_unavailable"
    assert "submit" in result.error


@pytest.mark.asyncio
async def test_get_selector_browser_failure(session, page):
    async def broken_snapshot(**kwargs):
        raise PlaywrightError("Target page, context or browser has been closed")

    page.locator = lambda selector: SimpleNamespace(aria_snapshot=broken_snapshot)

    result = await srv.get_selector("submit", _ctx(session))

    assert result.success is False
    assert result.error_type == "browser_error"
    assert result.error.startswith("Failed to find selector for prompt: submit")


@pytest.mark.asyncio
async def test_get_selector_scored_strategy(session):
    session.config.match_strategy = "scored"

    result = await srv.get_selector("email input", _ctx(session))

    assert result.selector == "aria-ref=s1e5"
    assert result.confidence == 0.5


def test_format_page_snapshot():
    text = srv.format_page_snapshot("https://example.com/", "Example", '- heading "Example"')

    assert text.splitlines() == [
        "- Page URL: https://example.com/",
        "- Page Title: Example",
        "- Page Snapshot",
        "```yaml",
        '- heading "Example"',
        "```",
    ]
