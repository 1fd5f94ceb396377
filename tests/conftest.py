"""Shared fixtures for bb tests."""

from __future__ import annotations

import asyncio
import inspect
import json
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from patchright.async_api import Error as PlaywrightError

from bb_cli.config import BBConfig
from bb_cli.launcher import LaunchedBrowser
from bb_cli.session import SessionDescriptor, save_descriptor


# ---------------------------------------------------------------------------
# Fake patchright objects
# ---------------------------------------------------------------------------


def make_page(
    context: FakeContext | None,
    target_id: str,
    url: str = "about:blank",
    title: str = "",
) -> MagicMock:
    """A MagicMock standing in for a patchright Page bound to *context*."""
    page = MagicMock()
    page.target_id = target_id
    page.context = context
    page.url = url
    page.title = AsyncMock(return_value=title)

    async def _goto(new_url: str, **kwargs: Any) -> None:
        page.url = new_url

    async def _close() -> None:
        if context is not None:
            context.pages.remove(page)

    page.goto = AsyncMock(side_effect=_goto)
    page.close = AsyncMock(side_effect=_close)
    page.evaluate = AsyncMock(return_value="")
    page.wait_for_selector = AsyncMock()
    page.wait_for_load_state = AsyncMock()
    page.query_selector = AsyncMock(return_value=None)
    page.query_selector_all = AsyncMock(return_value=[])
    page.go_back = AsyncMock()
    page.go_forward = AsyncMock()
    page.reload = AsyncMock()
    page.pdf = AsyncMock(return_value=b"%PDF-1.4")
    page.screenshot = AsyncMock(return_value=b"\x89PNG")
    page.set_viewport_size = AsyncMock()
    return page


class FakeCDPSession:
    """Answers CDP calls from the owning context's canned responses."""

    def __init__(self, context: FakeContext, page: Any) -> None:
        self.context = context
        self.page = page
        self.detach = AsyncMock()

    async def send(self, method: str, params: dict | None = None) -> dict:
        self.context.sent.append((method, params or {}))
        if method not in self.context.cdp_responses:
            if method == "Target.getTargetInfo":
                return {"targetInfo": {"targetId": self.page.target_id}}
            return {}
        response = self.context.cdp_responses[method]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(params or {})
            if inspect.isawaitable(response):
                response = await response
        return response


class FakeContext:
    """A browser context whose page list behaves like the real one."""

    def __init__(self, page_count: int = 1, insert_at: int | None = None) -> None:
        self.pages: list[Any] = []
        self.insert_at = insert_at
        self._counter = 0
        self.cdp_responses: dict[str, Any] = {}
        self.sent: list[tuple[str, dict]] = []
        self.sessions: list[FakeCDPSession] = []
        self.set_default_timeout = MagicMock()
        self.set_default_navigation_timeout = MagicMock()
        for _ in range(page_count):
            self.pages.append(self._make())

    def _make(self) -> MagicMock:
        self._counter += 1
        return make_page(
            self,
            f"target-{self._counter}",
            url=f"https://example.com/{self._counter}",
            title=f"Page {self._counter}",
        )

    async def new_page(self) -> MagicMock:
        page = self._make()
        if self.insert_at is None:
            self.pages.append(page)
        else:
            self.pages.insert(self.insert_at, page)
        return page

    async def new_cdp_session(self, page: Any) -> FakeCDPSession:
        session = FakeCDPSession(self, page)
        self.sessions.append(session)
        return session


def make_browser(context: FakeContext | None = None) -> MagicMock:
    """A MagicMock standing in for a CDP-connected patchright Browser."""
    browser = MagicMock()
    browser.contexts = [context if context is not None else FakeContext()]
    browser_cdp = MagicMock()
    browser_cdp.send = AsyncMock(return_value={})
    browser.new_browser_cdp_session = AsyncMock(return_value=browser_cdp)
    browser.browser_cdp = browser_cdp
    return browser


class FakeLauncher:
    """Records launches and hands out a fresh endpoint and pid each time."""

    def __init__(self, first_pid: int = 4242) -> None:
        self.calls: list[tuple[Any, Path, str | None]] = []
        self.next_pid = first_pid

    def __call__(
        self, config: BBConfig, profile_dir: Path, default_executable: str | None = None
    ) -> LaunchedBrowser:
        self.calls.append((config, profile_dir, default_executable))
        pid = self.next_pid
        self.next_pid += 1
        return LaunchedBrowser(
            endpoint=f"ws://127.0.0.1:{9000 + pid % 1000}/devtools/browser/{pid}",
            pid=pid,
        )


class FakeChromium:
    """``playwright.chromium`` that only answers for endpoints marked live."""

    def __init__(self) -> None:
        self.executable_path = "/nonexistent/chromium"
        self.live: dict[str, Any] = {}
        self.attached: list[str] = []

    async def connect_over_cdp(self, endpoint: str, **kwargs: Any) -> Any:
        self.attached.append(endpoint)
        if endpoint in self.live:
            return self.live[endpoint]
        raise PlaywrightError(f"connect ECONNREFUSED {endpoint}")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def bb_home(tmp_path, monkeypatch):
    """Patch Path.home() so ~/.bb lives under tmp_path."""
    monkeypatch.setattr(Path, "home", lambda: tmp_path)
    return tmp_path / ".bb"


@pytest.fixture
def default_config():
    """Return a default BBConfig instance."""
    return BBConfig()


@pytest.fixture
def config_file(tmp_path):
    """Write a config JSON file and return its path."""
    config = {
        "timeout": 12.5,
        "chrome_bin": "/opt/chrome/chrome",
        "extract": {"timeout": 3},
    }
    path = tmp_path / "test-config.json"
    path.write_text(json.dumps(config), encoding="utf-8")
    return path


@pytest.fixture
def fake_context():
    return FakeContext()


@pytest.fixture
def fake_browser(fake_context):
    return make_browser(fake_context)


@pytest.fixture
def fake_chromium():
    return FakeChromium()


@pytest.fixture
def fake_playwright(fake_chromium):
    playwright = MagicMock()
    playwright.chromium = fake_chromium
    return playwright


@pytest.fixture
def fake_launcher():
    return FakeLauncher()


@pytest.fixture
def live_session(bb_home, fake_chromium, fake_browser):
    """A persisted descriptor whose endpoint answers with *fake_browser*."""
    descriptor = SessionDescriptor(
        debug_url="ws://127.0.0.1:9222/devtools/browser/live",
        chrome_pid=1111,
        active_page=0,
        data_dir=str(bb_home / "chrome-data"),
    )
    save_descriptor(descriptor)
    fake_chromium.live[descriptor.debug_url] = fake_browser
    return descriptor


@pytest.fixture
def browser_factory():
    """Build additional fake browsers, each with its own context."""
    return make_browser


@pytest.fixture
def context_factory():
    return FakeContext


@pytest.fixture(name="make_page")
def make_page_fixture():
    return make_page


async def never_resolves(*args: Any, **kwargs: Any) -> None:
    """Stand-in for a browser call that hangs."""
    await asyncio.sleep(3600)


@pytest.fixture
def short_timeout_config():
    """A config whose operation ceiling is 0.2 seconds."""
    return BBConfig(timeout=0.2)


@pytest.fixture
def hang():
    return never_resolves
