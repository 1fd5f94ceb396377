"""Command handlers for bb.

``BrowserCommands`` owns one invocation's view of the shared browser: the
session manager, the tab registry and the active page.  Each command is a
``cmd_*`` coroutine dispatched by name through ``handle_command`` and returns
a result dict::

    {"ok": True, "output": "..."}                 # printed to stdout
    {"ok": False, "error": "..."}                 # printed to stderr, exit 1
    {"ok": False, "output": "false"}              # boolean negative, exit 1
    {"ok": True, "output": "...", "notice": "..."}  # notice goes to stderr

Nothing here survives the process; the only state carried forward is the
session descriptor written by ``SessionManager`` and ``TabRegistry``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from patchright.async_api import Error as PlaywrightError
from patchright.async_api import TimeoutError as PlaywrightTimeoutError
from patchright.async_api import async_playwright

from bb_cli.accessibility import (
    describe_element,
    fetch_full_tree,
    find_nodes,
    format_ax_tree,
    format_node_detail,
    format_node_list,
)
from bb_cli.cdp import bounded, evaluate
from bb_cli.errors import BBError, NotFoundError, OperationTimeout, UsageError
from bb_cli.extract import BODY_TEXT_JS, OUTER_HTML_JS, ExtractedContent, extract_page
from bb_cli.launcher import LaunchedBrowser, launch_chrome
from bb_cli.session import SessionManager, SessionStatus
from bb_cli.tabs import TabRegistry

if TYPE_CHECKING:
    from patchright.async_api import ElementHandle, Page, Playwright

    from bb_cli.config import BBConfig

logger = logging.getLogger("bb_cli.commands")

_SELECT_JS = """([selector, value]) => {
    const el = document.querySelector(selector);
    if (!el) throw new Error('element not found');
    el.value = value;
    el.dispatchEvent(new Event('change', {bubbles: true}));
    return el.value;
}"""

_SUBMIT_JS = "(selector) => document.querySelector(selector).submit()"

# Resolves once the DOM has gone quietMs without a mutation.
_DOM_STABLE_JS = """(quietMs) => new Promise((resolve) => {
    let timer;
    const observer = new MutationObserver(() => {
        clearTimeout(timer);
        timer = setTimeout(done, quietMs);
    });
    function done() {
        observer.disconnect();
        resolve(true);
    }
    observer.observe(document, {
        subtree: true, childList: true, attributes: true, characterData: true,
    });
    timer = setTimeout(done, quietMs);
})"""

_DOM_QUIET_MS = 500

_TRUNCATED_NOTICE = "[content truncated to 50KB]"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def normalize_url(url: str) -> str:
    """Default to https when *url* carries no scheme."""
    if "://" not in url:
        return "https://" + url
    return url


def next_available_file(base: str, ext: str) -> str:
    """Return ``base+ext``, or the first free ``base-N+ext`` for N >= 2."""
    name = f"{base}{ext}"
    if not Path(name).exists():
        return name
    i = 2
    while True:
        name = f"{base}-{i}{ext}"
        if not Path(name).exists():
            return name
        i += 1


def format_js_value(value: Any) -> str:
    """Render an evaluation result for a terminal.

    Strings print bare, containers as indented JSON, scalars as JSON.
    """
    if value is None:
        return "null"
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2)
    return json.dumps(value)


# ---------------------------------------------------------------------------
# BrowserCommands
# ---------------------------------------------------------------------------


class BrowserCommands:
    """Handles one command against the shared browser session."""

    def __init__(
        self,
        playwright: Playwright,
        config: BBConfig,
        json_output: bool = False,
        launcher: Callable[..., LaunchedBrowser] = launch_chrome,
    ) -> None:
        self.config = config
        self.json_output = json_output
        self.manager = SessionManager(playwright, config, launcher)
        self.registry: TabRegistry | None = None

    # -- Session access ------------------------------------------------------

    async def _registry(self) -> TabRegistry:
        """Attach to (or launch) the browser and return its tab registry."""
        if self.registry is None:
            descriptor, browser = await self.manager.ensure()
            self.registry = TabRegistry(
                browser, descriptor, timeout=self.config.timeout
            )
            context = self.registry.context
            context.set_default_timeout(self.config.timeout_ms)
            context.set_default_navigation_timeout(self.config.timeout_ms)
        return self.registry

    async def _active_page(self) -> Page:
        registry = await self._registry()
        return registry.resolve_active()

    async def _element(self, page: Page, selector: str) -> ElementHandle:
        """Wait for *selector* to be attached and return its first match."""
        try:
            element = await page.wait_for_selector(selector, state="attached")
        except PlaywrightTimeoutError:
            raise NotFoundError(f"element not found: {selector}") from None
        if element is None:
            raise NotFoundError(f"element not found: {selector}")
        return element

    async def _title(self, page: Page) -> str:
        return await bounded(page.title(), self.config.timeout, "page title")

    async def _wait_stable(self, page: Page) -> None:
        await page.wait_for_load_state("load")
        try:
            await evaluate(page, _DOM_STABLE_JS, _DOM_QUIET_MS, self.config.timeout)
        except OperationTimeout:
            raise OperationTimeout(
                f"DOM did not settle within {self.config.timeout:g}s"
            ) from None

    def _content_result(self, content: ExtractedContent) -> dict[str, Any]:
        if self.json_output:
            return {"ok": True, "output": json.dumps(content.to_dict(), indent=2)}
        result: dict[str, Any] = {
            "ok": True,
            "output": f"# {content.title}\n\n{content.content}",
        }
        if content.truncated:
            result["notice"] = _TRUNCATED_NOTICE
        return result

    async def _extract(self, page: Page) -> ExtractedContent:
        return await extract_page(
            page,
            budget=self.config.extract.timeout,
            max_bytes=self.config.extract.max_bytes,
            timeout=self.config.timeout,
        )

    # -- Command dispatch ----------------------------------------------------

    async def handle_command(self, cmd: str, args: dict[str, Any]) -> dict[str, Any]:
        """Dispatch *cmd* to the appropriate ``cmd_*`` handler."""
        method_name = f"cmd_{cmd.replace('-', '_')}"
        handler = getattr(self, method_name, None)
        if handler is None:
            return {"ok": False, "error": f"Unknown command: {cmd}"}
        try:
            return await handler(**args)
        except BBError as exc:
            return {"ok": False, "error": str(exc)}
        except PlaywrightTimeoutError as exc:
            return {"ok": False, "error": f"timed out: {exc}"}
        except Exception as exc:
            logger.exception(f"Command {cmd!r} raised an exception")
            return {"ok": False, "error": str(exc)}

    # -----------------------------------------------------------------------
    # Command handlers
    # -----------------------------------------------------------------------

    # -- Navigation ----------------------------------------------------------

    async def cmd_open(
        self, url: str, raw: bool = False, wait: bool = False
    ) -> dict[str, Any]:
        """Navigate the active tab to *url* and print its readable content."""
        url = normalize_url(url)
        registry = await self._registry()
        if not registry.pages:
            _, page = await registry.open(url)
        else:
            page = registry.resolve_active()
            await page.goto(url, wait_until="load")
        if wait:
            await self._wait_stable(page)

        if raw:
            title = await self._title(page)
            if self.json_output:
                return {
                    "ok": True,
                    "output": json.dumps({"url": page.url, "title": title}, indent=2),
                }
            return {"ok": True, "output": title}

        return self._content_result(await self._extract(page))

    async def cmd_back(self) -> dict[str, Any]:
        """Navigate back in history."""
        page = await self._active_page()
        await page.go_back(wait_until="load")
        return {"ok": True, "output": page.url}

    async def cmd_forward(self) -> dict[str, Any]:
        """Navigate forward in history."""
        page = await self._active_page()
        await page.go_forward(wait_until="load")
        return {"ok": True, "output": page.url}

    async def cmd_reload(self) -> dict[str, Any]:
        """Reload the active page."""
        page = await self._active_page()
        await page.reload(wait_until="load")
        return {"ok": True, "output": "Reloaded"}

    # -- Getters -------------------------------------------------------------

    async def cmd_url(self) -> dict[str, Any]:
        page = await self._active_page()
        return {"ok": True, "output": page.url}

    async def cmd_title(self) -> dict[str, Any]:
        page = await self._active_page()
        return {"ok": True, "output": await self._title(page)}

    async def cmd_text(self, selector: str | None = None) -> dict[str, Any]:
        """Print the text of *selector*, or of the whole body."""
        page = await self._active_page()
        if selector:
            element = await self._element(page, selector)
            return {"ok": True, "output": await element.inner_text()}
        text = await evaluate(page, BODY_TEXT_JS, timeout=self.config.timeout)
        return {"ok": True, "output": text or ""}

    async def cmd_html(self, selector: str | None = None) -> dict[str, Any]:
        """Print the outer HTML of *selector*, or of the whole document."""
        page = await self._active_page()
        if selector:
            element = await self._element(page, selector)
            html = await evaluate(
                element, "el => el.outerHTML", timeout=self.config.timeout
            )
            return {"ok": True, "output": html}
        html = await evaluate(page, OUTER_HTML_JS, timeout=self.config.timeout)
        return {"ok": True, "output": html}

    async def cmd_attr(self, selector: str, name: str) -> dict[str, Any]:
        page = await self._active_page()
        element = await self._element(page, selector)
        value = await element.get_attribute(name)
        if value is None:
            raise NotFoundError(f"attribute {json.dumps(name)} not found")
        return {"ok": True, "output": value}

    async def cmd_extract(self) -> dict[str, Any]:
        """Print the readable content of the active page."""
        page = await self._active_page()
        return self._content_result(await self._extract(page))

    async def cmd_js(self, expression: list[str]) -> dict[str, Any]:
        """Evaluate a JavaScript expression in the active page."""
        expr = " ".join(expression)
        page = await self._active_page()
        try:
            value = await evaluate(
                page, f"() => {{ return ({expr}); }}", timeout=self.config.timeout
            )
        except PlaywrightTimeoutError:
            raise
        except PlaywrightError as exc:
            raise BBError(f"JS error: {exc}") from exc
        if self.json_output:
            return {"ok": True, "output": json.dumps({"value": value})}
        return {"ok": True, "output": format_js_value(value)}

    # -- Save as -------------------------------------------------------------

    async def cmd_pdf(self, file: str = "page.pdf") -> dict[str, Any]:
        """Save the active page as a PDF."""
        page = await self._active_page()
        data = await page.pdf()
        Path(file).write_bytes(data)
        return {"ok": True, "output": f"Saved {file} ({len(data)} bytes)"}

    async def cmd_screenshot(
        self,
        file: str | None = None,
        width: int = 1280,
        height: int | None = None,
    ) -> dict[str, Any]:
        """Screenshot the page; full height unless *height* is given."""
        if width <= 0 or (height is not None and height <= 0):
            raise UsageError("screenshot width and height must be positive")
        page = await self._active_page()
        await page.set_viewport_size({"width": width, "height": height or 720})
        data = await page.screenshot(full_page=height is None)
        path = file or next_available_file("screenshot", ".png")
        Path(path).write_bytes(data)
        return {"ok": True, "output": path}

    async def cmd_screenshot_el(
        self, selector: str, file: str = "element.png"
    ) -> dict[str, Any]:
        page = await self._active_page()
        element = await self._element(page, selector)
        data = await element.screenshot(type="png")
        Path(file).write_bytes(data)
        return {"ok": True, "output": f"Saved {file} ({len(data)} bytes)"}

    # -- Interaction ---------------------------------------------------------

    async def cmd_click(self, selector: str) -> dict[str, Any]:
        page = await self._active_page()
        element = await self._element(page, selector)
        await element.click()
        # Let click handlers run before the process detaches
        await asyncio.sleep(0.1)
        return {"ok": True, "output": "Clicked"}

    async def cmd_input(self, selector: str, text: list[str]) -> dict[str, Any]:
        """Replace the contents of an input with *text*."""
        value = " ".join(text)
        page = await self._active_page()
        element = await self._element(page, selector)
        await element.fill(value)
        return {"ok": True, "output": f"Typed: {value}"}

    async def cmd_clear(self, selector: str) -> dict[str, Any]:
        page = await self._active_page()
        element = await self._element(page, selector)
        await element.fill("")
        return {"ok": True, "output": "Cleared"}

    async def cmd_select(self, selector: str, value: str) -> dict[str, Any]:
        """Set a ``<select>`` value and fire ``change``."""
        page = await self._active_page()
        try:
            selected = await evaluate(
                page, _SELECT_JS, [selector, value], self.config.timeout
            )
        except PlaywrightTimeoutError:
            raise
        except PlaywrightError as exc:
            raise BBError(f"select failed: {exc}") from exc
        return {"ok": True, "output": f"Selected: {selected}"}

    async def cmd_submit(self, selector: str) -> dict[str, Any]:
        page = await self._active_page()
        try:
            await self._element(page, selector)
        except NotFoundError:
            raise NotFoundError(f"form not found: {selector}") from None
        await evaluate(page, _SUBMIT_JS, selector, self.config.timeout)
        return {"ok": True, "output": "Submitted"}

    async def cmd_hover(self, selector: str) -> dict[str, Any]:
        page = await self._active_page()
        element = await self._element(page, selector)
        await element.hover()
        return {"ok": True, "output": "Hovered"}

    async def cmd_focus(self, selector: str) -> dict[str, Any]:
        page = await self._active_page()
        element = await self._element(page, selector)
        await element.focus()
        return {"ok": True, "output": "Focused"}

    # -- Waiting -------------------------------------------------------------

    async def cmd_wait(self, selector: str) -> dict[str, Any]:
        """Wait until *selector* exists and is visible."""
        page = await self._active_page()
        element = await self._element(page, selector)
        await element.wait_for_element_state("visible")
        return {"ok": True, "output": "Element visible"}

    async def cmd_waitload(self) -> dict[str, Any]:
        page = await self._active_page()
        await page.wait_for_load_state("load")
        return {"ok": True, "output": "Page loaded"}

    async def cmd_waitstable(self) -> dict[str, Any]:
        page = await self._active_page()
        await self._wait_stable(page)
        return {"ok": True, "output": "DOM stable"}

    async def cmd_waitidle(self) -> dict[str, Any]:
        page = await self._active_page()
        await page.wait_for_load_state("networkidle")
        return {"ok": True, "output": "Network idle"}

    async def cmd_sleep(self, seconds: float) -> dict[str, Any]:
        if seconds < 0:
            raise UsageError(f"invalid seconds: {seconds}")
        await asyncio.sleep(seconds)
        return {"ok": True, "output": ""}

    # -- Queries -------------------------------------------------------------

    async def cmd_exists(self, selector: str) -> dict[str, Any]:
        """``true`` (exit 0) or ``false`` (exit 1) without waiting."""
        page = await self._active_page()
        found = await page.query_selector(selector)
        if found is None:
            return {"ok": False, "output": "false"}
        return {"ok": True, "output": "true"}

    async def cmd_count(self, selector: str) -> dict[str, Any]:
        page = await self._active_page()
        elements = await page.query_selector_all(selector)
        return {"ok": True, "output": str(len(elements))}

    async def cmd_visible(self, selector: str) -> dict[str, Any]:
        """``true`` (exit 0) or ``false`` (exit 1); a missing element is not visible."""
        page = await self._active_page()
        try:
            element = await self._element(page, selector)
        except NotFoundError:
            return {"ok": False, "output": "false"}
        if await element.is_visible():
            return {"ok": True, "output": "true"}
        return {"ok": False, "output": "false"}

    # -- Tabs ----------------------------------------------------------------

    async def cmd_pages(self) -> dict[str, Any]:
        """List all open tabs, marking the active one."""
        registry = await self._registry()
        rows = await registry.listing()
        if self.json_output:
            return {
                "ok": True,
                "output": json.dumps([row.to_dict() for row in rows], indent=2),
            }
        lines = [
            f"{'*' if row.active else ' '} [{row.index}] {row.title} - {row.url}"
            for row in rows
        ]
        return {"ok": True, "output": "\n".join(lines)}

    async def cmd_page(self, index: int) -> dict[str, Any]:
        """Switch to the tab at *index*."""
        registry = await self._registry()
        page = registry.switch(index)
        title = await self._title(page)
        return {"ok": True, "output": f"Switched to [{index}] {title} - {page.url}"}

    async def cmd_newpage(self, url: str | None = None) -> dict[str, Any]:
        """Open a new tab, optionally navigating to *url*."""
        registry = await self._registry()
        index, page = await registry.open(normalize_url(url) if url else None)
        return {"ok": True, "output": f"Opened [{index}] {page.url}"}

    async def cmd_closepage(self, index: int | None = None) -> dict[str, Any]:
        """Close the tab at *index* (default: active tab)."""
        registry = await self._registry()
        closed = await registry.close(index)
        return {"ok": True, "output": f"Closed page {closed}"}

    # -- Accessibility -------------------------------------------------------

    async def cmd_ax_tree(self, depth: int | None = None) -> dict[str, Any]:
        """Print the accessibility tree of the active page."""
        page = await self._active_page()
        try:
            nodes = await fetch_full_tree(page, depth, self.config.timeout)
        except PlaywrightError as exc:
            raise BBError(f"failed to get accessibility tree: {exc}") from exc
        if self.json_output:
            return {"ok": True, "output": json.dumps([n.raw for n in nodes], indent=2)}
        return {"ok": True, "output": format_ax_tree(nodes).rstrip("\n")}

    async def cmd_ax_find(
        self, name: str | None = None, role: str | None = None
    ) -> dict[str, Any]:
        """List accessibility nodes by accessible name and/or role."""
        if not name and not role:
            raise UsageError("ax-find needs --name and/or --role")
        page = await self._active_page()
        try:
            nodes = await find_nodes(page, name, role, self.config.timeout)
        except PlaywrightError as exc:
            raise BBError(f"query failed: {exc}") from exc
        if not nodes:
            return {"ok": False, "error": "No matching nodes"}
        if self.json_output:
            return {"ok": True, "output": json.dumps([n.raw for n in nodes], indent=2)}
        return {"ok": True, "output": format_node_list(nodes).rstrip("\n")}

    async def cmd_ax_node(self, selector: str) -> dict[str, Any]:
        """Describe the accessibility node of the element matching *selector*."""
        page = await self._active_page()
        node = await describe_element(page, selector, self.config.timeout)
        if self.json_output:
            return {"ok": True, "output": json.dumps(node.raw, indent=2)}
        return {"ok": True, "output": format_node_detail(node).rstrip("\n")}

    # -- Session -------------------------------------------------------------

    async def cmd_status(self) -> dict[str, Any]:
        """Report whether a browser is running, without starting one."""
        report = await self.manager.status()
        if report.status is SessionStatus.ABSENT:
            if self.json_output:
                return {"ok": True, "output": json.dumps({"running": False})}
            return {"ok": True, "output": "No active browser session"}

        descriptor = report.descriptor
        if report.status is SessionStatus.STALE:
            if self.json_output:
                return {
                    "ok": True,
                    "output": json.dumps({"running": False, "stale": True}),
                }
            return {
                "ok": True,
                "output": (
                    f"Browser not responding (PID {descriptor.chrome_pid}, "
                    "state may be stale)"
                ),
            }

        # Read-only registry: listing never persists anything
        registry = TabRegistry(
            report.browser, descriptor, timeout=self.config.timeout
        )
        rows = await registry.listing()
        if self.json_output:
            return {
                "ok": True,
                "output": json.dumps(
                    {
                        "running": True,
                        "pid": descriptor.chrome_pid,
                        "pages": [row.to_dict() for row in rows],
                        "active_page": descriptor.active_page,
                    },
                    indent=2,
                ),
            }

        lines = [
            f"Browser running (PID {descriptor.chrome_pid})",
            f"Pages: {len(rows)}, Active: {descriptor.active_page}",
        ]
        if rows:
            current = rows[registry.active_index]
            lines.append(f"Current: {current.title} - {current.url}")
        return {"ok": True, "output": "\n".join(lines)}

    async def cmd_stop(self) -> dict[str, Any]:
        """Shut the browser down and forget the session."""
        if await self.manager.stop():
            return {"ok": True, "output": "Browser stopped"}
        return {"ok": True, "output": "No active browser session"}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def run_command(
    cmd: str,
    args: dict[str, Any],
    config: BBConfig,
    json_output: bool = False,
) -> dict[str, Any]:
    """Start the patchright driver, run one command and tear the driver down.

    The browser itself is not owned by the driver and keeps running.
    """
    async with async_playwright() as playwright:
        commands = BrowserCommands(playwright, config, json_output=json_output)
        logger.debug(f"Running command: {cmd} args={args}")
        result = await commands.handle_command(cmd, args)
    if not result.get("ok", False):
        logger.warning(f"Command {cmd!r} failed: {result.get('error', result.get('output'))}")
    return result
