"""Tab registry for bb.

Tabs live in the shared browser, not in this process, so every operation
works against a fresh listing of the browser's default context.  The active
index is persisted in the session descriptor and treated as advisory: tabs
may have been closed by something else since it was written.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from bb_cli.cdp import bounded, target_id
from bb_cli.errors import BBError, InvariantViolation, NotFoundError
from bb_cli.session import SessionDescriptor, save_descriptor

if TYPE_CHECKING:
    from patchright.async_api import Browser, BrowserContext, Page

logger = logging.getLogger("bb_cli.tabs")


@dataclass
class TabInfo:
    index: int
    active: bool
    title: str
    url: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "active": self.active,
            "title": self.title,
            "url": self.url,
        }


class TabRegistry:
    """Resolves, switches, creates and closes tabs of the live browser."""

    def __init__(
        self,
        browser: Browser,
        descriptor: SessionDescriptor,
        persist: Callable[[SessionDescriptor], None] = save_descriptor,
        timeout: float | None = None,
    ) -> None:
        self.browser = browser
        self.descriptor = descriptor
        self.timeout = timeout
        self._persist = persist

    # -- Properties ----------------------------------------------------------

    @property
    def context(self) -> BrowserContext:
        """The browser's default context, which owns every tab."""
        contexts = self.browser.contexts
        if not contexts:
            raise BBError("browser has no default context")
        return contexts[0]

    @property
    def pages(self) -> list[Page]:
        """A fresh, ordered listing of the open tabs."""
        return list(self.context.pages)

    @property
    def active_index(self) -> int:
        """The persisted index clamped into range; ``0`` when it is stale."""
        count = len(self.pages)
        idx = self.descriptor.active_page
        if idx < 0 or idx >= count:
            return 0
        return idx

    def _set_active(self, index: int) -> None:
        self.descriptor.active_page = index
        self._persist(self.descriptor)

    # -- Operations ----------------------------------------------------------

    def resolve_active(self) -> Page:
        """Return the active tab, self-healing a stale index to tab 0.

        Fails only when the browser has no tabs at all.
        """
        pages = self.pages
        if not pages:
            raise NotFoundError("no pages open")
        return pages[self.active_index]

    async def open(self, url: str | None = None) -> tuple[int, Page]:
        """Create a tab, optionally load *url* in it, and make it active.

        The new tab's position is located by target id in a re-fetched
        listing; it is not assumed to be appended last.
        """
        page = await self.context.new_page()
        if url:
            await page.goto(url, wait_until="load")

        new_id = await target_id(page, self.timeout)
        index = None
        for i, candidate in enumerate(self.pages):
            if await target_id(candidate, self.timeout) == new_id:
                index = i
                break
        if index is None:
            raise NotFoundError("new page vanished before it could be activated")

        self._set_active(index)
        logger.info(f"Opened tab {index} ({url or 'blank'})")
        return index, page

    def switch(self, index: int) -> Page:
        """Make tab *index* active.  Unlike ``resolve_active`` this never self-heals."""
        pages = self.pages
        if index < 0 or index >= len(pages):
            raise NotFoundError(
                f"page index {index} out of range (0-{len(pages) - 1})"
            )
        self._set_active(index)
        return pages[index]

    async def close(self, index: int | None = None) -> int:
        """Close tab *index* (default: the active tab) and return its index.

        At least one tab always remains open; the check happens before
        anything is touched.
        """
        pages = self.pages
        if len(pages) <= 1:
            raise InvariantViolation("cannot close the last page")

        if index is None:
            index = self.active_index
        if index < 0 or index >= len(pages):
            raise NotFoundError(f"page index {index} out of range")

        await pages[index].close()

        active = self.descriptor.active_page
        last = len(pages) - 2
        if active > last:
            active = last
        self._set_active(max(active, 0))
        logger.info(f"Closed tab {index}, active is now {self.descriptor.active_page}")
        return index

    async def listing(self) -> list[TabInfo]:
        """Describe every tab, marking the one at the persisted index."""
        rows: list[TabInfo] = []
        for i, page in enumerate(self.pages):
            url = page.url
            try:
                title = await bounded(page.title(), self.timeout, "page title")
            except Exception:
                title = ""
            rows.append(
                TabInfo(
                    index=i,
                    active=i == self.descriptor.active_page,
                    title=title,
                    url=url,
                )
            )
        return rows
