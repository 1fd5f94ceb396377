"""Tests for bb_cli.tabs module."""

from __future__ import annotations

import asyncio

import pytest

from bb_cli.errors import BBError, InvariantViolation, NotFoundError, OperationTimeout
from bb_cli.session import SessionDescriptor, load_descriptor
from bb_cli.tabs import TabInfo, TabRegistry


def _registry(browser, active=0, persisted=None):
    descriptor = SessionDescriptor(
        debug_url="ws://127.0.0.1:9222/devtools/browser/x",
        chrome_pid=10,
        active_page=active,
        data_dir="/tmp/profile",
    )
    if persisted is None:
        return TabRegistry(browser, descriptor, persist=lambda d: None)
    return TabRegistry(
        browser, descriptor, persist=lambda d: persisted.append(d.active_page)
    )


# ---------------------------------------------------------------------------
# resolve_active
# ---------------------------------------------------------------------------


class TestResolveActive:
    def test_returns_persisted_index(self, browser_factory, context_factory):
        context = context_factory(page_count=3)
        registry = _registry(browser_factory(context), active=2)
        assert registry.resolve_active() is context.pages[2]

    def test_out_of_range_heals_to_first(self, browser_factory, context_factory):
        context = context_factory(page_count=2)
        registry = _registry(browser_factory(context), active=7)
        assert registry.resolve_active() is context.pages[0]

    def test_negative_heals_to_first(self, browser_factory, context_factory):
        context = context_factory(page_count=2)
        registry = _registry(browser_factory(context), active=-1)
        assert registry.resolve_active() is context.pages[0]

    def test_heal_does_not_persist(self, browser_factory, context_factory):
        persisted: list[int] = []
        registry = _registry(
            browser_factory(context_factory(page_count=1)), active=4, persisted=persisted
        )
        registry.resolve_active()
        assert persisted == []
        assert registry.descriptor.active_page == 4

    def test_no_pages(self, browser_factory, context_factory):
        registry = _registry(browser_factory(context_factory(page_count=0)))
        with pytest.raises(NotFoundError, match="no pages open"):
            registry.resolve_active()

    def test_no_context(self, browser_factory):
        browser = browser_factory()
        browser.contexts = []
        with pytest.raises(BBError, match="no default context"):
            _registry(browser).resolve_active()


# ---------------------------------------------------------------------------
# open
# ---------------------------------------------------------------------------


class TestOpen:
    async def test_appended_tab_becomes_active(self, browser_factory, context_factory):
        persisted: list[int] = []
        context = context_factory(page_count=2)
        registry = _registry(browser_factory(context), persisted=persisted)

        index, page = await registry.open("https://example.org/")

        assert index == 2
        assert context.pages[2] is page
        assert page.url == "https://example.org/"
        page.goto.assert_awaited_once_with("https://example.org/", wait_until="load")
        assert persisted == [2]

    async def test_inserted_tab_is_located_by_target(
        self, browser_factory, context_factory
    ):
        context = context_factory(page_count=3, insert_at=1)
        registry = _registry(browser_factory(context))

        index, page = await registry.open()

        assert index == 1
        assert context.pages[1] is page
        assert registry.resolve_active() is page

    async def test_blank_tab_is_not_navigated(self, browser_factory, context_factory):
        context = context_factory(page_count=1)
        registry = _registry(browser_factory(context))

        _, page = await registry.open(None)

        page.goto.assert_not_awaited()

    async def test_vanished_tab(self, browser_factory, context_factory):
        context = context_factory(page_count=1)
        real_new_page = context.new_page

        async def new_page_then_close():
            page = await real_new_page()
            context.pages.remove(page)
            return page

        context.new_page = new_page_then_close
        persisted: list[int] = []
        registry = _registry(browser_factory(context), persisted=persisted)

        with pytest.raises(NotFoundError, match="vanished"):
            await registry.open()
        assert persisted == []


# ---------------------------------------------------------------------------
# switch
# ---------------------------------------------------------------------------


class TestSwitch:
    def test_switch(self, browser_factory, context_factory):
        persisted: list[int] = []
        context = context_factory(page_count=3)
        registry = _registry(browser_factory(context), persisted=persisted)

        assert registry.switch(1) is context.pages[1]
        assert persisted == [1]

    @pytest.mark.parametrize("index", [-1, 3, 99])
    def test_out_of_range(self, browser_factory, context_factory, index):
        persisted: list[int] = []
        registry = _registry(
            browser_factory(context_factory(page_count=3)), active=2, persisted=persisted
        )

        with pytest.raises(NotFoundError, match=r"out of range \(0-2\)"):
            registry.switch(index)
        assert persisted == []
        assert registry.descriptor.active_page == 2


# ---------------------------------------------------------------------------
# close
# ---------------------------------------------------------------------------


class TestClose:
    async def test_refuses_last_tab(self, browser_factory, context_factory):
        persisted: list[int] = []
        context = context_factory(page_count=1)
        registry = _registry(browser_factory(context), persisted=persisted)
        only = context.pages[0]

        with pytest.raises(InvariantViolation, match="cannot close the last page"):
            await registry.close()

        only.close.assert_not_awaited()
        assert context.pages == [only]
        assert persisted == []

    async def test_refuses_last_tab_even_with_bad_index(
        self, browser_factory, context_factory
    ):
        registry = _registry(browser_factory(context_factory(page_count=1)))
        with pytest.raises(InvariantViolation):
            await registry.close(5)

    async def test_closes_active_by_default(self, browser_factory, context_factory):
        context = context_factory(page_count=3)
        registry = _registry(browser_factory(context), active=1)
        target = context.pages[1]

        assert await registry.close() == 1

        target.close.assert_awaited_once()
        assert len(context.pages) == 2
        assert registry.descriptor.active_page == 1

    async def test_closing_last_index_clamps_active(
        self, browser_factory, context_factory
    ):
        persisted: list[int] = []
        context = context_factory(page_count=3)
        registry = _registry(browser_factory(context), active=2, persisted=persisted)

        await registry.close(2)

        assert persisted == [1]

    async def test_active_before_closed_tab_is_kept(
        self, browser_factory, context_factory
    ):
        context = context_factory(page_count=3)
        registry = _registry(browser_factory(context), active=0)

        await registry.close(2)

        assert registry.descriptor.active_page == 0

    async def test_out_of_range(self, browser_factory, context_factory):
        context = context_factory(page_count=2)
        registry = _registry(browser_factory(context))

        with pytest.raises(NotFoundError, match="out of range"):
            await registry.close(2)
        assert len(context.pages) == 2


# ---------------------------------------------------------------------------
# listing
# ---------------------------------------------------------------------------


class TestListing:
    async def test_marks_active(self, browser_factory, context_factory):
        context = context_factory(page_count=2)
        registry = _registry(browser_factory(context), active=1)

        rows = await registry.listing()

        assert rows == [
            TabInfo(index=0, active=False, title="Page 1", url="https://example.com/1"),
            TabInfo(index=1, active=True, title="Page 2", url="https://example.com/2"),
        ]
        assert rows[1].to_dict() == {
            "index": 1,
            "active": True,
            "title": "Page 2",
            "url": "https://example.com/2",
        }

    async def test_title_failure_is_blank(self, browser_factory, context_factory):
        context = context_factory(page_count=1)
        context.pages[0].title.side_effect = RuntimeError("navigating")
        registry = _registry(browser_factory(context))

        rows = await registry.listing()

        assert rows[0].title == ""


# ---------------------------------------------------------------------------
# Persisted lifecycle
# ---------------------------------------------------------------------------


class TestTabLifecycle:
    async def test_open_switch_close_sequence(
        self, bb_home, browser_factory, context_factory
    ):
        context = context_factory(page_count=1)
        descriptor = SessionDescriptor(
            debug_url="ws://127.0.0.1:9222/devtools/browser/x",
            chrome_pid=10,
            data_dir=str(bb_home / "chrome-data"),
        )
        registry = TabRegistry(browser_factory(context), descriptor)

        index, _ = await registry.open("https://a.test/")
        assert index == 1
        assert load_descriptor().active_page == 1

        registry.switch(0)
        assert load_descriptor().active_page == 0

        await registry.close(1)
        assert load_descriptor().active_page == 0
        assert len(context.pages) == 1

        with pytest.raises(InvariantViolation):
            await registry.close()
        assert len(context.pages) == 1


class TestOperationTimeout:
    async def test_hung_target_lookup_fails_open(
        self, browser_factory, context_factory, hang
    ):
        context = context_factory(page_count=1)
        context.cdp_responses["Target.getTargetInfo"] = hang
        persisted: list[int] = []
        registry = _registry(browser_factory(context), persisted=persisted)
        registry.timeout = 0.1

        with pytest.raises(OperationTimeout, match="Target.getTargetInfo timed out"):
            await asyncio.wait_for(registry.open(), 3)
        assert persisted == []

    async def test_hung_title_lists_blank(self, browser_factory, context_factory, hang):
        context = context_factory(page_count=1)
        context.pages[0].title.side_effect = hang
        registry = _registry(browser_factory(context))
        registry.timeout = 0.1

        rows = await asyncio.wait_for(registry.listing(), 3)

        assert rows[0].title == ""
