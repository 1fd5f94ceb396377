"""Thin helpers for raw CDP calls and script evaluation through patchright.

patchright's default timeouts do not cover ``Page.evaluate`` or raw CDP
sends, so both go through ``bounded`` here.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, TypeVar

from bb_cli.errors import OperationTimeout

if TYPE_CHECKING:
    from patchright.async_api import CDPSession, ElementHandle, Page

T = TypeVar("T")

_NO_ARG = object()


async def bounded(request: Awaitable[T], timeout: float | None, what: str) -> T:
    """Await *request* for at most *timeout* seconds (no limit when ``None``)."""
    if timeout is None:
        return await request
    try:
        return await asyncio.wait_for(request, timeout)
    except asyncio.TimeoutError:
        raise OperationTimeout(f"{what} timed out after {timeout:g}s") from None


async def evaluate(
    target: Page | ElementHandle,
    expression: str,
    arg: Any = _NO_ARG,
    timeout: float | None = None,
) -> Any:
    """``target.evaluate`` capped at *timeout* seconds."""
    if arg is _NO_ARG:
        request = target.evaluate(expression)
    else:
        request = target.evaluate(expression, arg)
    return await bounded(request, timeout, "script evaluation")


@asynccontextmanager
async def page_session(page: Page) -> AsyncIterator[CDPSession]:
    """Open a CDP session on *page* and detach it on exit.

    Remote object ids are scoped to the session that produced them, so
    multi-step lookups must share one session.
    """
    session = await page.context.new_cdp_session(page)
    try:
        yield session
    finally:
        await session.detach()


async def call(
    session: CDPSession,
    method: str,
    params: dict[str, Any] | None = None,
    timeout: float | None = None,
) -> dict[str, Any]:
    """Send *method* and wait at most *timeout* seconds for the reply."""
    return await bounded(session.send(method, params or {}), timeout, method)


async def target_id(page: Page, timeout: float | None = None) -> str:
    """Return the CDP target identifier of *page*."""
    async with page_session(page) as session:
        result = await call(session, "Target.getTargetInfo", timeout=timeout)
    return result["targetInfo"]["targetId"]
