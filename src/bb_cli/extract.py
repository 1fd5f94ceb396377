"""Readable-content extraction for bb.

Page markup is reduced to readable text with trafilatura.  trafilatura can
spin for a long time on pathological pages, so every call is raced against a
fixed budget: the extraction runs on a detached daemon thread and a timer
runs alongside it, and whichever finishes first wins.  The loser is left
alone; a late extraction result is simply dropped, and the process exits
shortly afterwards anyway.

On timeout, error or a blank result the page's plain ``innerText`` is used
instead, and the text is capped at a fixed byte size for agent consumption.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

import trafilatura

from bb_cli.cdp import bounded, evaluate
from bb_cli.errors import OperationTimeout

if TYPE_CHECKING:
    from patchright.async_api import Page

logger = logging.getLogger("bb_cli.extract")

MAX_CONTENT_BYTES = 50 * 1024
EXTRACT_BUDGET = 10.0

OUTER_HTML_JS = "() => document.documentElement.outerHTML"
BODY_TEXT_JS = '() => document.body?.innerText ?? ""'


@dataclass
class ExtractedContent:
    url: str
    title: str
    content: str
    truncated: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "content": self.content,
            "truncated": self.truncated,
        }


def readable_text(html: str, url: str) -> tuple[str, str]:
    """Run trafilatura on *html* and return ``(title, text)``.

    Returns empty strings when trafilatura finds nothing worth extracting.
    """
    result = trafilatura.extract(
        html,
        url=url or None,
        output_format="json",
        with_metadata=True,
    )
    if not result:
        return "", ""
    data = json.loads(result)
    return data.get("title") or "", data.get("text") or ""


def _run_detached(fn: Callable[..., Any], *args: Any) -> asyncio.Future:
    """Run *fn* on a daemon thread and expose its outcome as a future.

    The thread is never joined, so an abandoned call cannot hold up
    interpreter shutdown.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def _settle(result: Any, exc: BaseException | None) -> None:
        if future.done():
            return
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(result)

    def _target() -> None:
        try:
            result, exc = fn(*args), None
        except Exception as e:
            result, exc = None, e
        try:
            loop.call_soon_threadsafe(_settle, result, exc)
        except RuntimeError:
            # Loop already closed: nobody is waiting for this result
            pass

    threading.Thread(target=_target, name="bb-extract", daemon=True).start()
    return future


async def extract_readable(
    html: str,
    url: str,
    budget: float = EXTRACT_BUDGET,
    extractor: Callable[[str, str], tuple[str, str]] = readable_text,
) -> tuple[str, str]:
    """Run *extractor* with a hard *budget* in seconds.

    Raises ``OperationTimeout`` when the timer wins; extractor errors
    propagate unchanged.
    """
    loop = asyncio.get_running_loop()
    extraction = _run_detached(extractor, html, url)
    # A bare timer future: whichever side loses is left to finish on its own
    timer = loop.create_future()
    loop.call_later(budget, lambda: timer.done() or timer.set_result(None))
    done, _ = await asyncio.wait(
        {extraction, timer}, return_when=asyncio.FIRST_COMPLETED
    )
    if extraction in done:
        return extraction.result()
    # Retrieve a late exception so it is not reported as never retrieved
    extraction.add_done_callback(lambda f: f.cancelled() or f.exception())
    raise OperationTimeout(f"readability extraction timed out after {budget:g}s")


def truncate_content(content: str, max_bytes: int = MAX_CONTENT_BYTES) -> tuple[str, bool]:
    """Cut *content* to at most *max_bytes* UTF-8 bytes.

    The cut is a plain byte slice; a character split by it is dropped.
    """
    data = content.encode("utf-8")
    if len(data) <= max_bytes:
        return content, False
    return data[:max_bytes].decode("utf-8", errors="ignore"), True


async def extract_page(
    page: Page,
    budget: float = EXTRACT_BUDGET,
    max_bytes: int = MAX_CONTENT_BYTES,
    extractor: Callable[[str, str], tuple[str, str]] = readable_text,
    timeout: float | None = None,
) -> ExtractedContent:
    """Extract bounded readable content from *page*.

    Falls back to the page's plain rendered text when extraction times out,
    fails or comes back blank, and to the document title when the extractor
    found none.  Every call into the page is capped at *timeout* seconds.
    """
    url = page.url
    html = await evaluate(page, OUTER_HTML_JS, timeout=timeout)

    try:
        title, content = await extract_readable(html, url, budget, extractor)
    except Exception as exc:
        logger.info(f"Readable extraction failed for {url}, using body text: {exc}")
        title, content = "", ""

    if not content.strip():
        content = await evaluate(page, BODY_TEXT_JS, timeout=timeout) or ""
    if not title:
        title = await bounded(page.title(), timeout, "page title")

    content, truncated = truncate_content(content, max_bytes)
    if truncated:
        logger.debug(f"Content for {url} truncated to {max_bytes} bytes")
    return ExtractedContent(url=url, title=title, content=content, truncated=truncated)
