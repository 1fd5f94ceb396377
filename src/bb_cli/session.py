"""Session descriptor management for bb.

Every ``bb`` invocation is a fresh process.  The only thing carried from one
invocation to the next is a small descriptor naming the long-lived browser
process to attach to.

Directory layout (per-user, persists across invocations):

    ~/.bb/
      state.json        # SessionDescriptor
      chrome-data/      # Dedicated Chromium profile
      bb.log            # Invocation log
      config.json       # Optional configuration file

The descriptor is written with write-to-temp-then-rename, which narrows but
does not remove the race between two invocations that both find no live
session: each may launch a browser, the later write wins and the other
browser is leaked.  Invocations are expected to be serialized by the caller;
there is no cross-process lock.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from patchright.async_api import Error as PlaywrightError
from pydantic import BaseModel, ValidationError

from bb_cli.errors import LaunchError
from bb_cli.launcher import LaunchedBrowser, launch_chrome, terminate

if TYPE_CHECKING:
    from patchright.async_api import Browser, Playwright

    from bb_cli.config import BBConfig

logger = logging.getLogger("bb_cli.session")

# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

_BASE_DIR_NAME = ".bb"
_STATE_FILENAME = "state.json"
_PROFILE_DIRNAME = "chrome-data"
_LOG_FILENAME = "bb.log"


def get_state_dir() -> Path:
    """Return ``~/.bb/``, creating it if it does not exist."""
    state_dir = Path.home() / _BASE_DIR_NAME
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


def get_state_path() -> Path:
    """Return the descriptor file path."""
    return get_state_dir() / _STATE_FILENAME


def get_profile_dir() -> Path:
    """Return the dedicated browser profile directory, creating it if needed."""
    profile_dir = get_state_dir() / _PROFILE_DIRNAME
    profile_dir.mkdir(parents=True, exist_ok=True)
    return profile_dir


def get_log_path() -> Path:
    """Return the log file path."""
    return get_state_dir() / _LOG_FILENAME


# ---------------------------------------------------------------------------
# Descriptor persistence
# ---------------------------------------------------------------------------


class SessionDescriptor(BaseModel):
    debug_url: str
    chrome_pid: int
    active_page: int = 0
    data_dir: str


def load_descriptor() -> SessionDescriptor | None:
    """Read the descriptor, returning ``None`` when it is missing or unparsable.

    A corrupt file is indistinguishable from no session at all.
    """
    try:
        text = get_state_path().read_text(encoding="utf-8")
        return SessionDescriptor.model_validate_json(text)
    except (OSError, ValidationError):
        return None


def save_descriptor(descriptor: SessionDescriptor) -> None:
    """Persist *descriptor* atomically (write to a temp file, then rename)."""
    path = get_state_path()
    tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    tmp_path.write_text(descriptor.model_dump_json(indent=2), encoding="utf-8")
    os.replace(tmp_path, path)


def remove_descriptor() -> None:
    """Delete the descriptor file if present."""
    try:
        get_state_path().unlink()
    except FileNotFoundError:
        pass


# ---------------------------------------------------------------------------
# SessionManager
# ---------------------------------------------------------------------------


class SessionStatus(str, Enum):
    ABSENT = "absent"
    STALE = "stale"
    LIVE = "live"


@dataclass
class SessionReport:
    status: SessionStatus
    descriptor: SessionDescriptor | None = None
    browser: Any = None


class SessionManager:
    """Guarantees a live browser handle for the current invocation.

    States are Absent (no descriptor), Stale (descriptor present, endpoint
    unreachable) and Live.  ``ensure`` moves Absent/Stale to Live and ``stop``
    moves Live to Absent; there are no other transitions.
    """

    def __init__(
        self,
        playwright: Playwright,
        config: BBConfig,
        launcher: Callable[..., LaunchedBrowser] = launch_chrome,
    ) -> None:
        self.playwright = playwright
        self.config = config
        self.launcher = launcher

    async def attach(self, endpoint: str) -> Browser | None:
        """Connect to *endpoint* over CDP, returning ``None`` if it is unreachable."""
        try:
            return await self.playwright.chromium.connect_over_cdp(
                endpoint, timeout=self.config.timeout_ms
            )
        except PlaywrightError as exc:
            logger.info(f"Could not attach to {endpoint}: {exc}")
            return None

    async def ensure(self) -> tuple[SessionDescriptor, Browser]:
        """Return the live session, launching a new browser when there is none."""
        descriptor = load_descriptor()
        if descriptor is not None:
            browser = await self.attach(descriptor.debug_url)
            if browser is not None:
                return descriptor, browser
            logger.warning(
                f"Session for pid {descriptor.chrome_pid} is stale, relaunching"
            )
            remove_descriptor()

        profile_dir = get_profile_dir()
        launched = await asyncio.to_thread(
            self.launcher,
            self.config,
            profile_dir,
            self.playwright.chromium.executable_path,
        )
        logger.info(f"Launched browser pid={launched.pid} at {launched.endpoint}")

        descriptor = SessionDescriptor(
            debug_url=launched.endpoint,
            chrome_pid=launched.pid,
            active_page=0,
            data_dir=str(profile_dir),
        )
        save_descriptor(descriptor)

        browser = await self.attach(descriptor.debug_url)
        if browser is None:
            raise LaunchError(
                f"failed to connect to new browser at {descriptor.debug_url}"
            )
        return descriptor, browser

    async def stop(self) -> bool:
        """Shut the browser down and delete the descriptor.

        Asks for a graceful ``Browser.close`` when the endpoint answers and
        falls back to ``SIGTERM`` on the recorded pid otherwise.  Returns
        ``False`` when there was no descriptor to begin with.  Safe to call
        repeatedly.
        """
        descriptor = load_descriptor()
        if descriptor is None:
            remove_descriptor()
            return False

        browser = await self.attach(descriptor.debug_url)
        if browser is not None:
            try:
                cdp = await browser.new_browser_cdp_session()
                await cdp.send("Browser.close")
            except PlaywrightError as exc:
                # The connection usually drops while the browser exits
                logger.debug(f"Browser.close ended with: {exc}")
        elif descriptor.chrome_pid > 0:
            terminate(descriptor.chrome_pid, signal.SIGTERM)

        remove_descriptor()
        logger.info(f"Stopped browser pid={descriptor.chrome_pid}")
        return True

    async def status(self) -> SessionReport:
        """Report the session state without changing anything on disk."""
        descriptor = load_descriptor()
        if descriptor is None:
            return SessionReport(SessionStatus.ABSENT)
        browser = await self.attach(descriptor.debug_url)
        if browser is None:
            return SessionReport(SessionStatus.STALE, descriptor)
        return SessionReport(SessionStatus.LIVE, descriptor, browser)
