"""Detached Chromium process management for bb.

The browser has to outlive the invocation that started it, so it is spawned
directly (not through patchright's ``launch``, which ties the browser to the
driver's lifetime) in its own session, and later invocations attach to it
over CDP.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from bb_cli.errors import LaunchError

if TYPE_CHECKING:
    from bb_cli.config import BBConfig

logger = logging.getLogger("bb_cli.launcher")

# Written by Chromium into the profile once the DevTools server is listening:
# first line is the port, second the browser target path.
_DEVTOOLS_PORT_FILE = "DevToolsActivePort"

_SYSTEM_BINARIES = (
    "chromium",
    "chromium-browser",
    "google-chrome",
    "google-chrome-stable",
)


@dataclass
class LaunchedBrowser:
    endpoint: str
    pid: int


def find_chrome_binary(config: BBConfig, default_executable: str | None = None) -> str:
    """Pick the browser binary to launch.

    Priority: ``BB_CHROME_BIN`` / ``chrome_bin`` config, a system Chromium or
    Chrome on ``PATH``, then patchright's bundled Chromium.
    """
    if config.chrome_bin:
        return config.chrome_bin
    for name in _SYSTEM_BINARIES:
        found = shutil.which(name)
        if found:
            return found
    if default_executable and Path(default_executable).is_file():
        return default_executable
    raise LaunchError(
        "no Chromium binary found; set BB_CHROME_BIN or run "
        "'patchright install chromium'"
    )


def build_chrome_args(config: BBConfig, binary: str, profile_dir: Path) -> list[str]:
    """Return the full argv for a headless, prompt-free browser on *profile_dir*."""
    args = [
        binary,
        "--no-sandbox",
        "--disable-gpu",
        "--disable-dev-shm-usage",
        "--password-store=basic",
        "--no-first-run",
        "--no-default-browser-check",
        "--remote-debugging-port=0",
        f"--user-data-dir={profile_dir}",
    ]
    if config.launch.headless:
        args.append("--headless=new")
    args.extend(config.launch.extra_args)
    args.append("about:blank")
    return args


def read_devtools_endpoint(profile_dir: Path) -> str | None:
    """Return the browser websocket endpoint advertised in *profile_dir*, if any."""
    try:
        lines = (profile_dir / _DEVTOOLS_PORT_FILE).read_text(encoding="utf-8").split()
    except FileNotFoundError:
        return None
    if len(lines) < 2 or not lines[0].isdigit():
        # Partially written
        return None
    return f"ws://127.0.0.1:{lines[0]}{lines[1]}"


def launch_chrome(
    config: BBConfig,
    profile_dir: Path,
    default_executable: str | None = None,
) -> LaunchedBrowser:
    """Start a detached browser and wait for its DevTools endpoint.

    The process is started in a new session so it survives the exit of the
    invoking process.  Waits up to ``config.launch.startup_timeout`` seconds
    for ``DevToolsActivePort`` to appear in the profile directory.

    Raises ``LaunchError`` if the binary is missing, the process exits early
    or the endpoint never appears.
    """
    binary = find_chrome_binary(config, default_executable)
    port_file = profile_dir / _DEVTOOLS_PORT_FILE
    try:
        port_file.unlink()
    except FileNotFoundError:
        pass

    argv = build_chrome_args(config, binary, profile_dir)
    logger.debug(f"Launching browser: {argv}")
    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as exc:
        raise LaunchError(f"failed to start {binary}: {exc}") from exc

    # Poll until the endpoint appears or the process dies.
    start_time = time.monotonic()
    while time.monotonic() - start_time < config.launch.startup_timeout:
        endpoint = read_devtools_endpoint(profile_dir)
        if endpoint is not None:
            return LaunchedBrowser(endpoint=endpoint, pid=proc.pid)
        if proc.poll() is not None:
            raise LaunchError(
                f"browser exited during startup with code {proc.returncode}"
            )
        time.sleep(0.1)

    terminate(proc.pid, signal.SIGTERM)
    raise LaunchError(
        f"browser did not expose a DevTools endpoint within "
        f"{config.launch.startup_timeout:g}s"
    )


def terminate(pid: int, sig: int = signal.SIGTERM) -> bool:
    """Send *sig* to *pid*.  Returns ``False`` if the process is already gone."""
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return False
    except PermissionError:
        logger.warning(f"Permission denied signalling pid {pid}")
        return False
    return True
