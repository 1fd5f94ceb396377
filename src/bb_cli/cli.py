"""Argparse-based CLI for bb.

Parses all commands and dispatches them to ``BrowserCommands``; ``help``,
``logs`` and ``--version`` are handled here without touching the browser.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys

from pydantic import ValidationError

from bb_cli.commands import run_command
from bb_cli.config import BBConfig, load_config
from bb_cli.session import get_log_path

_GLOBAL_KEYS = ("config", "command", "version", "json_output", "timeout")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Parser(argparse.ArgumentParser):
    """ArgumentParser that reports usage errors with exit status 1."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"error: {message}\n")


def _args_to_dict(
    args: argparse.Namespace,
    exclude: tuple[str, ...] = _GLOBAL_KEYS,
) -> dict:
    """Convert argparse Namespace to dict, excluding global/meta keys."""
    return {k: v for k, v in vars(args).items() if k not in exclude and v is not None}


def _global_options(suppress: bool) -> argparse.ArgumentParser:
    """Options accepted both before and after the command name.

    The copy attached to subparsers uses ``SUPPRESS`` defaults so it does not
    clobber values already parsed by the main parser.
    """
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument(
        "--json",
        dest="json_output",
        action="store_true",
        default=argparse.SUPPRESS if suppress else False,
        help="Print machine-readable JSON where supported",
    )
    parent.add_argument(
        "--timeout",
        type=float,
        default=argparse.SUPPRESS if suppress else None,
        help="Per-operation timeout in seconds (default: 30, env BB_TIMEOUT)",
    )
    return parent


def _setup_logging(config: BBConfig) -> None:
    """Append this invocation's log records to ``~/.bb/bb.log``."""
    handler = logging.FileHandler(get_log_path(), mode="a", encoding="utf-8")
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger = logging.getLogger("bb_cli")
    logger.setLevel(config.log_level)
    logger.addHandler(handler)


def _emit(text: str, stream) -> None:
    if text:
        print(text, file=stream)


def _tail(path, lines: int) -> str:
    content = path.read_text(encoding="utf-8")
    if lines <= 0:
        return content.rstrip("\n")
    return "\n".join(content.splitlines()[-lines:])


# ---------------------------------------------------------------------------
# Subparser registration
# ---------------------------------------------------------------------------


def _register_subcommands(subparsers: argparse._SubParsersAction) -> None:
    """Register every subcommand on *subparsers*."""

    common = [_global_options(suppress=True)]

    def add(name: str, **kwargs) -> argparse.ArgumentParser:
        return subparsers.add_parser(name, parents=common, **kwargs)

    # ── Navigation ─────────────────────────────────────────────────────

    p = add("open", help="Navigate to a URL and print its readable content")
    p.add_argument("url", help="URL to open (https:// is assumed)")
    p.add_argument(
        "--raw", action="store_true", default=False, help="Print only the title"
    )
    p.add_argument(
        "--wait",
        action="store_true",
        default=False,
        help="Wait for the DOM to settle before extracting",
    )

    add("back", help="Go back in history")
    add("forward", help="Go forward in history")
    add("reload", help="Reload the page")

    # ── Getters ────────────────────────────────────────────────────────

    add("url", help="Print the current URL")
    add("title", help="Print the page title")

    p = add("text", help="Print text of an element (or the whole body)")
    p.add_argument("selector", nargs="?", default=None, help="CSS selector")

    p = add("html", help="Print HTML of an element (or the whole document)")
    p.add_argument("selector", nargs="?", default=None, help="CSS selector")

    p = add("attr", help="Print an element attribute")
    p.add_argument("selector", help="CSS selector")
    p.add_argument("name", help="Attribute name")

    add("extract", help="Print readable content of the current page")

    p = add("js", help="Evaluate a JavaScript expression")
    p.add_argument("expression", nargs="+", help="Expression to evaluate")

    # ── Save as ────────────────────────────────────────────────────────

    p = add("pdf", help="Save the page as PDF")
    p.add_argument("file", nargs="?", default=None, help="Output file (page.pdf)")

    # -h is height here, so this subcommand has no help flag
    p = add("screenshot", help="Take a screenshot", add_help=False)
    p.add_argument("file", nargs="?", default=None, help="Output file")
    p.add_argument("-w", "--width", type=int, default=None, help="Viewport width")
    p.add_argument(
        "-h", "--height", type=int, default=None, help="Viewport height (not full page)"
    )

    p = add("screenshot-el", help="Screenshot a single element")
    p.add_argument("selector", help="CSS selector")
    p.add_argument("file", nargs="?", default=None, help="Output file (element.png)")

    # ── Interaction ────────────────────────────────────────────────────

    for name, help_text in (
        ("click", "Click an element"),
        ("clear", "Clear an input"),
        ("submit", "Submit a form"),
        ("hover", "Hover an element"),
        ("focus", "Focus an element"),
    ):
        p = add(name, help=help_text)
        p.add_argument("selector", help="CSS selector")

    p = add("input", help="Type text into an input")
    p.add_argument("selector", help="CSS selector")
    p.add_argument("text", nargs="+", help="Text to enter")

    p = add("select", help="Select an option by value")
    p.add_argument("selector", help="CSS selector")
    p.add_argument("value", help="Option value")

    # ── Waiting ────────────────────────────────────────────────────────

    p = add("wait", help="Wait for an element to become visible")
    p.add_argument("selector", help="CSS selector")

    add("waitload", help="Wait for the load event")
    add("waitstable", help="Wait for the DOM to stop changing")
    add("waitidle", help="Wait for network idle")

    p = add("sleep", help="Sleep for a number of seconds")
    p.add_argument("seconds", type=float, help="Seconds to sleep")

    # ── Tabs ───────────────────────────────────────────────────────────

    add("pages", help="List open tabs")

    p = add("page", help="Switch to a tab")
    p.add_argument("index", type=int, help="Tab index")

    p = add("newpage", help="Open a new tab")
    p.add_argument("url", nargs="?", default=None, help="URL to open")

    p = add("closepage", help="Close a tab (default: the active tab)")
    p.add_argument("index", nargs="?", type=int, default=None, help="Tab index")

    # ── Queries ────────────────────────────────────────────────────────

    for name, help_text in (
        ("exists", "Exit 0 if an element exists"),
        ("count", "Count matching elements"),
        ("visible", "Exit 0 if an element is visible"),
    ):
        p = add(name, help=help_text)
        p.add_argument("selector", help="CSS selector")

    # ── Accessibility ──────────────────────────────────────────────────

    p = add("ax-tree", help="Print the accessibility tree")
    p.add_argument("--depth", type=int, default=None, help="Maximum tree depth")

    p = add("ax-find", help="Find accessibility nodes")
    p.add_argument("--name", default=None, help="Accessible name")
    p.add_argument("--role", default=None, help="Role")

    p = add("ax-node", help="Describe the accessibility node of an element")
    p.add_argument("selector", help="CSS selector")

    # ── Session ────────────────────────────────────────────────────────

    add("status", help="Show browser status")
    add("stop", help="Stop the browser")

    p = add("logs", help="Show the bb log")
    p.add_argument(
        "-n",
        "--lines",
        type=int,
        default=50,
        help="Number of lines to show (default: 50, 0 for all)",
    )

    add("help", help="Show this help")


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="bb",
        description="Control a persistent headless browser from the command line",
        parents=[_global_options(suppress=False)],
    )
    parser.add_argument("--config", default=None, help="Path to config file")
    parser.add_argument("-v", "--version", action="store_true", help="Print version")

    subparsers = parser.add_subparsers(dest="command")
    _register_subcommands(subparsers)
    return parser


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate handler."""

    # Writing into a closed pipe must fail the write, not kill the process
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)

    parser = build_parser()
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    if args.version:
        from bb_cli.config import get_version

        print(get_version())
        return

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "help":
        parser.print_help()
        return

    # 1. Load config
    try:
        config = load_config(args.config, timeout=args.timeout)
    except (ValidationError, ValueError) as exc:
        print(f"error: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(1)

    _setup_logging(config)

    # 2. Handle client-side commands directly
    if args.command == "logs":
        log_path = get_log_path()
        if not log_path.exists():
            print(f"No log file found at {log_path}", file=sys.stderr)
            sys.exit(1)
        print(_tail(log_path, args.lines))
        return

    # 3. All other commands go to the browser
    args_dict = _args_to_dict(args)
    result = asyncio.run(
        run_command(args.command, args_dict, config, json_output=args.json_output)
    )

    # 4. Print result
    try:
        _emit(result.get("output", ""), sys.stdout)
        if result.get("notice"):
            _emit(result["notice"], sys.stderr)
        if not result["ok"] and result.get("error"):
            _emit(f"error: {result['error']}", sys.stderr)
        sys.stdout.flush()
    except BrokenPipeError:
        # Downstream consumer went away; keep the interpreter from
        # complaining again when it flushes stdout at exit.
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(1)

    if not result["ok"]:
        sys.exit(1)
