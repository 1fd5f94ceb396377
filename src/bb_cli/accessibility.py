"""Accessibility tree module for bb.

CDP hands back the accessibility tree as a flat list of nodes linked by
``parentId``/``childIds``.  This module rebuilds the hierarchy from an
id index and renders it as indented lines, one per visible node:

    [WebArea] "Test Page" (focusable, focused)
      [heading] "Hello World" (level=1)
      [paragraph]
        [StaticText] "This is a test page."

Ignored nodes keep their place in the topology but print nothing; their
children are printed at the depth the ignored node would have occupied.

It also answers point queries (``Accessibility.queryAXTree`` and the
partial tree of a single DOM element).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from patchright.async_api import TimeoutError as PlaywrightTimeoutError

from bb_cli.cdp import call, page_session
from bb_cli.errors import NotFoundError

if TYPE_CHECKING:
    from patchright.async_api import Page

# Properties shown by name only, and only when true.
_FLAG_PROPERTIES = frozenset(
    {
        "focusable",
        "disabled",
        "editable",
        "hidden",
        "required",
        "checked",
        "expanded",
        "selected",
        "modal",
        "multiline",
        "multiselectable",
        "readonly",
        "focused",
        "settable",
    }
)

# Properties shown as name=value when non-empty.
_VALUE_PROPERTIES = frozenset(
    {
        "autocomplete",
        "hasPopup",
        "orientation",
        "live",
        "relevant",
        "valuemin",
        "valuemax",
        "valuetext",
        "roledescription",
        "keyshortcuts",
    }
)


def ax_value_str(value: dict[str, Any] | None) -> str:
    """Flatten a CDP ``AXValue`` to display text.

    Strings are returned bare; anything else is rendered as compact JSON
    (``true``, ``2``, ``["a"]``).
    """
    if not value or "value" not in value:
        return ""
    raw = value["value"]
    if isinstance(raw, str):
        return raw
    return json.dumps(raw, separators=(",", ":"))


@dataclass
class AXProperty:
    name: str
    value: str


@dataclass
class AXNode:
    node_id: str
    parent_id: str = ""
    child_ids: list[str] = field(default_factory=list)
    role: str = ""
    name: str = ""
    description: str = ""
    value: str = ""
    ignored: bool = False
    properties: list[AXProperty] = field(default_factory=list)
    backend_dom_node_id: int = 0
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_cdp(cls, raw: dict[str, Any]) -> AXNode:
        """Build a node from one entry of a CDP ``nodes`` array."""
        return cls(
            node_id=str(raw.get("nodeId", "")),
            parent_id=str(raw.get("parentId") or ""),
            child_ids=[str(c) for c in raw.get("childIds", [])],
            role=ax_value_str(raw.get("role")),
            name=ax_value_str(raw.get("name")),
            description=ax_value_str(raw.get("description")),
            value=ax_value_str(raw.get("value")),
            ignored=bool(raw.get("ignored", False)),
            properties=[
                AXProperty(name=p.get("name", ""), value=ax_value_str(p.get("value")))
                for p in raw.get("properties", [])
            ],
            backend_dom_node_id=int(raw.get("backendDOMNodeId") or 0),
            raw=raw,
        )


def parse_nodes(raw_nodes: list[dict[str, Any]]) -> list[AXNode]:
    return [AXNode.from_cdp(n) for n in raw_nodes]


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def format_properties(properties: list[AXProperty]) -> str:
    """Render the interesting subset of *properties*, in their given order."""
    parts: list[str] = []
    for prop in properties:
        if prop.name in _FLAG_PROPERTIES:
            if prop.value == "true":
                parts.append(prop.name)
        elif prop.name == "level":
            parts.append(f"level={prop.value}")
        elif prop.name in _VALUE_PROPERTIES:
            if prop.value:
                parts.append(f"{prop.name}={prop.value}")
    return ", ".join(parts)


def format_node_line(node: AXNode) -> str:
    """``[role] "name" (props)`` with the name and props parts optional."""
    line = f"[{node.role}]"
    if node.name:
        line += " " + json.dumps(node.name, ensure_ascii=False)
    props = format_properties(node.properties)
    if props:
        line += f" ({props})"
    return line


def render_tree(nodes: list[AXNode]) -> list[str]:
    """Rebuild the hierarchy of *nodes* and render one line per visible node.

    The root is the first node without a parent, or the first node when every
    node claims one.  Children are walked in ``child_ids`` order; ids that do
    not resolve are skipped and each node is rendered at most once.
    """
    if not nodes:
        return []

    by_id = {node.node_id: node for node in nodes}
    root = next((node for node in nodes if not node.parent_id), nodes[0])

    lines: list[str] = []
    seen: set[str] = set()
    stack: list[tuple[str, int]] = [(root.node_id, 0)]
    while stack:
        node_id, depth = stack.pop()
        node = by_id.get(node_id)
        if node is None or node_id in seen:
            continue
        seen.add(node_id)

        child_depth = depth
        if not node.ignored:
            lines.append("  " * depth + format_node_line(node))
            child_depth = depth + 1
        # Ignored nodes are transparent: their children take their depth
        stack.extend((child_id, child_depth) for child_id in reversed(node.child_ids))
    return lines


def format_ax_tree(nodes: list[AXNode]) -> str:
    return "".join(line + "\n" for line in render_tree(nodes))


def format_node_list(nodes: list[AXNode]) -> str:
    """One line per node, flat, with the backing DOM node id when known."""
    out: list[str] = []
    for node in nodes:
        line = f"[{node.role}]"
        if node.name:
            line += " " + json.dumps(node.name, ensure_ascii=False)
        if node.backend_dom_node_id:
            line += f" backendNodeId={node.backend_dom_node_id}"
        props = format_properties(node.properties)
        if props:
            line += f" ({props})"
        out.append(line + "\n")
    return "".join(out)


def format_node_detail(node: AXNode) -> str:
    """Every field of *node*, one ``key: value`` per line."""
    out = [f"role: {node.role}\n"]
    if node.name:
        out.append(f"name: {node.name}\n")
    if node.description:
        out.append(f"description: {node.description}\n")
    if node.value:
        out.append(f"value: {node.value}\n")
    for prop in node.properties:
        out.append(f"{prop.name}: {prop.value}\n")
    return "".join(out)


def describe_one(candidates: list[AXNode]) -> AXNode | None:
    """Pick the node that best represents an element.

    The first non-ignored candidate wins; if all are ignored the first one is
    returned anyway.
    """
    for node in candidates:
        if not node.ignored:
            return node
    if candidates:
        return candidates[0]
    return None


# ---------------------------------------------------------------------------
# CDP queries
# ---------------------------------------------------------------------------


async def fetch_full_tree(
    page: Page, depth: int | None = None, timeout: float | None = None
) -> list[AXNode]:
    """Fetch the whole accessibility tree of *page* as a flat list."""
    params: dict[str, Any] = {}
    if depth is not None:
        params["depth"] = depth
    async with page_session(page) as session:
        result = await call(session, "Accessibility.getFullAXTree", params, timeout)
    return parse_nodes(result.get("nodes", []))


async def find_nodes(
    page: Page,
    name: str | None = None,
    role: str | None = None,
    timeout: float | None = None,
) -> list[AXNode]:
    """Return every node matching *name* and/or *role*, flat and unfiltered.

    An empty list means nothing matched; a failed query raises.
    """
    async with page_session(page) as session:
        doc = await call(session, "DOM.getDocument", {"depth": 0}, timeout)
        params: dict[str, Any] = {"backendNodeId": doc["root"]["backendNodeId"]}
        if name:
            params["accessibleName"] = name
        if role:
            params["role"] = role
        result = await call(session, "Accessibility.queryAXTree", params, timeout)
    return parse_nodes(result.get("nodes", []))


async def describe_element(
    page: Page, selector: str, timeout: float | None = None
) -> AXNode:
    """Return the accessibility node backing the first element matching *selector*."""
    try:
        await page.wait_for_selector(selector, state="attached")
    except PlaywrightTimeoutError:
        raise NotFoundError(f"element not found: {selector}") from None

    async with page_session(page) as session:
        found = await call(
            session,
            "Runtime.evaluate",
            {"expression": f"document.querySelector({json.dumps(selector)})"},
            timeout,
        )
        object_id = found.get("result", {}).get("objectId")
        if not object_id:
            raise NotFoundError(f"element not found: {selector}")
        described = await call(
            session, "DOM.describeNode", {"objectId": object_id}, timeout
        )
        result = await call(
            session,
            "Accessibility.getPartialAXTree",
            {
                "backendNodeId": described["node"]["backendNodeId"],
                "fetchRelatives": False,
            },
            timeout,
        )

    node = describe_one(parse_nodes(result.get("nodes", [])))
    if node is None:
        raise NotFoundError(f"no accessibility node found for {selector!r}")
    return node
