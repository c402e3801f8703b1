"""
MCP stdio server for brain: search, bootstrap, session state and gate
checks as tools for AI agents.

Usage:
    brain mcp                                   # stdio server (via CLI)
    claude --mcp-server brain="brain mcp"       # Claude Code integration

All runtime calls are serialized through a single asyncio.Lock. Tools
return JSON text; failures come back as ``{"error": {...}}``.
"""

import asyncio
import json
from typing import Annotated, Optional

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from .errors import BrainError
from .runtime import Runtime
from .search import SearchFilters, SearchOptions

# ---------------------------------------------------------------------------
# Server setup
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "brain",
    instructions=(
        "Project knowledge memory. Search notes by meaning or keywords, "
        "load session-start context, and read or update session state."
    ),
)

_runtime: Optional[Runtime] = None
_lock = asyncio.Lock()


def _get_runtime() -> Runtime:
    """Lazy-init the Runtime. Must be called inside ``async with _lock``."""
    global _runtime
    if _runtime is None:
        _runtime = Runtime()
    return _runtime


def _json(payload) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, default=str)


# ---------------------------------------------------------------------------
# Tool annotations
# ---------------------------------------------------------------------------

_READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False)
_IDEMPOTENT = ToolAnnotations(idempotentHint=True, destructiveHint=False)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool(
    description=(
        "Search project notes. mode=auto uses semantic search when the project "
        "has embeddings, keyword search otherwise. depth>0 follows [[wikilinks]] "
        "from the hits."
    ),
    annotations=_READ_ONLY,
)
async def brain_search(
    query: Annotated[str, Field(description="Search text.")],
    project: Annotated[Optional[str], Field(description="Project name (default: configured project).")] = None,
    limit: Annotated[int, Field(description="Maximum results (default 10).")] = 10,
    mode: Annotated[str, Field(description="auto, semantic, keyword or hybrid.")] = "auto",
    depth: Annotated[int, Field(description="Relation expansion depth (0-3).")] = 0,
    full_content: Annotated[bool, Field(description="Include note content (truncated to 5000 chars).")] = False,
    types: Annotated[Optional[list[str]], Field(description="Restrict to note types, e.g. [\"decision\"].")] = None,
    after_date: Annotated[Optional[str], Field(description="Only notes updated after YYYY-MM-DD.")] = None,
) -> str:
    """Search notes."""
    async with _lock:
        runtime = _get_runtime()
        options = SearchOptions(
            project=project, limit=limit, mode=mode, depth=depth, full_content=full_content,
            filters=SearchFilters(types=types, after_date=after_date),
            detect_type=True, parse_status=True,
        )
        try:
            results = runtime.search.search(query, options)
        except BrainError as e:
            return _json({"error": e.to_dict()})
    return _json({"query": query, "results": [r.to_dict() for r in results]})


@mcp.tool(
    description=(
        "Load session-start context for a project: active features, recent "
        "decisions, open bugs, recent activity and linked notes."
    ),
    annotations=_READ_ONLY,
)
async def brain_bootstrap(
    project: Annotated[Optional[str], Field(description="Project name (default: from cwd).")] = None,
    timeframe: Annotated[str, Field(description="Recent window, e.g. 5d.")] = "5d",
    depth: Annotated[int, Field(description="Relation expansion depth.")] = 3,
    full_content: Annotated[bool, Field(description="Include full note content.")] = False,
) -> str:
    """Bootstrap context."""
    async with _lock:
        runtime = _get_runtime()
        try:
            payload = runtime.hooks.bootstrap(
                project, timeframe=timeframe, depth=depth, full_content=full_content,
            )
        except BrainError as e:
            return _json({"error": e.to_dict()})
    return payload["markdown"]


@mcp.tool(
    description="Read the current session state (mode, active task, workflow).",
    annotations=_READ_ONLY,
)
async def brain_session_get() -> str:
    """Current session state."""
    async with _lock:
        runtime = _get_runtime()
        try:
            payload = runtime.hooks.get_session_state()
        except BrainError as e:
            return _json({"error": e.to_dict()})
    return _json(payload)


@mcp.tool(
    description=(
        "Update the current session state, e.g. {\"mode\": \"coding\"} or "
        "{\"activeTask\": \"T-1\"}. Creates a session if none is current."
    ),
    annotations=_IDEMPOTENT,
)
async def brain_session_set(
    updates: Annotated[dict, Field(description="Fields to change (camelCase keys).")],
) -> str:
    """Update session state."""
    async with _lock:
        runtime = _get_runtime()
        try:
            payload = runtime.hooks.set_session_state(updates)
        except BrainError as e:
            return _json({"error": e.to_dict()})
        except ValueError as e:
            return _json({"error": {"kind": "invalid_argument", "message": str(e)}})
    return _json(payload)


@mcp.tool(
    description=(
        "Check whether a tool may run in the current session mode. Fails "
        "closed: destructive tools are blocked when state is unreadable."
    ),
    annotations=_READ_ONLY,
)
async def brain_gate_check(
    tool: Annotated[str, Field(description="Tool name, e.g. Write.")],
) -> str:
    """Gate check."""
    async with _lock:
        runtime = _get_runtime()
        decision = runtime.hooks.gate_check(tool)
    return _json(decision)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    """Run the MCP stdio server."""
    import os
    import signal
    # anyio's stdin reader shields the blocking readline from cancellation,
    # so the first Ctrl+C would not take effect; exit directly instead.
    signal.signal(signal.SIGINT, lambda *_: os._exit(130))
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
