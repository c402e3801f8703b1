"""
Upstream note store (UNS) interface and the basic-memory adapter.

Brain never owns note files. It reads and writes them through the note
store's tools: write_note, read_note, edit_note, delete_note,
list_directory, search_notes. NoteStoreProtocol pins that contract;
BasicMemoryClient implements it by driving ``basic-memory mcp`` over an
MCP stdio session.

The MCP client is async; brain's core is synchronous. The adapter runs
one event loop on a daemon thread, keeps a single session open on it,
and submits tool calls with run_coroutine_threadsafe.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import os
import re
import shlex
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError

from .errors import BrainError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = "basic-memory mcp"
DEFAULT_TIMEOUT = 30.0

EDIT_OPERATIONS = ("append", "prepend", "find_replace", "replace_section")

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(title: str) -> str:
    """'My Note: Draft' -> 'my-note-draft'"""
    return _SLUG_STRIP.sub("-", title.lower()).strip("-")


def title_from_slug(permalink: str) -> str:
    """'notes/my-note' -> 'My Note'"""
    slug = permalink.rstrip("/").rsplit("/", 1)[-1]
    if slug.endswith(".md"):
        slug = slug[:-3]
    return " ".join(w.capitalize() for w in re.split(r"[-_]+", slug) if w)


def folder_of(permalink: str) -> str:
    return permalink.rsplit("/", 1)[0] if "/" in permalink else ""


@dataclass
class NoteRef:
    """A directory listing entry."""
    permalink: str
    title: str
    folder: str = ""
    updated_at: Optional[str] = None


@dataclass
class NoteHit:
    """A keyword search hit from the note store."""
    permalink: str
    title: str
    score: Optional[float] = None
    note_type: Optional[str] = None
    content: Optional[str] = None
    updated_at: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class NoteStoreProtocol(Protocol):
    """The note store operations brain relies on."""

    def write_note(
        self, folder: str, title: str, content: str, *, project: Optional[str] = None,
    ) -> str:
        """Create or overwrite a note; returns its permalink."""
        ...

    def read_note(self, identifier: str, *, project: Optional[str] = None) -> Optional[str]:
        """Full markdown of a note, or None if it does not exist."""
        ...

    def edit_note(
        self,
        identifier: str,
        operation: str,
        content: str,
        *,
        project: Optional[str] = None,
        section: Optional[str] = None,
        find_text: Optional[str] = None,
    ) -> None: ...

    def delete_note(self, identifier: str, *, project: Optional[str] = None) -> bool: ...

    def list_directory(
        self, folder: str = "/", *, project: Optional[str] = None, depth: int = 1,
    ) -> list[NoteRef]: ...

    def search_notes(
        self,
        query: str,
        *,
        project: Optional[str] = None,
        types: Optional[list[str]] = None,
        after_date: Optional[str] = None,
        page_size: int = 10,
    ) -> list[NoteHit]: ...


def list_all_notes(store: NoteStoreProtocol, project: Optional[str] = None) -> list[NoteRef]:
    """Every note in a project (recursive listing from the root)."""
    return store.list_directory("/", project=project, depth=10)


# ---------------------------------------------------------------------------
# basic-memory over MCP stdio
# ---------------------------------------------------------------------------

_PERMALINK_LINE = re.compile(r"permalink:\s*(\S+)", re.IGNORECASE)
_LISTING_FILE = re.compile(r"^\s*📄\s+(?P<path>\S+?)(?:\.md)?\s+(?P<rest>.*)$")


class BasicMemoryClient:
    """NoteStoreProtocol implementation backed by ``basic-memory mcp``.

    Connection is lazy; the subprocess starts on the first call. Any
    transport failure surfaces as UpstreamUnavailableError.
    """

    def __init__(
        self,
        command: Optional[list[str]] = None,
        *,
        default_project: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._command = command or shlex.split(
            os.environ.get("BRAIN_UNS_COMMAND", DEFAULT_COMMAND)
        )
        self._default_project = default_project
        self._timeout = timeout
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._session: Optional[ClientSession] = None
        self._closing: Optional[asyncio.Event] = None
        self._serve_future: Optional[concurrent.futures.Future] = None
        self._start_lock = threading.Lock()

    # -- Session lifecycle --

    async def _serve(self, ready: concurrent.futures.Future) -> None:
        """Own the stdio transport for its whole lifetime (one task)."""
        params = StdioServerParameters(command=self._command[0], args=self._command[1:])
        try:
            async with stdio_client(params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    self._closing = asyncio.Event()
                    self._session = session
                    ready.set_result(None)
                    await self._closing.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            else:
                logger.warning("Note store session ended: %s", e)
        finally:
            self._session = None

    def _ensure_started(self) -> None:
        with self._start_lock:
            if self._session is not None:
                return
            if self._loop is None:
                self._loop = asyncio.new_event_loop()
                self._thread = threading.Thread(
                    target=self._loop.run_forever, name="brain-notes", daemon=True,
                )
                self._thread.start()
            ready: concurrent.futures.Future = concurrent.futures.Future()
            self._serve_future = asyncio.run_coroutine_threadsafe(self._serve(ready), self._loop)
            try:
                ready.result(timeout=self._timeout)
            except Exception as e:
                raise UpstreamUnavailableError(
                    f"Cannot start note store ({' '.join(self._command)}): {e}",
                    remediation="Install basic-memory or set BRAIN_UNS_COMMAND",
                ) from e

    def close(self) -> None:
        with self._start_lock:
            if self._loop is None:
                return
            if self._closing is not None:
                self._loop.call_soon_threadsafe(self._closing.set)
            if self._serve_future is not None:
                try:
                    self._serve_future.result(timeout=5)
                except Exception as e:
                    logger.debug("Note store shutdown: %s", e)
            self._loop.call_soon_threadsafe(self._loop.stop)
            if self._thread is not None:
                self._thread.join(timeout=5)
            self._loop.close()
            self._loop = None
            self._thread = None

    # -- Tool calls --

    def _call(self, tool: str, arguments: dict[str, Any]) -> tuple[str, Any]:
        """Call a tool and return (text, structured_content)."""
        self._ensure_started()
        arguments = {k: v for k, v in arguments.items() if v is not None}
        future = asyncio.run_coroutine_threadsafe(
            self._session.call_tool(tool, arguments), self._loop
        )
        try:
            result = future.result(timeout=self._timeout)
        except concurrent.futures.TimeoutError as e:
            future.cancel()
            raise UpstreamUnavailableError(f"Note store call {tool} timed out") from e
        except (McpError, OSError) as e:
            raise UpstreamUnavailableError(f"Note store call {tool} failed: {e}") from e

        text = "".join(
            getattr(c, "text", "") for c in result.content if getattr(c, "type", None) == "text"
        )
        if result.isError:
            raise BrainError(f"{tool}: {text}", kind="upstream_error")
        return text, getattr(result, "structuredContent", None)

    def _project(self, project: Optional[str]) -> Optional[str]:
        return project or self._default_project

    def write_note(self, folder, title, content, *, project=None) -> str:
        text, _ = self._call("write_note", {
            "title": title, "content": content, "folder": folder,
            "project": self._project(project),
        })
        match = _PERMALINK_LINE.search(text)
        return match.group(1) if match else f"{folder.strip('/')}/{slugify(title)}"

    def read_note(self, identifier, *, project=None) -> Optional[str]:
        try:
            text, _ = self._call("read_note", {
                "identifier": identifier, "project": self._project(project),
            })
        except BrainError as e:
            if e.kind == "upstream_error" and "not found" in e.message.lower():
                return None
            raise
        if text.lstrip().startswith("# Note Not Found"):
            return None
        return text

    def edit_note(self, identifier, operation, content, *, project=None,
                  section=None, find_text=None) -> None:
        if operation not in EDIT_OPERATIONS:
            raise ValueError(f"Unknown edit operation: {operation}")
        self._call("edit_note", {
            "identifier": identifier, "operation": operation, "content": content,
            "section": section, "find_text": find_text,
            "project": self._project(project),
        })

    def delete_note(self, identifier, *, project=None) -> bool:
        text, structured = self._call("delete_note", {
            "identifier": identifier, "project": self._project(project),
        })
        if isinstance(structured, dict) and "result" in structured:
            return bool(structured["result"])
        return "true" in text.lower() or "deleted" in text.lower()

    def list_directory(self, folder="/", *, project=None, depth=1) -> list[NoteRef]:
        text, _ = self._call("list_directory", {
            "dir_name": folder, "depth": depth, "project": self._project(project),
        })
        refs = []
        for line in text.splitlines():
            match = _LISTING_FILE.match(line)
            if not match:
                continue
            path = match.group("path").lstrip("/")
            rest = match.group("rest")
            title = rest.split("|", 1)[0].strip() or title_from_slug(path)
            updated = rest.split("|", 1)[1].strip() if "|" in rest else None
            refs.append(NoteRef(permalink=path, title=title, folder=folder_of(path),
                                updated_at=updated))
        return refs

    def search_notes(self, query, *, project=None, types=None, after_date=None,
                     page_size=10) -> list[NoteHit]:
        text, structured = self._call("search_notes", {
            "query": query, "project": self._project(project),
            "types": types, "after_date": after_date, "page_size": page_size,
        })
        data = structured
        if not isinstance(data, dict):
            try:
                data = json.loads(text)
            except ValueError:
                logger.warning("Unparseable search_notes response: %.200s", text)
                return []
        hits = []
        for r in data.get("results", []):
            permalink = r.get("permalink") or r.get("file_path") or ""
            if not permalink:
                continue
            hits.append(NoteHit(
                permalink=permalink,
                title=r.get("title") or title_from_slug(permalink),
                score=r.get("score"),
                note_type=r.get("type") or (r.get("metadata") or {}).get("entity_type"),
                content=r.get("content"),
                updated_at=r.get("created_at") or r.get("updated_at"),
                metadata=r.get("metadata") or {},
            ))
        return hits
