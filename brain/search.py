"""
Unified search over the vector index and the note store.

Modes:
- semantic: embed the query (search_query prefix), cosine search the index
- keyword:  delegate to the note store's search_notes
- auto:     semantic, unless the project has no embeddings yet (then keyword)
- hybrid:   both; union by note id, score = max(semantic, keyword rank),
            ties prefer semantic hits

With depth > 0 the primary hits are expanded along ``[[wikilinks]]``
breadth-first, never repeating a note and never exceeding the result cap
(3 x limit by default). Full content is fetched after expansion so that
linked notes get content too.

If the embedding step fails, semantic and hybrid calls fall back to
keyword for that call only.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from .enrichment import detect_type, extract_wikilinks, parse_frontmatter, parse_status
from .errors import (
    DeadlineExceededError,
    FatalError,
    SearchError,
    UpstreamUnavailableError,
    VectorIndexError,
)
from .guard import GuardError, QueryGuard
from .model_client import QUERY_PREFIX
from .notes import NoteStoreProtocol, slugify, title_from_slug
from .vector_index import DEFAULT_THRESHOLD, VectorIndex

logger = logging.getLogger(__name__)

MODES = ("auto", "semantic", "keyword", "hybrid")

DEFAULT_LIMIT = 10
CANDIDATE_FACTOR = 3        # semantic candidates fetched per requested result
EXPANSION_CAP_FACTOR = 3    # max results after relation expansion, x limit
FULL_CONTENT_MAX = 5000     # chars of body returned per note
SEARCH_DEADLINE = 30.0      # seconds


@dataclass
class SearchFilters:
    types: Optional[list[str]] = None
    after_date: Optional[str] = None


@dataclass
class SearchOptions:
    project: Optional[str] = None
    limit: int = DEFAULT_LIMIT
    mode: str = "auto"
    threshold: float = DEFAULT_THRESHOLD
    depth: int = 0
    full_content: bool = False
    filters: SearchFilters = field(default_factory=SearchFilters)
    detect_type: bool = False
    parse_status: bool = False
    max_results: Optional[int] = None


@dataclass
class ContextNote:
    """A search result."""
    note_id: str
    title: str
    score: float
    type: Optional[str] = None
    status: Optional[str] = None
    content: Optional[str] = None
    source: str = "semantic"    # semantic | keyword | relation
    depth: int = 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "noteId": self.note_id,
            "title": self.title,
            "score": round(self.score, 6),
        }
        for key in ("type", "status", "content"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


class _Deadline:
    def __init__(self, seconds: float):
        self._expires = time.monotonic() + seconds
        self._seconds = seconds

    def check(self, phase: str) -> None:
        if time.monotonic() > self._expires:
            raise DeadlineExceededError(
                f"Search exceeded {self._seconds:.0f}s during {phase}"
            )


class SearchService:
    """Query the index and the note store. One instance per process."""

    def __init__(
        self,
        notes: NoteStoreProtocol,
        index: VectorIndex,
        client,
        *,
        guard: Optional[QueryGuard] = None,
        default_project: Optional[str] = None,
        deadline: float = SEARCH_DEADLINE,
    ):
        self._notes = notes
        self._index = index
        self._client = client
        self._guard = guard or QueryGuard()
        self._default_project = default_project
        self._deadline = deadline

    def search(self, query: str, options: Optional[SearchOptions] = None, **kwargs) -> list[ContextNote]:
        """
        Run a query.

        Args:
            query: Free text
            options: SearchOptions; keyword arguments override its fields

        Raises:
            SearchError: guard_rejected, upstream_unavailable or invalid_query
            DeadlineExceededError: the search ran past its deadline
        """
        opts = replace(options or SearchOptions(), **kwargs)

        if opts.mode not in MODES:
            raise SearchError("invalid_query", f"Unknown search mode: {opts.mode}")
        if opts.limit < 1:
            raise SearchError("invalid_query", "limit must be at least 1")
        if opts.depth < 0:
            raise SearchError("invalid_query", "depth must not be negative")
        try:
            query = self._guard.check(query)
        except GuardError as e:
            logger.warning("Search guard rejected query %.200r: %s", query, e)
            raise SearchError("guard_rejected", str(e)) from e
        if not query:
            raise SearchError("invalid_query", "Query is empty")

        project = opts.project or self._default_project
        deadline = _Deadline(self._deadline)
        cache: dict[str, Optional[str]] = {}
        try:
            results = self._primary(query, project, opts, deadline)
            if opts.depth > 0 and results:
                cap = opts.max_results or opts.limit * EXPANSION_CAP_FACTOR
                results = self._expand(results, project, opts.depth, cap, cache, deadline)
            if opts.full_content or opts.detect_type or opts.parse_status:
                self._enrich(results, project, opts, cache, deadline)
        except UpstreamUnavailableError as e:
            raise SearchError("upstream_unavailable", str(e)) from e
        return results

    # ---- Primary retrieval ----

    def _primary(self, query, project, opts, deadline) -> list[ContextNote]:
        mode = opts.mode
        semantic = []
        try:
            if mode == "auto":
                mode = "semantic" if self._index.count(project) > 0 else "keyword"
            if mode != "keyword":
                semantic = self._semantic(query, project, opts)
        except (FatalError, VectorIndexError) as e:
            logger.warning("Semantic search unavailable, using keyword: %s", e)
            mode = "keyword"

        if mode == "keyword":
            return self._keyword(query, project, opts)
        deadline.check("semantic search")

        if mode == "semantic":
            return semantic
        return self._merge(semantic, self._keyword(query, project, opts), opts.limit)

    def _semantic(self, query, project, opts) -> list[ContextNote]:
        vector = self._client.embed_one(query, QUERY_PREFIX)
        hits = self._index.search_ann(
            project, vector, k=opts.limit * CANDIDATE_FACTOR, threshold=opts.threshold,
        )
        results = []
        types = set(opts.filters.types or ())
        for hit in hits:
            title = title_from_slug(hit.note_id)
            if types and detect_type(hit.note_id, title) not in types:
                continue
            results.append(ContextNote(note_id=hit.note_id, title=title, score=hit.score))
        return results[:opts.limit]

    def _keyword(self, query, project, opts) -> list[ContextNote]:
        hits = self._notes.search_notes(
            query,
            project=project,
            types=opts.filters.types,
            after_date=opts.filters.after_date,
            page_size=opts.limit,
        )
        results = []
        seen = set()
        n = len(hits)
        for i, hit in enumerate(hits):
            if hit.permalink in seen:
                continue
            seen.add(hit.permalink)
            score = 1.0 - i / n if hit.score is None else float(hit.score)
            results.append(ContextNote(
                note_id=hit.permalink,
                title=hit.title or title_from_slug(hit.permalink),
                score=score,
                source="keyword",
            ))
        return results[:opts.limit]

    @staticmethod
    def _rank_scores(results: list[ContextNote]) -> None:
        n = len(results)
        for i, note in enumerate(results):
            note.score = 1.0 - i / n

    def _merge(self, semantic, keyword, limit) -> list[ContextNote]:
        self._rank_scores(keyword)
        merged: dict[str, ContextNote] = {n.note_id: n for n in semantic}
        for note in keyword:
            existing = merged.get(note.note_id)
            if existing is None:
                merged[note.note_id] = note
            else:
                existing.score = max(existing.score, note.score)
        ordered = sorted(
            merged.values(),
            key=lambda n: (-n.score, 0 if n.source == "semantic" else 1, n.note_id),
        )
        return ordered[:limit]

    # ---- Relation expansion ----

    def _read(self, note_id, project, cache) -> Optional[str]:
        if note_id not in cache:
            cache[note_id] = self._notes.read_note(note_id, project=project)
        return cache[note_id]

    def _resolve(self, target, project, cache) -> Optional[str]:
        """Wikilink target -> permalink of an existing note, or None."""
        content = self._read(target, project, cache)
        if content is None:
            return None
        permalink = parse_frontmatter(content).get("permalink") or slugify(target)
        cache.setdefault(permalink, content)
        return permalink

    def _expand(self, results, project, depth, cap, cache, deadline) -> list[ContextNote]:
        out = list(results)
        seen = {n.note_id for n in out}
        frontier = [n.note_id for n in out]
        for hop in range(1, depth + 1):
            next_frontier = []
            for note_id in frontier:
                deadline.check("relation expansion")
                for target in extract_wikilinks(self._read(note_id, project, cache) or ""):
                    if len(out) >= cap:
                        return out
                    resolved = self._resolve(target, project, cache)
                    if resolved is None or resolved in seen:
                        continue
                    seen.add(resolved)
                    out.append(ContextNote(
                        note_id=resolved, title=target, score=0.0,
                        source="relation", depth=hop,
                    ))
                    next_frontier.append(resolved)
            if not next_frontier:
                break
            frontier = next_frontier
        return out

    # ---- Enrichment ----

    def _enrich(self, results, project, opts, cache, deadline) -> None:
        for note in results:
            deadline.check("content enrichment")
            content = self._read(note.note_id, project, cache)
            if content is None:
                continue
            fm = parse_frontmatter(content)
            if fm.get("title"):
                note.title = fm["title"]
            if opts.full_content:
                note.content = content[:FULL_CONTENT_MAX]
            if opts.detect_type:
                note.type = detect_type(note.note_id, note.title, fm.get("type"))
            if opts.parse_status:
                note.status = parse_status(content, note.title)
