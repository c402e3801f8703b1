"""
Session bootstrap context: what an agent should know when a session starts.

Sections: Active Features, Recent Decisions, Open Bugs, Recent Activity and
Referenced Notes (wikilinks followed from the other sections). Rendered as
one markdown document plus a structured companion. Building a payload also
kicks off a background catch-up of the project's embeddings.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .enrichment import (
    detect_type,
    extract_wikilinks,
    is_open_status,
    parse_frontmatter,
    parse_status,
    timeframe_start,
)
from .errors import BrainError
from .notes import NoteHit, NoteStoreProtocol, slugify
from .search import ContextNote

logger = logging.getLogger(__name__)

DEFAULT_TIMEFRAME = "5d"
DEFAULT_DEPTH = 3
ACTIVITY_PAGE_SIZE = 10
QUERY_PAGE_SIZE = 50
MAX_REFERENCED = 20

ACTIVE_FEATURE_STATUSES = ("in_progress", "not_started")
FEATURE_TYPES = ("feature", "phase", "task")

SECTION_TITLES = {
    "active_features": "Active Features",
    "recent_decisions": "Recent Decisions",
    "open_bugs": "Open Bugs",
    "recent_activity": "Recent Activity",
    "referenced_notes": "Referenced Notes",
}


@dataclass
class BootstrapPayload:
    project: str
    markdown: str
    sections: dict[str, list[ContextNote]] = field(default_factory=dict)
    session: Optional[dict] = None
    generated_at: str = ""

    def to_dict(self) -> dict:
        return {
            "project": self.project,
            "markdown": self.markdown,
            "generatedAt": self.generated_at,
            "session": self.session,
            "sections": {
                name: [n.to_dict() for n in notes] for name, notes in self.sections.items()
            },
        }


class BootstrapBuilder:
    """Compose bootstrap payloads from the note store (and session state)."""

    def __init__(self, notes: NoteStoreProtocol, pipeline=None, sessions=None):
        self._notes = notes
        self._pipeline = pipeline
        self._sessions = sessions

    def _content(self, permalink, project, cache) -> Optional[str]:
        if permalink not in cache:
            cache[permalink] = self._notes.read_note(permalink, project=project)
        return cache[permalink]

    def _classify(self, hit: NoteHit, project, cache) -> ContextNote:
        content = self._content(hit.permalink, project, cache) or hit.content or ""
        fm = parse_frontmatter(content)
        title = fm.get("title") or hit.title
        return ContextNote(
            note_id=hit.permalink,
            title=title,
            score=hit.score or 0.0,
            type=detect_type(hit.permalink, title, fm.get("type") or hit.note_type),
            status=parse_status(content, title),
            source="keyword",
        )

    def build(
        self,
        project: str,
        *,
        timeframe: str = DEFAULT_TIMEFRAME,
        depth: int = DEFAULT_DEPTH,
        full_content: bool = False,
    ) -> BootstrapPayload:
        """Build the bootstrap payload for a project.

        Raises:
            UpstreamUnavailableError: note store unreachable
        """
        cache: dict[str, Optional[str]] = {}
        since = timeframe_start(timeframe)
        try:
            sections = self._sections(project, since, depth, cache)
        finally:
            if self._pipeline is not None:
                self._pipeline.catch_up_project(project)

        if full_content:
            for notes in sections.values():
                for note in notes:
                    note.content = self._content(note.note_id, project, cache)

        payload = BootstrapPayload(
            project=project,
            markdown="",
            sections=sections,
            session=self._session_summary(),
            generated_at=datetime.now(timezone.utc).isoformat(),
        )
        payload.markdown = render_markdown(payload, full_content=full_content)
        return payload

    def _query(self, project, cache, **kwargs) -> list[ContextNote]:
        hits = self._notes.search_notes("*", project=project, page_size=QUERY_PAGE_SIZE, **kwargs)
        return self._unique(hits, project, cache)

    def _sections(self, project, since, depth, cache) -> dict[str, list[ContextNote]]:
        # One type-filtered query per section
        features = self._query(project, cache, types=list(FEATURE_TYPES), after_date=since)
        decisions = self._query(project, cache, types=["decision"], after_date=since)
        bugs = self._query(project, cache, types=["bug"])
        recent = self._query(project, cache, after_date=since)

        sections: dict[str, list[ContextNote]] = {
            "active_features": [
                n for n in features
                if n.type in FEATURE_TYPES and n.status in ACTIVE_FEATURE_STATUSES
            ],
            "recent_decisions": [n for n in decisions if n.type == "decision"],
            "open_bugs": [n for n in bugs if n.type == "bug" and is_open_status(n.status)],
            "recent_activity": [n for n in recent if n.type != "session"][:ACTIVITY_PAGE_SIZE],
        }
        sections["referenced_notes"] = self._referenced(sections, project, depth, cache)
        return sections

    def _session_summary(self) -> Optional[dict]:
        if self._sessions is None:
            return None
        try:
            state = self._sessions.load_current()
        except BrainError as e:
            logger.warning("Bootstrap without session state: %s", e)
            return None
        if state is None:
            return None
        return {
            "sessionId": state.session_id,
            "mode": state.mode,
            "activeTask": state.active_task,
            "activeFeature": state.active_feature,
        }

    def _unique(self, hits: list[NoteHit], project, cache) -> list[ContextNote]:
        seen = set()
        notes = []
        for hit in hits:
            if not hit.permalink or hit.permalink in seen:
                continue
            seen.add(hit.permalink)
            notes.append(self._classify(hit, project, cache))
        return notes

    def _referenced(self, sections, project, depth, cache) -> list[ContextNote]:
        """Wikilinks from section notes, followed up to ``depth`` hops."""
        listed = {n.note_id for notes in sections.values() for n in notes}
        seen = set(listed)
        frontier = list(dict.fromkeys(n.note_id for notes in sections.values() for n in notes))
        referenced: list[ContextNote] = []
        for _ in range(depth):
            next_frontier = []
            for note_id in frontier:
                for target in extract_wikilinks(self._content(note_id, project, cache) or ""):
                    if len(referenced) >= MAX_REFERENCED:
                        return referenced
                    content = self._content(target, project, cache)
                    if content is None:
                        continue
                    fm = parse_frontmatter(content)
                    permalink = fm.get("permalink") or slugify(target)
                    if permalink in seen:
                        continue
                    seen.add(permalink)
                    cache.setdefault(permalink, content)
                    title = fm.get("title") or target
                    referenced.append(ContextNote(
                        note_id=permalink, title=title, score=0.0,
                        type=detect_type(permalink, title, fm.get("type")),
                        status=parse_status(content, title),
                        source="relation",
                    ))
                    next_frontier.append(permalink)
            if not next_frontier:
                break
            frontier = next_frontier
        return referenced


def render_markdown(payload: BootstrapPayload, *, full_content: bool = False) -> str:
    """Compact mode lists ``[[Title]]`` references; full mode inlines bodies."""
    lines = [f"# Bootstrap Context: {payload.project}", ""]
    if payload.session:
        s = payload.session
        lines += [
            "## Session State",
            "",
            f"- Session: {s['sessionId']}",
            f"- Mode: {s['mode']}",
        ]
        if s.get("activeTask"):
            lines.append(f"- Active task: {s['activeTask']}")
        if s.get("activeFeature"):
            lines.append(f"- Active feature: {s['activeFeature']}")
        lines.append("")

    for key, heading in SECTION_TITLES.items():
        notes = payload.sections.get(key, [])
        lines += [f"## {heading}", ""]
        if not notes:
            lines += ["_None_", ""]
            continue
        for note in notes:
            if full_content and note.content:
                lines += [f"### {note.title}", "", note.content.strip(), ""]
            else:
                suffix = f" ({note.status})" if note.status and key != "recent_activity" else ""
                lines.append(f"- [[{note.title}]]{suffix}")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"
