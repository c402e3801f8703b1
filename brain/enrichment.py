"""
Note classification helpers: type detection, status parsing, wikilinks.

Shared by search (optional enrichment) and the bootstrap builder.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

NOTE_TYPES = (
    "feature", "phase", "task", "decision", "bug",
    "spec", "research", "analysis", "session", "note",
)

FOLDER_TYPES = {
    "features": "feature",
    "decisions": "decision",
    "bugs": "bug",
    "specs": "spec",
    "research": "research",
    "analysis": "analysis",
    "sessions": "session",
}

TITLE_TYPES = (
    ("Decision:", "decision"),
    ("ADR-", "decision"),
    ("Feature:", "feature"),
    ("Spec:", "spec"),
    ("Research:", "research"),
    ("Analysis:", "analysis"),
    ("Bug:", "bug"),
)

# Marker -> normalized status. Order matters: first match wins.
STATUS_MARKERS = (
    ("NOT_STARTED", "not_started"),
    ("IN_PROGRESS", "in_progress"),
    ("COMPLETED", "complete"),
    ("COMPLETE", "complete"),
    ("DONE", "complete"),
    ("BLOCKED", "blocked"),
    ("CLOSED", "closed"),
)
_STATUS_MAP = dict(STATUS_MARKERS)

TITLE_STATUS = (
    ("WIP:", "in_progress"),
    ("DONE:", "complete"),
    ("[CLOSED]", "closed"),
    ("[BLOCKED]", "blocked"),
)

WIKILINK = re.compile(r"\[\[([^\]]+)\]\]")
_STATUS_SECTION = re.compile(
    r"^##\s+Status\s*\n+(.*?)(?=\n##\s|\n---|\n\n\n|\Z)",
    re.IGNORECASE | re.MULTILINE | re.DOTALL,
)
_BOLD_WORD = re.compile(r"\*\*([A-Za-z_]+)\*\*")
_FRONTMATTER = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)", re.DOTALL)
_TIMEFRAME = re.compile(r"^(\d+)([hdwm])$")


def parse_frontmatter(content: str) -> dict[str, str]:
    """Flat ``key: value`` pairs from a YAML frontmatter block."""
    match = _FRONTMATTER.match(content or "")
    if not match:
        return {}
    fields = {}
    for line in match.group(1).splitlines():
        if ":" in line and not line.startswith((" ", "-", "\t")):
            key, value = line.split(":", 1)
            fields[key.strip()] = value.strip().strip("'\"")
    return fields


def detect_type(
    permalink: str = "",
    title: str = "",
    frontmatter_type: Optional[str] = None,
) -> str:
    """Note type from frontmatter, then top-level folder, then title prefix."""
    if frontmatter_type and frontmatter_type.lower() in NOTE_TYPES:
        return frontmatter_type.lower()
    top = permalink.split("/", 1)[0].lower() if "/" in permalink else ""
    if top in FOLDER_TYPES:
        return FOLDER_TYPES[top]
    for prefix, note_type in TITLE_TYPES:
        if title.startswith(prefix):
            return note_type
    return "note"


def parse_status(content: Optional[str] = None, title: Optional[str] = None) -> str:
    """Normalized status: frontmatter, ``## Status`` section, title marker, else 'active'."""
    if content:
        fm_status = parse_frontmatter(content).get("status", "").upper()
        if fm_status in _STATUS_MAP:
            return _STATUS_MAP[fm_status]

        section = _STATUS_SECTION.search(content)
        if section:
            body = section.group(1).strip()
            bold = _BOLD_WORD.search(body)
            if bold and bold.group(1).upper() in _STATUS_MAP:
                return _STATUS_MAP[bold.group(1).upper()]
            upper = body.upper()
            for marker, status in STATUS_MARKERS:
                if marker in upper:
                    return status

    if title:
        for marker, status in TITLE_STATUS:
            if marker in title:
                return status
    return "active"


def is_open_status(status: str) -> bool:
    return status not in ("complete", "closed")


def extract_wikilinks(content: str) -> list[str]:
    """Wikilink targets in order of first appearance. ``[[A|alias]]`` -> 'A'."""
    seen: dict[str, None] = {}
    for match in WIKILINK.finditer(content or ""):
        target = match.group(1).split("|", 1)[0].strip()
        if target:
            seen.setdefault(target, None)
    return list(seen)


def timeframe_start(timeframe: str, now: Optional[datetime] = None) -> str:
    """'5d' -> YYYY-MM-DD five days ago. Unparseable input means 7 days."""
    now = now or datetime.now(timezone.utc)
    match = _TIMEFRAME.match(timeframe.strip())
    if not match:
        delta = timedelta(days=7)
    else:
        amount, unit = int(match.group(1)), match.group(2)
        delta = {
            "h": timedelta(hours=amount),
            "d": timedelta(days=amount),
            "w": timedelta(weeks=amount),
            "m": timedelta(days=30 * amount),
        }[unit]
    return (now - delta).strftime("%Y-%m-%d")
