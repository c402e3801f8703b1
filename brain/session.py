"""
Durable session state, persisted as notes in the upstream store.

Each session is the note ``sessions/session-{id}``: a short heading and a
fenced JSON document. The document is signed with HMAC-SHA256 over its
canonical JSON (sorted keys, no whitespace) using BRAIN_SESSION_SECRET;
the hex digest sits in ``_signature``. Unsigned legacy documents are
accepted with a warning and signed on their next write.

Writes use optimistic locking. A writer reads version v, mutates, and
re-reads before committing; if the stored version moved past v it backs
off (100, 200, 400 ms) and starts over, giving up with
VersionConflictError. Within this process the re-read and the write
happen under a per-session lock, so two threads can never both commit
v+1.

When agentHistory grows past 10 entries, all but the newest 3 move to a
history note ``sessions/session-{id}-history-{epoch_ms}``, recorded in
compactionHistory. Decisions, verdicts and handoffs are never compacted.
Sessions are never deleted.
"""

import copy
import hashlib
import hmac
import json
import logging
import os
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .errors import (
    SecretMissingError,
    SessionCorruptError,
    SessionNotFoundError,
    SignatureError,
    VersionConflictError,
)
from .notes import NoteStoreProtocol

logger = logging.getLogger(__name__)

SECRET_ENV = "BRAIN_SESSION_SECRET"
SESSION_FOLDER = "sessions"
POINTER_TITLE = "current-session"
POINTER_PERMALINK = f"{SESSION_FOLDER}/{POINTER_TITLE}"

MODES = ("analysis", "planning", "coding", "disabled")
DEFAULT_MODE = "analysis"

# Backoff between optimistic-lock attempts (3 retries)
RETRY_DELAYS = (0.1, 0.2, 0.4)

MAX_AGENT_HISTORY = 10
KEEP_AFTER_COMPACTION = 3

SIGNATURE_KEY = "_signature"

_JSON_BLOCK = re.compile(r"```json\s*\n(.*?)\n```", re.DOTALL)
_FRONTMATTER = re.compile(r"\A---\s*\n.*?\n---\s*\n?", re.DOTALL)
_POINTER_FIELD = re.compile(r"session_?id\s*[:=]\s*\"?([\w.:-]+)", re.IGNORECASE)
_TOKEN = re.compile(r"[\w.:-]+")

# snake_case attribute -> camelCase document key
_FIELDS = (
    ("session_id", "sessionId"),
    ("version", "version"),
    ("created_at", "createdAt"),
    ("updated_at", "updatedAt"),
    ("mode", "mode"),
    ("active_task", "activeTask"),
    ("active_feature", "activeFeature"),
    ("project", "project"),
    ("protocol_start_complete", "protocolStartComplete"),
    ("protocol_end_complete", "protocolEndComplete"),
    ("orchestrator_workflow", "orchestratorWorkflow"),
    ("compaction_history", "compactionHistory"),
    ("git_context", "gitContext"),
    ("session_log_path", "sessionLogPath"),
)
_KEY_TO_ATTR = {key: attr for attr, key in _FIELDS}

# Keys a caller may set through update()
UPDATABLE_KEYS = (
    "mode", "activeTask", "activeFeature", "project",
    "protocolStartComplete", "protocolEndComplete",
    "gitContext", "sessionLogPath", "orchestratorWorkflow",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def canonical_json(obj: Any) -> str:
    """Recursively key-sorted JSON with no insignificant whitespace."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sign_document(doc: dict, secret: bytes) -> str:
    """HMAC-SHA256 hex over the document minus its signature."""
    body = {k: v for k, v in doc.items() if k != SIGNATURE_KEY}
    return hmac.new(secret, canonical_json(body).encode("utf-8"), hashlib.sha256).hexdigest()


def verify_document(doc: dict, secret: bytes) -> bool:
    signature = doc.get(SIGNATURE_KEY)
    if not isinstance(signature, str):
        return False
    return hmac.compare_digest(signature, sign_document(doc, secret))


def empty_workflow() -> dict:
    return {
        "activeAgent": None,
        "workflowPhase": None,
        "agentHistory": [],
        "decisions": [],
        "verdicts": [],
        "handoffs": [],
    }


@dataclass
class SessionState:
    """One working session. Serialized with camelCase keys."""
    session_id: str
    version: int = 0
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    mode: str = DEFAULT_MODE
    active_task: Optional[str] = None
    active_feature: Optional[str] = None
    project: Optional[str] = None
    protocol_start_complete: bool = False
    protocol_end_complete: bool = False
    orchestrator_workflow: Optional[dict] = None
    compaction_history: list = field(default_factory=list)
    git_context: Optional[dict] = None
    session_log_path: Optional[str] = None
    # Keys written by newer versions; carried through untouched
    extra: dict = field(default_factory=dict)
    legacy_unsigned: bool = False

    def to_dict(self) -> dict:
        doc = dict(self.extra)
        for attr, key in _FIELDS:
            doc[key] = copy.deepcopy(getattr(self, attr))
        return doc

    @classmethod
    def from_dict(cls, doc: dict) -> "SessionState":
        if "sessionId" not in doc:
            raise ValueError("Session document has no sessionId")
        kwargs = {}
        extra = {}
        for key, value in doc.items():
            if key == SIGNATURE_KEY:
                continue
            attr = _KEY_TO_ATTR.get(key)
            if attr is None:
                extra[key] = value
            elif attr == "compaction_history" and value is None:
                continue
            else:
                kwargs[attr] = value
        state = cls(**kwargs)
        state.extra = extra
        return state

    def agent_history(self) -> list:
        return (self.orchestrator_workflow or {}).get("agentHistory", [])


def apply_updates(state: SessionState, updates: dict) -> None:
    """Apply caller-supplied camelCase updates in place (validated)."""
    for key, value in updates.items():
        if key not in UPDATABLE_KEYS:
            raise ValueError(f"Session field '{key}' cannot be updated")
        if key == "mode" and value not in MODES:
            raise ValueError(f"Invalid mode '{value}'; expected one of {', '.join(MODES)}")
        if key in ("protocolStartComplete", "protocolEndComplete") and not isinstance(value, bool):
            raise ValueError(f"'{key}' must be a boolean")
        setattr(state, _KEY_TO_ATTR[key], value)


def session_permalink(session_id: str) -> str:
    return f"{SESSION_FOLDER}/session-{session_id}"


def parse_pointer(content: str) -> Optional[str]:
    """Session id from the pointer note body. Tolerates whitespace,
    frontmatter, headings and extra fields."""
    body = _FRONTMATTER.sub("", content or "", count=1).strip()
    if not body:
        return None
    try:
        data = json.loads(body)
    except ValueError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("sessionId"), str):
        return data["sessionId"]
    if isinstance(data, str):
        return data.strip() or None
    match = _POINTER_FIELD.search(body)
    if match:
        return match.group(1)
    for line in body.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        token = _TOKEN.search(line)
        if token:
            return token.group(0)
    return None


class SessionStore:
    """
    Session persistence with signing, optimistic locking and compaction.

    One instance per process; holds the session cache.
    """

    def __init__(
        self,
        notes: NoteStoreProtocol,
        *,
        secret: Optional[str] = None,
        project: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            notes: Upstream note store
            secret: HMAC key; defaults to BRAIN_SESSION_SECRET (required)
            project: Note store project holding session notes
            sleep: Backoff sleep (injectable for tests)

        Raises:
            SecretMissingError: no secret configured
        """
        secret = secret or os.environ.get(SECRET_ENV)
        if not secret:
            raise SecretMissingError(SECRET_ENV)
        self._secret = secret.encode("utf-8")
        self._notes = notes
        self._project = project
        self._sleep = sleep
        self._cache: dict[str, SessionState] = {}
        self._lock = threading.Lock()
        self._commit_locks: dict[str, threading.Lock] = {}
        self.current_id: Optional[str] = None

    # ---- Serialization ----

    def encode(self, state: SessionState) -> str:
        """Signed note body for a state."""
        doc = state.to_dict()
        doc[SIGNATURE_KEY] = sign_document(doc, self._secret)
        return (
            f"# Session {state.session_id}\n\n"
            f"```json\n{json.dumps(doc, indent=2, sort_keys=True, ensure_ascii=False)}\n```\n"
        )

    def decode(self, content: str) -> SessionState:
        """Parse and verify a session note body.

        Raises:
            SignatureError: signature present but wrong, or body unparseable
            SessionCorruptError: unsigned document missing required fields
        """
        match = _JSON_BLOCK.search(content)
        raw = match.group(1) if match else _FRONTMATTER.sub("", content, count=1)
        try:
            doc = json.loads(raw)
        except ValueError as e:
            raise SignatureError(f"Session note is not valid JSON: {e}") from e
        if not isinstance(doc, dict):
            raise SignatureError("Session note does not contain a JSON object")

        if SIGNATURE_KEY not in doc:
            logger.warning(
                "Session %s is unsigned (legacy); it will be signed on next write",
                doc.get("sessionId"),
            )
            try:
                state = SessionState.from_dict(doc)
            except (TypeError, ValueError) as e:
                raise SessionCorruptError(
                    f"Unsigned session note is malformed: {e}",
                    remediation="Delete the session note or start a new session",
                ) from e
            state.legacy_unsigned = True
            return state
        if not verify_document(doc, self._secret):
            raise SignatureError(
                f"Signature mismatch for session {doc.get('sessionId')}",
                remediation="The session note was modified outside brain; restore it or start a new session",
            )
        return SessionState.from_dict(doc)

    # ---- Reads ----

    def _fetch(self, session_id: str) -> Optional[SessionState]:
        content = self._notes.read_note(session_permalink(session_id), project=self._project)
        if content is None:
            return None
        return self.decode(content)

    def load(self, session_id: str) -> SessionState:
        """Load a session (cached).

        Raises:
            SessionNotFoundError, SignatureError
        """
        with self._lock:
            cached = self._cache.get(session_id)
        if cached is not None:
            return copy.deepcopy(cached)
        state = self._fetch(session_id)
        if state is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        with self._lock:
            self._cache[session_id] = state
        return copy.deepcopy(state)

    def load_pointer(self) -> Optional[str]:
        """Read sessions/current-session; None on first run."""
        content = self._notes.read_note(POINTER_PERMALINK, project=self._project)
        self.current_id = parse_pointer(content) if content is not None else None
        return self.current_id

    def load_current(self) -> Optional[SessionState]:
        """The session the pointer names, or None if there is none."""
        session_id = self.current_id or self.load_pointer()
        if session_id is None:
            return None
        try:
            return self.load(session_id)
        except SessionNotFoundError:
            logger.warning("Current-session pointer names missing session %s", session_id)
            return None

    def set_current(self, session_id: str) -> None:
        body = json.dumps({"sessionId": session_id}) + "\n"
        self._notes.write_note(SESSION_FOLDER, POINTER_TITLE, body, project=self._project)
        self.current_id = session_id

    # ---- Writes ----

    def _commit_lock(self, session_id: str) -> threading.Lock:
        with self._lock:
            lock = self._commit_locks.get(session_id)
            if lock is None:
                lock = self._commit_locks[session_id] = threading.Lock()
            return lock

    def _invalidate(self, session_id: str) -> None:
        with self._lock:
            self._cache.pop(session_id, None)

    def _write(self, state: SessionState) -> None:
        self._notes.write_note(
            SESSION_FOLDER, f"session-{state.session_id}", self.encode(state),
            project=self._project,
        )

    def create(
        self,
        project: Optional[str] = None,
        *,
        session_id: Optional[str] = None,
        make_current: bool = True,
    ) -> SessionState:
        """Create and persist a new session at version 0."""
        state = SessionState(
            session_id=session_id or uuid.uuid4().hex,
            project=project,
            orchestrator_workflow=empty_workflow(),
        )
        with self._commit_lock(state.session_id):
            if self._fetch(state.session_id) is not None:
                raise VersionConflictError(state.session_id, 1)
            self._write(state)
            self._invalidate(state.session_id)
        if make_current:
            self.set_current(state.session_id)
        logger.info("Created session %s (project %s)", state.session_id, project)
        return state

    def _try_commit(self, new_state: SessionState, base_version: int) -> bool:
        """Write new_state as base_version + 1 if nobody else wrote first."""
        session_id = new_state.session_id
        with self._commit_lock(session_id):
            current = self._fetch(session_id)
            stored_version = current.version if current is not None else None
            if stored_version != base_version:
                logger.info(
                    "Session %s moved from v%d to v%s; retrying",
                    session_id, base_version, stored_version,
                )
                return False
            new_state.version = base_version + 1
            new_state.updated_at = _now()
            self._compact(new_state)
            self._write(new_state)
            new_state.legacy_unsigned = False
            self._invalidate(session_id)
        return True

    def save(self, state: SessionState) -> SessionState:
        """Persist a state read at ``state.version`` as the next version.

        Raises:
            VersionConflictError: the stored version moved since the read
        """
        new_state = copy.deepcopy(state)
        if not self._try_commit(new_state, state.version):
            raise VersionConflictError(state.session_id, 1)
        return new_state

    def mutate(self, session_id: str, fn: Callable[[SessionState], Optional[SessionState]]) -> SessionState:
        """Read-modify-write with optimistic locking and backoff.

        ``fn`` receives a private copy; it may modify it in place or
        return a replacement.

        Raises:
            VersionConflictError: still conflicting after 3 retries
            SessionNotFoundError, SignatureError
        """
        attempts = len(RETRY_DELAYS) + 1
        for attempt in range(attempts):
            current = self._fetch(session_id)
            if current is None:
                raise SessionNotFoundError(f"Session {session_id} not found")
            base_version = current.version
            working = copy.deepcopy(current)
            result = fn(working)
            new_state = result if result is not None else working
            new_state.session_id = session_id
            if self._try_commit(new_state, base_version):
                return copy.deepcopy(new_state)
            if attempt < len(RETRY_DELAYS):
                self._sleep(RETRY_DELAYS[attempt])
        raise VersionConflictError(session_id, attempts)

    def update(self, session_id: str, updates: dict) -> SessionState:
        """mutate() with a dict of camelCase field updates."""
        return self.mutate(session_id, lambda s: apply_updates(s, updates))

    # ---- Compaction ----

    def _compact(self, state: SessionState) -> None:
        workflow = state.orchestrator_workflow
        if not workflow:
            return
        history = workflow.get("agentHistory") or []
        if len(history) <= MAX_AGENT_HISTORY:
            return
        offload = history[:-KEEP_AFTER_COMPACTION]
        epoch = int(time.time() * 1000)
        if state.compaction_history:
            # History note names must stay unique within a session
            tail = state.compaction_history[-1].get("notePath", "").rsplit("-", 1)[-1]
            if tail.isdigit():
                epoch = max(epoch, int(tail) + 1)
        title = f"session-{state.session_id}-history-{epoch}"
        body = (
            f"# Agent history for session {state.session_id}\n\n"
            f"```json\n{json.dumps(offload, indent=2, ensure_ascii=False)}\n```\n"
        )
        self._notes.write_note(SESSION_FOLDER, title, body, project=self._project)
        workflow["agentHistory"] = history[-KEEP_AFTER_COMPACTION:]
        state.compaction_history.append({
            "notePath": f"{SESSION_FOLDER}/{title}",
            "compactedAt": _now(),
            "count": len(offload),
        })
        logger.info("Compacted %d agent invocations of session %s", len(offload), state.session_id)

    def full_agent_history(self, session_id: str) -> list:
        """Offloaded history entries followed by the live agentHistory."""
        state = self.load(session_id)
        entries: list = []
        for record in state.compaction_history:
            content = self._notes.read_note(record["notePath"], project=self._project)
            if content is None:
                logger.warning("History note %s is missing", record["notePath"])
                continue
            match = _JSON_BLOCK.search(content)
            entries.extend(json.loads(match.group(1)) if match else [])
        entries.extend(state.agent_history())
        return entries
