"""
The operations external hook binaries may invoke.

Every operation is JSON in, JSON out. ``run_hook`` wraps a call into
``(payload, exit_code)``: 0 success, 1 error, 2 warning. Errors become
``{"error": {...}}`` values rather than tracebacks.

Gate checks fail closed: when session state cannot be read, any tool not
known to be read-only is blocked. Only an explicit ``disabled`` mode
bypasses the gate.
"""

import logging
from typing import Any, Callable, Optional

from .config.paths import validate_path
from .errors import BrainError, SessionNotFoundError, log_exception
from .validation import validate_session_log

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_WARNING = 2

READ_ONLY_TOOLS = frozenset({"Read", "Glob", "Grep", "LS", "WebFetch", "WebSearch", "TodoWrite"})

# mode -> tools blocked in that mode
BLOCKED_TOOLS = {
    "analysis": frozenset({"Edit", "Write", "Bash", "NotebookEdit"}),
    "planning": frozenset({"Edit", "Write", "NotebookEdit"}),
    "coding": frozenset(),
    "disabled": frozenset(),
}

UNKNOWN_MODE = "unknown"


def gate_decision(tool: str, mode: str) -> dict:
    """Pure allow/deny for a tool under a mode."""
    if mode == "disabled":
        return {"allowed": True, "reason": "Gate disabled for this session", "mode": mode}
    if tool in READ_ONLY_TOOLS:
        return {"allowed": True, "reason": f"{tool} is read-only", "mode": mode}
    blocked = BLOCKED_TOOLS.get(mode)
    if blocked is None:
        return {
            "allowed": False,
            "reason": f"Session state unavailable; {tool} blocked (fail-closed)",
            "mode": UNKNOWN_MODE,
        }
    if tool in blocked:
        return {"allowed": False, "reason": f"{tool} is not allowed in {mode} mode", "mode": mode}
    return {"allowed": True, "reason": f"{tool} allowed in {mode} mode", "mode": mode}


class HookLayer:
    """
    Args:
        sessions: Zero-arg callable returning the SessionStore
        bootstrap: Zero-arg callable returning a BootstrapBuilder
        project_resolver: Maps a cwd (or None) to a project name
    """

    def __init__(
        self,
        sessions: Callable[[], Any],
        bootstrap: Optional[Callable[[], Any]] = None,
        project_resolver: Optional[Callable[[Optional[str]], Optional[str]]] = None,
    ):
        self._sessions = sessions
        self._bootstrap = bootstrap
        self._project_resolver = project_resolver

    def get_session_state(self) -> dict:
        state = self._sessions().load_current()
        return {"session": state.to_dict() if state else None}

    def set_session_state(self, updates: dict) -> dict:
        """Apply updates to the current session, creating one if none exists."""
        if not isinstance(updates, dict) or not updates:
            raise BrainError("updates must be a non-empty JSON object", kind="invalid_argument")
        store = self._sessions()
        current = store.load_current()
        if current is None:
            project = self._project_resolver(None) if self._project_resolver else None
            current = store.create(project)
        state = store.update(current.session_id, updates)
        return {"session": state.to_dict()}

    def gate_check(self, tool: str, mode: Optional[str] = None) -> dict:
        """Allow or block a tool. ``mode`` overrides the stored session mode."""
        if mode is None:
            try:
                state = self._sessions().load_current()
                if state is None:
                    raise SessionNotFoundError("No current session")
                mode = state.mode
            except BrainError as e:
                logger.warning("Gate check for %s without session state: %s", tool, e)
                mode = UNKNOWN_MODE
        decision = gate_decision(tool, mode)
        if not decision["allowed"]:
            logger.info("Blocked %s: %s", tool, decision["reason"])
        return decision

    def bootstrap(self, project: Optional[str] = None, **kwargs) -> dict:
        if self._bootstrap is None:
            raise BrainError("Bootstrap is not available", kind="unavailable")
        project = project or (self._project_resolver(None) if self._project_resolver else None)
        if not project:
            raise BrainError(
                "No project given and none matches the current directory",
                kind="invalid_argument",
                remediation="Pass --project or set BRAIN_PROJECT",
            )
        return self._bootstrap().build(project, **kwargs).to_dict()

    def validate_session(self, path: str) -> dict:
        return validate_session_log(validate_path(path)).to_dict()


def run_hook(fn: Callable[[], dict], context: str = "hook") -> tuple[dict, int]:
    """Call a hook operation and map its outcome to (payload, exit code).

    A payload with ``valid: false`` or ``allowed: false`` exits 1; one
    carrying ``warnings`` exits 2.
    """
    try:
        payload = fn()
    except BrainError as e:
        return {"error": e.to_dict()}, EXIT_ERROR
    except (OSError, ValueError) as e:
        log_exception(e, context=context)
        return {"error": {"kind": "error", "message": str(e)}}, EXIT_ERROR
    if payload.get("valid") is False or payload.get("allowed") is False:
        return payload, EXIT_ERROR
    if payload.get("warnings"):
        return payload, EXIT_WARNING
    return payload, EXIT_OK
