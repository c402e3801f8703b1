"""
Event-driven session workflows.

Five inbound events drive session state:

    session/protocol.start                 -> protocol-start workflow
    session/state.update                   -> apply field updates
    session/orchestrator.agent-invoked     -> record an agent invocation
    session/orchestrator.agent-completed   -> close it, keep decisions/verdicts
    session/protocol.end                   -> validate the session log, close

A workflow is a list of steps. A step may do I/O (git, bootstrap,
validation) under a deadline, then applies a pure transition
``(event, state, io_result) -> StepResult(state, events)``. Changed state is
persisted through SessionStore.mutate after every step, so a replayed
event converges: unchanged transitions write nothing.

Events for one session run strictly in arrival order on that session's
lane; different sessions run in parallel.
"""

import copy
import logging
import os
import queue
import subprocess
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from .errors import DeadlineExceededError, ProtocolValidationError
from .session import SessionState, SessionStore, apply_updates, empty_workflow
from .validation import validate_session_log

logger = logging.getLogger(__name__)

PROTOCOL_START = "session/protocol.start"
STATE_UPDATE = "session/state.update"
AGENT_INVOKED = "session/orchestrator.agent-invoked"
AGENT_COMPLETED = "session/orchestrator.agent-completed"
PROTOCOL_END = "session/protocol.end"
EVENTS = (PROTOCOL_START, STATE_UPDATE, AGENT_INVOKED, AGENT_COMPLETED, PROTOCOL_END)

# Outbound
PROTOCOL_READY = "session/protocol.ready"
PROTOCOL_ENDED = "session/protocol.ended"

START_DEADLINE = 30.0   # whole protocol.start workflow
STEP_DEADLINE = 10.0    # any single step
GIT_TIMEOUT = 5.0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Event:
    name: str
    session_id: Optional[str] = None
    data: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=_now)


@dataclass
class StepResult:
    state: Optional[SessionState]
    events: list[Event] = field(default_factory=list)


@dataclass
class WorkflowResult:
    event: Event
    session_id: Optional[str]
    state: Optional[SessionState]
    steps: list[str] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    context: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "event": self.event.name,
            "sessionId": self.session_id,
            "steps": self.steps,
            "events": [{"name": e.name, "sessionId": e.session_id, "data": e.data}
                       for e in self.events],
            "warnings": self.warnings,
            "state": self.state.to_dict() if self.state else None,
        }


# ---------------------------------------------------------------------------
# Pure transitions
# ---------------------------------------------------------------------------

def _workflow(state: SessionState) -> dict:
    if state.orchestrator_workflow is None:
        state.orchestrator_workflow = empty_workflow()
    return state.orchestrator_workflow


def record_git_context(event: Event, state: SessionState, git: dict) -> StepResult:
    state = copy.deepcopy(state)
    state.git_context = git or None
    return StepResult(state)


def record_session_log(event: Event, state: SessionState, path: Optional[str]) -> StepResult:
    state = copy.deepcopy(state)
    if path:
        state.session_log_path = path
    return StepResult(state)


def mark_protocol_start(event: Event, state: SessionState, _=None) -> StepResult:
    state = copy.deepcopy(state)
    state.protocol_start_complete = True
    return StepResult(state)


def emit_ready(event: Event, state: SessionState, _=None) -> StepResult:
    return StepResult(state, [Event(
        PROTOCOL_READY, state.session_id,
        {"project": state.project, "mode": state.mode},
    )])


def apply_state_update(event: Event, state: SessionState, _=None) -> StepResult:
    state = copy.deepcopy(state)
    apply_updates(state, event.data.get("updates", {}))
    return StepResult(state)


def apply_agent_invoked(event: Event, state: SessionState, _=None) -> StepResult:
    """Append an invocation record keyed by the event id (replay-safe)."""
    state = copy.deepcopy(state)
    wf = _workflow(state)
    agent = event.data["agent"]
    if any(inv.get("eventId") == event.id for inv in wf["agentHistory"]):
        return StepResult(state)
    invocation = {
        "eventId": event.id,
        "agent": agent,
        "startedAt": event.timestamp,
        "status": "running",
    }
    if event.data.get("task"):
        invocation["task"] = event.data["task"]
    if wf.get("activeAgent") and wf["activeAgent"] != agent:
        wf["handoffs"].append({
            "from": wf["activeAgent"], "to": agent, "at": event.timestamp,
        })
    wf["agentHistory"].append(invocation)
    wf["activeAgent"] = agent
    wf["lastAgentChange"] = event.timestamp
    return StepResult(state)


def apply_agent_completed(event: Event, state: SessionState, _=None) -> StepResult:
    """Close the newest running invocation of the agent; keep its outputs."""
    state = copy.deepcopy(state)
    wf = _workflow(state)
    agent = event.data["agent"]
    if any(d.get("eventId") == event.id for d in wf["decisions"] + wf["verdicts"]):
        return StepResult(state)
    for inv in reversed(wf["agentHistory"]):
        if inv.get("agent") == agent and inv.get("status") == "running":
            inv["status"] = event.data.get("status", "completed")
            inv["completedAt"] = event.timestamp
            if event.data.get("summary"):
                inv["summary"] = event.data["summary"]
            break
    for decision in event.data.get("decisions", []):
        wf["decisions"].append({"eventId": event.id, "agent": agent,
                                "decision": decision, "at": event.timestamp})
    if event.data.get("verdict"):
        wf["verdicts"].append({"eventId": event.id, "agent": agent,
                               "verdict": event.data["verdict"], "at": event.timestamp})
    if wf.get("activeAgent") == agent:
        wf["activeAgent"] = None
    return StepResult(state)


def mark_protocol_end(event: Event, state: SessionState, _=None) -> StepResult:
    state = copy.deepcopy(state)
    state.protocol_end_complete = True
    return StepResult(state, [Event(PROTOCOL_ENDED, state.session_id, {})])


# ---------------------------------------------------------------------------
# I/O helpers
# ---------------------------------------------------------------------------

def gather_git_context(cwd: Optional[str] = None) -> dict:
    """Branch, HEAD commit and dirty flag; {} outside a git checkout."""
    def git(*args) -> str:
        out = subprocess.run(
            ["git", *args], cwd=cwd, capture_output=True, text=True,
            timeout=GIT_TIMEOUT, check=True,
        )
        return out.stdout.strip()

    try:
        return {
            "branch": git("rev-parse", "--abbrev-ref", "HEAD"),
            "commit": git("rev-parse", "HEAD"),
            "dirty": bool(git("status", "--porcelain")),
        }
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("No git context for %s: %s", cwd, e)
        return {}


class _Lane:
    """FIFO executor for one session's events."""

    def __init__(self, name: str):
        self.queue: queue.Queue = queue.Queue()
        self.thread = threading.Thread(target=self._run, name=name, daemon=True)
        self.thread.start()

    def _run(self) -> None:
        while True:
            item = self.queue.get()
            if item is None:
                return
            fn, future = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn())
            except BaseException as e:
                future.set_exception(e)


class WorkflowCoordinator:
    """Runs session workflows; one instance per process."""

    def __init__(
        self,
        sessions: SessionStore,
        bootstrap=None,
        *,
        project_resolver: Optional[Callable[[Optional[str]], Optional[str]]] = None,
        git_context: Callable[[Optional[str]], dict] = gather_git_context,
        validator: Callable = validate_session_log,
        start_deadline: float = START_DEADLINE,
        step_deadline: float = STEP_DEADLINE,
    ):
        self._sessions = sessions
        self._bootstrap = bootstrap
        self._project_resolver = project_resolver
        self._git_context = git_context
        self._validator = validator
        self._start_deadline = start_deadline
        self._step_deadline = step_deadline
        self._io = ThreadPoolExecutor(max_workers=8, thread_name_prefix="brain-step")
        self._unbound = ThreadPoolExecutor(max_workers=4, thread_name_prefix="brain-start")
        self._lanes: dict[str, _Lane] = {}
        self._lock = threading.Lock()

    # ---- Dispatch ----

    def emit(self, event: Event) -> Future:
        """Queue an event on its session's lane; returns a Future[WorkflowResult]."""
        if event.name not in EVENTS:
            raise ValueError(f"Unknown event: {event.name}")
        if event.session_id is None:
            # No session yet (protocol.start creates one): nothing to order against
            return self._unbound.submit(self._run, event)
        key = event.session_id
        with self._lock:
            lane = self._lanes.get(key)
            if lane is None:
                lane = self._lanes[key] = _Lane(f"brain-lane-{key[:12]}")
        future: Future = Future()
        lane.queue.put((lambda: self._run(event), future))
        return future

    def handle(self, event: Event) -> WorkflowResult:
        """Process an event and wait for its result."""
        return self.emit(event).result()

    def shutdown(self) -> None:
        with self._lock:
            lanes, self._lanes = list(self._lanes.values()), {}
        for lane in lanes:
            lane.queue.put(None)
        self._unbound.shutdown(wait=False)
        self._io.shutdown(wait=False)

    # ---- Step machinery ----

    def _io_step(self, name: str, fn: Callable[[], Any], deadline: float) -> Any:
        remaining = min(self._step_deadline, deadline - time.monotonic())
        if remaining <= 0:
            raise DeadlineExceededError(f"Workflow deadline passed before step '{name}'")
        future = self._io.submit(fn)
        try:
            return future.result(timeout=remaining)
        except FutureTimeout as e:
            future.cancel()
            raise DeadlineExceededError(f"Step '{name}' exceeded {remaining:.1f}s") from e

    def _persist(self, result: WorkflowResult, name: str, transition, io_result=None) -> None:
        """Apply a pure transition and write only if it changed the state."""
        current = result.state
        outcome = transition(result.event, current, io_result)
        result.events.extend(outcome.events)
        if outcome.state is not None and outcome.state.to_dict() != current.to_dict():
            result.state = self._sessions.mutate(
                current.session_id,
                lambda s: transition(result.event, s, io_result).state,
            )
        result.steps.append(name)

    def _run(self, event: Event) -> WorkflowResult:
        handlers = {
            PROTOCOL_START: self._protocol_start,
            STATE_UPDATE: self._simple(apply_state_update, "apply_updates"),
            AGENT_INVOKED: self._simple(apply_agent_invoked, "record_invocation"),
            AGENT_COMPLETED: self._simple(apply_agent_completed, "record_completion"),
            PROTOCOL_END: self._protocol_end,
        }
        logger.info("Handling %s for session %s", event.name, event.session_id)
        return handlers[event.name](event)

    def _require_session(self, event: Event, deadline: float) -> SessionState:
        if not event.session_id:
            raise ValueError(f"{event.name} requires a session id")
        return self._io_step("load_session", lambda: self._sessions.load(event.session_id), deadline)

    def _simple(self, transition, name):
        def run(event: Event) -> WorkflowResult:
            deadline = time.monotonic() + self._step_deadline
            state = self._require_session(event, deadline)
            result = WorkflowResult(event=event, session_id=state.session_id, state=state)
            self._persist(result, name, transition)
            return result
        return run

    # ---- protocol.start ----

    def _resolve_project(self, event: Event) -> Optional[str]:
        project = event.data.get("project") or os.environ.get("BRAIN_PROJECT")
        if not project and self._project_resolver is not None:
            project = self._project_resolver(event.data.get("cwd"))
        return project

    def _protocol_start(self, event: Event) -> WorkflowResult:
        deadline = time.monotonic() + self._start_deadline
        result = WorkflowResult(event=event, session_id=event.session_id, state=None)

        # 1. Determine project
        project = self._io_step("determine_project", lambda: self._resolve_project(event), deadline)
        result.context["project"] = project
        result.steps.append("determine_project")

        # 2. Load or create session
        def load_or_create() -> SessionState:
            if event.session_id:
                return self._sessions.load(event.session_id)
            return self._sessions.create(project)
        result.state = self._io_step("load_or_create_session", load_or_create, deadline)
        result.session_id = result.state.session_id
        result.steps.append("load_or_create_session")

        # 3. Git context
        git = self._io_step("gather_git_context",
                            lambda: self._git_context(event.data.get("cwd")), deadline)
        self._persist(result, "gather_git_context", record_git_context, git)

        # 4. Bootstrap context
        if self._bootstrap is not None and project:
            payload = self._io_step("load_bootstrap",
                                    lambda: self._bootstrap.build(project), deadline)
            result.context["bootstrap"] = payload
        result.steps.append("load_bootstrap")

        # 5. Session log presence
        log_path = event.data.get("sessionLogPath") or result.state.session_log_path
        present = bool(log_path) and Path(log_path).is_file()
        if not present:
            result.warnings.append(
                f"Session log not found: {log_path}" if log_path else "No session log path given"
            )
        self._persist(result, "validate_session_log", record_session_log,
                      log_path if present else None)

        # 6. Mark complete, 7. emit ready
        self._persist(result, "mark_protocol_start", mark_protocol_start)
        self._persist(result, "emit_ready", emit_ready)
        return result

    # ---- protocol.end ----

    def _protocol_end(self, event: Event) -> WorkflowResult:
        deadline = time.monotonic() + self._start_deadline
        state = self._require_session(event, deadline)
        result = WorkflowResult(event=event, session_id=state.session_id, state=state)
        result.steps.append("load_session")

        log_path = event.data.get("sessionLogPath") or state.session_log_path
        if not log_path:
            raise ProtocolValidationError(
                "No session log recorded for this session",
                [{"name": "file_exists", "passed": False, "message": "No session log path"}],
                remediation="Pass sessionLogPath with the protocol.end event",
            )
        validation = self._io_step("validate", lambda: self._validator(log_path), deadline)
        if not validation.valid:
            raise ProtocolValidationError(
                validation.message,
                [c.to_dict() for c in validation.failed],
                remediation=validation.remediation,
            )
        result.steps.append("validate")
        self._persist(result, "mark_protocol_end", mark_protocol_end)
        return result
