"""
Typed errors for brain, plus error-log utilities for the CLI.

Every public operation raises a subclass of BrainError. Each carries a
``kind`` so hook binaries and the MCP surface can report failures as
values (``to_dict()``) rather than tracebacks.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class BrainError(Exception):
    """Base class for all brain errors."""

    kind = "error"

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[str] = None,
        remediation: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.remediation = remediation

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.remediation:
            data["remediation"] = self.remediation
        return data


# ---- Transport / model errors ----

class RetryableError(BrainError):
    """Transient failure (5xx, connection reset, EOF). Safe to retry."""

    kind = "retryable"


class FatalError(BrainError):
    """Non-retryable failure. Surfaced to the caller as-is."""

    kind = "fatal"


class ModelClientError(FatalError):
    """The embedding model server rejected or failed a request."""

    kind = "model_client"


class IndexMismatchError(FatalError):
    """The model server returned a different number of vectors than inputs."""

    kind = "index_mismatch"

    def __init__(self, expected: int, got: int):
        super().__init__(
            f"Embedding count mismatch: sent {expected} inputs, got {got} vectors"
        )
        self.expected = expected
        self.got = got


class DeadlineExceededError(FatalError):
    """An operation ran past its deadline."""

    kind = "deadline_exceeded"


# ---- Index / pipeline ----

VECTOR_INDEX_KINDS = ("corrupt", "io", "dimension_mismatch")


class VectorIndexError(BrainError):
    """Vector index failure. kind is one of corrupt, io, dimension_mismatch."""

    def __init__(self, kind: str, message: str):
        if kind not in VECTOR_INDEX_KINDS:
            raise ValueError(f"Unknown vector index error kind: {kind}")
        remediation = None
        if kind == "dimension_mismatch":
            remediation = "Embedding model changed; clear the index and run `brain catch-up`"
        super().__init__(message, kind=kind, remediation=remediation)


class EmbeddingError(BrainError):
    """Terminal failure of an embedding batch (e.g. model dimension drift)."""

    kind = "embedding"


# ---- Search ----

class SearchError(BrainError):
    """Search failed. kind is guard_rejected, upstream_unavailable or invalid_query."""

    def __init__(self, kind: str, message: str):
        super().__init__(message, kind=kind)


class UpstreamUnavailableError(BrainError):
    """The upstream note store could not be reached."""

    kind = "upstream_unavailable"


class NoteNotFoundError(BrainError):
    """A note does not exist in the upstream store."""

    kind = "not_found"


# ---- Session state ----

class VersionConflictError(BrainError):
    """Concurrent writers kept advancing the session version."""

    kind = "version_conflict"

    def __init__(self, session_id: str, attempts: int):
        super().__init__(
            f"Session {session_id} changed concurrently; gave up after {attempts} attempts"
        )
        self.session_id = session_id
        self.attempts = attempts


class SignatureError(BrainError):
    """A session document failed HMAC verification."""

    kind = "signature"


class SessionNotFoundError(BrainError):
    kind = "session_not_found"


class SessionCorruptError(BrainError):
    """A session note parsed but is not a usable session document."""

    kind = "session_corrupt"


class SecretMissingError(BrainError):
    kind = "secret_missing"

    def __init__(self, var: str):
        super().__init__(
            f"{var} is not set",
            remediation=f"Export {var} with a random secret before starting brain",
        )


# ---- Workflow ----

class ProtocolValidationError(BrainError):
    """Session protocol validation failed. ``checks`` lists the failures."""

    kind = "protocol_validation"

    def __init__(self, message: str, checks: list[dict], remediation: Optional[str] = None):
        super().__init__(message, remediation=remediation)
        self.checks = checks

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["checks"] = self.checks
        return data


# ---- Config ----

class ConfigValidationError(BrainError):
    kind = "config_validation"


class PathRejectedError(BrainError):
    kind = "path_rejected"


class LockTimeoutError(BrainError):
    kind = "lock_timeout"


class ReconfigurationError(BrainError):
    """Applying a config change failed and was rolled back."""

    kind = "reconfiguration"

    def __init__(self, message: str, *, failed_entry: Optional[dict] = None):
        super().__init__(
            message,
            remediation="Fix the cause and rerun the migration with `brain config set` or `brain config rollback`",
        )
        self.failed_entry = failed_entry

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.failed_entry is not None:
            data["failed_entry"] = self.failed_entry
        return data


# ---- Error log ----

def _error_log_path() -> Path:
    """Resolve error log path, respecting BRAIN_CONFIG_DIR."""
    config_dir = os.environ.get("BRAIN_CONFIG_DIR")
    if config_dir:
        return Path(config_dir) / "brain-errors.log"
    return Path.home() / ".config" / "brain" / "brain-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
