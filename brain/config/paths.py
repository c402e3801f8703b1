"""
Path safety predicate and memories-path resolution.

A path is rejected when it contains a ``..`` segment (raw or
percent-encoded), a NUL byte, or normalizes to somewhere under a system
root. A leading ``~`` is expanded first.
"""

import os
import re
from typing import Optional

from ..errors import PathRejectedError

UNIX_SYSTEM_ROOTS = (
    "/etc", "/usr", "/var", "/bin", "/sbin", "/lib", "/lib64",
    "/boot", "/dev", "/proc", "/sys", "/run",
)

WINDOWS_SYSTEM_ROOTS = (
    "c:\\windows",
    "c:\\program files",
    "c:\\program files (x86)",
    "c:\\programdata",
    "c:\\system volume information",
)

_ENCODED_DOTS = re.compile(r"%2e%2e", re.IGNORECASE)
_SEGMENT_SPLIT = re.compile(r"[\\/]+")


def expand_path(path: str) -> str:
    """Expand a leading ``~`` and normalize separators and dots."""
    return os.path.normpath(os.path.expanduser(path))


def _under(path: str, root: str, sep: str) -> bool:
    return path == root or path.startswith(root + sep)


def path_rejection(path: str) -> Optional[str]:
    """Reason a path is unsafe, or None if it is acceptable."""
    if not path or not path.strip():
        return "Path is empty"
    if "\x00" in path:
        return "Path contains a null byte"
    if _ENCODED_DOTS.search(path):
        return "Path contains an encoded traversal sequence"
    if ".." in _SEGMENT_SPLIT.split(path):
        return "Path contains '..'"

    expanded = expand_path(path)
    posix = expanded.replace("\\", "/")
    for root in UNIX_SYSTEM_ROOTS:
        if _under(posix, root, "/"):
            return f"Path is under system directory {root}"
    windows = expanded.replace("/", "\\").lower()
    for root in WINDOWS_SYSTEM_ROOTS:
        if _under(windows, root, "\\"):
            return f"Path is under system directory {root}"
    return None


def is_safe_path(path: str) -> bool:
    return path_rejection(path) is None


def validate_path(path: str) -> str:
    """Return the expanded, normalized path.

    Raises:
        PathRejectedError: the path fails the safety predicate
    """
    reason = path_rejection(path)
    if reason is not None:
        raise PathRejectedError(f"{reason}: {path!r}")
    return expand_path(path)


def resolve_memories_path(name: str, project, memories_location: str) -> str:
    """
    Where a project's notes live.

    DEFAULT -> {memories_location}/{name}
    CODE    -> {code_path}/docs
    CUSTOM  -> memories_path

    Raises:
        PathRejectedError: the resolved path is unsafe or CUSTOM lacks a path
    """
    mode = project.memories_mode
    if mode == "DEFAULT":
        return validate_path(os.path.join(expand_path(memories_location), name))
    if mode == "CODE":
        return validate_path(os.path.join(expand_path(project.code_path), "docs"))
    if mode == "CUSTOM":
        if not project.memories_path:
            raise PathRejectedError(f"Project {name}: CUSTOM mode requires memories_path")
        return validate_path(project.memories_path)
    raise PathRejectedError(f"Project {name}: unknown memories mode {mode}")
