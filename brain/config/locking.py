"""
Hierarchical config locks.

Either one global lock or any number of project locks is held, never
both. Project locks do not block one another. In-process exclusion uses a
condition variable; each acquired lock also holds a ``filelock.FileLock``
under ``{config_dir}/locks/`` so two brain processes do not migrate the
same project at once.
"""

import logging
import re
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional

from filelock import FileLock, Timeout

from ..errors import LockTimeoutError
from .store import LOCK_DIR, ensure_private_dir

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = 30.0
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


class LockManager:
    def __init__(self, config_dir: Path, *, timeout: float = LOCK_TIMEOUT):
        self._lock_dir = Path(config_dir) / LOCK_DIR
        self._timeout = timeout
        self._cond = threading.Condition()
        self._global_held = False
        self._projects_held: set[str] = set()

    def _file_lock(self, name: str) -> FileLock:
        ensure_private_dir(self._lock_dir)
        return FileLock(str(self._lock_dir / f"{_UNSAFE.sub('_', name)}.lock"))

    def _wait(self, predicate, deadline: float, what: str) -> None:
        while not predicate():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockTimeoutError(
                    f"Timed out after {self._timeout:.0f}s waiting for {what}",
                    remediation="Another reconfiguration is in progress; retry later",
                )
            self._cond.wait(remaining)

    @property
    def global_held(self) -> bool:
        return self._global_held

    def held_projects(self) -> set[str]:
        with self._cond:
            return set(self._projects_held)

    @contextmanager
    def global_lock(self, timeout: Optional[float] = None) -> Iterator[None]:
        """Exclusive lock over the whole config."""
        timeout = self._timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        with self._cond:
            self._wait(
                lambda: not self._global_held and not self._projects_held,
                deadline, "the global config lock",
            )
            self._global_held = True
        flock = self._file_lock("global")
        try:
            flock.acquire(timeout=max(0.0, deadline - time.monotonic()))
        except Timeout as e:
            self._release_global()
            raise LockTimeoutError(f"Timed out waiting for {flock.lock_file}") from e
        logger.debug("Acquired global config lock")
        try:
            yield
        finally:
            flock.release()
            self._release_global()
            logger.debug("Released global config lock")

    def _release_global(self) -> None:
        with self._cond:
            self._global_held = False
            self._cond.notify_all()

    @contextmanager
    def project_locks(self, projects: Iterable[str], timeout: Optional[float] = None) -> Iterator[None]:
        """Lock a set of projects; all or nothing, acquired in sorted order."""
        names = sorted(set(projects))
        timeout = self._timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        with self._cond:
            self._wait(
                lambda: not self._global_held and not (self._projects_held & set(names)),
                deadline, f"project locks {names}",
            )
            self._projects_held.update(names)
        flocks = []
        try:
            for name in names:
                flock = self._file_lock(f"project-{name}")
                flock.acquire(timeout=max(0.0, deadline - time.monotonic()))
                flocks.append(flock)
        except Timeout as e:
            for flock in reversed(flocks):
                flock.release()
            self._release_projects(names)
            raise LockTimeoutError(f"Timed out waiting for project locks {names}") from e
        logger.debug("Acquired project locks %s", names)
        try:
            yield
        finally:
            for flock in reversed(flocks):
                flock.release()
            self._release_projects(names)

    def _release_projects(self, names: list[str]) -> None:
        with self._cond:
            self._projects_held.difference_update(names)
            self._cond.notify_all()
