"""
Polling watcher for the config file.

A change is acted on only after the file has been quiet for the debounce
window and its checksum is stable across a short settle interval (an
editor still writing in chunks shows two different checksums). While
``is_busy()`` reports a migration in progress the change stays pending and
is retried on a later poll.
"""

import hashlib
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEBOUNCE = 2.0
SETTLE = 0.5
POLL_INTERVAL = 0.25


def _checksum(path: Path) -> Optional[str]:
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except FileNotFoundError:
        return None


def _signature(path: Path):
    try:
        st = path.stat()
    except FileNotFoundError:
        return None
    return (st.st_mtime_ns, st.st_size)


class ConfigWatcher:
    def __init__(
        self,
        path: Path,
        on_change: Callable[[], None],
        *,
        debounce: float = DEBOUNCE,
        settle: float = SETTLE,
        poll_interval: float = POLL_INTERVAL,
        is_busy: Callable[[], bool] = lambda: False,
    ):
        self.path = Path(path)
        self._on_change = on_change
        self._debounce = debounce
        self._settle = settle
        self._poll_interval = poll_interval
        self._is_busy = is_busy
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._signature = _signature(self.path)
        self._applied_checksum = _checksum(self.path)
        self._changed_at: Optional[float] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="brain-config-watcher", daemon=True)
        self._thread.start()
        logger.info("Watching %s (debounce %.1fs)", self.path, self._debounce)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    @property
    def pending(self) -> bool:
        return self._changed_at is not None

    def mark_applied(self) -> None:
        """Record the file's current content as already handled (own writes)."""
        self._signature = _signature(self.path)
        self._applied_checksum = _checksum(self.path)
        self._changed_at = None

    def _run(self) -> None:
        while not self._stop.wait(self._poll_interval):
            try:
                self.poll()
            except Exception as e:
                logger.error("Config watcher error: %s", e)

    def poll(self, now: Optional[float] = None) -> bool:
        """One watcher step. Returns True when ``on_change`` was invoked."""
        now = time.monotonic() if now is None else now
        sig = _signature(self.path)
        if sig != self._signature:
            self._signature = sig
            self._changed_at = now
            return False
        if self._changed_at is None or now - self._changed_at < self._debounce:
            return False
        return self.process_pending()

    def process_pending(self) -> bool:
        """Partial-write check, then hand the change to ``on_change``."""
        first = _checksum(self.path)
        time.sleep(self._settle)
        second = _checksum(self.path)
        if first != second:
            logger.debug("Config file still being written; deferring")
            self._signature = _signature(self.path)
            self._changed_at = time.monotonic()
            return False
        if second == self._applied_checksum:
            self._changed_at = None
            return False
        if self._is_busy():
            logger.info("Migration in progress; queueing config edit")
            return False
        self._changed_at = None
        self._applied_checksum = second
        self._on_change()
        return True
