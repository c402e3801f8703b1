"""
Config snapshots: a ``last-known-good.json`` baseline plus a FIFO of up to
ten ``snapshot-{n}.json`` files, all under ``{config_dir}/rollback/``.
"""

import hashlib
import json
import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..errors import BrainError, ConfigValidationError
from .schema import BrainConfig
from .store import ROLLBACK_DIR, atomic_write_json, validate_config_dict

logger = logging.getLogger(__name__)

MAX_SNAPSHOTS = 10
LAST_KNOWN_GOOD_FILE = "last-known-good.json"
ROLLBACK_TARGETS = ("lastKnownGood", "previous")
_SNAPSHOT_FILE = re.compile(r"^snapshot-(\d+)\.json$")


def config_checksum(config: BrainConfig) -> str:
    canonical = json.dumps(config.to_json_dict(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Snapshot:
    id: str
    created_at: str
    reason: str
    checksum: str
    config: BrainConfig

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "reason": self.reason,
            "checksum": self.checksum,
            "config": self.config.to_json_dict(),
        }


def _read_snapshot(path: Path) -> Optional[Snapshot]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        config = validate_config_dict(data["config"])
    except (OSError, ValueError, KeyError, TypeError, ConfigValidationError) as e:
        logger.warning("Discarding unreadable snapshot %s: %s", path, e)
        return None
    if config_checksum(config) != data.get("checksum"):
        logger.warning("Discarding snapshot %s: checksum mismatch", path)
        return None
    return Snapshot(data.get("id", path.stem), data.get("createdAt", ""),
                    data.get("reason", ""), data["checksum"], config)


class RollbackManager:
    def __init__(self, config_dir: Path, *, max_snapshots: int = MAX_SNAPSHOTS):
        self.dir = Path(config_dir) / ROLLBACK_DIR
        self.max_snapshots = max_snapshots
        self._lock = threading.Lock()
        self._last_known_good: Optional[Snapshot] = None
        self._history: list[tuple[int, Snapshot]] = []

    def initialize(self, current: Optional[BrainConfig]) -> None:
        """Load persisted state; ``current`` (when valid) becomes the baseline."""
        with self._lock:
            self._history = []
            if self.dir.is_dir():
                for p in self.dir.iterdir():
                    m = _SNAPSHOT_FILE.match(p.name)
                    if m:
                        snap = _read_snapshot(p)
                        if snap is not None:
                            self._history.append((int(m.group(1)), snap))
                self._history.sort(key=lambda item: item[0])
            lkg_path = self.dir / LAST_KNOWN_GOOD_FILE
            self._last_known_good = _read_snapshot(lkg_path) if lkg_path.exists() else None
        if current is not None:
            self.mark_good(current, "Baseline at startup")

    def _make(self, config: BrainConfig, reason: str, snap_id: str) -> Snapshot:
        return Snapshot(snap_id, datetime.now(timezone.utc).isoformat(), reason,
                        config_checksum(config), config)

    def snapshot(self, config: BrainConfig, reason: str) -> Snapshot:
        """Push a snapshot; evicts the oldest beyond the FIFO limit."""
        with self._lock:
            n = self._history[-1][0] + 1 if self._history else 1
            snap = self._make(config, reason, f"snapshot-{n}")
            atomic_write_json(self.dir / f"snapshot-{n}.json", snap.to_dict())
            self._history.append((n, snap))
            while len(self._history) > self.max_snapshots:
                old_n, _ = self._history.pop(0)
                (self.dir / f"snapshot-{old_n}.json").unlink(missing_ok=True)
            return snap

    def mark_good(self, config: BrainConfig, reason: str) -> Snapshot:
        with self._lock:
            snap = self._make(config, reason, "last-known-good")
            atomic_write_json(self.dir / LAST_KNOWN_GOOD_FILE, snap.to_dict())
            self._last_known_good = snap
            return snap

    @property
    def last_known_good(self) -> Optional[Snapshot]:
        return self._last_known_good

    def history(self) -> list[Snapshot]:
        with self._lock:
            return [snap for _, snap in self._history]

    def matches_last_known_good(self, config: BrainConfig) -> bool:
        lkg = self._last_known_good
        return lkg is not None and lkg.checksum == config_checksum(config)

    def target(self, which: str) -> Snapshot:
        """Snapshot to restore for ``lastKnownGood`` or ``previous``."""
        if which not in ROLLBACK_TARGETS:
            raise BrainError(f"Unknown rollback target {which!r}", kind="invalid_argument")
        with self._lock:
            if which == "lastKnownGood":
                snap = self._last_known_good
            else:
                snap = self._history[-1][1] if self._history else None
        if snap is None:
            raise BrainError(f"No {which} snapshot available", kind="rollback_unavailable")
        if config_checksum(snap.config) != snap.checksum:
            raise BrainError("Snapshot checksum mismatch", kind="rollback_unavailable")
        return snap
