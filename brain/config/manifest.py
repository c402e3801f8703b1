"""
Copy manifests: a persisted, per-file record of a note-root migration.

Every source file gets an entry with its SHA-256. After each copy the
target is re-hashed; the entry moves pending -> copied -> verified, or to
failed. A manifest stays on disk under ``rollback/`` until every entry is
verified, so an interrupted migration can be undone on the next start.
"""

import hashlib
import json
import logging
import os
import re
import secrets
import shutil
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .store import ROLLBACK_DIR, atomic_write_json

logger = logging.getLogger(__name__)

MANIFEST_PREFIX = "migration-"
MANIFEST_SUFFIX = ".manifest.json"
STATUSES = ("pending", "copied", "verified", "failed")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _base36(n: int) -> str:
    out = ""
    while True:
        n, r = divmod(n, 36)
        out = _BASE36[r] + out
        if n == 0:
            return out


def new_migration_id() -> str:
    """``migration-{base36 epoch ms}-{8 hex}``"""
    return f"{MANIFEST_PREFIX}{_base36(int(time.time() * 1000))}-{secrets.token_hex(4)}"


def file_checksum(path) -> str:
    """Hex SHA-256 of a file's bytes."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(65536), b""):
            h.update(block)
    return h.hexdigest()


def list_source_files(root) -> list[str]:
    """Relative paths of every regular file under ``root``, sorted."""
    root = Path(root)
    if not root.is_dir():
        return []
    return sorted(
        str(p.relative_to(root)) for p in root.rglob("*") if p.is_file()
    )


@dataclass
class ManifestEntry:
    sourcePath: str
    targetPath: str
    sourceChecksum: str
    targetChecksum: Optional[str] = None
    status: str = "pending"
    copiedAt: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CopyManifest:
    migrationId: str
    project: str
    sourceRoot: str
    targetRoot: str
    startedAt: str = field(default_factory=_now)
    completedAt: Optional[str] = None
    entries: list[ManifestEntry] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CopyManifest":
        entries = [ManifestEntry(**e) for e in data.get("entries", [])]
        return cls(
            migrationId=data["migrationId"],
            project=data["project"],
            sourceRoot=data["sourceRoot"],
            targetRoot=data["targetRoot"],
            startedAt=data.get("startedAt") or _now(),
            completedAt=data.get("completedAt"),
            entries=entries,
        )

    @property
    def is_incomplete(self) -> bool:
        return self.completedAt is None or any(e.status != "verified" for e in self.entries)

    def counts(self) -> dict[str, int]:
        out = {s: 0 for s in STATUSES}
        for e in self.entries:
            out[e.status] += 1
        return out


class ManifestStore:
    """Reads and writes manifests in ``{config_dir}/rollback/``."""

    def __init__(self, config_dir: Path):
        self.dir = Path(config_dir) / ROLLBACK_DIR

    def path_for(self, migration_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_-]", "_", migration_id)
        return self.dir / f"{safe}{MANIFEST_SUFFIX}"

    def save(self, manifest: CopyManifest) -> None:
        atomic_write_json(self.path_for(manifest.migrationId), manifest.to_dict())

    def load(self, migration_id: str) -> Optional[CopyManifest]:
        path = self.path_for(migration_id)
        if not path.exists():
            return None
        try:
            return CopyManifest.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Unreadable manifest %s: %s", path, e)
            return None

    def delete(self, migration_id: str) -> None:
        self.path_for(migration_id).unlink(missing_ok=True)

    def list_ids(self) -> list[str]:
        if not self.dir.is_dir():
            return []
        return sorted(
            p.name[: -len(MANIFEST_SUFFIX)]
            for p in self.dir.glob(f"{MANIFEST_PREFIX}*{MANIFEST_SUFFIX}")
        )

    def incomplete(self) -> list[CopyManifest]:
        found = []
        for mid in self.list_ids():
            manifest = self.load(mid)
            if manifest is not None and manifest.is_incomplete:
                found.append(manifest)
        return found


def create_manifest(store: ManifestStore, project: str, source_root, target_root) -> CopyManifest:
    """Enumerate ``source_root`` and persist a pending manifest."""
    source_root, target_root = str(source_root), str(target_root)
    manifest = CopyManifest(
        migrationId=new_migration_id(),
        project=project,
        sourceRoot=source_root,
        targetRoot=target_root,
    )
    for rel in list_source_files(source_root):
        src = os.path.join(source_root, rel)
        manifest.entries.append(ManifestEntry(
            sourcePath=src,
            targetPath=os.path.join(target_root, rel),
            sourceChecksum=file_checksum(src),
        ))
    store.save(manifest)
    logger.info("Created manifest %s for %s (%d files)",
                manifest.migrationId, project, len(manifest.entries))
    return manifest


def copy_file(src: str, dst: str) -> None:
    os.makedirs(os.path.dirname(dst), exist_ok=True)
    shutil.copy2(src, dst)


def execute_manifest(
    store: ManifestStore,
    manifest: CopyManifest,
    copy: Callable[[str, str], None] = copy_file,
) -> Optional[ManifestEntry]:
    """Copy and verify each pending entry in order.

    Stops at the first failure and returns the failed entry (already
    persisted with ``status="failed"``). Returns None when every entry is
    verified; the manifest is then marked complete and removed.
    """
    for entry in manifest.entries:
        if entry.status == "verified":
            continue
        try:
            copy(entry.sourcePath, entry.targetPath)
            entry.targetChecksum = file_checksum(entry.targetPath)
            entry.status = "copied"
            entry.copiedAt = _now()
            store.save(manifest)
            if entry.targetChecksum != entry.sourceChecksum:
                raise OSError(
                    f"Checksum mismatch: expected {entry.sourceChecksum}, got {entry.targetChecksum}"
                )
            entry.status = "verified"
            store.save(manifest)
        except OSError as e:
            if entry.status == "copied":
                # written but corrupt
                Path(entry.targetPath).unlink(missing_ok=True)
            entry.status = "failed"
            entry.error = str(e)
            store.save(manifest)
            logger.error("Copy failed %s -> %s: %s", entry.sourcePath, entry.targetPath, e)
            return entry
    manifest.completedAt = _now()
    store.save(manifest)
    store.delete(manifest.migrationId)
    logger.info("Migration %s verified (%d files)", manifest.migrationId, len(manifest.entries))
    return None


def rollback_manifest(store: ManifestStore, manifest: CopyManifest) -> dict:
    """Remove copied/verified targets, prune empty dirs, drop the manifest.

    Source files are never touched.
    """
    removed, failures = 0, []
    for entry in manifest.entries:
        if entry.status not in ("copied", "verified"):
            continue
        try:
            if os.path.exists(entry.targetPath):
                os.unlink(entry.targetPath)
                removed += 1
        except OSError as e:
            failures.append({"path": entry.targetPath, "error": str(e)})

    target_root = Path(manifest.targetRoot)
    if target_root.is_dir():
        for d in sorted((p for p in target_root.rglob("*") if p.is_dir()), reverse=True):
            if not any(d.iterdir()):
                d.rmdir()
        if not any(target_root.iterdir()):
            target_root.rmdir()

    store.delete(manifest.migrationId)
    logger.info("Rolled back %s: removed %d files, %d failures",
                manifest.migrationId, removed, len(failures))
    return {"success": not failures, "filesRolledBack": removed, "failures": failures}
