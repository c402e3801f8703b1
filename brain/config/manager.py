"""
ConfigManager: the single owner of the live config.

The applied config is an immutable ``BrainConfig`` held in one reference
and replaced wholesale. Every change (``set``, ``reset``, a file edit,
``rollback``, legacy ``migrate``) goes through ``apply``, which diffs
against the applied config, takes the right locks, moves note roots via
copy manifests, saves and translates, then triggers catch-up. Any failure
undoes copied files and restores the prior config.
"""

import copy
import logging
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, Optional

from ..errors import BrainError, ConfigValidationError, ReconfigurationError
from ..logging_config import apply_log_level
from .diff import ConfigDiff, diff_configs, memories_path_changes
from .locking import LOCK_TIMEOUT, LockManager
from .manifest import (
    CopyManifest,
    ManifestStore,
    copy_file,
    create_manifest,
    execute_manifest,
    rollback_manifest,
)
from .migrate import load_legacy, transform_legacy
from .paths import validate_path
from .rollback import RollbackManager
from .schema import BrainConfig
from .store import get_config_dir, load_config, save_config, validate_config_dict
from .translate import sync_to_upstream, upstream_config_path, write_upstream
from .watcher import SETTLE, ConfigWatcher

logger = logging.getLogger(__name__)

_MISSING = object()


def _split(path: Optional[str]) -> list[str]:
    if path is None or path in ("", "all"):
        return []
    return [p for p in path.split(".") if p]


def _lookup(data: Any, keys: list[str]) -> Any:
    for key in keys:
        if not isinstance(data, dict) or key not in data:
            return _MISSING
        data = data[key]
    return data


class ConfigManager:
    def __init__(
        self,
        config_dir: Optional[Path] = None,
        *,
        upstream_path: Optional[Path] = None,
        catch_up: Optional[Callable[[str], Any]] = None,
        copy_fn: Callable[[str, str], None] = copy_file,
        lock_timeout: float = LOCK_TIMEOUT,
    ):
        self.config_dir = Path(config_dir) if config_dir else get_config_dir()
        self.config_path = self.config_dir / "config.json"
        self.upstream_path = Path(upstream_path) if upstream_path else upstream_config_path()
        self.locks = LockManager(self.config_dir, timeout=lock_timeout)
        self.rollbacks = RollbackManager(self.config_dir)
        self.manifests = ManifestStore(self.config_dir)
        self._catch_up = catch_up
        self._copy = copy_fn
        self._current: BrainConfig = BrainConfig()
        self._migrating = threading.Event()
        self._watcher: Optional[ConfigWatcher] = None
        self.listeners: list[Callable[[BrainConfig, ConfigDiff], None]] = []

    # ---- Lifecycle ----

    def startup(self) -> BrainConfig:
        """Recover interrupted migrations, load the config, set the baseline."""
        self.recover()
        try:
            config = self.load()
        except ConfigValidationError as e:
            logger.error("Config on disk is invalid (%s); using last known good", e.message)
            self.rollbacks.initialize(None)
            if self.rollbacks.last_known_good is None:
                raise
            config = self.rollbacks.last_known_good.config
        else:
            self.rollbacks.initialize(config)
        self._current = config
        apply_log_level(config.logging.level)
        return config

    def recover(self) -> list[dict]:
        """Roll back every copy manifest left by a crashed migration."""
        results = []
        for mid in self.manifests.list_ids():
            manifest = self.manifests.load(mid)
            if manifest is None:
                continue
            if manifest.is_incomplete:
                logger.warning("Rolling back interrupted migration %s (%s)", mid, manifest.project)
                results.append(rollback_manifest(self.manifests, manifest))
            else:
                self.manifests.delete(mid)
        return results

    def close(self) -> None:
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None

    # ---- Reads ----

    @property
    def config(self) -> BrainConfig:
        return self._current

    @property
    def migrating(self) -> bool:
        return self._migrating.is_set()

    def load(self) -> BrainConfig:
        return load_config(self.config_path)

    def get(self, path: Optional[str] = None) -> Any:
        """Value at a dotted path (``sync.delay_ms``); whole config when empty."""
        value = _lookup(self._current.to_json_dict(), _split(path))
        if value is _MISSING:
            raise ConfigValidationError(f"Unknown config key: {path}")
        return value

    # ---- Writes ----

    def save(self, config: BrainConfig) -> None:
        """Write brain config, then translate to upstream (failure only logged)."""
        save_config(config, self.config_path)
        sync_to_upstream(config, self.upstream_path)
        if self._watcher is not None:
            self._watcher.mark_applied()

    def translate(self) -> dict:
        return write_upstream(self._current, self.upstream_path)

    def set(self, path: str, value: Any) -> ConfigDiff:
        keys = _split(path)
        if not keys:
            raise ConfigValidationError("A config key is required")
        data = copy.deepcopy(self._current.to_json_dict())
        node = data
        for key in keys[:-1]:
            node = node.setdefault(key, {})
            if not isinstance(node, dict):
                raise ConfigValidationError(f"Unknown config key: {path}")
        node[keys[-1]] = value
        return self.apply(validate_config_dict(data), reason=f"set {path}")

    def reset(self, path: Optional[str] = None) -> ConfigDiff:
        """Restore a key to its default (``all``/None resets everything).

        Keys without a default (a project, a project's field) are removed.
        """
        keys = _split(path)
        if not keys:
            return self.apply(BrainConfig(), reason="reset all")
        data = copy.deepcopy(self._current.to_json_dict())
        default = _lookup(BrainConfig().to_json_dict(), keys)
        parent = _lookup(data, keys[:-1])
        if not isinstance(parent, dict) or keys[-1] not in parent:
            raise ConfigValidationError(f"Unknown config key: {path}")
        if default is _MISSING:
            del parent[keys[-1]]
        else:
            parent[keys[-1]] = default
        return self.apply(validate_config_dict(data), reason=f"reset {path}")

    def apply(self, new: BrainConfig, *, reason: str = "apply") -> ConfigDiff:
        """Reconfigure from the applied config to ``new``.

        Raises:
            ReconfigurationError: a step failed; copies were undone and the
                prior config restored on disk and upstream
            LockTimeoutError: the needed locks were not free within 30 s
        """
        old = self._current
        diff = diff_configs(old, new)
        if not diff.has_changes:
            return diff
        if diff.touches_globals or len(diff.affected_projects) > 1:
            lock = self.locks.global_lock()
        else:
            lock = self.locks.project_locks(diff.affected_projects)
        with lock:
            self._migrating.set()
            try:
                self._reconfigure(old, new, diff, reason)
            finally:
                self._migrating.clear()
        for listener in list(self.listeners):
            listener(new, diff)
        return diff

    def _reconfigure(self, old: BrainConfig, new: BrainConfig, diff: ConfigDiff, reason: str) -> None:
        logger.info("Applying config change (%s): %s", reason, diff.to_dict())
        self.rollbacks.snapshot(old, reason)
        moves = memories_path_changes(old, new)
        done: list[CopyManifest] = []
        try:
            for project, (source, target) in moves.items():
                validate_path(target)
                manifest = create_manifest(self.manifests, project, source, target)
                done.append(manifest)
                failed = execute_manifest(self.manifests, manifest, self._copy)
                if failed is not None:
                    raise ReconfigurationError(
                        f"Migration of {project} failed at {failed.sourcePath}: {failed.error}",
                        failed_entry=asdict(failed),
                    )
            self.save(new)
            self._current = new
            if "logging.level" in diff.global_fields_changed:
                apply_log_level(new.logging.level)
            if self._catch_up is not None:
                for project in sorted(set(diff.projects_added) | set(diff.projects_modified) | set(moves)):
                    self._catch_up(project)
        except (BrainError, OSError) as e:
            for manifest in reversed(done):
                rollback_manifest(self.manifests, manifest)
            self._restore(old)
            if isinstance(e, ReconfigurationError):
                raise
            raise ReconfigurationError(f"Reconfiguration failed: {e}") from e

    def _restore(self, config: BrainConfig) -> None:
        try:
            self.save(config)
        except (BrainError, OSError) as e:
            logger.error("Could not restore prior config: %s", e)
        self._current = config

    def rollback(self, target: str = "lastKnownGood") -> BrainConfig:
        """Restore a snapshot through the normal apply path."""
        snap = self.rollbacks.target(target)
        if not self.apply(snap.config, reason=f"rollback to {target}").has_changes:
            # files may still have drifted from the applied config
            self.save(snap.config)
        return snap.config

    def migrate(self, old: Optional[dict] = None, *, force: bool = False) -> dict:
        """Import the legacy config once. The legacy file is left in place."""
        if self.config_path.exists() and not force:
            return {"migrated": False, "reason": "config already exists"}
        if old is None:
            old = load_legacy()
        if old is None:
            return {"migrated": False, "reason": "no legacy config"}
        new = transform_legacy(old)
        if not self.apply(new, reason="legacy migration").has_changes:
            self.save(new)
        return {"migrated": True, "config": new.to_json_dict()}

    # ---- Watching ----

    def on_file_change(self) -> None:
        """Apply an edited config file; invalid edits are reported, not applied."""
        try:
            new = self.load()
        except ConfigValidationError as e:
            logger.error("Ignoring invalid config edit: %s", e.message)
            return
        try:
            self.apply(new, reason="file edit")
        except BrainError as e:
            logger.error("Config edit not applied: %s", e.message)

    def watch(self, *, settle: float = SETTLE) -> ConfigWatcher:
        if self._watcher is None:
            self._watcher = ConfigWatcher(
                self.config_path,
                self.on_file_change,
                debounce=self._current.watcher.debounce_ms / 1000.0,
                settle=settle,
                is_busy=self._migrating.is_set,
            )
            self._watcher.start()
        return self._watcher
