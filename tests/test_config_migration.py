"""Tests for config locks, copy manifests, snapshots and the file watcher."""

import json
import re
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from brain.config.locking import LockManager
from brain.config.manifest import (
    ManifestStore,
    copy_file,
    create_manifest,
    execute_manifest,
    file_checksum,
    new_migration_id,
    rollback_manifest,
)
from brain.config.rollback import RollbackManager, config_checksum
from brain.config.store import validate_config_dict
from brain.config.watcher import ConfigWatcher
from brain.errors import BrainError, LockTimeoutError


def config_with_delay(ms):
    return validate_config_dict({"sync": {"delay_ms": ms}})


@pytest.fixture
def source(tmp_path):
    root = tmp_path / "src"
    (root / "sub").mkdir(parents=True)
    for name in ("a.md", "b.md", "c.md", "sub/d.md"):
        (root / name).write_text(f"note {name}\n")
    return root


@pytest.fixture
def store(tmp_path):
    return ManifestStore(tmp_path / "cfg")


def failing_on(n):
    calls = []

    def copy(src, dst):
        calls.append(src)
        if len(calls) == n:
            raise OSError("disk full")
        copy_file(src, dst)
    return copy


class TestLocks:
    @pytest.fixture
    def locks(self, tmp_path):
        return LockManager(tmp_path, timeout=0.1)

    def test_disjoint_projects_coexist(self, locks):
        with locks.project_locks(["a"]):
            with locks.project_locks(["b"]):
                assert locks.held_projects() == {"a", "b"}
        assert locks.held_projects() == set()

    def test_same_project_excluded(self, locks):
        with locks.project_locks(["a", "b"]):
            with pytest.raises(LockTimeoutError):
                with locks.project_locks(["b"]):
                    pass

    def test_global_excludes_projects(self, locks):
        with locks.project_locks(["a"]):
            with pytest.raises(LockTimeoutError):
                with locks.global_lock():
                    pass
        with locks.global_lock():
            assert locks.global_held
            with pytest.raises(LockTimeoutError) as exc_info:
                with locks.project_locks(["a"]):
                    pass
        assert exc_info.value.remediation
        assert not locks.global_held

    def test_waiter_acquires_after_release(self, tmp_path):
        locks = LockManager(tmp_path, timeout=5)
        entered = threading.Event()

        def hold():
            with locks.global_lock():
                entered.set()
                time.sleep(0.1)

        t = threading.Thread(target=hold)
        t.start()
        entered.wait(5)
        with locks.project_locks(["a"]):
            assert not locks.global_held
        t.join()

    def test_lock_files_live_under_config_dir(self, locks, tmp_path):
        with locks.project_locks(["my project"]):
            pass
        assert (tmp_path / "locks" / "project-my_project.lock").exists()


class TestManifest:
    def test_migration_id_format(self):
        assert re.match(r"^migration-[0-9a-z]+-[0-9a-f]{8}$", new_migration_id())

    def test_all_entries_verified(self, store, source, tmp_path):
        target = tmp_path / "dst"
        manifest = create_manifest(store, "demo", source, target)
        assert store.list_ids() == [manifest.migrationId]
        assert [e.status for e in manifest.entries] == ["pending"] * 4

        assert execute_manifest(store, manifest) is None

        for entry in manifest.entries:
            assert entry.status == "verified"
            assert entry.targetChecksum == entry.sourceChecksum
            assert file_checksum(entry.targetPath) == entry.sourceChecksum
        assert manifest.completedAt is not None
        assert store.list_ids() == []

    def test_failure_stops_and_persists(self, store, source, tmp_path):
        manifest = create_manifest(store, "demo", source, tmp_path / "dst")

        failed = execute_manifest(store, manifest, copy=failing_on(2))

        assert failed is manifest.entries[1]
        assert failed.status == "failed"
        assert failed.error == "disk full"
        persisted = store.load(manifest.migrationId)
        assert persisted.counts() == {"pending": 2, "copied": 0, "verified": 1, "failed": 1}
        assert persisted.is_incomplete

    def test_checksum_mismatch_removes_target(self, store, source, tmp_path):
        manifest = create_manifest(store, "demo", source, tmp_path / "dst")

        def corrupt(src, dst):
            copy_file(src, dst)
            with open(dst, "a") as f:
                f.write("garbage")

        failed = execute_manifest(store, manifest, copy=corrupt)

        assert "Checksum mismatch" in failed.error
        assert not (tmp_path / "dst" / "a.md").exists()

    def test_rollback_removes_only_copied(self, store, source, tmp_path):
        target = tmp_path / "dst"
        target.mkdir()
        (target / "keep.md").write_text("mine")
        manifest = create_manifest(store, "demo", source, target)
        execute_manifest(store, manifest, copy=failing_on(3))

        result = rollback_manifest(store, manifest)

        assert result == {"success": True, "filesRolledBack": 2, "failures": []}
        assert sorted(p.name for p in target.rglob("*")) == ["keep.md"]
        assert sorted(p.name for p in source.rglob("*.md")) == ["a.md", "b.md", "c.md", "d.md"]
        assert store.list_ids() == []

    def test_rollback_prunes_empty_target(self, store, source, tmp_path):
        target = tmp_path / "dst"
        manifest = create_manifest(store, "demo", source, target)
        execute_manifest(store, manifest, copy=failing_on(4))
        rollback_manifest(store, manifest)
        assert not target.exists()

    def test_incomplete_listing(self, store, source, tmp_path):
        done = create_manifest(store, "one", source, tmp_path / "d1")
        broken = create_manifest(store, "two", source, tmp_path / "d2")
        execute_manifest(store, done)
        execute_manifest(store, broken, copy=failing_on(1))
        assert [m.migrationId for m in store.incomplete()] == [broken.migrationId]
        assert store.list_ids() == [broken.migrationId]


class TestSnapshots:
    @pytest.fixture
    def rollbacks(self, tmp_path):
        mgr = RollbackManager(tmp_path)
        mgr.initialize(None)
        return mgr

    def test_fifo_of_ten(self, rollbacks, tmp_path):
        for i in range(12):
            rollbacks.snapshot(config_with_delay(i), f"change {i}")

        history = rollbacks.history()
        assert len(history) == 10
        assert [s.config.sync.delay_ms for s in history] == list(range(2, 12))
        files = sorted(p.name for p in (tmp_path / "rollback").glob("snapshot-*.json"))
        assert len(files) == 10
        assert "snapshot-1.json" not in files

    def test_previous_target(self, rollbacks):
        rollbacks.snapshot(config_with_delay(1), "one")
        rollbacks.snapshot(config_with_delay(2), "two")
        assert rollbacks.target("previous").config.sync.delay_ms == 2

    def test_last_known_good(self, rollbacks):
        config = config_with_delay(7)
        snap = rollbacks.mark_good(config, "startup")
        assert snap.checksum == config_checksum(config)
        assert rollbacks.matches_last_known_good(config)
        assert not rollbacks.matches_last_known_good(config_with_delay(8))
        assert rollbacks.target("lastKnownGood").config == config

    def test_unavailable_targets(self, rollbacks):
        with pytest.raises(BrainError) as exc_info:
            rollbacks.target("lastKnownGood")
        assert exc_info.value.kind == "rollback_unavailable"
        with pytest.raises(BrainError) as exc_info:
            rollbacks.target("yesterday")
        assert exc_info.value.kind == "invalid_argument"

    def test_reload_from_disk(self, rollbacks, tmp_path):
        rollbacks.snapshot(config_with_delay(3), "three")
        rollbacks.mark_good(config_with_delay(4), "good")

        fresh = RollbackManager(tmp_path)
        fresh.initialize(None)

        assert [s.config.sync.delay_ms for s in fresh.history()] == [3]
        assert fresh.last_known_good.config.sync.delay_ms == 4

    def test_tampered_snapshot_discarded(self, rollbacks, tmp_path):
        rollbacks.snapshot(config_with_delay(3), "three")
        path = tmp_path / "rollback" / "snapshot-1.json"
        data = json.loads(path.read_text())
        data["config"]["sync"]["delay_ms"] = 99
        path.write_text(json.dumps(data))

        fresh = RollbackManager(tmp_path)
        fresh.initialize(None)

        assert fresh.history() == []

    def test_initialize_sets_baseline(self, tmp_path):
        mgr = RollbackManager(tmp_path)
        mgr.initialize(config_with_delay(5))
        assert mgr.last_known_good.reason == "Baseline at startup"


class TestWatcher:
    @pytest.fixture
    def path(self, tmp_path):
        p = tmp_path / "config.json"
        p.write_text('{"a": 1}')
        return p

    def test_debounced_change(self, path):
        on_change = MagicMock()
        watcher = ConfigWatcher(path, on_change, debounce=2.0, settle=0)

        path.write_text('{"a": 22}')
        assert watcher.poll(now=100.0) is False
        assert watcher.pending
        assert watcher.poll(now=101.0) is False

        assert watcher.poll(now=102.5) is True
        on_change.assert_called_once_with()
        assert not watcher.pending

    def test_partial_write_deferred(self, path):
        on_change = MagicMock()
        watcher = ConfigWatcher(path, on_change, debounce=0, settle=0)
        path.write_text('{"a": 22}')
        watcher.poll(now=1.0)

        with patch("brain.config.watcher._checksum", side_effect=["x", "y"]):
            assert watcher.process_pending() is False

        on_change.assert_not_called()
        assert watcher.pending

    def test_busy_change_is_queued(self, path):
        on_change = MagicMock()
        busy = [True]
        watcher = ConfigWatcher(path, on_change, debounce=0, settle=0, is_busy=lambda: busy[0])
        path.write_text('{"a": 22}')
        watcher.poll(now=1.0)

        assert watcher.poll(now=2.0) is False
        assert watcher.pending

        busy[0] = False
        assert watcher.poll(now=3.0) is True
        on_change.assert_called_once_with()

    def test_own_write_ignored(self, path):
        on_change = MagicMock()
        watcher = ConfigWatcher(path, on_change, debounce=0, settle=0)
        path.write_text('{"a": 22}')
        watcher.mark_applied()

        assert watcher.poll(now=1.0) is False
        assert watcher.poll(now=2.0) is False
        on_change.assert_not_called()

    def test_same_content_rewritten(self, path):
        on_change = MagicMock()
        watcher = ConfigWatcher(path, on_change, debounce=0, settle=0)
        path.write_text('{"a": 22}')
        watcher.poll(now=1.0)
        path.write_text('{"a": 1}')
        watcher.poll(now=2.0)

        assert watcher.poll(now=3.0) is False
        on_change.assert_not_called()
        assert not watcher.pending
