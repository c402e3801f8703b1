"""Tests for the config schema, path safety, persistence and translation."""

import json
import os
import stat

import pytest

from brain.config import BrainConfig, diff_configs, resolve_memories_path
from brain.config.diff import memories_path_changes
from brain.config.migrate import load_legacy, transform_legacy
from brain.config.paths import expand_path, is_safe_path, path_rejection, validate_path
from brain.config.schema import ProjectConfig
from brain.config.store import (
    atomic_write_json,
    load_config,
    save_config,
    validate_config_dict,
)
from brain.config.translate import load_upstream, translate, write_upstream
from brain.errors import ConfigValidationError, PathRejectedError


def mode_of(path):
    return stat.S_IMODE(os.stat(path).st_mode)


class TestPathSafety:
    @pytest.mark.parametrize("path", [
        "../etc/passwd",
        "notes/../../secret",
        "notes\\..\\secret",
        "notes/%2e%2e/secret",
        "notes/%2E%2E/secret",
        "notes\x00.md",
        "/etc/brain",
        "/usr/local/notes",
        "/proc/self",
        "C:\\Windows\\System32",
        "c:/program files/notes",
        "",
        "   ",
    ])
    def test_rejected(self, path):
        assert not is_safe_path(path)

    @pytest.mark.parametrize("path", [
        "~/memories",
        "/home/user/notes",
        "/tmp/brain",
        "/etcetera/notes",
        "notes..old/file",
        "D:\\work\\notes",
    ])
    def test_allowed(self, path):
        assert is_safe_path(path), path_rejection(path)

    def test_validate_expands_home(self):
        assert validate_path("~/memories") == os.path.join(os.path.expanduser("~"), "memories")

    def test_validate_raises(self):
        with pytest.raises(PathRejectedError, match="system directory /etc"):
            validate_path("/etc/brain")


class TestResolveMemoriesPath:
    def test_default_mode(self, tmp_path):
        project = ProjectConfig(code_path=str(tmp_path / "code"))
        assert resolve_memories_path("demo", project, str(tmp_path / "mem")) == str(tmp_path / "mem" / "demo")

    def test_code_mode(self, tmp_path):
        project = ProjectConfig(code_path=str(tmp_path / "code"), memories_mode="CODE")
        assert resolve_memories_path("demo", project, "~/memories") == str(tmp_path / "code" / "docs")

    def test_custom_mode(self, tmp_path):
        project = ProjectConfig(
            code_path=str(tmp_path), memories_path=str(tmp_path / "elsewhere"), memories_mode="CUSTOM",
        )
        assert resolve_memories_path("demo", project, "~/memories") == str(tmp_path / "elsewhere")


class TestSchema:
    def test_defaults(self):
        config = BrainConfig()
        assert config.version == "2.0.0"
        assert config.defaults.memories_location == "~/memories"
        assert config.sync.delay_ms == 500
        assert config.watcher.debounce_ms == 2000

    def test_frozen(self):
        config = BrainConfig()
        with pytest.raises(ValueError):
            config.version = "3.0.0"

    def test_custom_requires_path(self):
        with pytest.raises(ConfigValidationError, match="CUSTOM requires memories_path"):
            validate_config_dict({"projects": {"app": {"code_path": "/src/app", "memories_mode": "CUSTOM"}}})

    def test_invalid_project_name(self):
        with pytest.raises(ConfigValidationError, match="Invalid project name"):
            validate_config_dict({"projects": {"bad name": {"code_path": "/src/app"}}})

    def test_unsafe_path_field(self):
        with pytest.raises(ConfigValidationError, match=r"projects\.app\.code_path"):
            validate_config_dict({"projects": {"app": {"code_path": "/src/../etc"}}})

    def test_error_lists_every_field(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            validate_config_dict({"sync": {"delay_ms": -1}, "logging": {"level": "loud"}})
        message = exc_info.value.message
        assert "sync.delay_ms" in message
        assert "logging.level" in message

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigValidationError, match="surprise"):
            validate_config_dict({"surprise": True})

    def test_wrong_version(self):
        with pytest.raises(ConfigValidationError, match="version"):
            validate_config_dict({"version": "1.0.0"})


class TestStore:
    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_config(tmp_path / "config.json") == BrainConfig()

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "cfg" / "config.json"
        config = validate_config_dict({"sync": {"delay_ms": 250}})

        save_config(config, path)

        assert load_config(path) == config
        assert mode_of(path) == 0o600
        assert mode_of(path.parent) == 0o700

    def test_no_temp_files_left(self, tmp_path):
        save_config(BrainConfig(), tmp_path / "config.json")
        assert [p.name for p in tmp_path.iterdir()] == ["config.json"]

    def test_failed_verify_keeps_old_file(self, tmp_path):
        path = tmp_path / "data.json"
        atomic_write_json(path, {"v": 1})

        def reject(data):
            raise ConfigValidationError("nope")

        with pytest.raises(ConfigValidationError):
            atomic_write_json(path, {"v": 2}, verify=reject)

        assert json.loads(path.read_text()) == {"v": 1}
        assert [p.name for p in tmp_path.iterdir()] == ["data.json"]

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigValidationError, match="not valid JSON"):
            load_config(path)


class TestTranslate:
    @pytest.fixture
    def config(self, tmp_path):
        return validate_config_dict({
            "defaults": {"memories_location": str(tmp_path / "mem")},
            "projects": {
                "demo": {"code_path": str(tmp_path / "demo")},
                "docs": {"code_path": str(tmp_path / "docs-repo"), "memories_mode": "CODE"},
            },
            "sync": {"enabled": False, "delay_ms": 800},
            "logging": {"level": "debug"},
        })

    def test_mapping(self, config, tmp_path):
        assert translate(config) == {
            "projects": {
                "demo": str(tmp_path / "mem" / "demo"),
                "docs": str(tmp_path / "docs-repo" / "docs"),
            },
            "sync_changes": False,
            "sync_delay": 800,
            "log_level": "debug",
        }

    def test_deterministic(self, config):
        assert translate(config) == translate(config)

    def test_preserves_foreign_keys(self, config, tmp_path):
        path = tmp_path / "bm" / "config.json"
        path.parent.mkdir()
        path.write_text(json.dumps({
            "default_project": "demo", "cloud_mode": False, "projects": {"stale": "/old"},
        }))

        written = write_upstream(config, path)

        assert written["default_project"] == "demo"
        assert written["cloud_mode"] is False
        assert "stale" not in written["projects"]
        assert load_upstream(path) == written
        assert mode_of(path) == 0o600

    def test_unreadable_upstream_ignored(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("[")
        assert load_upstream(path) == {}


class TestDiff:
    def test_initial(self):
        diff = diff_configs(None, validate_config_dict({"projects": {"a": {"code_path": "/src/a"}}}))
        assert diff.projects_added == ["a"]
        assert diff.touches_globals

    def test_no_changes(self):
        assert not diff_configs(BrainConfig(), BrainConfig()).has_changes

    def test_project_changes(self):
        old = validate_config_dict({"projects": {
            "a": {"code_path": "/src/a"}, "b": {"code_path": "/src/b"},
        }})
        new = validate_config_dict({"projects": {
            "a": {"code_path": "/src/a", "memories_mode": "CODE"}, "c": {"code_path": "/src/c"},
        }})

        diff = diff_configs(old, new)

        assert diff.projects_added == ["c"]
        assert diff.projects_removed == ["b"]
        assert diff.projects_modified == {"a": ["memories_mode"]}
        assert diff.global_fields_changed == []
        assert diff.affected_projects == ["a", "b", "c"]

    def test_global_change(self):
        new = validate_config_dict({"sync": {"delay_ms": 10}})
        assert diff_configs(BrainConfig(), new).global_fields_changed == ["sync.delay_ms"]

    def test_location_change_moves_default_projects(self, tmp_path):
        projects = {
            "a": {"code_path": str(tmp_path / "a")},
            "b": {"code_path": str(tmp_path / "b"), "memories_mode": "CODE"},
        }
        old = validate_config_dict({"defaults": {"memories_location": str(tmp_path / "m1")},
                                    "projects": projects})
        new = validate_config_dict({"defaults": {"memories_location": str(tmp_path / "m2")},
                                    "projects": projects})

        assert memories_path_changes(old, new) == {
            "a": (str(tmp_path / "m1" / "a"), str(tmp_path / "m2" / "a")),
        }


class TestLegacyMigration:
    def test_transform(self):
        config = transform_legacy({
            "notes_path": "~/notes",
            "log_level": "WARNING",
            "sync": {"enabled": False, "delay": 100},
            "projects": {
                "app": {"code_path": "/src/app", "notes_path": "/data/app-notes"},
                "nocode": {},
            },
            "code_paths": {"lib": "/src/lib", "app": "/ignored"},
        })

        assert config.defaults.memories_location == "~/notes"
        assert config.logging.level == "warn"
        assert config.sync.enabled is False
        assert config.sync.delay_ms == 100
        assert set(config.projects) == {"app", "lib"}
        assert config.projects["app"].memories_mode == "CUSTOM"
        assert config.projects["app"].memories_path == "/data/app-notes"
        assert config.projects["lib"].code_path == "/src/lib"

    def test_unknown_log_level(self):
        assert transform_legacy({"log_level": "chatty"}).logging.level == "info"

    def test_invalid_legacy_rejected(self):
        with pytest.raises(ConfigValidationError):
            transform_legacy({"projects": {"app": {"code_path": "/etc/app"}}})

    def test_load_legacy(self, tmp_path):
        path = tmp_path / "brain-config.json"
        assert load_legacy(path) is None
        path.write_text('{"notes_path": "~/n"}')
        assert load_legacy(path) == {"notes_path": "~/n"}
        path.write_text("[1]")
        with pytest.raises(ConfigValidationError):
            load_legacy(path)

    def test_expand_path(self):
        assert expand_path("~/a/./b/") == os.path.join(os.path.expanduser("~"), "a", "b")
