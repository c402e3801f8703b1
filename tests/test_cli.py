"""Tests for the brain CLI: JSON output and exit codes."""

import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from brain import __version__
from brain.cli import app
from brain.runtime import Runtime

runner = CliRunner()


def payload(result):
    return json.loads(result.stdout)


@pytest.fixture
def runtime(notes, mock_client, index, secret):
    rt = Runtime(notes=notes, client=mock_client, index=index)
    with patch("brain.cli._runtime", return_value=rt):
        yield rt
    rt.close()


class TestBasics:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"brain {__version__}" in result.stdout

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert "search" in result.output


class TestSessionCommands:
    def test_set_then_get(self, runtime):
        result = runner.invoke(app, ["session", "set", '{"mode": "coding"}'])
        assert result.exit_code == 0, result.output
        assert payload(result)["session"]["mode"] == "coding"

        result = runner.invoke(app, ["session", "get"])
        assert payload(result)["session"]["mode"] == "coding"

    def test_set_from_stdin(self, runtime):
        result = runner.invoke(app, ["session", "set"], input='{"activeTask": "T-2"}')
        assert payload(result)["session"]["activeTask"] == "T-2"

    def test_invalid_json(self, runtime):
        result = runner.invoke(app, ["session", "set", "{nope"])
        assert result.exit_code == 1
        assert payload(result)["error"]["kind"] == "invalid_argument"

    def test_invalid_mode(self, runtime):
        result = runner.invoke(app, ["session", "set", '{"mode": "yolo"}'])
        assert result.exit_code == 1
        assert "Invalid mode" in payload(result)["error"]["message"]


class TestGateCheck:
    def test_blocked_without_session(self, runtime):
        result = runner.invoke(app, ["gate-check", "Write"])
        assert result.exit_code == 1
        assert payload(result)["mode"] == "unknown"

    def test_read_allowed(self, runtime):
        result = runner.invoke(app, ["gate-check", "Read"])
        assert result.exit_code == 0
        assert payload(result)["allowed"] is True

    def test_mode_option(self, runtime):
        result = runner.invoke(app, ["gate-check", "Write", "--mode", "coding"])
        assert result.exit_code == 0

    def test_upstream_down(self, runtime, notes):
        notes.unavailable = True
        result = runner.invoke(app, ["gate-check", "Edit"])
        assert result.exit_code == 1
        assert payload(result)["allowed"] is False


class TestSearchAndEmbed:
    @pytest.fixture(autouse=True)
    def seed(self, notes):
        notes.add("notes/a", "alpha beta", title="A")
        notes.add("notes/b", "gamma delta", title="B")

    def test_keyword_search(self, runtime):
        result = runner.invoke(app, ["search", "alpha", "-p", "demo"])
        assert result.exit_code == 0, result.output
        assert [r["noteId"] for r in payload(result)["results"]] == ["notes/a"]

    def test_invalid_mode(self, runtime):
        result = runner.invoke(app, ["search", "alpha", "--mode", "fuzzy"])
        assert result.exit_code == 1
        assert payload(result)["error"]["kind"] == "invalid_query"

    def test_embed(self, runtime):
        result = runner.invoke(app, ["embed", "notes/a", "notes/b", "-p", "demo"])
        assert result.exit_code == 0, result.output
        assert sorted(payload(result)["embedded"]) == ["notes/a", "notes/b"]

    def test_embed_failure_is_warning(self, runtime, mock_client):
        mock_client.fail_words = {"gamma"}
        result = runner.invoke(app, ["embed", "notes/a", "notes/b", "-p", "demo"])
        assert result.exit_code == 2
        data = payload(result)
        assert data["embedded"] == ["notes/a"]
        assert data["warnings"][0].startswith("notes/b")

    def test_catch_up_dry_run(self, runtime):
        result = runner.invoke(app, ["catch-up", "-p", "demo", "--dry-run"])
        assert payload(result) == {"missing": ["notes/a", "notes/b"], "stale": []}

    def test_catch_up(self, runtime):
        result = runner.invoke(app, ["catch-up", "-p", "demo"])
        assert sorted(payload(result)["embedded"]) == ["notes/a", "notes/b"]


class TestBootstrapAndValidation:
    def test_bootstrap_markdown(self, runtime, notes):
        notes.add("decisions/use-sqlite", "---\ntitle: Use SQLite\n---\nbody")
        result = runner.invoke(app, ["bootstrap", "-p", "demo", "--markdown"])
        assert result.exit_code == 0, result.output
        assert result.stdout.startswith("# Bootstrap Context: demo")
        assert "[[Use SQLite]]" in result.stdout

    def test_validate_missing_log(self, tmp_path):
        result = runner.invoke(app, ["validate-session", str(tmp_path / "2026-03-10-session-01.md")])
        assert result.exit_code == 1
        assert payload(result)["valid"] is False

    def test_validate_rejects_traversal(self):
        result = runner.invoke(app, ["validate-session", "../../etc/passwd"])
        assert result.exit_code == 1
        assert payload(result)["error"]["kind"] == "path_rejected"


class TestConfigCommands:
    def test_show(self):
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert payload(result)["version"] == "2.0.0"

    def test_set_and_get(self):
        result = runner.invoke(app, ["config", "set", "sync.delay_ms", "900"])
        assert result.exit_code == 0, result.output
        assert payload(result)["diff"]["globalFieldsChanged"] == ["sync.delay_ms"]

        result = runner.invoke(app, ["config", "get", "sync.delay_ms"])
        assert payload(result) == {"key": "sync.delay_ms", "value": 900}

    def test_project_change_warns(self, tmp_path):
        result = runner.invoke(app, ["config", "set", "projects.app", json.dumps({
            "code_path": str(tmp_path / "app"), "memories_mode": "CODE",
        })])
        assert result.exit_code == 2, result.output
        assert "brain catch-up" in payload(result)["warnings"][0]

    def test_invalid_value(self):
        result = runner.invoke(app, ["config", "set", "logging.level", "loud"])
        assert result.exit_code == 1
        assert payload(result)["error"]["kind"] == "config_validation"

    def test_rollback_previous(self):
        runner.invoke(app, ["config", "set", "sync.delay_ms", "900"])
        result = runner.invoke(app, ["config", "rollback", "--target", "previous"])
        assert result.exit_code == 0, result.output
        assert payload(result)["config"]["sync"]["delay_ms"] == 500

    def test_translate(self, tmp_path):
        result = runner.invoke(app, ["config", "translate"])
        assert result.exit_code == 0
        upstream = json.loads((tmp_path / "basic-memory" / "config.json").read_text())
        assert upstream == payload(result)["upstream"]
