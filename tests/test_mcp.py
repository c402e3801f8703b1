"""
Tests for the MCP stdio server tool functions.

Tests the tool layer in isolation by mocking the Runtime: verifies
parameter mapping, JSON formatting and error reporting for all 5 tools.
"""

import json
from unittest.mock import MagicMock

import pytest

from brain.errors import SearchError, SecretMissingError, UpstreamUnavailableError
from brain.search import ContextNote


@pytest.fixture
def mock_runtime():
    """Mock Runtime with default return values."""
    runtime = MagicMock()
    runtime.search.search.return_value = []
    runtime.hooks.bootstrap.return_value = {"markdown": "# Bootstrap Context: demo\n"}
    runtime.hooks.get_session_state.return_value = {"session": None}
    runtime.hooks.set_session_state.return_value = {"session": {"mode": "coding"}}
    runtime.hooks.gate_check.return_value = {"allowed": True, "reason": "ok", "mode": "coding"}
    return runtime


@pytest.fixture(autouse=True)
def patch_runtime(mock_runtime):
    """Install the mock as the server's runtime for all tests."""
    import brain.mcp as mcp_mod
    mcp_mod._runtime = mock_runtime
    yield
    mcp_mod._runtime = None


# ---------------------------------------------------------------------------
# brain_search
# ---------------------------------------------------------------------------

class TestBrainSearch:

    @pytest.mark.asyncio
    async def test_maps_options(self, mock_runtime):
        from brain.mcp import brain_search
        await brain_search("auth flow", project="demo", limit=5, mode="hybrid", depth=2,
                           types=["decision"], after_date="2026-01-01")

        query, options = mock_runtime.search.search.call_args.args
        assert query == "auth flow"
        assert options.project == "demo"
        assert options.limit == 5
        assert options.mode == "hybrid"
        assert options.depth == 2
        assert options.filters.types == ["decision"]
        assert options.filters.after_date == "2026-01-01"
        assert options.detect_type and options.parse_status

    @pytest.mark.asyncio
    async def test_results_json(self, mock_runtime):
        from brain.mcp import brain_search
        mock_runtime.search.search.return_value = [
            ContextNote("decisions/use-sqlite", "Use SQLite", 0.91234567, type="decision"),
        ]

        result = json.loads(await brain_search("sqlite"))

        assert result == {
            "query": "sqlite",
            "results": [{
                "noteId": "decisions/use-sqlite", "title": "Use SQLite",
                "score": 0.912346, "type": "decision",
            }],
        }

    @pytest.mark.asyncio
    async def test_guard_error_returned(self, mock_runtime):
        from brain.mcp import brain_search
        mock_runtime.search.search.side_effect = SearchError("guard_rejected", "Query too long")

        result = json.loads(await brain_search("x" * 5000))

        assert result["error"] == {"kind": "guard_rejected", "message": "Query too long"}


# ---------------------------------------------------------------------------
# brain_bootstrap
# ---------------------------------------------------------------------------

class TestBrainBootstrap:

    @pytest.mark.asyncio
    async def test_returns_markdown(self, mock_runtime):
        from brain.mcp import brain_bootstrap
        result = await brain_bootstrap("demo", timeframe="2d")
        assert result == "# Bootstrap Context: demo\n"
        mock_runtime.hooks.bootstrap.assert_called_once_with(
            "demo", timeframe="2d", depth=3, full_content=False,
        )

    @pytest.mark.asyncio
    async def test_upstream_down(self, mock_runtime):
        from brain.mcp import brain_bootstrap
        mock_runtime.hooks.bootstrap.side_effect = UpstreamUnavailableError("gone")
        result = json.loads(await brain_bootstrap("demo"))
        assert result["error"]["kind"] == "upstream_unavailable"


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

class TestBrainSession:

    @pytest.mark.asyncio
    async def test_get(self):
        from brain.mcp import brain_session_get
        assert json.loads(await brain_session_get()) == {"session": None}

    @pytest.mark.asyncio
    async def test_get_without_secret(self, mock_runtime):
        from brain.mcp import brain_session_get
        mock_runtime.hooks.get_session_state.side_effect = SecretMissingError("BRAIN_SESSION_SECRET")
        result = json.loads(await brain_session_get())
        assert "BRAIN_SESSION_SECRET" in result["error"]["remediation"]

    @pytest.mark.asyncio
    async def test_set(self, mock_runtime):
        from brain.mcp import brain_session_set
        result = json.loads(await brain_session_set({"mode": "coding"}))
        assert result == {"session": {"mode": "coding"}}
        mock_runtime.hooks.set_session_state.assert_called_once_with({"mode": "coding"})

    @pytest.mark.asyncio
    async def test_set_invalid_mode(self, mock_runtime):
        from brain.mcp import brain_session_set
        mock_runtime.hooks.set_session_state.side_effect = ValueError("Invalid mode 'yolo'")
        result = json.loads(await brain_session_set({"mode": "yolo"}))
        assert result == {"error": {"kind": "invalid_argument", "message": "Invalid mode 'yolo'"}}


# ---------------------------------------------------------------------------
# brain_gate_check
# ---------------------------------------------------------------------------

class TestBrainGateCheck:

    @pytest.mark.asyncio
    async def test_decision(self, mock_runtime):
        from brain.mcp import brain_gate_check
        mock_runtime.hooks.gate_check.return_value = {
            "allowed": False, "reason": "Write is not allowed in analysis mode", "mode": "analysis",
        }
        result = json.loads(await brain_gate_check("Write"))
        assert result["allowed"] is False
        mock_runtime.hooks.gate_check.assert_called_once_with("Write")
