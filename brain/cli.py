"""
CLI for brain.

Usage:
    brain search "query text" --mode hybrid --depth 1
    brain gate-check Write
    brain session set '{"mode": "coding"}'
    brain config set sync.delay_ms 1000

Every command prints JSON. Exit codes: 0 success, 1 error, 2 warning.
"""

import json
import os
import sys
import time
from typing import Any, Callable, Optional

import typer
from typing_extensions import Annotated

from .errors import BrainError
from .hooks import EXIT_ERROR, EXIT_OK, run_hook
from .logging_config import configure_quiet_mode, enable_debug_mode

# Configure quiet mode by default (suppress verbose library output)
# Set BRAIN_VERBOSE=1 to enable debug mode via environment
if os.environ.get("BRAIN_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from . import __version__
        print(f"brain {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


app = typer.Typer(
    name="brain",
    help="Local-first knowledge memory: semantic search, session state, config.",
    no_args_is_help=True,
    rich_markup_mode=None,
)

session_app = typer.Typer(name="session", help="Read or update the current session state.", rich_markup_mode=None)
config_app = typer.Typer(name="config", help="Inspect and change brain configuration.", rich_markup_mode=None)
app.add_typer(session_app)
app.add_typer(config_app)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
):
    """Local-first knowledge memory."""


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

ProjectOption = Annotated[
    Optional[str],
    typer.Option("--project", "-p", envvar="BRAIN_PROJECT", help="Note store project"),
]


def _emit(payload: Any, code: int = EXIT_OK) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
    if code:
        raise typer.Exit(code)


def _run(fn: Callable[[], dict], context: str) -> None:
    payload, code = run_hook(fn, context=context)
    _emit(payload, code)


def _runtime():
    from .runtime import get_runtime
    return get_runtime()


def _config_manager():
    from .config import ConfigManager
    manager = ConfigManager()
    manager.startup()
    return manager


def _parse_value(raw: str) -> Any:
    """JSON when it parses (numbers, booleans, objects), else the raw string."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _read_json_arg(raw: Optional[str]) -> Any:
    if raw is None or raw == "-":
        raw = sys.stdin.read()
    try:
        return json.loads(raw)
    except ValueError as e:
        raise BrainError(f"Invalid JSON input: {e}", kind="invalid_argument") from e


# -----------------------------------------------------------------------------
# Hook contract
# -----------------------------------------------------------------------------

@session_app.command("get")
def session_get():
    """Print the current session state."""
    _run(lambda: _runtime().hooks.get_session_state(), "session get")


@session_app.command("set")
def session_set(
    updates: Annotated[Optional[str], typer.Argument(
        help='JSON object of updates, e.g. \'{"mode": "coding"}\' (default: stdin)'
    )] = None,
):
    """Update the current session state."""
    _run(lambda: _runtime().hooks.set_session_state(_read_json_arg(updates)), "session set")


@app.command("gate-check")
def gate_check(
    tool: Annotated[str, typer.Argument(help="Tool name, e.g. Write or Read")],
    mode: Annotated[Optional[str], typer.Option(
        "--mode", help="Check against this mode instead of the stored session mode"
    )] = None,
):
    """Allow or block a tool for the current session mode (exit 1 when blocked)."""
    def check() -> dict:
        try:
            hooks = _runtime().hooks
        except BrainError as e:
            # No runtime means no readable state: fail closed
            from .hooks import UNKNOWN_MODE, gate_decision
            return gate_decision(tool, mode or UNKNOWN_MODE) | {"error": e.to_dict()}
        return hooks.gate_check(tool, mode)
    _run(check, "gate-check")


@app.command()
def bootstrap(
    project: ProjectOption = None,
    timeframe: Annotated[str, typer.Option("--timeframe", "-t", help="Recent window, e.g. 5d")] = "5d",
    depth: Annotated[int, typer.Option("--depth", "-d", help="Relation expansion depth")] = 3,
    full: Annotated[bool, typer.Option("--full", "-F", help="Include full note content")] = False,
    markdown: Annotated[bool, typer.Option("--markdown", help="Print only the markdown")] = False,
):
    """Build the session-start context for a project."""
    payload, code = run_hook(
        lambda: _runtime().hooks.bootstrap(project, timeframe=timeframe, depth=depth, full_content=full),
        context="bootstrap",
    )
    if markdown and code == EXIT_OK:
        typer.echo(payload["markdown"])
        return
    _emit(payload, code)


@app.command("validate-session")
def validate_session(
    path: Annotated[str, typer.Argument(help="Session log markdown file")],
):
    """Check a session log against the session protocol (exit 1 when invalid)."""
    from .config.paths import validate_path
    from .validation import validate_session_log
    _run(lambda: validate_session_log(validate_path(path)).to_dict(), "validate-session")


# -----------------------------------------------------------------------------
# Search and embedding
# -----------------------------------------------------------------------------

@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search text")],
    project: ProjectOption = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum results")] = 10,
    mode: Annotated[str, typer.Option("--mode", "-m", help="auto, semantic, keyword or hybrid")] = "auto",
    threshold: Annotated[float, typer.Option("--threshold", help="Minimum semantic similarity")] = 0.7,
    depth: Annotated[int, typer.Option("--depth", "-d", help="Relation expansion depth")] = 0,
    full: Annotated[bool, typer.Option("--full", "-F", help="Include note content")] = False,
    note_type: Annotated[Optional[list[str]], typer.Option("--type", help="Restrict to note types")] = None,
    after: Annotated[Optional[str], typer.Option("--after", help="Only notes updated after YYYY-MM-DD")] = None,
    enrich: Annotated[bool, typer.Option("--enrich", help="Detect note type and status")] = False,
):
    """Search notes by meaning, keywords, or both."""
    from .search import SearchFilters, SearchOptions

    def run() -> dict:
        options = SearchOptions(
            project=project, limit=limit, mode=mode, threshold=threshold, depth=depth,
            full_content=full, filters=SearchFilters(types=note_type, after_date=after),
            detect_type=enrich, parse_status=enrich,
        )
        results = _runtime().search.search(query, options)
        return {"query": query, "results": [r.to_dict() for r in results]}
    _run(run, "search")


@app.command()
def embed(
    notes: Annotated[list[str], typer.Argument(help="Note permalinks")],
    project: ProjectOption = None,
):
    """Embed notes now and report the outcome."""
    def run() -> dict:
        report = _runtime().pipeline.embed_batch(list(notes), project)
        payload = report.to_dict()
        if report.failed:
            payload["warnings"] = [f"{f.note_id}: {f.error}" for f in report.failed]
        return payload
    _run(run, "embed")


@app.command("catch-up")
def catch_up(
    project: ProjectOption = None,
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Only list missing and stale notes")] = False,
):
    """Embed every note missing from or stale in the index."""
    def run() -> dict:
        pipeline = _runtime().pipeline
        if dry_run:
            return {"missing": pipeline.list_missing(project), "stale": pipeline.list_stale(project)}
        report = pipeline.catch_up_project(project).result()
        payload = report.to_dict()
        if report.failed:
            payload["warnings"] = [f"{f.note_id}: {f.error}" for f in report.failed]
        return payload
    _run(run, "catch-up")


# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------

def _applied(diff) -> dict:
    payload = {"changed": diff.has_changes, "diff": diff.to_dict()}
    if diff.affected_projects:
        payload["warnings"] = [
            "Run `brain catch-up -p <project>` to re-embed: " + ", ".join(diff.affected_projects)
        ]
    return payload


@config_app.command("show")
def config_show():
    """Print the whole config."""
    _run(lambda: _config_manager().config.to_json_dict(), "config show")


@config_app.command("get")
def config_get(
    key: Annotated[Optional[str], typer.Argument(help="Dotted key, e.g. sync.delay_ms")] = None,
):
    """Print one config value (or the whole config)."""
    _run(lambda: {"key": key or "all", "value": _config_manager().get(key)}, "config get")


@config_app.command("set")
def config_set(
    key: Annotated[str, typer.Argument(help="Dotted key, e.g. projects.app.code_path")],
    value: Annotated[str, typer.Argument(help="Value (JSON or plain string)")],
):
    """Change a config value and reconfigure."""
    _run(lambda: _applied(_config_manager().set(key, _parse_value(value))), "config set")


@config_app.command("reset")
def config_reset(
    key: Annotated[Optional[str], typer.Argument(help="Dotted key, or 'all'")] = None,
):
    """Restore a key (or everything) to defaults."""
    _run(lambda: _applied(_config_manager().reset(key)), "config reset")


@config_app.command("rollback")
def config_rollback(
    target: Annotated[str, typer.Option(
        "--target", "-t", help="lastKnownGood or previous"
    )] = "lastKnownGood",
):
    """Restore a config snapshot."""
    _run(lambda: {"restored": target, "config": _config_manager().rollback(target).to_json_dict()},
         "config rollback")


@config_app.command("migrate")
def config_migrate(
    force: Annotated[bool, typer.Option("--force", help="Migrate even if a config exists")] = False,
):
    """Import the legacy ~/.basic-memory/brain-config.json."""
    _run(lambda: _config_manager().migrate(force=force), "config migrate")


@config_app.command("translate")
def config_translate():
    """Rewrite the upstream note store config from the brain config."""
    _run(lambda: {"upstream": _config_manager().translate()}, "config translate")


@config_app.command("watch")
def config_watch():
    """Watch the config file and apply edits until interrupted."""
    rt = _runtime()
    watcher = rt.config_manager.watch()
    typer.echo(f"Watching {watcher.path} (Ctrl+C to stop)", err=True)
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        rt.close()


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------

@app.command()
def mcp():
    """Start MCP stdio server for AI agent integration."""
    from .mcp import main as mcp_main
    mcp_main()


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="brain CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(EXIT_ERROR)


if __name__ == "__main__":
    main()
