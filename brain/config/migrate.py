"""
One-shot migration of the legacy ``~/.basic-memory/brain-config.json``
into the 2.0.0 config document. The legacy file is left in place.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..errors import ConfigValidationError
from .schema import CONFIG_VERSION, BrainConfig
from .store import validate_config_dict
from .translate import upstream_config_path

logger = logging.getLogger(__name__)

LEGACY_FILE = "brain-config.json"
_MODE_MAP = {"default": "DEFAULT", "code": "CODE", "custom": "CUSTOM"}
_LOG_LEVELS = ("trace", "debug", "info", "warn", "error")


def legacy_config_path() -> Path:
    """Next to the upstream config (``~/.basic-memory/`` by default)."""
    return upstream_config_path().parent / LEGACY_FILE


def load_legacy(path: Optional[Path] = None) -> Optional[dict]:
    path = path or legacy_config_path()
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigValidationError(f"Legacy config {path} is unreadable: {e}") from e
    if not isinstance(data, dict):
        raise ConfigValidationError(f"Legacy config {path} is not a JSON object")
    return data


def transform_legacy(old: dict[str, Any]) -> BrainConfig:
    """Map legacy keys onto the current schema.

    ``notes_path``/``default_notes_path`` become ``defaults.memories_location``;
    per-project ``notes_path`` becomes a CUSTOM ``memories_path``; a flat
    ``code_paths`` map adds DEFAULT projects not already defined.
    """
    base = BrainConfig()
    location = old.get("notes_path") or old.get("default_notes_path") or base.defaults.memories_location
    sync = old.get("sync") or {}
    level = str(old.get("log_level") or base.logging.level).lower()
    if level == "warning":
        level = "warn"
    if level not in _LOG_LEVELS:
        logger.warning("Unknown legacy log level %r, using info", level)
        level = "info"

    projects: dict[str, dict] = {}
    for name, proj in (old.get("projects") or {}).items():
        if not isinstance(proj, dict) or not proj.get("code_path"):
            logger.info("Skipping legacy project %s without code_path", name)
            continue
        entry: dict[str, Any] = {"code_path": proj["code_path"]}
        if proj.get("notes_path"):
            entry["memories_path"] = proj["notes_path"]
            entry["memories_mode"] = "CUSTOM"
        if proj.get("mode"):
            entry["memories_mode"] = _MODE_MAP.get(str(proj["mode"]).lower(), "DEFAULT")
        projects[name] = entry
    for name, code_path in (old.get("code_paths") or {}).items():
        projects.setdefault(name, {"code_path": code_path, "memories_mode": "DEFAULT"})

    return validate_config_dict({
        "version": CONFIG_VERSION,
        "defaults": {"memories_location": location, "memories_mode": base.defaults.memories_mode},
        "projects": projects,
        "sync": {
            "enabled": sync.get("enabled", base.sync.enabled),
            "delay_ms": sync.get("delay", sync.get("delay_ms", base.sync.delay_ms)),
        },
        "logging": {"level": level},
    })
