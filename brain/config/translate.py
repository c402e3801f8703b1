"""
One-way translation of the brain config into the upstream note store's
config file (basic-memory ``config.json``).

Keys brain does not own (``default_project``, ``cloud_mode``, ...) are
preserved from the existing upstream file.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from ..errors import BrainError, PathRejectedError
from .paths import resolve_memories_path
from .schema import BrainConfig
from .store import atomic_write_json

logger = logging.getLogger(__name__)

UPSTREAM_ENV = "BRAIN_UPSTREAM_CONFIG"


def upstream_config_path() -> Path:
    env = os.environ.get(UPSTREAM_ENV)
    if env:
        return Path(env).expanduser()
    return Path.home() / ".basic-memory" / "config.json"


def resolved_memories_paths(config: BrainConfig) -> dict[str, str]:
    """Map each project to its resolved memories directory.

    Projects whose path fails resolution are left out (and logged).
    """
    paths = {}
    for name, project in config.projects.items():
        try:
            paths[name] = resolve_memories_path(
                name, project, config.defaults.memories_location
            )
        except PathRejectedError as e:
            logger.warning("Skipping project %s: %s", name, e)
    return paths


def load_upstream(path: Optional[Path] = None) -> dict[str, Any]:
    path = path or upstream_config_path()
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable upstream config %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def translate(config: BrainConfig, existing: Optional[dict] = None) -> dict[str, Any]:
    """Deterministic mapping brain config -> upstream config."""
    result = dict(existing or {})
    result["projects"] = resolved_memories_paths(config)
    result["sync_changes"] = config.sync.enabled
    result["sync_delay"] = config.sync.delay_ms
    result["log_level"] = config.logging.level
    return result


def write_upstream(config: BrainConfig, path: Optional[Path] = None) -> dict[str, Any]:
    """Translate and atomically write the upstream config (0600)."""
    path = path or upstream_config_path()
    upstream = translate(config, load_upstream(path))
    atomic_write_json(path, upstream, private_dir=False)
    logger.info("Wrote upstream config %s (%d projects)", path, len(upstream["projects"]))
    return upstream


def sync_to_upstream(config: BrainConfig, path: Optional[Path] = None) -> bool:
    """Write the upstream config; failure is logged, never raised."""
    try:
        write_upstream(config, path)
        return True
    except (OSError, ValueError, BrainError) as e:
        logger.error("Failed to sync upstream config: %s", e)
        return False
