"""
Config file locations and atomic JSON persistence.

Writes go to a temp file in the same directory, are fsynced, re-read and
validated, then renamed over the target. The config directory is 0700 and
every file written here is 0600.
"""

import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import ValidationError

from ..errors import ConfigValidationError
from .schema import BrainConfig

logger = logging.getLogger(__name__)

DIR_MODE = 0o700
FILE_MODE = 0o600
CONFIG_FILE = "config.json"
ROLLBACK_DIR = "rollback"
LOCK_DIR = "locks"


def get_config_dir() -> Path:
    """BRAIN_CONFIG_DIR, else ~/.config/brain."""
    env = os.environ.get("BRAIN_CONFIG_DIR")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".config" / "brain"


def get_config_path(config_dir: Optional[Path] = None) -> Path:
    return (config_dir or get_config_dir()) / CONFIG_FILE


def ensure_private_dir(path: Path) -> Path:
    path.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
    os.chmod(path, DIR_MODE)
    return path


def atomic_write_json(
    path: Path,
    data: Any,
    *,
    verify: Optional[Callable[[Any], None]] = None,
    private_dir: bool = True,
) -> None:
    """Write JSON atomically: temp -> fsync -> verify -> rename.

    Args:
        path: Target file
        data: JSON-serializable value
        verify: Called with the re-read temp content; raise to abort
        private_dir: Create/chmod the parent directory 0700
    """
    path = Path(path)
    if private_dir:
        ensure_private_dir(path.parent)
    else:
        path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.{uuid.uuid4().hex[:8]}.tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, FILE_MODE)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=False)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        if verify is not None:
            verify(json.loads(tmp.read_text(encoding="utf-8")))
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    os.chmod(path, FILE_MODE)


def validate_config_dict(data: Any) -> BrainConfig:
    """Parse a config dict.

    Raises:
        ConfigValidationError: schema failure (message lists each error)
    """
    try:
        return BrainConfig.model_validate(data)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigValidationError(
            f"Invalid config: {details}",
            remediation="Fix the listed fields or run `brain config rollback`",
        ) from e


def load_config(path: Optional[Path] = None) -> BrainConfig:
    """Read and validate the config; defaults when the file is absent."""
    path = path or get_config_path()
    if not path.exists():
        return BrainConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ConfigValidationError(f"Config file {path} is not valid JSON: {e}") from e
    return validate_config_dict(data)


def save_config(config: BrainConfig, path: Optional[Path] = None) -> None:
    """Validate and atomically write the config (dir 0700, file 0600)."""
    path = path or get_config_path()
    data = config.to_json_dict()
    validate_config_dict(data)
    atomic_write_json(path, data, verify=validate_config_dict)
    logger.info("Saved config to %s", path)
