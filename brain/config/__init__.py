"""User configuration: schema, persistence, translation and live reconfiguration."""

from .diff import ConfigDiff, diff_configs
from .manager import ConfigManager
from .paths import is_safe_path, path_rejection, resolve_memories_path, validate_path
from .schema import CONFIG_VERSION, BrainConfig, ProjectConfig
from .store import get_config_dir, load_config, save_config
from .translate import translate, upstream_config_path

__all__ = [
    "BrainConfig",
    "CONFIG_VERSION",
    "ConfigDiff",
    "ConfigManager",
    "ProjectConfig",
    "diff_configs",
    "get_config_dir",
    "is_safe_path",
    "load_config",
    "path_rejection",
    "resolve_memories_path",
    "save_config",
    "translate",
    "upstream_config_path",
    "validate_path",
]
