"""
Config document schema (version 2.0.0).

Models are frozen: a config is an immutable value, replaced wholesale on
reconfiguration. Every path field must pass the path safety predicate.
"""

import re
from typing import Annotated, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator

from ..model_client import DEFAULT_BASE_URL, DEFAULT_MODEL
from .paths import path_rejection

CONFIG_VERSION = "2.0.0"

MemoriesMode = Literal["DEFAULT", "CODE", "CUSTOM"]
LogLevel = Literal["trace", "debug", "info", "warn", "error"]

_PROJECT_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _safe(value: str) -> str:
    reason = path_rejection(value)
    if reason:
        raise ValueError(reason)
    return value


SafePath = Annotated[str, AfterValidator(_safe)]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ProjectConfig(_Frozen):
    code_path: SafePath
    memories_path: Optional[SafePath] = None
    memories_mode: MemoriesMode = "DEFAULT"

    @model_validator(mode="after")
    def _custom_needs_path(self):
        if self.memories_mode == "CUSTOM" and not self.memories_path:
            raise ValueError("memories_mode CUSTOM requires memories_path")
        return self


class DefaultsConfig(_Frozen):
    memories_location: SafePath = "~/memories"
    memories_mode: MemoriesMode = "DEFAULT"


class SyncConfig(_Frozen):
    enabled: bool = True
    delay_ms: int = Field(500, ge=0)


class LoggingConfig(_Frozen):
    level: LogLevel = "info"


class WatcherConfig(_Frozen):
    enabled: bool = True
    debounce_ms: int = Field(2000, ge=0)


class EmbeddingConfig(_Frozen):
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    dimension: Optional[int] = Field(None, ge=1)
    concurrency: int = Field(4, ge=1, le=16)


class BrainConfig(_Frozen):
    version: Literal["2.0.0"] = CONFIG_VERSION
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    projects: dict[str, ProjectConfig] = Field(default_factory=dict)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)

    @field_validator("projects")
    @classmethod
    def _project_names(cls, projects):
        for name in projects:
            if not _PROJECT_NAME.match(name):
                raise ValueError(f"Invalid project name: {name!r}")
        return projects

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json")
