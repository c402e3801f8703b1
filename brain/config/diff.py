"""Structural diff between two configs."""

from dataclasses import dataclass, field
from typing import Optional

from .schema import BrainConfig
from .translate import resolved_memories_paths

PROJECT_FIELDS = ("code_path", "memories_path", "memories_mode")
GLOBAL_SECTIONS = ("defaults", "sync", "logging", "watcher", "embedding")


@dataclass
class ConfigDiff:
    projects_added: list[str] = field(default_factory=list)
    projects_removed: list[str] = field(default_factory=list)
    # project name -> changed field names
    projects_modified: dict[str, list[str]] = field(default_factory=dict)
    # dotted names, e.g. "defaults.memories_location"
    global_fields_changed: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(
            self.projects_added or self.projects_removed
            or self.projects_modified or self.global_fields_changed
        )

    @property
    def touches_globals(self) -> bool:
        return bool(self.global_fields_changed)

    @property
    def affected_projects(self) -> list[str]:
        return sorted(
            set(self.projects_added) | set(self.projects_removed) | set(self.projects_modified)
        )

    def to_dict(self) -> dict:
        return {
            "projectsAdded": self.projects_added,
            "projectsRemoved": self.projects_removed,
            "projectsModified": self.projects_modified,
            "globalFieldsChanged": self.global_fields_changed,
        }


def diff_configs(old: Optional[BrainConfig], new: BrainConfig) -> ConfigDiff:
    """Compute what changed from ``old`` to ``new``.

    With no ``old`` config every project counts as added and every global
    section as changed.
    """
    if old is None:
        return ConfigDiff(
            projects_added=sorted(new.projects),
            global_fields_changed=list(GLOBAL_SECTIONS),
        )

    result = ConfigDiff()
    result.projects_added = sorted(set(new.projects) - set(old.projects))
    result.projects_removed = sorted(set(old.projects) - set(new.projects))
    for name in sorted(set(old.projects) & set(new.projects)):
        before, after = old.projects[name], new.projects[name]
        changed = [f for f in PROJECT_FIELDS if getattr(before, f) != getattr(after, f)]
        if changed:
            result.projects_modified[name] = changed

    for section in GLOBAL_SECTIONS:
        before = getattr(old, section).model_dump()
        after = getattr(new, section).model_dump()
        for key in after:
            if before.get(key) != after[key]:
                result.global_fields_changed.append(f"{section}.{key}")
    return result


def memories_path_changes(old: BrainConfig, new: BrainConfig) -> dict[str, tuple[str, str]]:
    """Projects present in both configs whose resolved memories path moved.

    Covers both per-project edits and a change of
    ``defaults.memories_location`` (which moves every DEFAULT project).
    """
    before = resolved_memories_paths(old)
    after = resolved_memories_paths(new)
    return {
        name: (before[name], after[name])
        for name in sorted(set(before) & set(after))
        if before[name] != after[name]
    }
