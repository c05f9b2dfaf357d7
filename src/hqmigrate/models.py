from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class NodeType(str, Enum):
    FILE = "file"
    SYMLINK = "symlink"
    DIRECTORY = "directory"


class DiffCategory(str, Enum):
    NEW = "NEW"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    UNCHANGED = "UNCHANGED"
    LOCAL_ONLY = "LOCAL_ONLY"
    RENAMED = "RENAMED"


class Impact(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class MergeStrategy(str, Enum):
    OVERWRITE = "overwrite"
    SECTION_MERGE = "section_merge"
    YAML_MERGE = "yaml_merge"
    NEVER_OVERWRITE = "never_overwrite"
    PRESERVE_RULES_SECTION = "preserve_rules_section"
    ADDITIVE_MERGE = "additive_merge"


@dataclass(frozen=True)
class FileEntry:
    relpath: str
    node_type: NodeType
    size: int = 0
    hash: str | None = None
    symlink_target: str | None = None
    is_binary: bool = False
    is_gitkeep: bool = False

    @property
    def name(self) -> str:
        return self.relpath.rsplit("/", 1)[-1]

    @property
    def extension(self) -> str:
        name = self.name
        idx = name.rfind(".")
        return name[idx:] if idx >= 0 else ""


@dataclass(frozen=True)
class DiffEntry:
    path: str
    category: DiffCategory
    old_path: str | None = None
    new_path: str | None = None
    diff_summary: str | None = None
    is_special: bool = False
    merge_strategy: MergeStrategy | None = None
    impact: Impact | None = None
    description: str | None = None


@dataclass
class DiffResult:
    new: list[DiffEntry] = field(default_factory=list)
    modified: list[DiffEntry] = field(default_factory=list)
    deleted: list[DiffEntry] = field(default_factory=list)
    unchanged: list[DiffEntry] = field(default_factory=list)
    local_only: list[DiffEntry] = field(default_factory=list)
    renamed: list[DiffEntry] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def bucket(self, category: DiffCategory) -> list[DiffEntry]:
        return {
            DiffCategory.NEW: self.new,
            DiffCategory.MODIFIED: self.modified,
            DiffCategory.DELETED: self.deleted,
            DiffCategory.UNCHANGED: self.unchanged,
            DiffCategory.LOCAL_ONLY: self.local_only,
            DiffCategory.RENAMED: self.renamed,
        }[category]

    def counts(self) -> dict[DiffCategory, int]:
        return {category: len(self.bucket(category)) for category in DiffCategory}

    def all_entries(self) -> list[DiffEntry]:
        entries: list[DiffEntry] = []
        for category in DiffCategory:
            entries.extend(self.bucket(category))
        return entries
