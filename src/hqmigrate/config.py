from __future__ import annotations

import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path

VERSION_MARKER = ".hq-version"
CHANGELOG_FILE = "CHANGELOG.md"
GITKEEP_NAME = ".gitkeep"
SETTINGS_FILE = ".hqmigrate.toml"

IGNORE_DIR_PATTERNS = (
    "workspace/threads/",
    "workspace/learnings/",
    "workspace/orchestrator/",
    "workspace/checkpoints/",
    "workspace/reports/",
    "workspace/content-ideas/",
    "companies/",
    "projects/",
    "repos/",
    "social-content/drafts/",
    ".git/",
    ".hq-backup/",
    "node_modules/",
    "dist/",
    ".beads/",
)
IGNORE_EXTENSION_PATTERNS = ("*.log", "*.lock", "*.stackdump")
IGNORE_EXACT_FILES = ("agents.md", ".DS_Store", "Thumbs.db", "nul")

BINARY_EXTENSIONS = frozenset(
    {
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".ico",
        ".svg",
        ".woff",
        ".woff2",
        ".ttf",
        ".eot",
        ".pdf",
        ".zip",
        ".tar",
        ".gz",
        ".bz2",
        ".exe",
        ".dll",
        ".so",
        ".dylib",
        ".db",
        ".sqlite",
        ".sqlite3",
    }
)
BINARY_SNIFF_BYTES = 8192
RENAME_MIN_SIZE = 50

BACKUP_DIR_NAME = ".hq-backup"
BACKUP_MANIFEST_NAME = "backup-manifest.json"
BACKUP_MODIFIED_DIR = "modified"
BACKUP_REMOVED_DIR = "removed"
BACKUP_EXCLUDED_DIRS = ("node_modules", ".git", ".hq-backup", "repos")
MANIFEST_SCHEMA_VERSION = "1.0"
SYMLINK_HANDLING = "preserved-as-symlinks"
KNOWN_PLATFORMS = ("macos", "linux", "windows-bash", "unknown")
KNOWN_BACKUP_METHODS = ("rsync", "copytree", "tar", "robocopy")


@dataclass(frozen=True)
class MigrationSettings:
    failure_threshold: float = 0.3
    min_template_files: int = 10
    hash_workers: int = 4
    backup_tolerance: int = 3
    restore_tolerance: int = 5
    extra_ignore: tuple[str, ...] = ()


def load_settings(root: Path) -> MigrationSettings:
    """Read `.hqmigrate.toml` from the installation root, if present.

    Unknown keys are ignored so older tools can share the file. Values of the
    wrong type raise `ValueError` here instead of failing mid-migration.
    """
    settings = MigrationSettings()
    candidate = root / SETTINGS_FILE
    if not candidate.is_file():
        return settings

    data = tomllib.loads(candidate.read_text(encoding="utf-8"))
    section = data.get("hqmigrate", data)
    known = {f.name: f for f in fields(MigrationSettings)}
    overrides: dict[str, object] = {}
    for key, value in section.items():
        name = key.replace("-", "_")
        if name not in known:
            continue
        default = getattr(settings, name)
        if isinstance(default, tuple):
            if not isinstance(value, list) or not all(
                isinstance(item, str) for item in value
            ):
                raise ValueError(f"{SETTINGS_FILE}: {key} must be a list of strings")
            overrides[name] = tuple(value)
        elif isinstance(default, float):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{SETTINGS_FILE}: {key} must be a number")
            overrides[name] = float(value)
        else:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{SETTINGS_FILE}: {key} must be an integer")
            overrides[name] = value

    resolved = replace(settings, **overrides)
    if not 0.0 < resolved.failure_threshold <= 1.0:
        raise ValueError(f"{SETTINGS_FILE}: failure_threshold must be in (0, 1]")
    return resolved
