from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from .config import (
    BACKUP_DIR_NAME,
    BACKUP_EXCLUDED_DIRS,
    BACKUP_MANIFEST_NAME,
    BACKUP_MODIFIED_DIR,
    BACKUP_REMOVED_DIR,
    KNOWN_BACKUP_METHODS,
    KNOWN_PLATFORMS,
    MANIFEST_SCHEMA_VERSION,
    SYMLINK_HANDLING,
)
from .errors import BackupError

logger = logging.getLogger(__name__)

STATUS_VERIFIED = "VERIFIED"
STATUS_VERIFIED_TOLERANCE = "VERIFIED (within tolerance)"
STATUS_MATCH = "MATCH"
STATUS_MISMATCH = "MISMATCH"

BACKUP_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%SZ"
_BACKUP_SIDECARS = (BACKUP_MANIFEST_NAME, BACKUP_MODIFIED_DIR, BACKUP_REMOVED_DIR)

_REQUIRED_FIELDS = (
    ("version", "version"),
    ("timestamp", "timestamp"),
    ("hqVersion", "hq_version"),
    ("hqPath", "hq_path"),
    ("fileCount", "file_count"),
    ("symlinkCount", "symlink_count"),
    ("totalSizeBytes", "total_size_bytes"),
    ("totalSizeHuman", "total_size_human"),
    ("excludedDirs", "excluded_dirs"),
    ("platform", "platform"),
    ("backupMethod", "backup_method"),
    ("symlinkHandling", "symlink_handling"),
)


def human_size(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes // 1024} KB"
    if num_bytes < 1024 * 1024 * 1024:
        return f"{num_bytes / (1024 * 1024):.1f} MB"
    return f"{num_bytes / (1024 * 1024 * 1024):.1f} GB"


@dataclass(frozen=True)
class BackupManifest:
    version: str
    timestamp: str
    hq_version: str
    hq_path: str
    file_count: int
    symlink_count: int
    total_size_bytes: int
    total_size_human: str
    excluded_dirs: tuple[str, ...]
    platform: str
    backup_method: str
    symlink_handling: str

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {}
        for key, attr in _REQUIRED_FIELDS:
            value = getattr(self, attr)
            data[key] = list(value) if isinstance(value, tuple) else value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> BackupManifest:
        """Build a manifest, filling absent fields with empty values.

        Unknown keys are ignored. Absent fields are left for
        `validate_manifest` to report rather than raising here.
        """
        excluded = data.get("excludedDirs") or ()
        return cls(
            version=str(data.get("version", "")),
            timestamp=str(data.get("timestamp", "")),
            hq_version=str(data.get("hqVersion", "")),
            hq_path=str(data.get("hqPath", "")),
            file_count=_as_int(data.get("fileCount")),
            symlink_count=_as_int(data.get("symlinkCount")),
            total_size_bytes=_as_int(data.get("totalSizeBytes")),
            total_size_human=str(data.get("totalSizeHuman", "")),
            excluded_dirs=tuple(str(item) for item in excluded)
            if isinstance(excluded, (list, tuple))
            else (),
            platform=str(data.get("platform", "")),
            backup_method=str(data.get("backupMethod", "")),
            symlink_handling=str(data.get("symlinkHandling", "")),
        )


def _as_int(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def generate_manifest(
    *,
    timestamp: str,
    hq_version: str,
    hq_path: str,
    file_count: int,
    symlink_count: int,
    total_size_bytes: int,
    platform: str,
    backup_method: str,
    excluded_dirs: Sequence[str] = BACKUP_EXCLUDED_DIRS,
) -> BackupManifest:
    return BackupManifest(
        version=MANIFEST_SCHEMA_VERSION,
        timestamp=timestamp,
        hq_version=hq_version,
        hq_path=hq_path,
        file_count=file_count,
        symlink_count=symlink_count,
        total_size_bytes=total_size_bytes,
        total_size_human=human_size(total_size_bytes),
        excluded_dirs=tuple(excluded_dirs),
        platform=platform,
        backup_method=backup_method,
        symlink_handling=SYMLINK_HANDLING,
    )


def serialize_manifest(manifest: BackupManifest) -> str:
    return json.dumps(manifest.to_dict(), indent=2) + "\n"


def parse_manifest(text: str) -> BackupManifest | None:
    """Parse manifest JSON; None when it is not a manifest at all."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    if not isinstance(data.get("version"), str):
        return None
    if not isinstance(data.get("timestamp"), str):
        return None
    file_count = data.get("fileCount")
    if isinstance(file_count, bool) or not isinstance(file_count, int):
        return None
    return BackupManifest.from_dict(data)


@dataclass(frozen=True)
class ManifestValidation:
    valid: bool
    errors: tuple[str, ...] = ()


def validate_manifest(manifest: BackupManifest) -> ManifestValidation:
    errors: list[str] = []
    if not manifest.version:
        errors.append("Missing version field")
    if not manifest.timestamp:
        errors.append("Missing timestamp field")
    if not manifest.hq_version:
        errors.append("Missing HQ version field")
    if not manifest.hq_path:
        errors.append("Missing HQ path")
    if manifest.file_count < 0:
        errors.append("Negative file count")
    if manifest.file_count == 0:
        errors.append("File count is zero (suspicious)")
    if manifest.symlink_count < 0:
        errors.append("Negative symlink count")
    if manifest.total_size_bytes < 0:
        errors.append("Negative total size")
    if not manifest.total_size_human:
        errors.append("Missing human-readable size")
    if not manifest.excluded_dirs:
        errors.append("Missing excluded directories")
    if manifest.platform not in KNOWN_PLATFORMS:
        errors.append(f"Unknown platform: {manifest.platform or '(missing)'}")
    if manifest.backup_method not in KNOWN_BACKUP_METHODS:
        errors.append(f"Unknown backup method: {manifest.backup_method or '(missing)'}")
    if not manifest.symlink_handling:
        errors.append("Missing symlink handling field")
    return ManifestValidation(valid=not errors, errors=tuple(errors))


@dataclass(frozen=True)
class VerificationResult:
    status: str
    difference: int

    @property
    def ok(self) -> bool:
        return self.status != STATUS_MISMATCH


def verify_backup(expected: int, actual: int, tolerance: int = 3) -> VerificationResult:
    difference = expected - actual
    if difference == 0:
        return VerificationResult(STATUS_VERIFIED, 0)
    if abs(difference) <= tolerance:
        return VerificationResult(STATUS_VERIFIED_TOLERANCE, difference)
    return VerificationResult(STATUS_MISMATCH, difference)


def verify_restore(expected: int, actual: int, tolerance: int = 5) -> VerificationResult:
    # files may legitimately have appeared since the backup was taken
    difference = actual - expected
    if abs(difference) <= tolerance:
        return VerificationResult(STATUS_MATCH, difference)
    return VerificationResult(STATUS_MISMATCH, difference)


@dataclass(frozen=True)
class TreeCounts:
    file_count: int = 0
    symlink_count: int = 0
    total_size_bytes: int = 0


def count_tree(
    root: Path,
    excluded_dirs: Sequence[str] = BACKUP_EXCLUDED_DIRS,
    skip_at_root: Sequence[str] = (),
) -> TreeCounts:
    """Count regular files and symlinks without following any link."""
    files = links = size = 0
    excluded = set(excluded_dirs)
    for current, dirnames, filenames in os.walk(root):
        at_root = Path(current) == root
        kept_dirs: list[str] = []
        for name in dirnames:
            if name in excluded or (at_root and name in skip_at_root):
                continue
            if os.path.islink(os.path.join(current, name)):
                links += 1
                continue
            kept_dirs.append(name)
        dirnames[:] = kept_dirs
        for name in filenames:
            if at_root and name in skip_at_root:
                continue
            path = os.path.join(current, name)
            try:
                st = os.lstat(path)
            except OSError as exc:
                logger.warning("Cannot stat %s: %s", path, exc)
                continue
            if os.path.islink(path):
                links += 1
            else:
                files += 1
                size += st.st_size
    return TreeCounts(file_count=files, symlink_count=links, total_size_bytes=size)


class BackupMethod(Protocol):
    name: str

    def copy_tree(
        self,
        source: Path,
        destination: Path,
        exclude_anywhere: Sequence[str] = (),
        exclude_at_root: Sequence[str] = (),
    ) -> list[str]:
        """Mirror `source` into `destination`; return per-path errors."""
        ...


def _same_link(source: Path, target: Path) -> bool:
    """True when `target` already is the symlink `source` describes.

    A symlink in the way of a copy is unlinked first: copytree cannot
    replace one, and copying a file onto it would write through the link.
    """
    if not target.is_symlink():
        return False
    if source.is_symlink() and os.readlink(source) == os.readlink(target):
        return True
    target.unlink()
    return False


class CopytreeMethod:
    name = "copytree"

    def copy_tree(
        self,
        source: Path,
        destination: Path,
        exclude_anywhere: Sequence[str] = (),
        exclude_at_root: Sequence[str] = (),
    ) -> list[str]:
        anywhere = set(exclude_anywhere)
        at_root = set(exclude_at_root)

        def _ignore(current: str, names: list[str]) -> set[str]:
            skipped = {name for name in names if name in anywhere}
            if Path(current) == source:
                skipped.update(name for name in names if name in at_root)
            target_dir = destination / Path(current).relative_to(source)
            for name in set(names) - skipped:
                if _same_link(Path(current) / name, target_dir / name):
                    skipped.add(name)
            return skipped

        try:
            shutil.copytree(
                source,
                destination,
                symlinks=True,
                ignore=_ignore,
                dirs_exist_ok=True,
            )
        except shutil.Error as exc:
            errors = [f"{src}: {why}" for src, _dst, why in exc.args[0]]
            for error in errors:
                logger.warning("Copy failed: %s", error)
            return errors
        return []


class RsyncMethod:
    name = "rsync"

    def __init__(self, executable: str = "rsync") -> None:
        self.executable = executable

    def copy_tree(
        self,
        source: Path,
        destination: Path,
        exclude_anywhere: Sequence[str] = (),
        exclude_at_root: Sequence[str] = (),
    ) -> list[str]:
        destination.mkdir(parents=True, exist_ok=True)
        cmd = [self.executable, "-a"]
        cmd.extend(f"--exclude={name}" for name in exclude_anywhere)
        cmd.extend(f"--exclude=/{name}" for name in exclude_at_root)
        cmd.extend([f"{source}/", f"{destination}/"])
        proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
        if proc.returncode == 0:
            return []
        errors = [line for line in proc.stderr.splitlines() if line.strip()]
        if not errors:
            errors = [f"rsync exited with status {proc.returncode}"]
        for error in errors:
            logger.warning("rsync: %s", error)
        return errors


def detect_platform() -> str:
    if sys.platform == "darwin":
        return "macos"
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform in {"win32", "cygwin", "msys"}:
        return "windows-bash"
    return "unknown"


def select_backup_method(
    platform: str, which: Callable[[str], str | None] = shutil.which
) -> BackupMethod:
    if platform in {"macos", "linux"}:
        rsync = which("rsync")
        if rsync:
            return RsyncMethod(rsync)
    return CopytreeMethod()


@dataclass(frozen=True)
class BackupSnapshot:
    directory: Path
    manifest: BackupManifest
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class RestoreResult:
    restored: bool
    verification: VerificationResult | None = None
    errors: tuple[str, ...] = ()
    manifest: BackupManifest | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BackupManager:
    """Owns `<root>/.hq-backup/` and every snapshot under it.

    The copy method is chosen once, by platform, unless one is injected.
    Backups are never deleted or rotated here.
    """

    root: Path
    method: BackupMethod | None = None
    platform: str | None = None
    backup_root: Path | None = None
    tolerance: int = 3
    restore_tolerance: int = 5
    clock: Callable[[], datetime] = field(default=_utc_now)

    def __post_init__(self) -> None:
        self.root = Path(self.root)
        if self.platform is None:
            self.platform = detect_platform()
        if self.method is None:
            self.method = select_backup_method(self.platform)
        if self.backup_root is None:
            self.backup_root = self.root / BACKUP_DIR_NAME

    def _new_backup_dir(self, now: datetime) -> Path:
        assert self.backup_root is not None
        base = now.strftime(BACKUP_TIMESTAMP_FORMAT)
        candidate = self.backup_root / base
        suffix = 1
        while candidate.exists():
            suffix += 1
            candidate = self.backup_root / f"{base}-{suffix}"
        try:
            candidate.mkdir(parents=True)
        except OSError as exc:
            raise BackupError(f"Cannot create backup directory {candidate}: {exc}") from exc
        return candidate

    def snapshot(
        self,
        hq_version: str,
        exclude_dirs: Sequence[str] = BACKUP_EXCLUDED_DIRS,
    ) -> BackupSnapshot:
        assert self.method is not None and self.platform is not None
        if BACKUP_DIR_NAME not in exclude_dirs:
            exclude_dirs = (*exclude_dirs, BACKUP_DIR_NAME)
        now = self.clock()
        directory = self._new_backup_dir(now)
        logger.info("Backing up %s to %s (%s)", self.root, directory, self.method.name)

        errors = self.method.copy_tree(self.root, directory, exclude_anywhere=exclude_dirs)
        counts = count_tree(self.root, exclude_dirs)
        copied = count_tree(directory, (), skip_at_root=_BACKUP_SIDECARS)
        if errors and copied.file_count == 0:
            raise BackupError(f"Snapshot copy into {directory} failed: {errors[0]}")

        manifest = generate_manifest(
            timestamp=now.strftime("%Y-%m-%dT%H:%M:%SZ"),
            hq_version=hq_version,
            hq_path=str(self.root),
            file_count=counts.file_count,
            symlink_count=counts.symlink_count,
            total_size_bytes=counts.total_size_bytes,
            platform=self.platform,
            backup_method=self.method.name,
            excluded_dirs=exclude_dirs,
        )
        try:
            (directory / BACKUP_MANIFEST_NAME).write_text(
                serialize_manifest(manifest), encoding="utf-8"
            )
        except OSError as exc:
            raise BackupError(f"Cannot write backup manifest: {exc}") from exc
        logger.info(
            "Backup holds %s file(s), %s symlink(s), %s",
            counts.file_count,
            counts.symlink_count,
            manifest.total_size_human,
        )
        return BackupSnapshot(directory=directory, manifest=manifest, errors=tuple(errors))

    def verify(self, snapshot: BackupSnapshot) -> VerificationResult:
        return self.verify_directory(snapshot.directory, snapshot.manifest)

    def verify_directory(
        self, backup_dir: Path, manifest: BackupManifest
    ) -> VerificationResult:
        actual = count_tree(backup_dir, (), skip_at_root=_BACKUP_SIDECARS)
        result = verify_backup(manifest.file_count, actual.file_count, self.tolerance)
        log = logger.info if result.ok else logger.error
        log(
            "Backup verification: %s (expected %s, found %s)",
            result.status,
            manifest.file_count,
            actual.file_count,
        )
        return result

    def list_backups(self) -> list[Path]:
        """Backup directories holding a manifest, oldest first."""
        assert self.backup_root is not None
        if not self.backup_root.is_dir():
            return []
        return sorted(
            child
            for child in self.backup_root.iterdir()
            if child.is_dir() and (child / BACKUP_MANIFEST_NAME).is_file()
        )

    def load_manifest(self, backup_dir: Path) -> BackupManifest | None:
        try:
            text = (backup_dir / BACKUP_MANIFEST_NAME).read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot read manifest in %s: %s", backup_dir, exc)
            return None
        return parse_manifest(text)

    def archive_modified(
        self, backup_dir: Path, relpath: str, follow_symlinks: bool = False
    ) -> Path:
        """Copy the pre-merge original of `relpath` under `modified/`.

        With `follow_symlinks` a linked file is saved as the content it points
        to. Raises OSError; the caller must not touch the file when this fails.
        """
        source = self.root / relpath
        target = backup_dir / BACKUP_MODIFIED_DIR / relpath
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_symlink():
            target.unlink()
        if source.is_symlink() and not follow_symlinks:
            target.unlink(missing_ok=True)
            os.symlink(os.readlink(source), target)
        else:
            shutil.copy2(source, target)
        return target

    def archive_removed(self, backup_dir: Path, relpath: str) -> Path:
        source = self.root / relpath
        target = backup_dir / BACKUP_REMOVED_DIR / relpath
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(target))
        return target

    def restore(self, backup_dir: Path) -> RestoreResult:
        """Copy one explicitly chosen backup back over the installation.

        The backup directory and its siblings are left in place.
        """
        assert self.method is not None
        manifest = self.load_manifest(backup_dir)
        if manifest is None:
            return RestoreResult(
                restored=False,
                errors=(f"No readable manifest in {backup_dir}",),
            )
        validation = validate_manifest(manifest)
        if not validation.valid:
            return RestoreResult(restored=False, errors=validation.errors, manifest=manifest)

        logger.info("Restoring %s from %s", self.root, backup_dir)
        errors = self.method.copy_tree(backup_dir, self.root, exclude_at_root=_BACKUP_SIDECARS)
        actual = count_tree(self.root, manifest.excluded_dirs or BACKUP_EXCLUDED_DIRS)
        verification = verify_restore(
            manifest.file_count, actual.file_count, self.restore_tolerance
        )
        return RestoreResult(
            restored=True,
            verification=verification,
            errors=tuple(errors),
            manifest=manifest,
        )
