from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .backup import BackupManager, BackupSnapshot, VerificationResult, count_tree
from .config import VERSION_MARKER, MigrationSettings
from .diff import categorize, describe_modifications
from .errors import MigrationError, TemplateTooSmallError, check_failure_rate
from .excludes import default_ignore_rules
from .fetch import template_version
from .inventory import TreeScanner
from .merge import MergeResult, merge
from .models import DiffResult, FileEntry, MergeStrategy
from .plan import Plan, PlanAction, PlanEntry, build_plan
from .strategies import strategy_for
from .version import LocalFilesystem, VersionResult, detect_version, parse_version

logger = logging.getLogger(__name__)


class MigrationPhase(str, Enum):
    PREFLIGHT = "preflight"
    BACKUP = "backup"
    VERIFY_BACKUP = "verify_backup"
    APPLY = "apply"
    FINALIZE = "finalize"


@dataclass(frozen=True)
class Analysis:
    local_version: VersionResult
    template_version: str
    local_files: dict[str, FileEntry]
    template_files: dict[str, FileEntry]
    diff: DiffResult
    plan: Plan


def analyze(
    local_root: Path,
    template_root: Path,
    settings: MigrationSettings | None = None,
    baseline_root: Path | None = None,
) -> Analysis:
    """Inventory both trees, classify every path and build the plan."""
    resolved = settings or MigrationSettings()
    ignore = default_ignore_rules(resolved.extra_ignore)

    def scan(root: Path) -> dict[str, FileEntry]:
        return TreeScanner(
            root,
            ignore,
            hash_workers=resolved.hash_workers,
            failure_threshold=resolved.failure_threshold,
        ).scan()

    local_version = detect_version(LocalFilesystem(local_root))
    latest = template_version(template_root) or "unknown"
    local_files = scan(local_root)
    template_files = scan(template_root)
    baseline = set(scan(baseline_root)) if baseline_root is not None else None

    diff = categorize(template_files, local_files, baseline)
    describe_modifications(diff, template_root, local_root, template_files, local_files)
    plan = build_plan(
        diff,
        strategy_for,
        current_version=local_version.version,
        latest_version=latest,
    )
    return Analysis(
        local_version=local_version,
        template_version=latest,
        local_files=local_files,
        template_files=template_files,
        diff=diff,
        plan=plan,
    )


@dataclass
class MigrationOutcome:
    completed_phases: list[MigrationPhase] = field(default_factory=list)
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    merge_results: dict[str, MergeResult] = field(default_factory=dict)
    backup: BackupSnapshot | None = None
    verification: VerificationResult | None = None
    aborted: bool = False
    abort_reason: str | None = None

    def abort(self, reason: str) -> MigrationOutcome:
        self.aborted = True
        self.abort_reason = reason
        completed = ", ".join(phase.value for phase in self.completed_phases) or "none"
        logger.error("Migration aborted: %s (completed phases: %s)", reason, completed)
        return self

    @property
    def succeeded(self) -> bool:
        return not self.aborted and not self.errors


ConfirmFn = Callable[[MigrationPhase, Plan], bool]
ProgressFn = Callable[[int, int, PlanEntry, bool, str | None], None]


def _read_text(path: Path) -> str:
    with path.open("r", encoding="utf-8", newline="") as handle:
        return handle.read()


def _write_text(path: Path, content: str) -> None:
    with path.open("w", encoding="utf-8", newline="") as handle:
        handle.write(content)


def _copy_node(source: Path, destination: Path) -> None:
    """Copy one file, symlink or empty directory; symlinks stay symlinks."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    if source.is_symlink():
        if destination.is_symlink() or destination.is_file():
            destination.unlink()
        os.symlink(os.readlink(source), destination)
    elif source.is_dir():
        destination.mkdir(parents=True, exist_ok=True)
    else:
        if destination.is_symlink():
            destination.unlink()
        shutil.copy2(source, destination)


class MigrationExecutor:
    """Runs a plan phase by phase against the installation root.

    Nothing under the root is touched before the backup has been taken and
    verified. A confirmation callback, when given, is asked before the
    backup and before changes are applied; declining ends the run there.
    """

    def __init__(
        self,
        local_root: Path,
        template_root: Path,
        plan: Plan,
        *,
        backup_manager: BackupManager | None = None,
        settings: MigrationSettings | None = None,
        confirm: ConfirmFn | None = None,
        progress_cb: ProgressFn | None = None,
        template_files: Mapping[str, FileEntry] | None = None,
    ) -> None:
        self.local_root = Path(local_root)
        self.template_root = Path(template_root)
        self.plan = plan
        self.settings = settings or MigrationSettings()
        self.backup_manager = backup_manager or BackupManager(
            self.local_root,
            tolerance=self.settings.backup_tolerance,
            restore_tolerance=self.settings.restore_tolerance,
        )
        self.confirm = confirm
        self.progress_cb = progress_cb
        self.template_files = template_files

    def run(self) -> MigrationOutcome:
        outcome = MigrationOutcome()
        try:
            self._preflight()
            outcome.completed_phases.append(MigrationPhase.PREFLIGHT)

            if not self._confirmed(MigrationPhase.BACKUP):
                return outcome.abort("Cancelled before backup")
            snapshot = self.backup_manager.snapshot(self.plan.current_version)
            outcome.backup = snapshot
            outcome.completed_phases.append(MigrationPhase.BACKUP)

            verification = self.backup_manager.verify(snapshot)
            outcome.verification = verification
            if not verification.ok:
                return outcome.abort(
                    f"Backup verification failed ({verification.status}, "
                    f"difference {verification.difference:+d})"
                )
            outcome.completed_phases.append(MigrationPhase.VERIFY_BACKUP)

            if not self._confirmed(MigrationPhase.APPLY):
                return outcome.abort("Cancelled before applying changes")
            self._apply(snapshot.directory, outcome)
            outcome.completed_phases.append(MigrationPhase.APPLY)

            self._finalize(outcome)
            outcome.completed_phases.append(MigrationPhase.FINALIZE)
        except MigrationError as exc:
            return outcome.abort(str(exc))
        return outcome

    def _confirmed(self, phase: MigrationPhase) -> bool:
        if self.confirm is None:
            return True
        return self.confirm(phase, self.plan)

    def _preflight(self) -> None:
        if self.template_files is not None:
            file_count = len(self.template_files)
        else:
            file_count = count_tree(self.template_root, ()).file_count
        if file_count < self.settings.min_template_files:
            raise TemplateTooSmallError(file_count, self.settings.min_template_files)
        logger.info(
            "Preflight ok: %s template file(s), %s planned change(s)",
            file_count,
            len(self.plan.entries),
        )

    def _apply(self, backup_dir: Path, outcome: MigrationOutcome) -> None:
        total = len(self.plan.entries)
        failed = 0
        for done, entry in enumerate(self.plan.entries, start=1):
            ok = False
            error: str | None = None
            try:
                ok = self._apply_entry(entry, backup_dir, outcome)
            except (OSError, UnicodeDecodeError) as exc:
                error = str(exc)

            if ok:
                outcome.applied.append(entry.path)
            elif error:
                failed += 1
                message = f"{entry.action.value} {entry.path}: {error}"
                logger.warning("%s", message)
                outcome.errors.append(message)

            if self.progress_cb is not None:
                self.progress_cb(done, total, entry, ok, error)

        check_failure_rate("apply", failed, total, self.settings.failure_threshold)

    def _apply_entry(
        self, entry: PlanEntry, backup_dir: Path, outcome: MigrationOutcome
    ) -> bool:
        match entry.action:
            case PlanAction.ADD:
                _copy_node(self.template_root / entry.path, self.local_root / entry.path)
                return True
            case PlanAction.UPDATE:
                return self._update(entry, backup_dir, outcome)
            case PlanAction.MOVE:
                assert entry.old_path is not None and entry.new_path is not None
                destination = self.local_root / entry.new_path
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(self.local_root / entry.old_path), str(destination))
                return True
            case PlanAction.REMOVE:
                self.backup_manager.archive_removed(backup_dir, entry.path)
                return True
        raise ValueError(f"Unknown plan action: {entry.action!r}")

    def _update(self, entry: PlanEntry, backup_dir: Path, outcome: MigrationOutcome) -> bool:
        strategy = entry.merge_strategy or MergeStrategy.OVERWRITE
        merging = strategy != MergeStrategy.OVERWRITE
        try:
            self.backup_manager.archive_modified(
                backup_dir, entry.path, follow_symlinks=merging
            )
        except OSError as exc:
            # never modify a file that has no safety copy
            message = f"UPDATE {entry.path}: not modified, backup of original failed: {exc}"
            logger.warning("%s", message)
            outcome.errors.append(message)
            outcome.skipped.append(entry.path)
            return False

        template_path = self.template_root / entry.path
        local_path = self.local_root / entry.path
        if not merging:
            if local_path.is_dir() and not local_path.is_symlink():
                raise IsADirectoryError(f"Refusing to replace directory {entry.path}")
            _copy_node(template_path, local_path)
            return True

        # symlinks are merged through: reads and writes land on the link target
        if not template_path.is_file() or not local_path.is_file():
            outcome.skipped.append(entry.path)
            logger.warning(
                "Left %s untouched: %s merge needs a regular file on both sides",
                entry.path,
                strategy.value,
            )
            return False

        local_text = _read_text(local_path)
        result = merge(strategy, _read_text(template_path), local_text, strategy_for(entry.path))
        outcome.merge_results[entry.path] = result
        if not result.success:
            outcome.skipped.append(entry.path)
            logger.warning("Left %s untouched: %s", entry.path, result.message)
            return False
        for warning in result.warnings:
            logger.warning("%s: %s", entry.path, warning)
        if result.merged != local_text:
            _write_text(local_path, result.merged)
        return True

    def _finalize(self, outcome: MigrationOutcome) -> None:
        latest = parse_version(self.plan.latest_version)
        marker = self.local_root / VERSION_MARKER
        if latest is not None:
            try:
                current = marker.read_text(encoding="utf-8").strip() if marker.is_file() else None
                if current != latest:
                    marker.write_text(f"{latest}\n", encoding="utf-8")
            except OSError as exc:
                outcome.errors.append(f"Cannot update {VERSION_MARKER}: {exc}")
        logger.info(
            "Migration applied: %s change(s), %s skipped, %s error(s)",
            len(outcome.applied),
            len(outcome.skipped),
            len(outcome.errors),
        )
