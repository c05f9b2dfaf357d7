from __future__ import annotations

import json
import os

import pytest

from hqmigrate.backup import (
    STATUS_MATCH,
    STATUS_MISMATCH,
    STATUS_VERIFIED,
    STATUS_VERIFIED_TOLERANCE,
    BackupManager,
    CopytreeMethod,
    RsyncMethod,
    count_tree,
    generate_manifest,
    human_size,
    parse_manifest,
    select_backup_method,
    serialize_manifest,
    validate_manifest,
    verify_backup,
    verify_restore,
)
from hqmigrate.config import BACKUP_EXCLUDED_DIRS, BACKUP_MANIFEST_NAME
from hqmigrate.errors import BackupError

from conftest import FIXED_NOW, write_tree


def _manifest(**overrides):
    values = dict(
        timestamp="2026-01-10T12:00:00Z",
        hq_version="5.1.0",
        hq_path="/home/me/hq",
        file_count=120,
        symlink_count=2,
        total_size_bytes=3 * 1024 * 1024,
        platform="linux",
        backup_method="rsync",
    )
    values.update(overrides)
    return generate_manifest(**values)


def _manager(root, **kwargs) -> BackupManager:
    return BackupManager(
        root, method=CopytreeMethod(), platform="linux", clock=lambda: FIXED_NOW, **kwargs
    )


@pytest.mark.parametrize(
    ("size", "expected"),
    [
        (0, "0 B"),
        (1023, "1023 B"),
        (1024, "1 KB"),
        (1536, "1 KB"),
        (5 * 1024 * 1024, "5.0 MB"),
        (int(2.5 * 1024 * 1024 * 1024), "2.5 GB"),
    ],
)
def test_human_size(size: int, expected: str) -> None:
    assert human_size(size) == expected


def test_manifest_serializes_with_camel_case_keys() -> None:
    manifest = _manifest()

    data = json.loads(serialize_manifest(manifest))

    assert data["version"] == "1.0"
    assert data["hqVersion"] == "5.1.0"
    assert data["fileCount"] == 120
    assert data["totalSizeHuman"] == "3.0 MB"
    assert data["excludedDirs"] == list(BACKUP_EXCLUDED_DIRS)
    assert data["symlinkHandling"] == "preserved-as-symlinks"
    assert parse_manifest(serialize_manifest(manifest)) == manifest


@pytest.mark.parametrize(
    "text",
    [
        "not json",
        "[]",
        '{"timestamp": "t", "fileCount": 1}',
        '{"version": "1.0", "timestamp": "t", "fileCount": "12"}',
        '{"version": "1.0", "timestamp": "t", "fileCount": true}',
    ],
)
def test_parse_manifest_rejects_non_manifests(text: str) -> None:
    assert parse_manifest(text) is None


def test_parse_manifest_tolerates_unknown_and_missing_fields() -> None:
    manifest = parse_manifest(
        '{"version": "1.0", "timestamp": "t", "fileCount": 4, "compression": "zstd"}'
    )

    assert manifest is not None
    assert manifest.file_count == 4
    validation = validate_manifest(manifest)
    assert not validation.valid
    assert "Missing HQ version field" in validation.errors
    assert "Unknown platform: (missing)" in validation.errors


def test_validate_manifest_accepts_generated_manifest() -> None:
    validation = validate_manifest(_manifest())

    assert validation.valid
    assert validation.errors == ()


def test_validate_manifest_flags_suspicious_values() -> None:
    validation = validate_manifest(_manifest(file_count=0, platform="beos", backup_method="ftp"))

    assert not validation.valid
    assert "File count is zero (suspicious)" in validation.errors
    assert "Unknown platform: beos" in validation.errors
    assert "Unknown backup method: ftp" in validation.errors


def test_validate_manifest_accepts_every_known_method() -> None:
    for method in ("rsync", "copytree", "tar", "robocopy"):
        assert validate_manifest(_manifest(backup_method=method)).valid


def test_verify_backup_tolerance_is_three_files() -> None:
    assert verify_backup(100, 100).status == STATUS_VERIFIED
    # 97 of 100 still verifies, which rules out a tolerance of 2
    within = verify_backup(100, 97)
    assert within.status == STATUS_VERIFIED_TOLERANCE
    assert within.difference == 3
    assert within.ok
    assert verify_backup(100, 96).status == STATUS_MISMATCH
    failed = verify_backup(100, 70)
    assert failed.status == STATUS_MISMATCH
    assert failed.difference == 30
    assert not failed.ok


def test_verify_restore_tolerance() -> None:
    assert verify_restore(100, 105).status == STATUS_MATCH
    assert verify_restore(100, 95).status == STATUS_MATCH
    grown = verify_restore(100, 106)
    assert grown.status == STATUS_MISMATCH
    assert grown.difference == 6


def test_count_tree_skips_excluded_dirs_and_counts_links(tmp_path) -> None:
    root = write_tree(
        tmp_path / "hq",
        {
            "a.md": "aaaa",
            "dir/b.md": "bb",
            "link.md": "-> a.md",
            "node_modules/pkg/index.js": "x",
            "repos/app/main.py": "x",
        },
    )

    counts = count_tree(root)

    assert counts.file_count == 2
    assert counts.symlink_count == 1
    assert counts.total_size_bytes == 6


def test_select_backup_method() -> None:
    assert isinstance(select_backup_method("linux", lambda name: "/usr/bin/rsync"), RsyncMethod)
    assert isinstance(select_backup_method("linux", lambda name: None), CopytreeMethod)
    assert isinstance(select_backup_method("windows-bash", lambda name: "rsync"), CopytreeMethod)


def test_snapshot_writes_manifest_and_verifies(tmp_path) -> None:
    root = write_tree(
        tmp_path / "hq",
        {
            "a.md": "alpha",
            "dir/b.md": "beta",
            "link.md": "-> a.md",
            "node_modules/pkg/index.js": "x",
        },
    )
    manager = _manager(root)

    snapshot = manager.snapshot("5.1.0")

    assert snapshot.directory == root / ".hq-backup" / "20260110T120000Z"
    assert (snapshot.directory / "dir" / "b.md").read_text(encoding="utf-8") == "beta"
    assert os.readlink(snapshot.directory / "link.md") == "a.md"
    assert not (snapshot.directory / "node_modules").exists()
    assert snapshot.manifest.file_count == 2
    assert snapshot.manifest.symlink_count == 1
    assert snapshot.manifest.timestamp == "2026-01-10T12:00:00Z"
    assert snapshot.manifest.backup_method == "copytree"
    assert manager.load_manifest(snapshot.directory) == snapshot.manifest
    assert manager.verify(snapshot).status == STATUS_VERIFIED


def test_snapshots_taken_in_the_same_second_do_not_collide(tmp_path) -> None:
    root = write_tree(tmp_path / "hq", {"a.md": "alpha"})
    manager = _manager(root)

    first = manager.snapshot("5.1.0")
    second = manager.snapshot("5.1.0")

    assert second.directory.name == "20260110T120000Z-2"
    assert manager.list_backups() == [first.directory, second.directory]


def test_verification_detects_missing_files(tmp_path) -> None:
    root = write_tree(tmp_path / "hq", {f"f{i}.md": str(i) for i in range(10)})
    manager = _manager(root)
    snapshot = manager.snapshot("5.1.0")
    for i in range(4):
        (snapshot.directory / f"f{i}.md").unlink()

    result = manager.verify(snapshot)

    assert result.status == STATUS_MISMATCH
    assert result.difference == 4


def test_snapshot_fails_when_backup_dir_cannot_be_created(tmp_path) -> None:
    root = write_tree(tmp_path / "hq", {"a.md": "alpha"})
    (root / ".hq-backup").write_text("in the way", encoding="utf-8")

    with pytest.raises(BackupError):
        _manager(root).snapshot("5.1.0")


def test_archive_modified_and_removed(tmp_path) -> None:
    root = write_tree(tmp_path / "hq", {"docs/a.md": "original", "old.md": "bye"})
    manager = _manager(root)
    snapshot = manager.snapshot("5.1.0")

    kept = manager.archive_modified(snapshot.directory, "docs/a.md")
    moved = manager.archive_removed(snapshot.directory, "old.md")

    assert kept == snapshot.directory / "modified" / "docs" / "a.md"
    assert kept.read_text(encoding="utf-8") == "original"
    assert (root / "docs" / "a.md").exists()
    assert moved == snapshot.directory / "removed" / "old.md"
    assert not (root / "old.md").exists()
    assert manager.verify(snapshot).status == STATUS_VERIFIED


def test_archive_modified_raises_for_missing_file(tmp_path) -> None:
    root = write_tree(tmp_path / "hq", {"a.md": "alpha"})
    manager = _manager(root)
    snapshot = manager.snapshot("5.1.0")

    with pytest.raises(OSError):
        manager.archive_modified(snapshot.directory, "missing.md")


def test_restore_copies_backup_over_installation(tmp_path) -> None:
    root = write_tree(
        tmp_path / "hq",
        {"a.md": "alpha", "dir/b.md": "beta", "link.md": "-> a.md"},
    )
    manager = _manager(root)
    snapshot = manager.snapshot("5.1.0")
    (root / "a.md").write_text("changed", encoding="utf-8")
    (root / "dir" / "b.md").unlink()
    (root / "extra.md").write_text("new since backup", encoding="utf-8")

    result = manager.restore(snapshot.directory)

    assert result.restored
    assert result.errors == ()
    assert result.verification is not None
    assert result.verification.status == STATUS_MATCH
    assert result.verification.difference == 1
    assert (root / "a.md").read_text(encoding="utf-8") == "alpha"
    assert (root / "dir" / "b.md").read_text(encoding="utf-8") == "beta"
    assert (root / "extra.md").exists()
    assert os.readlink(root / "link.md") == "a.md"
    assert not (root / BACKUP_MANIFEST_NAME).exists()
    assert snapshot.directory.is_dir()


def test_restore_refuses_invalid_manifest(tmp_path) -> None:
    root = write_tree(tmp_path / "hq", {"a.md": "alpha"})
    manager = _manager(root)
    snapshot = manager.snapshot("5.1.0")
    (snapshot.directory / BACKUP_MANIFEST_NAME).write_text("{broken", encoding="utf-8")
    (root / "a.md").write_text("changed", encoding="utf-8")

    result = manager.restore(snapshot.directory)

    assert not result.restored
    assert result.errors
    assert (root / "a.md").read_text(encoding="utf-8") == "changed"


def test_snapshot_never_copies_backups_into_themselves(tmp_path) -> None:
    root = write_tree(tmp_path / "hq", {"a.md": "alpha", "node_modules/x.js": "x"})
    manager = _manager(root)
    manager.snapshot("5.1.0")

    second = manager.snapshot("5.1.0", exclude_dirs=("node_modules",))

    assert not (second.directory / ".hq-backup").exists()
    assert ".hq-backup" in second.manifest.excluded_dirs
    assert second.manifest.file_count == 1
    assert manager.verify(second).status == STATUS_VERIFIED


def test_archive_modified_can_follow_a_link(tmp_path) -> None:
    root = write_tree(tmp_path / "hq", {"real.md": "content", "link.md": "-> real.md"})
    manager = _manager(root)
    snapshot = manager.snapshot("5.1.0")

    kept = manager.archive_modified(snapshot.directory, "link.md", follow_symlinks=True)

    assert not kept.is_symlink()
    assert kept.read_text(encoding="utf-8") == "content"
