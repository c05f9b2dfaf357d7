from __future__ import annotations

import hashlib

import pytest

from hqmigrate.errors import CriticalPhaseFailure
from hqmigrate.inventory import TreeScanner, compute_hash, has_binary_content, walk
from hqmigrate.models import NodeType

from conftest import write_tree


def test_walk_records_files_with_sha256(tmp_path) -> None:
    root = write_tree(
        tmp_path / "hq",
        {
            "README.md": "hello\n",
            ".claude/commands/learn.md": "# learn\n",
        },
    )

    entries = walk(root)

    assert list(entries) == [".claude/commands/learn.md", "README.md"]
    readme = entries["README.md"]
    assert readme.node_type == NodeType.FILE
    assert readme.size == 6
    assert readme.hash == hashlib.sha256(b"hello\n").hexdigest()
    assert readme.hash == compute_hash("hello\n")
    assert not readme.is_binary


def test_walk_applies_default_ignore_rules(tmp_path) -> None:
    root = write_tree(
        tmp_path / "hq",
        {
            "agents.md": "me",
            "docs/agents.md": "docs",
            "workspace/threads/T-1.json": "{}",
            "server.log": "x",
            "node_modules/pkg/index.js": "x",
            "keep.md": "k",
        },
    )

    entries = walk(root)

    assert set(entries) == {"docs/agents.md", "keep.md"}


def test_symlinks_are_recorded_not_followed(tmp_path) -> None:
    root = write_tree(
        tmp_path / "hq",
        {
            "real/file.md": "real",
            "link.md": "-> real/file.md",
        },
    )
    (root / "linked-dir").symlink_to(root / "real", target_is_directory=True)

    entries = walk(root)

    link = entries["link.md"]
    assert link.node_type == NodeType.SYMLINK
    assert link.symlink_target == "real/file.md"
    assert link.hash is None
    assert link.size == 0
    assert entries["linked-dir"].node_type == NodeType.SYMLINK
    assert "linked-dir/file.md" not in entries


def test_binary_detection_by_extension_and_content(tmp_path) -> None:
    root = write_tree(
        tmp_path / "hq",
        {
            "logo.png": "not really an image",
            "data.bin": b"abc\x00def",
            "notes.txt": "plain text",
        },
    )

    entries = walk(root)

    assert entries["logo.png"].is_binary
    assert entries["data.bin"].is_binary
    assert not entries["notes.txt"].is_binary


def test_zero_byte_beyond_sniff_window_is_text() -> None:
    assert has_binary_content(b"a\x00")
    assert not has_binary_content(b"a" * 8192 + b"\x00")


def test_gitkeep_and_empty_directories(tmp_path) -> None:
    root = write_tree(tmp_path / "hq", {"workspace/drafts/.gitkeep": ""})
    (root / "empty" / "nested").mkdir(parents=True)

    entries = walk(root)

    assert entries["workspace/drafts/.gitkeep"].is_gitkeep
    assert entries["empty/nested"].node_type == NodeType.DIRECTORY
    assert "empty" not in entries


def test_missing_root_raises(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        walk(tmp_path / "missing")


def test_unreadable_files_are_skipped_below_threshold(tmp_path, monkeypatch) -> None:
    root = write_tree(tmp_path / "hq", {f"f{i}.md": f"file {i}" for i in range(10)})
    scanner = TreeScanner(root, hash_workers=1)
    original = TreeScanner._file_entry

    def flaky(self, relpath, full_path):
        if relpath == "f3.md":
            raise PermissionError("denied")
        return original(self, relpath, full_path)

    monkeypatch.setattr(TreeScanner, "_file_entry", flaky)

    entries = scanner.scan()

    assert "f3.md" not in entries
    assert len(entries) == 9
    assert scanner.errors and scanner.errors[0].startswith("f3.md")


def test_unreadable_files_above_threshold_fail_the_scan(tmp_path, monkeypatch) -> None:
    root = write_tree(tmp_path / "hq", {f"f{i}.md": f"file {i}" for i in range(4)})

    def always_fails(self, relpath, full_path):
        raise PermissionError("denied")

    monkeypatch.setattr(TreeScanner, "_file_entry", always_fails)

    with pytest.raises(CriticalPhaseFailure):
        TreeScanner(root).scan()


def test_decomposed_names_are_keyed_in_nfc(tmp_path) -> None:
    root = tmp_path / "hq"
    root.mkdir()
    (root / "cafe\u0301.md").write_text("x", encoding="utf-8")

    entries = walk(root)

    assert list(entries) == ["caf\u00e9.md"]
    assert entries["caf\u00e9.md"].hash == compute_hash("x")
