from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from hqmigrate.inventory import compute_hash
from hqmigrate.models import DiffCategory, DiffEntry, DiffResult, FileEntry, NodeType

FIXTURES = Path(__file__).parent / "fixtures"
FIXED_NOW = datetime(2026, 1, 10, 12, 0, 0, tzinfo=timezone.utc)


def mk_entry(
    relpath: str,
    content: str | bytes | None = None,
    *,
    node_type: NodeType = NodeType.FILE,
    symlink_target: str | None = None,
    is_binary: bool = False,
) -> FileEntry:
    if node_type != NodeType.FILE:
        return FileEntry(
            relpath=relpath,
            node_type=node_type,
            symlink_target=symlink_target,
        )
    body = content if content is not None else f"content of {relpath}"
    size = len(body.encode("utf-8")) if isinstance(body, str) else len(body)
    return FileEntry(
        relpath=relpath,
        node_type=NodeType.FILE,
        size=size,
        hash=compute_hash(body),
        is_binary=is_binary,
        is_gitkeep=relpath.rsplit("/", 1)[-1] == ".gitkeep",
    )


def mk_tree(files: dict[str, str] | None = None, **named: str) -> dict[str, FileEntry]:
    """Inventory built from a path mapping or keyword paths (`__` stands for `/`)."""
    entries = {}
    for key, content in {**(files or {}), **named}.items():
        relpath = key.replace("__", "/")
        entries[relpath] = mk_entry(relpath, content)
    return entries


def mk_diff(
    path: str,
    category: DiffCategory,
    **kwargs,
) -> DiffEntry:
    return DiffEntry(path=path, category=category, **kwargs)


def mk_result(**buckets: list[DiffEntry]) -> DiffResult:
    return DiffResult(**buckets)


def write_tree(root: Path, files: dict[str, str | bytes]) -> Path:
    """Create files under `root`; values starting with `->` become symlinks."""
    root.mkdir(parents=True, exist_ok=True)
    for relpath, content in files.items():
        target = root / relpath
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        elif content.startswith("->"):
            os.symlink(content[2:].strip(), target)
        else:
            target.write_text(content, encoding="utf-8", newline="")
    return root


def read_fixture(name: str) -> str:
    with (FIXTURES / name).open("r", encoding="utf-8", newline="") as handle:
        return handle.read()


@pytest.fixture
def claude_template() -> str:
    return read_fixture("claude_template.md")


@pytest.fixture
def claude_local() -> str:
    return read_fixture("claude_local.md")


@pytest.fixture
def worker_template() -> str:
    return read_fixture("worker_template.yaml")


@pytest.fixture
def worker_local() -> str:
    return read_fixture("worker_local.yaml")


@pytest.fixture
def registry_template() -> str:
    return read_fixture("registry_template.yaml")


@pytest.fixture
def registry_local() -> str:
    return read_fixture("registry_local.yaml")
