from __future__ import annotations

import concurrent.futures
import hashlib
import logging
import os
import stat
import time
from collections.abc import Callable
from pathlib import Path, PurePosixPath

from .config import BINARY_EXTENSIONS, BINARY_SNIFF_BYTES, GITKEEP_NAME
from .errors import check_failure_rate
from .excludes import IgnoreRules, default_ignore_rules
from .models import FileEntry, NodeType
from .text_utils import normalize_relpath

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024


def compute_hash(content: bytes | str) -> str:
    data = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(data).hexdigest()


def hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def is_binary_extension(relpath: str) -> bool:
    name = relpath.rsplit("/", 1)[-1]
    idx = name.rfind(".")
    if idx < 0:
        return False
    return name[idx:].lower() in BINARY_EXTENSIONS


def has_binary_content(head: bytes) -> bool:
    return b"\x00" in head[:BINARY_SNIFF_BYTES]


def _node_type(st_mode: int) -> NodeType:
    if stat.S_ISDIR(st_mode):
        return NodeType.DIRECTORY
    if stat.S_ISLNK(st_mode):
        return NodeType.SYMLINK
    return NodeType.FILE


def _child_relpath(rel_dir: PurePosixPath, name: str) -> str:
    child = PurePosixPath(name) if rel_dir == PurePosixPath(".") else rel_dir / name
    return normalize_relpath(child.as_posix())


class TreeScanner:
    """Walks one directory tree into a `relpath -> FileEntry` map.

    Symlinks are recorded but never followed. Regular files are hashed in a
    small thread pool; a file that cannot be read is logged and left out of
    the result, and the scan fails only when too many files are unreadable.
    """

    def __init__(
        self,
        root: Path,
        ignore: IgnoreRules | None = None,
        *,
        hash_workers: int = 4,
        failure_threshold: float = 0.3,
    ) -> None:
        self.root = root.expanduser().resolve()
        self.ignore = ignore or default_ignore_rules()
        self.hash_workers = max(1, hash_workers)
        self.failure_threshold = failure_threshold
        self.errors: list[str] = []

    def scan(
        self,
        progress_cb: Callable[[PurePosixPath, int, int], None] | None = None,
    ) -> dict[str, FileEntry]:
        if not self.root.exists() or not self.root.is_dir():
            raise FileNotFoundError(f"Tree root not found: {self.root}")

        self.errors = []
        records: dict[str, FileEntry] = {}
        regular_files: list[tuple[str, Path]] = []
        unreadable = 0
        dirs_scanned = 0
        last_progress = 0.0

        for current_dir, dirs, files in os.walk(self.root, topdown=True):
            current_path = Path(current_dir)
            rel_dir = PurePosixPath(".")
            if current_path != self.root:
                rel_dir = PurePosixPath(current_path.relative_to(self.root).as_posix())
            dirs_scanned += 1
            is_empty = not dirs and not files

            now = time.monotonic()
            if progress_cb is not None and (now - last_progress) >= 0.2:
                progress_cb(rel_dir, dirs_scanned, len(records) + len(regular_files))
                last_progress = now

            kept_dirs: list[str] = []
            for dir_name in dirs:
                relpath = _child_relpath(rel_dir, dir_name)
                if self.ignore.is_ignored(relpath, is_dir=True):
                    continue
                full_path = current_path / dir_name
                if full_path.is_symlink():
                    # os.walk lists symlinked directories with the real ones
                    records[relpath] = self._symlink_entry(relpath, full_path)
                    continue
                kept_dirs.append(dir_name)
            dirs[:] = kept_dirs

            for filename in files:
                relpath = _child_relpath(rel_dir, filename)
                if self.ignore.is_ignored(relpath, is_dir=False):
                    continue
                full_path = current_path / filename
                try:
                    st = full_path.lstat()
                except OSError as exc:
                    self._record_error(relpath, exc)
                    unreadable += 1
                    continue
                if _node_type(st.st_mode) == NodeType.SYMLINK:
                    records[relpath] = self._symlink_entry(relpath, full_path)
                else:
                    regular_files.append((relpath, full_path))

            if rel_dir != PurePosixPath(".") and is_empty:
                relpath = normalize_relpath(rel_dir.as_posix())
                records[relpath] = FileEntry(
                    relpath=relpath, node_type=NodeType.DIRECTORY
                )

        records.update(self._hash_files(regular_files))
        check_failure_rate(
            "inventory",
            len(self.errors),
            len(regular_files) + unreadable,
            self.failure_threshold,
        )

        if progress_cb is not None:
            progress_cb(PurePosixPath("."), dirs_scanned, len(records))

        return dict(sorted(records.items()))

    def _record_error(self, relpath: str, exc: OSError) -> None:
        logger.warning("Skipping unreadable path %s: %s", relpath, exc)
        self.errors.append(f"{relpath}: {exc}")

    def _symlink_entry(self, relpath: str, full_path: Path) -> FileEntry:
        return FileEntry(
            relpath=relpath,
            node_type=NodeType.SYMLINK,
            size=0,
            hash=None,
            symlink_target=PurePosixPath(os.readlink(full_path)).as_posix(),
        )

    def _file_entry(self, relpath: str, full_path: Path) -> FileEntry:
        size = full_path.lstat().st_size
        if is_binary_extension(relpath):
            is_binary = True
        else:
            with full_path.open("rb") as handle:
                is_binary = has_binary_content(handle.read(BINARY_SNIFF_BYTES))
        return FileEntry(
            relpath=relpath,
            node_type=NodeType.FILE,
            size=size,
            hash=hash_file(full_path),
            is_binary=is_binary,
            is_gitkeep=relpath.rsplit("/", 1)[-1] == GITKEEP_NAME,
        )

    def _hash_files(self, files: list[tuple[str, Path]]) -> dict[str, FileEntry]:
        entries: dict[str, FileEntry] = {}
        if not files:
            return entries
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.hash_workers
        ) as pool:
            futures = {
                pool.submit(self._file_entry, relpath, full_path): relpath
                for relpath, full_path in files
            }
            for future in concurrent.futures.as_completed(futures):
                relpath = futures[future]
                try:
                    entries[relpath] = future.result()
                except OSError as exc:
                    self._record_error(relpath, exc)
        return entries


def walk(root: Path, ignore: IgnoreRules | None = None) -> dict[str, FileEntry]:
    return TreeScanner(root, ignore).scan()
