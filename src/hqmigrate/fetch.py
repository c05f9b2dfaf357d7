"""Reference-template staging.

Fetching the template over the network is someone else's job; a provider
only has to populate a directory it is handed. The staging directory lives
for exactly one `with` block and is removed on every exit path.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from .config import BACKUP_EXCLUDED_DIRS, VERSION_MARKER
from .version import parse_version

logger = logging.getLogger(__name__)


class TemplateProvider(Protocol):
    def populate(self, destination: Path) -> Path:
        """Fill `destination` with the template tree and return its root."""
        ...


class DirectoryTemplateProvider:
    """Serves a template that already sits on disk, e.g. a local checkout."""

    def __init__(self, source: Path) -> None:
        self.source = Path(source)

    def _skip_at_root(self, current: str, names: list[str]) -> set[str]:
        # checkouts and caches are skipped at the top level only
        if Path(current) != self.source:
            return set()
        return {name for name in names if name in BACKUP_EXCLUDED_DIRS}

    def populate(self, destination: Path) -> Path:
        if not self.source.is_dir():
            raise FileNotFoundError(f"Template directory not found: {self.source}")
        target = destination / "template"
        shutil.copytree(self.source, target, symlinks=True, ignore=self._skip_at_root)
        logger.debug("Staged template from %s into %s", self.source, target)
        return target


@contextmanager
def staged_template(provider: TemplateProvider) -> Iterator[Path]:
    with tempfile.TemporaryDirectory(prefix="hqmigrate-") as tmp:
        yield provider.populate(Path(tmp))


def template_version(template_root: Path) -> str | None:
    marker = template_root / VERSION_MARKER
    try:
        return parse_version(marker.read_text(encoding="utf-8"))
    except OSError:
        return None
