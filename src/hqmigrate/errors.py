from __future__ import annotations


class MigrationError(Exception):
    """Base class for failures that stop a migration run."""


class BackupError(MigrationError):
    """The backup directory could not be created or populated."""


class TemplateTooSmallError(MigrationError):
    def __init__(self, file_count: int, minimum: int) -> None:
        super().__init__(
            f"Reference template has {file_count} file(s); at least {minimum} expected"
        )
        self.file_count = file_count
        self.minimum = minimum


class CriticalPhaseFailure(MigrationError):
    def __init__(self, phase: str, failed: int, total: int) -> None:
        super().__init__(
            f"Phase {phase!r} failed for {failed} of {total} item(s); stopping"
        )
        self.phase = phase
        self.failed = failed
        self.total = total


def check_failure_rate(phase: str, failed: int, total: int, threshold: float) -> None:
    if total <= 0 or failed <= 0:
        return
    if failed / total > threshold:
        raise CriticalPhaseFailure(phase, failed, total)
