from __future__ import annotations


class CloudsyncError(Exception):
    """Base class for every error raised by cloudsync."""

    exit_code = 1


class UsageError(CloudsyncError):
    """Bad command line or config input. Nothing has been touched yet."""

    exit_code = 2


class ConcurrentRunError(UsageError):
    pass


class OperationError(CloudsyncError):
    """Fatal, node-scoped failure during a run."""

    def __init__(self, message: str, path: str | None = None, kind: str | None = None):
        super().__init__(message)
        self.message = message
        self.path = path
        self.kind = kind

    def __str__(self) -> str:
        if self.path is None:
            return self.message
        return f"{self.message} [{self.kind or 'item'} '{self.path}']"


class LocalIOError(OperationError):
    """Local disk read/write problem; subject to the file-error policy."""


class TransientIOError(CloudsyncError):
    """Network or transport failure, retried by RetryController."""


class DuplicateInvariantError(CloudsyncError):
    exit_code = 3

    def __init__(self, entries: list[tuple[str, str]]):
        self.entries = list(entries)
        lines = [f"  {remote_id} - {path}" for remote_id, path in self.entries]
        super().__init__(
            "found duplicate remote entries:\n" + "\n".join(lines) + "\ntry to run 'clean' to resolve them"
        )

    @property
    def paths(self) -> list[str]:
        return [path for _remote_id, path in self.entries]


class ItemVanishedError(CloudsyncError):
    """A local entry disappeared between directory listing and attribute read."""

    def __init__(self, path: str):
        super().__init__(f"'{path}' does not exist anymore")
        self.path = path
