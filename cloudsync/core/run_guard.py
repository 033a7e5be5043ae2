from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from cloudsync.core.errors import ConcurrentRunError

logger = logging.getLogger("guard")


class RunGuard:
    """PID-file exclusion plus the lock-file crash marker.

    The lock file exists exactly while the cache snapshot may disagree with the
    remote store: it is created before the first remote mutation (or a cold
    load) and removed only after the snapshot has been rewritten.
    """

    def __init__(self, cache_file: Path, lock_file: Path, pid_file: Path, *, dry_run: bool = False):
        self.cache_file = cache_file
        self.lock_file = lock_file
        self.pid_file = pid_file
        self.dry_run = dry_run
        self.locked = False
        self._crashed = lock_file.exists()

    @contextmanager
    def session(self, check_pid: bool = True, force: bool = False) -> Iterator[RunGuard]:
        # read-only runs neither check nor own the pid file
        if not check_pid:
            yield self
            return
        if self.pid_file.exists() and not force:
            raise ConcurrentRunError(
                f"found a running instance ('{self.pid_file}' exists); "
                "if no other cloudsync process runs, try again with '--forcestart'"
            )
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(os.getpid()), encoding="utf-8")
        try:
            yield self
        finally:
            self.pid_file.unlink(missing_ok=True)

    def crash_detected(self) -> bool:
        return self._crashed

    def cache_usable(self) -> bool:
        return not self._crashed and self.cache_file.exists()

    def lock(self) -> None:
        if self.locked:
            return
        self.locked = True
        if self.dry_run:
            return
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        self.lock_file.write_text(str(os.getpid()), encoding="utf-8")
        logger.debug("lock_created %s", self.lock_file)

    def release(self, write_snapshot: Callable[[], object]) -> bool:
        """Persist the snapshot, then drop the lock. False when nothing was locked."""
        if not self.locked:
            return False
        if not self.dry_run:
            write_snapshot()
            self.lock_file.unlink(missing_ok=True)
            logger.debug("lock_released %s", self.lock_file)
        self.locked = False
        self._crashed = False
        return True
