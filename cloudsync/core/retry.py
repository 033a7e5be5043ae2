from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from cloudsync.core.errors import OperationError, TransientIOError

T = TypeVar("T")

logger = logging.getLogger("retry")

DEFAULT_RETRIES = 6
DEFAULT_WAIT_RETRY = 10.0
DEFAULT_PROBE_ATTEMPTS = 12
DEFAULT_PROBE_INTERVAL = 5.0


class RetryController:
    """Bounded retries for one remote connector instance.

    The wait interval is measured from the previous retry of *any* call on this
    instance, so a burst of failing calls does not hammer the backend.
    """

    def __init__(
        self,
        retries: int = DEFAULT_RETRIES,
        wait_retry: float = DEFAULT_WAIT_RETRY,
        *,
        probe_attempts: int = DEFAULT_PROBE_ATTEMPTS,
        probe_interval: float = DEFAULT_PROBE_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retries = retries
        self.wait_retry = wait_retry
        self.probe_attempts = probe_attempts
        self.probe_interval = probe_interval
        self._sleep = sleep
        self._clock = clock
        self._last_retry: Optional[float] = None

    def run(self, name: str, fn: Callable[[], T], node=None) -> T:
        count = 0
        while True:
            try:
                return fn()
            except TransientIOError as e:
                count = self.validate(name, node, e, count)

    def validate(self, name: str, node, error: Exception, count: int) -> int:
        """Absorb one transient failure or escalate it. Returns the new count."""
        target = node.info if node is not None else "remote store"
        if count >= self.retries:
            raise OperationError(
                f"Unexpected error during {name} of {target}: {error}",
                path=getattr(node, "path", None),
                kind=node.kind.label if node is not None else None,
            ) from error

        if self._last_retry is not None:
            elapsed = self._clock() - self._last_retry
            if elapsed < self.wait_retry:
                self._sleep(self.wait_retry - elapsed)
        self._last_retry = self._clock()
        count += 1
        logger.warning(
            "remote_retry %s of %s failed: %s - retry %d/%d",
            name,
            target,
            error,
            count,
            self.retries,
        )
        return count

    def probe(self, finder: Callable[[], Optional[T]]) -> Optional[T]:
        """Poll `finder` after a failed upload. Returns what it found, if anything."""
        for attempt in range(1, self.probe_attempts + 1):
            try:
                found = finder()
            except TransientIOError as e:
                logger.warning("upload_probe_failed attempt=%d/%d: %s", attempt, self.probe_attempts, e)
                found = None
            if found is not None:
                return found
            if attempt < self.probe_attempts:
                logger.warning(
                    "upload_probe item not found - retry %d/%d - wait %.1fs",
                    attempt,
                    self.probe_attempts,
                    self.probe_interval,
                )
                self._sleep(self.probe_interval)
        return None
