from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from cloudsync.sync.tree import NodeKind, TreeNode

STAMP_FORMAT = "%Y.%m.%d_%H.%M.%S"
HISTORY_INFIX = "_history_"


@dataclass
class HistoryContainer:
    name: str
    identifier: str
    created_at: float


class HistoryManager:
    """Naming and retention rules for dated history containers.

    A content update of a file or link, and any removal, first moves the current
    remote version into this run's container. Metadata-only updates never do.
    """

    def __init__(self, backup_name: str, retention: int = 0, started_at: Optional[datetime] = None):
        self.backup_name = backup_name
        self.retention = max(0, int(retention))
        self.started_at = started_at or datetime.now()

    @property
    def enabled(self) -> bool:
        return self.retention > 0

    @property
    def prefix(self) -> str:
        return f"{self.backup_name}{HISTORY_INFIX}"

    @property
    def container_name(self) -> str:
        return self.prefix + self.started_at.strftime(STAMP_FORMAT)

    def parse_stamp(self, name: str) -> Optional[float]:
        if not name.startswith(self.prefix):
            return None
        try:
            return datetime.strptime(name[len(self.prefix):], STAMP_FORMAT).timestamp()
        except ValueError:
            return None

    def should_historize_update(self, node: TreeNode, with_filedata: bool) -> bool:
        return self.enabled and with_filedata and node.kind in (NodeKind.FILE, NodeKind.LINK)

    def should_historize_remove(self, node: TreeNode) -> bool:
        return self.enabled

    def prune(self, containers: list[HistoryContainer]) -> list[HistoryContainer]:
        """Containers beyond the retention count, newest kept first."""
        ordered = sorted(containers, key=lambda c: (c.created_at, c.name), reverse=True)
        return ordered[self.retention:]
