from __future__ import annotations

import logging

from cloudsync.core.errors import DuplicateInvariantError
from cloudsync.sync.tree import TreeNode

logger = logging.getLogger("duplicates")


def _rank(node: TreeNode) -> tuple[float, str]:
    created = node.provenance.created_at if node.provenance and node.provenance.created_at is not None else 0.0
    return created, node.remote_id or ""


class DuplicateResolver:
    """Collects remote entries that decode to an already taken name.

    Nothing is deleted here: the losing entry keeps its parent reference so its
    path can be reported and restored by `clean`.
    """

    def __init__(self):
        self.duplicates: list[TreeNode] = []

    @property
    def found(self) -> bool:
        return bool(self.duplicates)

    def attach(self, parent: TreeNode, node: TreeNode) -> bool:
        """Attach `node` under `parent`. Returns False when it lost against an existing entry."""
        existing = parent.child(node.name)
        if existing is None:
            parent.add_child(node)
            return True

        if _rank(node) > _rank(existing):
            winner, loser = node, existing
            parent.add_child(node)
        else:
            winner, loser = existing, node
            node.parent = parent
        self.duplicates.append(loser)
        logger.warning(
            "duplicate_found %s: keeping %s, parked %s",
            winner.info,
            winner.remote_id,
            loser.remote_id,
        )
        return winner is node

    def flatten(self) -> list[TreeNode]:
        out: list[TreeNode] = []
        for node in self.duplicates:
            out.append(node)
            if node.is_folder:
                out.extend(node.walk())
        return out

    def check(self) -> None:
        if self.duplicates:
            raise DuplicateInvariantError([(node.remote_id or "", node.path) for node in self.flatten()])

    def clear(self) -> None:
        self.duplicates.clear()
