from __future__ import annotations

import csv
import logging
import os
from pathlib import Path

from cloudsync.core.errors import OperationError
from cloudsync.sync.metadata import node_from_fields, stored_fields
from cloudsync.sync.tree import SEPARATOR, TreeNode

logger = logging.getLogger("cache")


def encode_rows(root: TreeNode) -> list[list[str]]:
    return [[node.path, node.remote_id or "", *stored_fields(node)] for node in root.walk()]


def decode_rows(rows, root: TreeNode | None = None) -> TreeNode:
    root = root or TreeNode.root()
    index: dict[str, TreeNode] = {"": root}
    for line_no, row in enumerate(rows, start=1):
        if not row:
            continue
        if len(row) < 3:
            raise OperationError(f"cache row {line_no} is truncated")
        path, remote_id, fields = row[0], row[1], row[2:]
        parent_path, _sep, name = path.rpartition(SEPARATOR)
        parent = index.get(parent_path)
        if parent is None or not parent.is_folder:
            raise OperationError(f"cache row {line_no} has no parent folder", path=path)
        node = node_from_fields(name, remote_id or None, fields)
        parent.add_child(node)
        index[path] = node
    return root


def write_snapshot(root: TreeNode, path: Path) -> int:
    """Atomically replace the snapshot at `path`. Returns the row count."""
    path.parent.mkdir(parents=True, exist_ok=True)
    rows = encode_rows(root)
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerows(rows)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)
    logger.info("cache_written %s rows=%d", path, len(rows))
    return len(rows)


def read_snapshot(path: Path, root: TreeNode | None = None) -> TreeNode:
    with path.open("r", encoding="utf-8", newline="") as f:
        root = decode_rows(csv.reader(f), root)
    logger.info("cache_loaded %s", path)
    return root
