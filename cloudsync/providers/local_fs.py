from __future__ import annotations

import functools
import logging
import os
import shutil
from pathlib import Path
from typing import IO

from cloudsync.core.errors import TransientIOError, UsageError
from cloudsync.providers.base import RemoteConnector
from cloudsync.sync.history import HistoryContainer
from cloudsync.sync.payload import Prepared
from cloudsync.sync.tree import TreeNode

METADATA_SUFFIX = ".metadata"

logger = logging.getLogger("remote.local")


def _transient(fn):
    """Map OS level failures of a primitive to TransientIOError."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except OSError as e:
            raise TransientIOError(f"{fn.__name__.lstrip('_')}: {e}") from e

    return wrapper


class LocalFilesystemRemote(RemoteConnector):
    """Backup target on a mounted filesystem (NAS share, USB disk, ...).

    Every node is stored under its encrypted title, with the encrypted wire
    metadata in a `<title>.metadata` sidecar next to it.
    """

    name = "local"

    def __init__(self, backup_name, cfg, payloads, retry=None, history=None):
        super().__init__(backup_name, cfg, payloads, retry, history)
        target = (cfg.remote_local.target_folder or "").strip()
        if not target:
            raise UsageError("remote_local.target_folder is not configured")
        self.target_folder = Path(target).expanduser()
        self.backup_folder = self.target_folder / backup_name

    # -- paths ----------------------------------------------------------

    def _path(self, node: TreeNode) -> Path:
        parts: list[str] = []
        current: TreeNode | None = node
        while current is not None and current.parent is not None:
            parts.append(current.remote_id or "")
            current = current.parent
        return self.backup_folder.joinpath(*reversed(parts))

    def _history_path(self, node: TreeNode) -> Path:
        rel = self._path(node).relative_to(self.backup_folder)
        return self.target_folder / self.history.container_name / rel

    @staticmethod
    def _sidecar(path: Path) -> Path:
        return path.with_name(path.name + METADATA_SUFFIX)

    # -- primitives -----------------------------------------------------

    @_transient
    def _read_folder(self, parent: TreeNode) -> list[TreeNode]:
        folder = self._path(parent)
        if not folder.is_dir():
            return []
        nodes: list[TreeNode] = []
        for entry in sorted(folder.iterdir(), key=lambda p: p.name):
            if entry.name.endswith(METADATA_SUFFIX) or entry.name.endswith(".tmp"):
                continue
            sidecar = self._sidecar(entry)
            metadata = sidecar.read_text(encoding="ascii") if sidecar.exists() else None
            st = entry.stat()
            is_dir = entry.is_dir()
            nodes.append(
                self.payloads.decode(
                    entry.name,
                    is_dir,
                    entry.name,
                    metadata,
                    None if is_dir else st.st_size,
                    st.st_mtime,
                )
            )
        return nodes

    @_transient
    def _upload(self, node: TreeNode, prepared: Prepared) -> str:
        parent = self._path(node.parent) if node.parent is not None else self.backup_folder
        if node.parent is not None and node.parent.is_root:
            parent.mkdir(parents=True, exist_ok=True)
        path = parent / prepared.title
        if node.is_folder:
            path.mkdir()
        else:
            self._write(path, prepared.data)
        self._sidecar(path).write_text(prepared.metadata, encoding="ascii")
        return prepared.title

    @_transient
    def _find_child(self, parent: TreeNode | None, title: str) -> str | None:
        folder = self._path(parent) if parent is not None else self.backup_folder
        path = folder / title
        if path.exists() or self._sidecar(path).exists():
            return title
        return None

    @_transient
    def _update(self, node: TreeNode, prepared: Prepared, previous_id: str | None) -> None:
        path = self._path(node)
        if prepared.data is not None:
            tmp = path.with_name(path.name + ".tmp")
            self._write(tmp, prepared.data)
            os.replace(tmp, path)
        sidecar = self._sidecar(path)
        tmp = sidecar.with_name(sidecar.name + ".tmp")
        tmp.write_text(prepared.metadata, encoding="ascii")
        os.replace(tmp, sidecar)

    @staticmethod
    def _write(path: Path, data: IO[bytes] | None) -> None:
        with path.open("wb") as fp:
            if data is not None:
                shutil.copyfileobj(data, fp)

    @_transient
    def _copy_to_history(self, node: TreeNode) -> None:
        source = self._path(node)
        dest = self._history_path(node)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, dest)
        if self._sidecar(source).exists():
            shutil.copy2(self._sidecar(source), self._sidecar(dest))
        logger.debug("history_copy %s -> %s", node.info, dest)

    @_transient
    def _move_to_history(self, node: TreeNode) -> None:
        source = self._path(node)
        dest = self._history_path(node)
        dest.parent.mkdir(parents=True, exist_ok=True)
        for src, dst in ((source, dest), (self._sidecar(source), self._sidecar(dest))):
            if not os.path.lexists(src):
                continue
            if os.path.lexists(dst):
                _remove_path(dst)
            shutil.move(str(src), str(dst))
        logger.debug("history_move %s -> %s", node.info, dest)

    @_transient
    def _delete(self, node: TreeNode) -> None:
        path = self._path(node)
        if os.path.lexists(path):
            _remove_path(path)
        self._sidecar(path).unlink(missing_ok=True)

    @_transient
    def _get(self, node: TreeNode, sink: IO[bytes]) -> None:
        with self._path(node).open("rb") as fp:
            shutil.copyfileobj(fp, sink)

    @_transient
    def _list_history(self) -> list[HistoryContainer]:
        if not self.target_folder.is_dir():
            return []
        out: list[HistoryContainer] = []
        for entry in self.target_folder.iterdir():
            stamp = self.history.parse_stamp(entry.name)
            if stamp is not None and entry.is_dir():
                out.append(HistoryContainer(entry.name, str(entry), stamp))
        return out

    @_transient
    def _delete_history(self, container: HistoryContainer) -> None:
        shutil.rmtree(container.identifier)


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()
