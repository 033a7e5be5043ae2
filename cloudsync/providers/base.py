from __future__ import annotations

import logging
import tempfile
from abc import ABC, abstractmethod
from typing import IO, Iterator

from cloudsync.core.errors import TransientIOError
from cloudsync.core.retry import RetryController
from cloudsync.sync.crypt import read_chunks
from cloudsync.sync.history import HistoryContainer, HistoryManager
from cloudsync.sync.payload import Payloads, Prepared
from cloudsync.sync.tree import TreeNode

logger = logging.getLogger("remote")


class RemoteConnector(ABC):
    """Operation contract every backend satisfies.

    Public methods carry the retry, upload-probe and history discipline;
    backends implement the underscored primitives and translate transport
    failures into `TransientIOError`.
    """

    name = "remote"

    def __init__(
        self,
        backup_name: str,
        cfg,
        payloads: Payloads,
        retry: RetryController | None = None,
        history: HistoryManager | None = None,
    ):
        self.backup_name = backup_name
        self.cfg = cfg
        self.payloads = payloads
        self.retry = retry or RetryController()
        self.history = history or HistoryManager(backup_name)
        self.root: TreeNode | None = None

    def attach_root(self, root: TreeNode) -> None:
        self.root = root

    # -- contract -------------------------------------------------------

    def read_folder(self, parent: TreeNode) -> list[TreeNode]:
        return self.retry.run("remote listing", lambda: self._read_folder(parent), parent)

    def upload(self, node: TreeNode) -> None:
        with self.payloads.prepare(node, with_filedata=True) as prepared:
            count = 0
            while True:
                try:
                    _rewind(prepared)
                    node.remote_id = self._upload(node, prepared)
                    return
                except TransientIOError as e:
                    found = self.retry.probe(lambda: self._find_child(node.parent, prepared.title))
                    if found is not None:
                        logger.warning("upload_landed_anyway %s remote_id=%s, switching to update", node.info, found)
                        node.remote_id = found
                        break
                    count = self.retry.validate("remote upload", node, e, count)
        self.update(node, True)

    def update(self, node: TreeNode, with_filedata: bool) -> None:
        if self.history.should_historize_update(node, with_filedata):
            self.retry.run("remote history copy", lambda: self._copy_to_history(node), node)
        # retries may move node.remote_id; backends still see what was there before
        previous_id = node.remote_id
        with self.payloads.prepare(node, with_filedata) as prepared:

            def attempt() -> None:
                _rewind(prepared)
                self._update(node, prepared, previous_id)

            self.retry.run("remote update", attempt, node)

    def remove(self, node: TreeNode) -> None:
        if self.history.should_historize_remove(node):
            self.retry.run("remote remove", lambda: self._move_to_history(node), node)
        else:
            self.retry.run("remote remove", lambda: self._delete(node), node)

    def get(self, node: TreeNode) -> Iterator[bytes]:
        """Raw (still encrypted) content, fully fetched before it is handed out."""
        spool = tempfile.SpooledTemporaryFile(max_size=self.payloads.min_tmp_file_size)

        def attempt() -> None:
            spool.seek(0)
            spool.truncate()
            self._get(node, spool)

        try:
            self.retry.run("remote get", attempt, node)
        except BaseException:
            spool.close()
            raise
        spool.seek(0)
        return _drain(spool)

    def clean_history(self) -> list[HistoryContainer]:
        if not self.history.enabled:
            return []
        containers = self.retry.run("remote history listing", self._list_history)
        expired = self.history.prune(containers)
        for container in expired:
            self.retry.run("remote history cleanup", lambda c=container: self._delete_history(c))
            logger.info("history_removed %s", container.name)
        return expired

    # -- backend primitives ---------------------------------------------

    @abstractmethod
    def _read_folder(self, parent: TreeNode) -> list[TreeNode]: ...

    @abstractmethod
    def _upload(self, node: TreeNode, prepared: Prepared) -> str: ...

    @abstractmethod
    def _find_child(self, parent: TreeNode | None, title: str) -> str | None: ...

    @abstractmethod
    def _update(self, node: TreeNode, prepared: Prepared, previous_id: str | None) -> None: ...

    @abstractmethod
    def _copy_to_history(self, node: TreeNode) -> None: ...

    @abstractmethod
    def _move_to_history(self, node: TreeNode) -> None: ...

    @abstractmethod
    def _delete(self, node: TreeNode) -> None: ...

    @abstractmethod
    def _get(self, node: TreeNode, sink: IO[bytes]) -> None: ...

    @abstractmethod
    def _list_history(self) -> list[HistoryContainer]: ...

    @abstractmethod
    def _delete_history(self, container: HistoryContainer) -> None: ...


def _rewind(prepared: Prepared) -> None:
    if prepared.data is not None:
        prepared.data.seek(0)


def _drain(fp: IO[bytes]) -> Iterator[bytes]:
    try:
        yield from read_chunks(fp)
    finally:
        fp.close()
