from __future__ import annotations

import tempfile
from dataclasses import dataclass
from typing import IO, Iterable, Iterator, Optional

from cloudsync.sync.local_connector import LocalConnector
from cloudsync.sync.metadata import encode_metadata, node_from_metadata
from cloudsync.sync.tree import NodeKind, TreeNode

DEFAULT_MIN_TMP_FILE_SIZE = 1024 * 1024 * 128


@dataclass
class Prepared:
    """Everything a backend needs to store one node."""

    title: str
    metadata: str
    data: Optional[IO[bytes]] = None
    length: int = 0

    def close(self) -> None:
        if self.data is not None:
            self.data.close()
            self.data = None

    def __enter__(self) -> Prepared:
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class Payloads:
    """Translate between plaintext nodes and the encrypted form stored remotely."""

    def __init__(self, crypt, local: LocalConnector | None = None, min_tmp_file_size: int = DEFAULT_MIN_TMP_FILE_SIZE):
        self.crypt = crypt
        self.local = local
        self.min_tmp_file_size = min_tmp_file_size

    def title(self, node: TreeNode) -> str:
        return self.crypt.encrypt_text(node.name)

    def metadata(self, node: TreeNode) -> str:
        if node.needs_metadata_upgrade and node.checksum is None and node.kind in (NodeKind.FILE, NodeKind.LINK):
            # drain the content once to get the checksum
            for _chunk in self._local().get_file_binary(node).chunks:
                pass
        return self.crypt.encrypt_text(encode_metadata(node))

    def _local(self) -> LocalConnector:
        if self.local is None:
            raise RuntimeError("local_connector_missing")
        return self.local

    def binary(self, node: TreeNode) -> tuple[IO[bytes], int]:
        """Encrypted content of `node`, spooled to disk above `min_tmp_file_size`."""
        stream = self._local().get_file_binary(node)
        spool = tempfile.SpooledTemporaryFile(max_size=self.min_tmp_file_size)
        try:
            for block in self.crypt.encrypt_stream(stream.chunks):
                spool.write(block)
        except BaseException:
            spool.close()
            raise
        length = spool.tell()
        spool.seek(0)
        return spool, length

    def prepare(self, node: TreeNode, with_filedata: bool) -> Prepared:
        data, length = None, 0
        if with_filedata and node.kind in (NodeKind.FILE, NodeKind.LINK):
            # content first: reading it sets the checksum that goes into the metadata
            data, length = self.binary(node)
        try:
            return Prepared(self.title(node), self.metadata(node), data, length)
        except BaseException:
            if data is not None:
                data.close()
            raise

    def decode(
        self,
        remote_id: str,
        is_folder: bool,
        title: str,
        metadata: str | None,
        remote_size: int | None = None,
        remote_created: float | None = None,
    ) -> TreeNode:
        name = self.crypt.decrypt_text(title)
        text = self.crypt.decrypt_text(metadata) if metadata else None
        return node_from_metadata(remote_id, is_folder, name, text, remote_size, remote_created)

    def decrypt(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        return self.crypt.decrypt_stream(chunks)
