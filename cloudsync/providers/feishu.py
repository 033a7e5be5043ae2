from __future__ import annotations

import functools
import io
import logging
from typing import IO, Any

import requests

from cloudsync.core.errors import OperationError, TransientIOError, UsageError
from cloudsync.providers.base import RemoteConnector
from cloudsync.providers.feishu_client import FeishuApiError, FeishuClient
from cloudsync.sync.history import HistoryContainer
from cloudsync.sync.payload import Prepared
from cloudsync.sync.tree import TreeNode

METADATA_SUFFIX = ".metadata"
ID_SEPARATOR = ";"

logger = logging.getLogger("remote.feishu")


def _join(token: str, sidecar: str) -> str:
    return f"{token}{ID_SEPARATOR}{sidecar}"


def _split(remote_id: str | None) -> tuple[str, str]:
    token, _sep, sidecar = (remote_id or "").partition(ID_SEPARATOR)
    return token, sidecar


def _opt_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _opt_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _translate(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except requests.RequestException as e:
            raise TransientIOError(str(e)) from e
        except FeishuApiError as e:
            if e.transient:
                raise TransientIOError(str(e)) from e
            raise OperationError(str(e)) from e

    return wrapper


class FeishuDriveRemote(RemoteConnector):
    """Feishu (Lark) drive backend.

    The drive has no custom properties, so encrypted metadata lives in a
    `<title>.metadata` sidecar file. A node's remote id carries both tokens as
    `<token>;<sidecar token>`.
    """

    name = "feishu"

    def __init__(self, backup_name, cfg, payloads, retry=None, history=None, client: FeishuClient | None = None):
        super().__init__(backup_name, cfg, payloads, retry, history)
        fcfg = cfg.feishu
        if client is None:
            if not fcfg.app_id or not fcfg.app_secret:
                raise UsageError("feishu.app_id / feishu.app_secret are not configured")
            client = FeishuClient(fcfg.app_id, fcfg.app_secret, fcfg.user_token_file, timeout=int(fcfg.timeout_sec))
        self.client = client
        self.base_folder_token = fcfg.base_folder_token
        self._backup_token: str | None = None
        self._history_folders: dict[str, str] = {}

    # -- folders --------------------------------------------------------

    def _base_token(self) -> str:
        if not self.base_folder_token:
            self.base_folder_token = self.client.get_root_folder_token()
        return self.base_folder_token

    def _find_folder(self, parent: str, name: str) -> str | None:
        for item in self.client.list_folder_once(parent):
            if item.get("type") == "folder" and item.get("name") == name:
                return str(item.get("token"))
        return None

    def _backup_folder(self) -> str:
        if self._backup_token is None:
            base = self._base_token()
            token = self._find_folder(base, self.backup_name)
            if token is None:
                token = self.client.create_folder(self.backup_name, base)
                logger.info("backup_folder_created %s", self.backup_name)
            self._backup_token = token
        return self._backup_token

    def _folder_token(self, node: TreeNode | None) -> str:
        if node is None or node.is_root:
            return self._backup_folder()
        return _split(node.remote_id)[0]

    def _history_folder(self, node: TreeNode) -> str:
        current = self._history_folders.get("")
        if current is None:
            base = self._base_token()
            name = self.history.container_name
            current = self._find_folder(base, name) or self.client.create_folder(name, base)
            self._history_folders[""] = current
        chain: list[TreeNode] = []
        ancestor = node.parent
        while ancestor is not None and not ancestor.is_root:
            chain.append(ancestor)
            ancestor = ancestor.parent
        for folder in reversed(chain):
            key = folder.path
            if key not in self._history_folders:
                self._history_folders[key] = self.client.create_folder(self.payloads.title(folder), current)
            current = self._history_folders[key]
        return current

    def _put_sidecar(self, title: str, metadata: str, parent: str) -> str:
        data = metadata.encode("ascii")
        return self.client.upload_file(io.BytesIO(data), len(data), title + METADATA_SUFFIX, parent)

    # -- primitives -----------------------------------------------------

    @_translate
    def _read_folder(self, parent: TreeNode) -> list[TreeNode]:
        items = self.client.list_folder_once(self._folder_token(parent))
        sidecars = {
            str(item.get("name"))[: -len(METADATA_SUFFIX)]: str(item.get("token"))
            for item in items
            if str(item.get("name", "")).endswith(METADATA_SUFFIX)
        }
        nodes: list[TreeNode] = []
        for item in sorted(items, key=lambda i: str(i.get("name", ""))):
            name = str(item.get("name", ""))
            if not name or name.endswith(METADATA_SUFFIX):
                continue
            sidecar = sidecars.get(name, "")
            metadata = None
            if sidecar:
                buf = io.BytesIO()
                self.client.download_file(sidecar, buf)
                metadata = buf.getvalue().decode("ascii")
            nodes.append(
                self.payloads.decode(
                    _join(str(item.get("token")), sidecar),
                    item.get("type") == "folder",
                    name,
                    metadata,
                    _opt_int(item.get("size")),
                    _opt_float(item.get("created_time")),
                )
            )
        return nodes

    @_translate
    def _upload(self, node: TreeNode, prepared: Prepared) -> str:
        parent = self._folder_token(node.parent)
        if node.is_folder:
            token = self.client.create_folder(prepared.title, parent)
        else:
            token = self.client.upload_file(prepared.data or io.BytesIO(), prepared.length, prepared.title, parent)
        return _join(token, self._put_sidecar(prepared.title, prepared.metadata, parent))

    @_translate
    def _find_child(self, parent: TreeNode | None, title: str) -> str | None:
        tokens = {str(i.get("name")): str(i.get("token")) for i in self.client.list_folder_once(self._folder_token(parent))}
        token = tokens.get(title)
        if token is None:
            return None
        return _join(token, tokens.get(title + METADATA_SUFFIX, ""))

    def _discard(self, token: str) -> None:
        try:
            self.client.delete_file(token, "file")
        except FeishuApiError as e:
            if not e.gone:
                raise
            logger.debug("already_gone %s", token)

    @_translate
    def _update(self, node: TreeNode, prepared: Prepared, previous_id: str | None) -> None:
        token, sidecar = _split(node.remote_id)
        # the original entry plus whatever an interrupted attempt left behind
        stale = {*_split(previous_id), token, sidecar} - {""}
        parent = self._folder_token(node.parent)
        if prepared.data is not None:
            token = self.client.upload_file(prepared.data, prepared.length, prepared.title, parent)
            node.remote_id = _join(token, sidecar)
        sidecar = self._put_sidecar(prepared.title, prepared.metadata, parent)
        node.remote_id = _join(token, sidecar)
        for old in sorted(stale - {token, sidecar}):
            self._discard(old)

    @_translate
    def _copy_to_history(self, node: TreeNode) -> None:
        token, sidecar = _split(node.remote_id)
        folder = self._history_folder(node)
        title = self.payloads.title(node)
        self.client.copy_file(token, title, folder)
        if sidecar:
            self.client.copy_file(sidecar, title + METADATA_SUFFIX, folder)

    @_translate
    def _move_to_history(self, node: TreeNode) -> None:
        token, sidecar = _split(node.remote_id)
        folder = self._history_folder(node)
        self.client.move_file(token, "folder" if node.is_folder else "file", folder)
        if sidecar:
            self.client.move_file(sidecar, "file", folder)

    @_translate
    def _delete(self, node: TreeNode) -> None:
        token, sidecar = _split(node.remote_id)
        self.client.delete_file(token, "folder" if node.is_folder else "file")
        if sidecar:
            self.client.delete_file(sidecar, "file")

    @_translate
    def _get(self, node: TreeNode, sink: IO[bytes]) -> None:
        self.client.download_file(_split(node.remote_id)[0], sink)

    @_translate
    def _list_history(self) -> list[HistoryContainer]:
        out: list[HistoryContainer] = []
        for item in self.client.list_folder_once(self._base_token()):
            name = str(item.get("name", ""))
            stamp = self.history.parse_stamp(name)
            if item.get("type") != "folder" or stamp is None:
                continue
            created = _opt_float(item.get("created_time"))
            out.append(HistoryContainer(name, str(item.get("token")), created if created is not None else stamp))
        return out

    @_translate
    def _delete_history(self, container: HistoryContainer) -> None:
        self.client.delete_file(container.identifier, "folder")
