from __future__ import annotations

import functools
import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import IO, Any
from urllib.parse import urlencode

import requests

from cloudsync.core.config import prepare_path
from cloudsync.core.errors import OperationError, TransientIOError, UsageError
from cloudsync.providers.base import RemoteConnector
from cloudsync.sync.history import HistoryContainer
from cloudsync.sync.payload import Prepared
from cloudsync.sync.tree import TreeNode

API = "https://www.googleapis.com/drive/v3"
UPLOAD_API = "https://www.googleapis.com/upload/drive/v3"
AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
SCOPE = "https://www.googleapis.com/auth/drive"
FOLDER_MIMETYPE = "application/vnd.google-apps.folder"
FILE_FIELDS = "id,name,mimeType,size,createdTime,appProperties"

# appProperties allow 124 bytes per key+value
METADATA_CHUNK = 100

logger = logging.getLogger("remote.gdrive")


class DriveApiError(RuntimeError):
    def __init__(self, message: str, status: int):
        super().__init__(message)
        self.status = status

    @property
    def transient(self) -> bool:
        return self.status == 429 or self.status >= 500


def _parse_rfc3339(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def split_metadata(metadata: str) -> dict[str, str]:
    parts = [metadata[i:i + METADATA_CHUNK] for i in range(0, len(metadata), METADATA_CHUNK)] or [""]
    props = {f"metadata{i}": part for i, part in enumerate(parts)}
    props["metadataParts"] = str(len(parts))
    return props


def join_metadata(props: dict[str, str] | None) -> str | None:
    if not props or "metadataParts" not in props:
        return None
    return "".join(props.get(f"metadata{i}", "") for i in range(int(props["metadataParts"])))


class DriveClient:
    def __init__(self, client_id: str, client_secret: str, token_file: str, timeout: int = 30):
        self.client_id = client_id or ""
        self.client_secret = client_secret or ""
        self.token_file = token_file or ""
        self.timeout = timeout

    def _load_tokens(self) -> dict[str, Any] | None:
        if not self.token_file:
            return None
        p = Path(self.token_file).expanduser()
        if not p.exists():
            return None
        payload = json.loads(p.read_text(encoding="utf-8"))
        return payload if isinstance(payload, dict) else None

    def _save_tokens(self, data: dict[str, Any]) -> None:
        if not self.token_file:
            return
        p = Path(self.token_file).expanduser()
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")

    def create_oauth_authorize_url(self, redirect_uri: str, state: str) -> str:
        if not self.client_id:
            raise RuntimeError("client_id_missing")
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "scope": SCOPE,
                "access_type": "offline",
                "prompt": "consent",
                "state": state,
            }
        )
        return f"{AUTH_URL}?{query}"

    def exchange_code_for_user_token(self, code: str, redirect_uri: str) -> dict[str, Any]:
        if not self.client_id or not self.client_secret:
            raise RuntimeError("auth_incomplete")
        res = requests.post(
            TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": (code or "").strip(),
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
            },
            timeout=self.timeout,
        )
        token_data = self._check(res).json()
        token_data["created_at"] = int(time.time() * 1000)
        self._save_tokens(token_data)
        return token_data

    def _access_token(self) -> str:
        tokens = self._load_tokens()
        if not tokens:
            raise DriveApiError("no_token_file_or_empty (run 'cloudsync auth-url')", 401)
        created = int(tokens.get("created_at", 0))
        expires_in = int(tokens.get("expires_in", 3600))
        if tokens.get("access_token") and created and int(time.time() * 1000) < created + max(expires_in - 300, 60) * 1000:
            return str(tokens["access_token"])

        res = requests.post(
            TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": tokens.get("refresh_token", ""),
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            timeout=self.timeout,
        )
        refreshed = self._check(res).json()
        tokens.update(refreshed)
        tokens["created_at"] = int(time.time() * 1000)
        self._save_tokens(tokens)
        return str(tokens["access_token"])

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self._access_token()}"}
        headers.update(extra or {})
        return headers

    @staticmethod
    def _check(res: requests.Response) -> requests.Response:
        if res.status_code >= 400:
            raise DriveApiError(f"drive_error_status_{res.status_code}: {(res.text or '')[:200]}", res.status_code)
        return res

    def list_children(self, folder_id: str, name: str | None = None) -> list[dict[str, Any]]:
        query = f"'{folder_id}' in parents and trashed = false"
        if name is not None:
            escaped = name.replace("\\", "\\\\").replace("'", "\\'")
            query += f" and name = '{escaped}'"
        items: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params = {"q": query, "fields": f"nextPageToken,files({FILE_FIELDS})", "pageSize": 1000}
            if page_token:
                params["pageToken"] = page_token
            res = self._check(requests.get(f"{API}/files", params=params, headers=self._headers(), timeout=self.timeout))
            body = res.json()
            items.extend(body.get("files", []))
            page_token = body.get("nextPageToken")
            if not page_token:
                return items

    def create_folder(self, name: str, parent_id: str, properties: dict[str, str] | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"name": name, "mimeType": FOLDER_MIMETYPE, "parents": [parent_id]}
        if properties:
            body["appProperties"] = properties
        res = requests.post(
            f"{API}/files", params={"fields": FILE_FIELDS}, json=body, headers=self._headers(), timeout=self.timeout
        )
        return self._check(res).json()

    def upload(
        self,
        data: IO[bytes],
        length: int,
        metadata: dict[str, Any],
        file_id: str | None = None,
    ) -> dict[str, Any]:
        """Resumable upload session: create when `file_id` is None, else replace content."""
        url = f"{UPLOAD_API}/files" + (f"/{file_id}" if file_id else "")
        method = requests.patch if file_id else requests.post
        session = self._check(
            method(
                url,
                params={"uploadType": "resumable", "fields": FILE_FIELDS},
                json=metadata,
                headers=self._headers({"X-Upload-Content-Length": str(length)}),
                timeout=self.timeout,
            )
        )
        res = requests.put(
            session.headers["Location"],
            data=data,
            headers={"Content-Length": str(length)},
            timeout=self.timeout,
        )
        return self._check(res).json()

    def patch(self, file_id: str, body: dict[str, Any] | None = None, params: dict[str, str] | None = None) -> None:
        self._check(
            requests.patch(
                f"{API}/files/{file_id}", params=params, json=body or {}, headers=self._headers(), timeout=self.timeout
            )
        )

    def copy(self, file_id: str, parent_id: str, name: str) -> None:
        self._check(
            requests.post(
                f"{API}/files/{file_id}/copy",
                json={"name": name, "parents": [parent_id]},
                headers=self._headers(),
                timeout=self.timeout,
            )
        )

    def delete(self, file_id: str) -> None:
        res = requests.delete(f"{API}/files/{file_id}", headers=self._headers(), timeout=self.timeout)
        if res.status_code != 404:
            self._check(res)

    def download(self, file_id: str, sink: IO[bytes]) -> None:
        with requests.get(
            f"{API}/files/{file_id}", params={"alt": "media"}, headers=self._headers(), timeout=self.timeout, stream=True
        ) as res:
            self._check(res)
            for chunk in res.iter_content(chunk_size=1024 * 64):
                if chunk:
                    sink.write(chunk)


def _translate(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except requests.RequestException as e:
            raise TransientIOError(str(e)) from e
        except DriveApiError as e:
            if e.transient:
                raise TransientIOError(str(e)) from e
            raise OperationError(str(e)) from e

    return wrapper


class GoogleDriveRemote(RemoteConnector):
    """Google Drive v3 backend; metadata is kept in chunked appProperties."""

    name = "gdrive"

    def __init__(self, backup_name, cfg, payloads, retry=None, history=None, client: DriveClient | None = None):
        super().__init__(backup_name, cfg, payloads, retry, history)
        gcfg = cfg.gdrive
        if client is None:
            if not gcfg.client_id or not gcfg.client_secret:
                raise UsageError("gdrive.client_id / gdrive.client_secret are not configured")
            token_file = str(prepare_path(gcfg.token_file, backup_name))
            client = DriveClient(gcfg.client_id, gcfg.client_secret, token_file, timeout=int(gcfg.timeout_sec))
        self.client = client
        self.base_path = [p for p in (gcfg.base_path or "").split("/") if p]
        self._base_id: str | None = None
        self._backup_id: str | None = None
        self._history_folders: dict[str, str] = {}

    def _ensure_folder(self, parent_id: str, name: str) -> str:
        for item in self.client.list_children(parent_id, name):
            if item.get("mimeType") == FOLDER_MIMETYPE:
                return str(item["id"])
        return str(self.client.create_folder(name, parent_id)["id"])

    def _base_folder(self) -> str:
        if self._base_id is None:
            current = "root"
            for name in self.base_path:
                current = self._ensure_folder(current, name)
            self._base_id = current
        return self._base_id

    def _backup_folder(self) -> str:
        if self._backup_id is None:
            self._backup_id = self._ensure_folder(self._base_folder(), self.backup_name)
        return self._backup_id

    def _folder_id(self, node: TreeNode | None) -> str:
        if node is None or node.is_root:
            return self._backup_folder()
        return str(node.remote_id)

    def _history_folder(self, node: TreeNode) -> str:
        current = self._history_folders.get("")
        if current is None:
            current = self._ensure_folder(self._base_folder(), self.history.container_name)
            self._history_folders[""] = current
        chain: list[TreeNode] = []
        ancestor = node.parent
        while ancestor is not None and not ancestor.is_root:
            chain.append(ancestor)
            ancestor = ancestor.parent
        for folder in reversed(chain):
            if folder.path not in self._history_folders:
                created = self.client.create_folder(self.payloads.title(folder), current)
                self._history_folders[folder.path] = str(created["id"])
            current = self._history_folders[folder.path]
        return current

    def _to_node(self, item: dict[str, Any]) -> TreeNode:
        is_folder = item.get("mimeType") == FOLDER_MIMETYPE
        size = item.get("size")
        return self.payloads.decode(
            str(item["id"]),
            is_folder,
            str(item.get("name", "")),
            join_metadata(item.get("appProperties")),
            int(size) if size is not None else None,
            _parse_rfc3339(item.get("createdTime")),
        )

    @_translate
    def _read_folder(self, parent: TreeNode) -> list[TreeNode]:
        items = self.client.list_children(self._folder_id(parent))
        return [self._to_node(item) for item in sorted(items, key=lambda i: str(i.get("name", "")))]

    @_translate
    def _upload(self, node: TreeNode, prepared: Prepared) -> str:
        parent = self._folder_id(node.parent)
        properties = split_metadata(prepared.metadata)
        if node.is_folder:
            return str(self.client.create_folder(prepared.title, parent, properties)["id"])
        body = {"name": prepared.title, "parents": [parent], "appProperties": properties}
        return str(self.client.upload(prepared.data, prepared.length, body)["id"])

    @_translate
    def _find_child(self, parent: TreeNode | None, title: str) -> str | None:
        items = self.client.list_children(self._folder_id(parent), title)
        return str(items[0]["id"]) if items else None

    @_translate
    def _update(self, node: TreeNode, prepared: Prepared, previous_id: str | None) -> None:
        body = {"name": prepared.title, "appProperties": split_metadata(prepared.metadata)}
        if prepared.data is not None:
            self.client.upload(prepared.data, prepared.length, body, file_id=str(node.remote_id))
        else:
            self.client.patch(str(node.remote_id), body)

    @_translate
    def _copy_to_history(self, node: TreeNode) -> None:
        # appProperties travel with the copy
        self.client.copy(str(node.remote_id), self._history_folder(node), self.payloads.title(node))

    @_translate
    def _move_to_history(self, node: TreeNode) -> None:
        self.client.patch(
            str(node.remote_id),
            params={"addParents": self._history_folder(node), "removeParents": self._folder_id(node.parent)},
        )

    @_translate
    def _delete(self, node: TreeNode) -> None:
        self.client.delete(str(node.remote_id))

    @_translate
    def _get(self, node: TreeNode, sink: IO[bytes]) -> None:
        self.client.download(str(node.remote_id), sink)

    @_translate
    def _list_history(self) -> list[HistoryContainer]:
        out: list[HistoryContainer] = []
        for item in self.client.list_children(self._base_folder()):
            name = str(item.get("name", ""))
            stamp = self.history.parse_stamp(name)
            if item.get("mimeType") != FOLDER_MIMETYPE or stamp is None:
                continue
            created = _parse_rfc3339(item.get("createdTime"))
            out.append(HistoryContainer(name, str(item["id"]), created if created is not None else stamp))
        return out

    @_translate
    def _delete_history(self, container: HistoryContainer) -> None:
        self.client.delete(container.identifier)
