import io
import os
from datetime import datetime
from pathlib import Path

import pytest

from cloudsync.core.config import AppConfig
from cloudsync.core.errors import OperationError, TransientIOError, UsageError
from cloudsync.core.retry import RetryController
from cloudsync.core.run_guard import RunGuard
from cloudsync.providers.feishu import FeishuDriveRemote
from cloudsync.providers.feishu_client import FeishuApiError
from cloudsync.providers.gdrive import DriveApiError, join_metadata, split_metadata
from cloudsync.providers.local_fs import LocalFilesystemRemote
from cloudsync.providers.registry import create_remote_connector
from cloudsync.sync.crypt import PassthroughCrypt
from cloudsync.sync.engine import SyncEngine
from cloudsync.sync.history import HistoryManager
from cloudsync.sync.local_connector import LocalConnector
from cloudsync.sync.payload import Payloads
from cloudsync.sync.tree import NodeKind, TreeNode


class _FakeFeishuClient:
    def __init__(self):
        self.items: dict[str, dict] = {}
        self.uploaded: list[str] = []
        self.deleted: list[str] = []
        self.moved: list[tuple[str, str]] = []
        self.fail_next: Exception | None = None
        self.fail_delete: Exception | None = None
        self.delete_lands_before_failing = False
        self._seq = 0

    def _token(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}{self._seq}"

    def _maybe_fail(self):
        if self.fail_next is not None:
            err, self.fail_next = self.fail_next, None
            raise err

    def get_root_folder_token(self) -> str:
        return "root"

    def list_folder_once(self, folder_token: str):
        self._maybe_fail()
        return [
            {"token": token, "name": item["name"], "type": item["type"], "size": len(item["data"]), "created_time": item["created"]}
            for token, item in self.items.items()
            if item["parent"] == folder_token
        ]

    def create_folder(self, name: str, folder_token: str) -> str:
        token = self._token("fld")
        self.items[token] = {"type": "folder", "name": name, "parent": folder_token, "data": b"", "created": self._seq}
        return token

    def upload_file(self, fp, size: int, file_name: str, folder_token: str) -> str:
        data = fp.read()
        assert len(data) == size
        token = self._token("box")
        self.items[token] = {"type": "file", "name": file_name, "parent": folder_token, "data": data, "created": self._seq}
        self.uploaded.append(file_name)
        return token

    def download_file(self, file_token: str, sink):
        sink.write(self.items[file_token]["data"])

    def copy_file(self, file_token: str, name: str, folder_token: str) -> str:
        token = self._token("box")
        self.items[token] = dict(self.items[file_token], name=name, parent=folder_token)
        return token

    def move_file(self, file_token: str, file_type: str, folder_token: str):
        self.items[file_token]["parent"] = folder_token
        self.moved.append((file_token, folder_token))

    def delete_file(self, file_token: str, file_type: str):
        if file_token not in self.items:
            raise FeishuApiError("file has been delete.", code=1061007)
        if not self.delete_lands_before_failing:
            self._fail_delete()
        self.deleted.append(file_token)
        children = [t for t, item in self.items.items() if item["parent"] == file_token]
        for child in children:
            self.delete_file(child, self.items[child]["type"])
        self.items.pop(file_token)
        self._fail_delete()

    def _fail_delete(self):
        if self.fail_delete is not None:
            err, self.fail_delete = self.fail_delete, None
            raise err

    def names_in(self, folder_token: str) -> list[str]:
        return sorted(item["name"] for item in self.items.values() if item["parent"] == folder_token)

    def folder_token(self, name: str, parent: str = "root") -> str:
        return next(t for t, item in self.items.items() if item["name"] == name and item["parent"] == parent)


def _feishu_engine(tmp_path: Path, source: Path, client, *, nocache=False, history=0, started_at=None) -> SyncEngine:
    cache = tmp_path / "state" / "docs.cache"
    local = LocalConnector(source)
    payloads = Payloads(PassthroughCrypt(), local)
    remote = FeishuDriveRemote(
        "docs",
        AppConfig(),
        payloads,
        RetryController(retries=2, wait_retry=0, sleep=lambda _s: None),
        HistoryManager("docs", history, started_at),
        client=client,
    )
    guard = RunGuard(cache, cache.with_suffix(".lock"), cache.with_suffix(".pid"))
    engine = SyncEngine("docs", local, remote, guard, payloads, cache_file=cache, permissions="ignore")
    engine.init("backup", nocache=nocache)
    return engine


def _write(path: Path, data: bytes, mtime: int = 1700000000):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    os.utime(path, (mtime, mtime))


def test_feishu_backup_stores_sidecars_and_reloads(tmp_path: Path):
    source = tmp_path / "source"
    _write(source / "a.txt", b"alpha")
    _write(source / "sub" / "b.txt", b"bravo")
    client = _FakeFeishuClient()

    status = _feishu_engine(tmp_path, source, client).backup()

    assert status.create == 3
    backup = client.folder_token("docs")
    assert client.names_in(backup) == ["a.txt", "a.txt.metadata", "sub", "sub.metadata"]
    assert client.names_in(client.folder_token("sub", backup)) == ["b.txt", "b.txt.metadata"]

    reloaded = _feishu_engine(tmp_path, source, client, nocache=True)
    assert reloaded.root.child("a.txt").remote_id.count(";") == 1
    assert reloaded.backup().skip == 3


def test_feishu_update_replaces_old_tokens(tmp_path: Path):
    source = tmp_path / "source"
    _write(source / "a.txt", b"alpha")
    client = _FakeFeishuClient()
    engine = _feishu_engine(tmp_path, source, client)
    engine.backup()
    old_token, old_sidecar = engine.root.child("a.txt").remote_id.split(";")

    _write(source / "a.txt", b"alpha, revised", mtime=1700000900)
    engine = _feishu_engine(tmp_path, source, client)
    assert engine.backup().update == 1

    new_token, new_sidecar = engine.root.child("a.txt").remote_id.split(";")
    assert {old_token, old_sidecar} <= set(client.deleted)
    assert client.items[new_token]["data"] == b"alpha, revised"
    assert new_sidecar in client.items


@pytest.mark.parametrize("delete_lands", [False, True])
def test_feishu_update_retry_leaves_no_stale_copy(tmp_path: Path, delete_lands: bool):
    source = tmp_path / "source"
    _write(source / "a.txt", b"alpha")
    client = _FakeFeishuClient()
    _feishu_engine(tmp_path, source, client).backup()

    _write(source / "a.txt", b"alpha, revised", mtime=1700000900)
    client.fail_delete = FeishuApiError("connection reset", code=99991400)
    client.delete_lands_before_failing = delete_lands
    assert _feishu_engine(tmp_path, source, client).backup().update == 1
    assert client.fail_delete is None

    assert client.names_in(client.folder_token("docs")) == ["a.txt", "a.txt.metadata"]
    reloaded = _feishu_engine(tmp_path, source, client, nocache=True)
    assert not reloaded.duplicates.found
    token = reloaded.root.child("a.txt").remote_id.split(";")[0]
    assert client.items[token]["data"] == b"alpha, revised"
    assert reloaded.backup().skip == 1


def test_feishu_removal_moves_into_history_folder(tmp_path: Path):
    source = tmp_path / "source"
    _write(source / "a.txt", b"alpha")
    client = _FakeFeishuClient()
    _feishu_engine(tmp_path, source, client, history=3).backup()

    (source / "a.txt").unlink()
    started = datetime(2026, 5, 6, 7, 8, 9)
    assert _feishu_engine(tmp_path, source, client, history=3, started_at=started).backup().remove == 1

    container = client.folder_token("docs_history_2026.05.06_07.08.09")
    assert client.names_in(container) == ["a.txt", "a.txt.metadata"]
    assert len(client.moved) == 2


def test_feishu_transient_listing_is_retried(tmp_path: Path):
    source = tmp_path / "source"
    source.mkdir()
    client = _FakeFeishuClient()
    client.fail_next = FeishuApiError("rate limited", code=99991400)

    engine = _feishu_engine(tmp_path, source, client)

    assert list(engine.root.walk()) == []


def test_feishu_permanent_error_is_not_retried(tmp_path: Path):
    source = tmp_path / "source"
    source.mkdir()
    client = _FakeFeishuClient()
    client.fail_next = FeishuApiError("no permission", code=1061004, status=403)

    with pytest.raises(OperationError, match="no permission"):
        _feishu_engine(tmp_path, source, client)


def test_drive_metadata_is_split_into_properties():
    text = "x" * 250
    props = split_metadata(text)

    assert props["metadataParts"] == "3"
    assert all(len(v) <= 100 for k, v in props.items() if k != "metadataParts")
    assert join_metadata(props) == text
    assert join_metadata({}) is None


def test_drive_error_classification():
    assert DriveApiError("busy", 503).transient
    assert DriveApiError("slow down", 429).transient
    assert not DriveApiError("gone", 404).transient


def test_registry_builds_local_backend(tmp_path: Path):
    cfg = AppConfig.model_validate({"remote_local": {"target_folder": str(tmp_path)}})
    remote = create_remote_connector("local", "docs", cfg, Payloads(PassthroughCrypt()))
    assert isinstance(remote, LocalFilesystemRemote)
    assert remote.backup_folder == tmp_path / "docs"


def test_registry_rejects_unknown_backend():
    with pytest.raises(UsageError, match="unknown remote connector 'ftp'"):
        create_remote_connector("ftp", "docs", AppConfig(), Payloads(PassthroughCrypt()))


def test_local_backend_requires_target_folder():
    with pytest.raises(UsageError, match="target_folder"):
        create_remote_connector("local", "docs", AppConfig(), Payloads(PassthroughCrypt()))


def test_local_backend_maps_os_errors_to_transient(tmp_path: Path):
    cfg = AppConfig.model_validate({"remote_local": {"target_folder": str(tmp_path)}})
    remote = create_remote_connector("local", "docs", cfg, Payloads(PassthroughCrypt()))
    node = TreeNode.root().add_child(TreeNode("a.txt", NodeKind.FILE, remote_id="missing"))

    with pytest.raises(TransientIOError):
        remote._get(node, io.BytesIO())
