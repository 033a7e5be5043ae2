from __future__ import annotations

from cloudsync.core.errors import UsageError
from cloudsync.providers.base import RemoteConnector
from cloudsync.providers.feishu import FeishuDriveRemote
from cloudsync.providers.gdrive import GoogleDriveRemote
from cloudsync.providers.local_fs import LocalFilesystemRemote

REMOTE_CONNECTORS: dict[str, type[RemoteConnector]] = {
    LocalFilesystemRemote.name: LocalFilesystemRemote,
    GoogleDriveRemote.name: GoogleDriveRemote,
    FeishuDriveRemote.name: FeishuDriveRemote,
}


def create_remote_connector(name: str, backup_name: str, cfg, payloads, retry=None, history=None) -> RemoteConnector:
    try:
        connector_cls = REMOTE_CONNECTORS[name]
    except KeyError:
        choices = ", ".join(sorted(REMOTE_CONNECTORS))
        raise UsageError(f"unknown remote connector '{name}' (choose one of: {choices})") from None
    return connector_cls(backup_name, cfg, payloads, retry, history)
