from __future__ import annotations

import json
import re
import time
from pathlib import Path
from typing import Callable, Literal, Optional

from cloudsync.core.errors import ItemVanishedError, LocalIOError
from cloudsync.core.run_guard import RunGuard
from cloudsync.providers.base import RemoteConnector
from cloudsync.sync.cache_codec import read_snapshot, write_snapshot
from cloudsync.sync.duplicates import DuplicateResolver
from cloudsync.sync.local_connector import ExistingPolicy, LocalConnector, PermissionPolicy
from cloudsync.sync.payload import Payloads
from cloudsync.sync.tree import METADATA_VERSION, NodeKind, TreeNode

SyncMode = Literal["backup", "restore", "list", "clean"]
FileErrorPolicy = Literal["exception", "message"]

OPERATIONS = ("create", "update", "remove", "skip")

LogFunc = Callable[[str, str, str, Optional[str]], None]


class SyncStatus:
    """Per-operation counters, split by node kind."""

    def __init__(self):
        self.counts: dict[str, dict[str, int]] = {op: {} for op in OPERATIONS}

    def add(self, op: str, kind: NodeKind) -> None:
        bucket = self.counts[op]
        bucket[kind.label] = bucket.get(kind.label, 0) + 1

    def total(self, op: str) -> int:
        return sum(self.counts[op].values())

    @property
    def create(self) -> int:
        return self.total("create")

    @property
    def update(self) -> int:
        return self.total("update")

    @property
    def remove(self) -> int:
        return self.total("remove")

    @property
    def skip(self) -> int:
        return self.total("skip")

    def as_dict(self) -> dict:
        out: dict = {op: self.total(op) for op in OPERATIONS}
        out["by_kind"] = {op: dict(sorted(self.counts[op].items())) for op in OPERATIONS}
        return out


def _facts(node: TreeNode) -> dict:
    return {
        "size": node.size,
        "created_at": node.created_at,
        "modified_at": node.modified_at,
        "accessed_at": node.accessed_at,
        "checksum": node.checksum,
        "attributes": node.attributes,
    }


def _restore_facts(node: TreeNode, facts: dict) -> None:
    for key, value in facts.items():
        setattr(node, key, value)


def _compile(patterns: list[str] | None) -> list[re.Pattern]:
    return [re.compile(p) for p in patterns or [] if p]


class SyncEngine:
    def __init__(
        self,
        name: str,
        local: LocalConnector,
        remote: RemoteConnector,
        guard: RunGuard,
        payloads: Payloads,
        *,
        cache_file: Path,
        existing: ExistingPolicy = "stop",
        permissions: PermissionPolicy = "set",
        include: list[str] | None = None,
        exclude: list[str] | None = None,
        dry_run: bool = False,
        file_error: FileErrorPolicy = "exception",
        log_func: LogFunc | None = None,
    ):
        self.name = name
        self.local = local
        self.remote = remote
        self.guard = guard
        self.payloads = payloads
        self.cache_file = cache_file
        self.existing = existing
        self.permissions = permissions
        self.include = _compile(include)
        self.exclude = _compile(exclude)
        self.dry_run = dry_run
        self.file_error = file_error
        self.log_func = log_func or (lambda *_: None)

        self.root = TreeNode.root()
        self.duplicates = DuplicateResolver()
        self.status = SyncStatus()
        self.changed = False
        self.loaded_from_cache = False

    def _log(self, level: str, module: str, message: str, detail: Optional[str] = None):
        self.log_func(level, module, message, detail)

    def _event(self, level: str, message: str, **detail) -> None:
        self._log(level, "sync", message, json.dumps(detail, ensure_ascii=False) if detail else None)

    # -- startup --------------------------------------------------------

    def init(self, mode: SyncMode, nocache: bool = False) -> None:
        """Load the last known remote tree, from the cache when it can be trusted."""
        self.remote.attach_root(self.root)
        if self.guard.crash_detected():
            self._event("WARN", "lock_found", lock_file=str(self.guard.lock_file), hint="forcing a full remote reload")
            nocache = True

        if not nocache and self.guard.cache_usable():
            read_snapshot(self.cache_file, self.root)
            self.loaded_from_cache = True
            self._event("INFO", "cache_loaded", cache_file=str(self.cache_file), mode=mode)
            return

        self.guard.lock()
        started = time.monotonic()
        counts = {"folders": 0, "files": 0}
        self._read_remote(self.root, counts)
        self._event(
            "INFO",
            "remote_structure_loaded",
            folders=counts["folders"],
            files=counts["files"],
            duplicates=len(self.duplicates.duplicates),
            seconds=round(time.monotonic() - started, 2),
        )
        self._release()

    def _read_remote(self, parent: TreeNode, counts: dict[str, int]) -> None:
        for child in self.remote.read_folder(parent):
            self.duplicates.attach(parent, child)
            counts["folders" if child.is_folder else "files"] += 1
            if child.is_folder:
                self._read_remote(child, counts)

    def _release(self) -> bool:
        # the snapshot must not be written while duplicates exist
        if self.duplicates.found:
            return False
        return self.guard.release(lambda: write_snapshot(self.root, self.cache_file))

    def _begin_mutation(self) -> None:
        self.changed = True
        self.guard.lock()

    # -- filters --------------------------------------------------------

    def is_selected(self, path: str) -> bool:
        if self.include and not any(p.fullmatch(path) for p in self.include):
            return False
        return not any(p.fullmatch(path) for p in self.exclude)

    def _local_failure(self, err: LocalIOError) -> None:
        if self.file_error != "message":
            raise err
        self._event("ERROR", "local_io_skipped", path=err.path, error=err.message)

    # -- backup ---------------------------------------------------------

    def backup(self) -> SyncStatus:
        self.duplicates.check()
        self._backup(self.root)
        changed = self.changed
        self._release()
        if changed and not self.dry_run:
            self.remote.clean_history()
        self._event("INFO", "backup_finished", dry_run=self.dry_run, **self.status.as_dict())
        return self.status

    def _backup(self, remote_parent: TreeNode) -> None:
        unused = dict(remote_parent.children or {})
        try:
            entries = self.local.read_folder(remote_parent)
        except ItemVanishedError as e:
            self._event("WARN", "skip_vanished", path=e.path)
            return
        except LocalIOError as e:
            self._local_failure(e)
            # keep what is stored remotely for an unreadable folder
            return

        for entry in entries:
            rel = f"{remote_parent.path}/{entry.name}" if remote_parent.path else entry.name
            if not self.is_selected(rel):
                continue
            try:
                local_child = self.local.get_item(entry)
                remote_child = remote_parent.child(local_child.name)
                tracked = self._sync_child(remote_parent, local_child, remote_child)
            except ItemVanishedError as e:
                self._event("WARN", "skip_vanished", path=e.path, detail="does not exist anymore")
                continue
            except LocalIOError as e:
                self._local_failure(e)
                unused.pop(entry.name, None)
                continue

            unused.pop(local_child.name, None)
            if tracked is not None and tracked.is_folder:
                self._backup(tracked)

        for leftover in sorted(unused.values(), key=lambda n: n.name):
            self._remove(leftover)

    def _sync_child(self, parent: TreeNode, local_child: TreeNode, remote_child: TreeNode | None) -> TreeNode | None:
        if remote_child is None:
            self._create(parent, local_child)
            self._verify_unchanged(local_child)
            return local_child

        if local_child.is_type_changed(remote_child):
            self._remove(remote_child)
            self._create(parent, local_child)
            self._verify_unchanged(local_child)
            return local_child

        if local_child.is_metadata_changed(remote_child):
            with_filedata = local_child.is_filedata_changed(remote_child)
            previous = _facts(remote_child)
            remote_child.update_from(local_child)
            self._event("INFO", "update", path=remote_child.path, kind=remote_child.kind.label, filedata=with_filedata)
            if not self.dry_run:
                self._begin_mutation()
                try:
                    self.remote.update(remote_child, with_filedata)
                except BaseException:
                    # the tree must keep describing what the remote holds
                    _restore_facts(remote_child, previous)
                    raise
                remote_child.schema_version = METADATA_VERSION
            else:
                self.changed = True
            self.status.add("update", remote_child.kind)
            self._verify_unchanged(remote_child)
            return remote_child

        self.status.add("skip", remote_child.kind)
        return remote_child

    def _create(self, parent: TreeNode, node: TreeNode) -> None:
        parent.add_child(node)
        self._event("INFO", "create", path=node.path, kind=node.kind.label)
        if not self.dry_run:
            self._begin_mutation()
            try:
                self.remote.upload(node)
            except BaseException:
                parent.remove_child(node)
                raise
        else:
            self.changed = True
        self.status.add("create", node.kind)

    def _remove(self, node: TreeNode) -> None:
        self._event("INFO", "remove", path=node.path, kind=node.kind.label)
        if not self.dry_run:
            self._begin_mutation()
            self.remote.remove(node)
        else:
            self.changed = True
        if node.parent is not None:
            node.parent.remove_child(node)
        self.status.add("remove", node.kind)

    def _verify_unchanged(self, node: TreeNode) -> None:
        """Warn when the local entry moved on while it was being transferred."""
        if self.dry_run or node.is_folder:
            return
        try:
            current = self.local.get_item(self.local.local_path(node))
        except ItemVanishedError:
            self._event("WARN", "removed_during_update", path=node.path)
            return
        if current.is_metadata_changed(node):
            self._event("WARN", "changed_during_update", path=node.path)

    # -- restore / list -------------------------------------------------

    def restore(self) -> SyncStatus:
        self.duplicates.check()
        self._restore(self.root)
        self._event("INFO", "restore_finished", dry_run=self.dry_run, **self.status.as_dict())
        return self.status

    def _restore(self, parent: TreeNode) -> None:
        for child in parent.sorted_children():
            if self.is_selected(child.path):
                self.local.prepare_upload(child, self.existing)
                self._event("INFO", "restore", path=child.path, kind=child.kind.label)
                restored = True
                if not self.dry_run:
                    try:
                        self.local.prepare_parent(child)
                        restored = self.local.restore_item(child, self.existing, self.permissions, self._fetch)
                    except LocalIOError as e:
                        self._local_failure(e)
                        continue
                self.status.add("create" if restored else "skip", child.kind)
            if child.is_folder:
                self._restore(child)
                if not self.dry_run and self.is_selected(child.path) and self.local.local_path(child).is_dir():
                    self.local.apply_times(child)

    def _fetch(self, node: TreeNode):
        return self.payloads.decrypt(self.remote.get(node))

    def list_items(self) -> list[str]:
        self.duplicates.check()
        paths: list[str] = []
        self._list(self.root, paths)
        return paths

    def _list(self, parent: TreeNode, paths: list[str]) -> None:
        # an unselected folder hides its whole subtree, as in backup
        for child in parent.sorted_children():
            if not self.is_selected(child.path):
                continue
            paths.append(child.path)
            self._event("INFO", "item", path=child.path, kind=child.kind.label)
            if child.is_folder:
                self._list(child, paths)

    # -- clean ----------------------------------------------------------

    def clean(self) -> SyncStatus:
        """Restore every duplicate subtree into the local path, then drop it remotely."""
        items = self.duplicates.flatten()
        for node in items:
            self.local.prepare_upload(node, "rename")
            self._event("INFO", "restore_duplicate", path=node.path, remote_id=node.remote_id)
            if not self.dry_run:
                self.local.prepare_parent(node)
                self.local.restore_item(node, "rename", self.permissions, self._fetch)
            self.status.add("create", node.kind)

        for node in reversed(items):
            self._event("INFO", "remove_duplicate", path=node.path, remote_id=node.remote_id)
            if not self.dry_run:
                self._begin_mutation()
                self.remote.remove(node)
            self.status.add("remove", node.kind)

        if not self.dry_run:
            self.duplicates.clear()
            self._release()
        self._event("INFO", "clean_finished", dry_run=self.dry_run, **self.status.as_dict())
        return self.status
