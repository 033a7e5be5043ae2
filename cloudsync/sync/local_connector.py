from __future__ import annotations

import grp
import hashlib
import logging
import os
import pwd
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, Literal

from cloudsync.core.errors import ItemVanishedError, LocalIOError, OperationError
from cloudsync.sync.crypt import CHUNK_SIZE
from cloudsync.sync.metadata import ATTRIBUTE_POSIX
from cloudsync.sync.tree import NodeKind, TreeNode

LinkPolicy = Literal["none", "external", "all"]
ExistingPolicy = Literal["stop", "update", "skip", "rename"]
PermissionPolicy = Literal["set", "ignore", "try"]

logger = logging.getLogger("local")


@dataclass
class LocalStream:
    chunks: Iterator[bytes]
    length: int


def _is_within(path: Path, base: Path) -> bool:
    return path == base or base in path.parents


def _user_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)


class LocalConnector:
    def __init__(self, base_path: str | Path, link_policy: LinkPolicy = "external"):
        self.base_path = Path(base_path).expanduser().absolute()
        self.link_policy = link_policy
        self._followed: set[Path] = set()
        # one warning per unknown principal per run
        self._warned_principals: set[str] = set()

    def local_path(self, node: TreeNode) -> Path:
        rel = node.path
        return self.base_path / rel if rel else self.base_path

    # -- reading --------------------------------------------------------

    def read_folder(self, node: TreeNode) -> list[Path]:
        folder = self.local_path(node)
        try:
            return sorted(folder.iterdir(), key=lambda p: p.name)
        except FileNotFoundError:
            raise ItemVanishedError(node.path) from None
        except OSError as e:
            raise LocalIOError(f"can't read folder: {e}", path=node.path, kind="folder") from e

    def _follow_target(self, entry: Path) -> Path | None:
        if self.link_policy == "none":
            return None
        try:
            target = entry.resolve(strict=True)
        except (OSError, RuntimeError):
            return None
        if self.link_policy == "external":
            if _is_within(target, self.base_path.resolve()):
                return None
        elif _is_within(entry.parent.resolve(), target):
            # link to an ancestor would recurse forever
            return None
        for followed in self._followed:
            if target != followed and _is_within(target, followed):
                return None
        self._followed.add(target)
        return target

    def get_item(self, entry: Path) -> TreeNode:
        rel = entry.relative_to(self.base_path).as_posix()
        try:
            st = entry.lstat()
            is_link = stat.S_ISLNK(st.st_mode)
            if is_link:
                target = self._follow_target(entry)
                if target is not None:
                    st = target.stat()
                    is_link = False
        except FileNotFoundError:
            raise ItemVanishedError(rel) from None
        except OSError as e:
            raise LocalIOError(f"can't read attributes: {e}", path=rel) from e

        if is_link:
            kind = NodeKind.LINK
        elif stat.S_ISDIR(st.st_mode):
            kind = NodeKind.FOLDER
        elif stat.S_ISREG(st.st_mode):
            kind = NodeKind.FILE
        else:
            kind = NodeKind.UNKNOWN

        group, user = _group_name(st.st_gid), _user_name(st.st_uid)
        posix = [group, user] if is_link else [group, user, format(stat.S_IMODE(st.st_mode), "o")]
        return TreeNode(
            entry.name,
            kind,
            size=None if kind == NodeKind.FOLDER else st.st_size,
            created_at=int(getattr(st, "st_birthtime", st.st_mtime)),
            modified_at=int(st.st_mtime),
            accessed_at=int(st.st_atime),
            attributes={ATTRIBUTE_POSIX: posix},
        )

    def get_file_binary(self, node: TreeNode) -> LocalStream:
        """Plaintext content of `node`. The checksum is set once the stream is drained."""
        path = self.local_path(node)
        if node.kind == NodeKind.LINK:
            try:
                data = os.fsencode(os.readlink(path))
            except FileNotFoundError:
                raise ItemVanishedError(node.path) from None
            except OSError as e:
                raise LocalIOError(f"can't read link: {e}", path=node.path, kind="link") from e
            node.checksum = hashlib.md5(data).hexdigest()
            return LocalStream(iter([data]), len(data))

        if node.kind != NodeKind.FILE:
            raise OperationError("no binary data", path=node.path, kind=node.kind.label)
        try:
            fp = path.open("rb")
        except FileNotFoundError:
            raise ItemVanishedError(node.path) from None
        except OSError as e:
            raise LocalIOError(f"can't open file: {e}", path=node.path, kind="file") from e
        length = os.fstat(fp.fileno()).st_size

        def _chunks() -> Iterator[bytes]:
            digest = hashlib.md5()
            try:
                for chunk in iter(lambda: fp.read(CHUNK_SIZE), b""):
                    digest.update(chunk)
                    yield chunk
            except OSError as e:
                raise LocalIOError(f"can't read file: {e}", path=node.path, kind="file") from e
            finally:
                fp.close()
            node.checksum = digest.hexdigest()

        return LocalStream(_chunks(), length)

    # -- writing --------------------------------------------------------

    def prepare_upload(self, node: TreeNode, existing: ExistingPolicy) -> None:
        if existing != "rename":
            return
        path = self.local_path(node)
        if not os.path.lexists(path):
            return
        i = 0
        while os.path.lexists(path.with_name(f"{node.name}.{i}")):
            i += 1
        node.rename(f"{node.name}.{i}")

    def prepare_parent(self, node: TreeNode) -> None:
        if node.parent is None:
            return
        self.local_path(node.parent).mkdir(parents=True, exist_ok=True)

    def restore_item(
        self,
        node: TreeNode,
        existing: ExistingPolicy,
        permissions: PermissionPolicy,
        fetch: Callable[[TreeNode], Iterable[bytes]],
    ) -> bool:
        """Materialize `node` on disk. Returns False when it was left alone."""
        path = self.local_path(node)
        if os.path.lexists(path):
            if existing == "skip":
                logger.info("restore_skip %s already exists", node.info)
                return False
            if existing != "update":
                raise OperationError(
                    "already exists; try another '--existing' behavior",
                    path=node.path,
                    kind=node.kind.label,
                )
            if not (node.is_folder and path.is_dir() and not path.is_symlink()):
                self._clear(node, path)

        try:
            if node.kind == NodeKind.FOLDER:
                path.mkdir(exist_ok=True)
            elif node.kind == NodeKind.FILE:
                self._require_parent(node, path)
                self._write_file(node, path, fetch(node))
            elif node.kind == NodeKind.LINK:
                self._require_parent(node, path)
                target = b"".join(fetch(node))
                os.symlink(os.fsdecode(target), path)
            else:
                logger.warning("restore_unknown_kind %s skipped", node.info)
                return False
        except OSError as e:
            raise LocalIOError(f"can't restore: {e}", path=node.path, kind=node.kind.label) from e

        if node.kind != NodeKind.LINK:
            self.apply_times(node)
        self._apply_permissions(node, path, permissions)
        return True

    def _clear(self, node: TreeNode, path: Path) -> None:
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        except OSError as e:
            raise LocalIOError(f"can't clear existing path: {e}", path=node.path, kind=node.kind.label) from e

    def _require_parent(self, node: TreeNode, path: Path) -> None:
        if not path.parent.is_dir():
            raise OperationError("parent directory is missing", path=node.path, kind=node.kind.label)

    def _write_file(self, node: TreeNode, path: Path, chunks: Iterable[bytes]) -> None:
        digest = hashlib.md5()
        written = 0
        with path.open("wb") as fp:
            for chunk in chunks:
                digest.update(chunk)
                fp.write(chunk)
                written += len(chunk)
        if node.checksum and digest.hexdigest() != node.checksum:
            raise OperationError("restored file checksum differs", path=node.path, kind="file")
        if node.size is not None and written != node.size:
            raise OperationError(
                f"restored file size differs ({written} != {node.size})", path=node.path, kind="file"
            )

    def apply_times(self, node: TreeNode) -> None:
        if node.modified_at is None:
            return
        accessed = node.accessed_at if node.accessed_at is not None else node.modified_at
        try:
            os.utime(self.local_path(node), (accessed, node.modified_at))
        except OSError as e:
            raise LocalIOError(f"can't set times: {e}", path=node.path, kind=node.kind.label) from e

    # -- permissions ----------------------------------------------------

    def _warn_principal(self, kind: str, name: str) -> None:
        key = f"{kind}:{name}"
        if key in self._warned_principals:
            return
        self._warned_principals.add(key)
        logger.warning("principal_missing %s '%s' not found, keeping current owner", kind, name)

    def _lookup_uid(self, name: str) -> int:
        try:
            return pwd.getpwnam(name).pw_uid
        except KeyError:
            if name.isdigit():
                return int(name)
            self._warn_principal("user", name)
            return -1

    def _lookup_gid(self, name: str) -> int:
        try:
            return grp.getgrnam(name).gr_gid
        except KeyError:
            if name.isdigit():
                return int(name)
            self._warn_principal("group", name)
            return -1

    def _apply_permissions(self, node: TreeNode, path: Path, policy: PermissionPolicy) -> None:
        if policy == "ignore":
            return
        posix = node.attributes.get(ATTRIBUTE_POSIX)
        if not posix:
            return
        try:
            gid = self._lookup_gid(posix[0]) if posix[0] else -1
            uid = self._lookup_uid(posix[1]) if len(posix) > 1 and posix[1] else -1
            if uid != -1 or gid != -1:
                st = path.lstat()
                if (uid != -1 and st.st_uid != uid) or (gid != -1 and st.st_gid != gid):
                    os.chown(path, uid, gid, follow_symlinks=False)
            if len(posix) > 2 and posix[2] and node.kind != NodeKind.LINK:
                os.chmod(path, int(posix[2], 8))
        except (OSError, ValueError) as e:
            if policy == "try":
                logger.warning("permissions_not_restored %s: %s", node.info, e)
                return
            raise OperationError(
                f"can't restore permissions: {e}; try to run with '--permissions try'",
                path=node.path,
                kind=node.kind.label,
            ) from e
