from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator, Optional

SEPARATOR = "/"
METADATA_VERSION = 1


class NodeKind(IntEnum):
    UNKNOWN = 0
    FOLDER = 1
    FILE = 2
    LINK = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_value(cls, value: str | int) -> NodeKind:
        try:
            return cls(int(value))
        except ValueError:
            return cls.UNKNOWN


@dataclass
class RemoteProvenance:
    """Backend-reported facts, used only to break duplicate ties."""

    size: Optional[int] = None
    created_at: Optional[float] = None


class TreeNode:
    def __init__(
        self,
        name: str,
        kind: NodeKind,
        *,
        remote_id: str | None = None,
        size: int | None = None,
        created_at: int | None = None,
        modified_at: int | None = None,
        accessed_at: int | None = None,
        checksum: str | None = None,
        attributes: dict[str, list[str]] | None = None,
        schema_version: int = METADATA_VERSION,
        provenance: RemoteProvenance | None = None,
    ):
        self.name = name
        self.kind = kind
        self.remote_id = remote_id
        self.size = size
        self.created_at = created_at
        self.modified_at = modified_at
        self.accessed_at = accessed_at
        self.checksum = checksum
        self.attributes: dict[str, list[str]] = dict(attributes or {})
        self.schema_version = schema_version
        self.provenance = provenance
        self.parent: TreeNode | None = None
        self.children: dict[str, TreeNode] | None = {} if kind == NodeKind.FOLDER else None

    @classmethod
    def root(cls) -> TreeNode:
        return cls("", NodeKind.FOLDER, remote_id="")

    def __repr__(self) -> str:
        return f"TreeNode({self.kind.label} {self.path!r} remote_id={self.remote_id!r})"

    @property
    def is_root(self) -> bool:
        return self.parent is None

    @property
    def is_folder(self) -> bool:
        return self.kind == NodeKind.FOLDER

    @property
    def needs_metadata_upgrade(self) -> bool:
        return self.schema_version != METADATA_VERSION

    @property
    def path(self) -> str:
        names: list[str] = []
        node: TreeNode | None = self
        while node is not None and node.parent is not None:
            names.append(node.name)
            node = node.parent
        return SEPARATOR.join(reversed(names))

    @property
    def info(self) -> str:
        return f"{self.kind.label} '{self.path}'"

    # -- children -------------------------------------------------------

    def _require_folder(self) -> dict[str, TreeNode]:
        if self.children is None:
            raise ValueError(f"{self.info} cannot hold children")
        return self.children

    def child(self, name: str) -> TreeNode | None:
        return (self.children or {}).get(name)

    def add_child(self, node: TreeNode) -> TreeNode:
        self._require_folder()[node.name] = node
        node.parent = self
        return node

    def remove_child(self, node: TreeNode) -> None:
        children = self._require_folder()
        if children.get(node.name) is node:
            del children[node.name]

    def rename(self, new_name: str) -> None:
        """Change the display name, keeping the parent's mapping consistent."""
        parent = self.parent
        if parent is not None and parent.children and parent.children.get(self.name) is self:
            del parent.children[self.name]
            self.name = new_name
            parent.children[new_name] = self
        else:
            self.name = new_name

    def sorted_children(self) -> list[TreeNode]:
        children = self.children or {}
        return [children[name] for name in sorted(children)]

    def walk(self) -> Iterator[TreeNode]:
        """Preorder walk below this node, children in name order."""
        for child in self.sorted_children():
            yield child
            if child.is_folder:
                yield from child.walk()

    # -- comparison -----------------------------------------------------

    def is_type_changed(self, other: TreeNode) -> bool:
        return self.kind != other.kind

    def is_filedata_changed(self, other: TreeNode) -> bool:
        if self.kind not in (NodeKind.FILE, NodeKind.LINK):
            return False
        return (
            self.size != other.size
            or self.created_at != other.created_at
            or self.modified_at != other.modified_at
        )

    def is_metadata_changed(self, other: TreeNode) -> bool:
        if self.needs_metadata_upgrade or other.needs_metadata_upgrade:
            return True
        return (
            self.size != other.size
            or self.created_at != other.created_at
            or self.modified_at != other.modified_at
            or self.attributes != other.attributes
        )

    def update_from(self, other: TreeNode) -> None:
        """Copy local facts onto this (remote) node. Identity and remote id stay."""
        if self.kind != other.kind:
            self.children = {} if other.kind == NodeKind.FOLDER else None
        self.kind = other.kind
        self.size = other.size
        self.created_at = other.created_at
        self.modified_at = other.modified_at
        self.accessed_at = other.accessed_at
        self.attributes = {scheme: list(values) for scheme, values in other.attributes.items()}
