import pytest

from cloudsync.core.errors import OperationError
from cloudsync.sync import metadata
from cloudsync.sync.tree import METADATA_VERSION, NodeKind, TreeNode


def _file(name: str, **kw) -> TreeNode:
    base = dict(size=5, created_at=1700000000, modified_at=1700000100, accessed_at=1700000200)
    base.update(kw)
    return TreeNode(name, NodeKind.FILE, **base)


def test_path_follows_parent_chain():
    root = TreeNode.root()
    docs = root.add_child(TreeNode("docs", NodeKind.FOLDER))
    note = docs.add_child(_file("note.txt"))

    assert root.path == ""
    assert docs.path == "docs"
    assert note.path == "docs/note.txt"
    assert [n.path for n in root.walk()] == ["docs", "docs/note.txt"]


def test_rename_rekeys_parent_mapping():
    root = TreeNode.root()
    node = root.add_child(_file("a.txt"))

    node.rename("a.txt.0")

    assert root.child("a.txt") is None
    assert root.child("a.txt.0") is node
    assert node.path == "a.txt.0"


def test_file_cannot_hold_children():
    with pytest.raises(ValueError):
        _file("a.txt").add_child(_file("b.txt"))


def test_change_detection():
    local = _file("a.txt", attributes={"posix": ["staff", "alice", "644"]})
    remote = _file("a.txt", attributes={"posix": ["staff", "alice", "644"]})
    assert not local.is_metadata_changed(remote)

    # access time is not part of the comparison
    local.accessed_at = 1800000000
    assert not local.is_metadata_changed(remote)

    local.attributes = {"posix": ["staff", "alice", "600"]}
    assert local.is_metadata_changed(remote)
    assert not local.is_filedata_changed(remote)

    local.modified_at += 1
    assert local.is_filedata_changed(remote)

    folder = TreeNode("a.txt", NodeKind.FOLDER)
    assert folder.is_type_changed(remote)


def test_legacy_node_always_needs_update():
    local = _file("a.txt")
    remote = _file("a.txt", schema_version=0)
    assert remote.needs_metadata_upgrade
    assert local.is_metadata_changed(remote)


def test_encode_decode_current_version():
    node = _file("a.txt", checksum="0123abcd", attributes={"posix": ["staff", "alice", "644"]})

    text = metadata.encode_metadata(node)
    decoded = metadata.decode_metadata(text)

    assert text.startswith(f"{METADATA_VERSION}:2:5:")
    assert decoded["kind"] == NodeKind.FILE
    assert decoded["size"] == 5
    assert decoded["modified_at"] == 1700000100
    assert decoded["checksum"] == "0123abcd"
    assert decoded["attributes"] == {"posix": ["staff", "alice", "644"]}
    assert decoded["schema_version"] == METADATA_VERSION


def test_folder_metadata_has_empty_size():
    folder = TreeNode("docs", NodeKind.FOLDER, modified_at=1700000000)
    fields = metadata.encode_metadata(folder).split(":")
    assert fields[2] == ""
    assert metadata.decode_metadata(":".join(fields))["size"] is None


def test_decode_legacy_record():
    decoded = metadata.decode_metadata("2:5:1700000000:1700000100:1700000200:staff:alice:644:0123abcd")

    assert decoded["schema_version"] == 0
    assert decoded["kind"] == NodeKind.FILE
    assert decoded["accessed_at"] == 1700000200
    assert decoded["checksum"] == "0123abcd"
    assert decoded["attributes"] == {"posix": ["staff", "alice", "644"]}


def test_decode_legacy_link_without_mode():
    decoded = metadata.decode_metadata("3:7:1:2:3:staff:alice::")
    assert decoded["kind"] == NodeKind.LINK
    assert decoded["attributes"] == {"posix": ["staff", "alice"]}
    assert decoded["checksum"] is None


def test_unknown_kind_value_decodes_as_unknown():
    assert NodeKind.from_value("99") == NodeKind.UNKNOWN
    assert NodeKind.from_value("x") == NodeKind.UNKNOWN


def test_unsupported_version_is_rejected():
    with pytest.raises(OperationError, match="unsupported metadata version 7"):
        metadata.decode_metadata("7:2:5:1:2:3:abc")


def test_node_without_metadata_falls_back_to_bare_entry():
    node = metadata.node_from_metadata("id-1", True, "docs", None, None, 1700000000.0)
    assert node.kind == NodeKind.FOLDER
    assert node.remote_id == "id-1"
    assert node.provenance.created_at == 1700000000.0
