"""Wire metadata codec.

Version 1 record (colon separated)::

    version:kind:size:created:modified:accessed:checksum[:scheme|value|value...]*

Version 0 (legacy) records carry exactly nine fields and no attribute blocks::

    kind:size:created:modified:accessed:group:user:mode:checksum

Empty fields stand for missing values.
"""

from __future__ import annotations

from cloudsync.core.errors import OperationError
from cloudsync.sync.tree import METADATA_VERSION, NodeKind, RemoteProvenance, TreeNode

METADATA_SEPARATOR = ":"
ATTRIBUTE_SEPARATOR = "|"

ATTRIBUTE_POSIX = "posix"


def _num(value: int | None) -> str:
    return "" if value is None else str(value)


def _opt_int(value: str) -> int | None:
    return int(value) if value else None


def encode_attributes(attributes: dict[str, list[str]]) -> list[str]:
    return [ATTRIBUTE_SEPARATOR.join([scheme, *values]) for scheme, values in attributes.items()]


def decode_attributes(blocks: list[str]) -> dict[str, list[str]]:
    out: dict[str, list[str]] = {}
    for block in blocks:
        if not block:
            continue
        scheme, *values = block.split(ATTRIBUTE_SEPARATOR)
        out[scheme] = values
    return out


def metadata_fields(node: TreeNode) -> list[str]:
    """Field list of the current schema version for `node`."""
    return [
        str(METADATA_VERSION),
        str(int(node.kind)),
        _num(node.size),
        _num(node.created_at),
        _num(node.modified_at),
        _num(node.accessed_at),
        node.checksum or "",
        *encode_attributes(node.attributes),
    ]


def legacy_fields(node: TreeNode) -> list[str]:
    """Version 0 field list, for nodes whose remote metadata was never upgraded."""
    group, user, mode = [*node.attributes.get(ATTRIBUTE_POSIX, []), "", "", ""][:3]
    return [
        str(int(node.kind)),
        _num(node.size),
        _num(node.created_at),
        _num(node.modified_at),
        _num(node.accessed_at),
        group,
        user,
        mode,
        node.checksum or "",
    ]


def stored_fields(node: TreeNode) -> list[str]:
    """Field list in the schema version `node` is stored with remotely."""
    if node.schema_version == 0:
        return legacy_fields(node)
    return metadata_fields(node)


def encode_metadata(node: TreeNode) -> str:
    return METADATA_SEPARATOR.join(metadata_fields(node))


def detect_version(fields: list[str]) -> int:
    if len(fields) == 9 and ATTRIBUTE_SEPARATOR not in fields[8]:
        return 0
    try:
        return int(fields[0])
    except (ValueError, IndexError):
        raise OperationError(f"unreadable metadata record: {METADATA_SEPARATOR.join(fields)!r}") from None


def _decode_v0(fields: list[str]) -> dict:
    group, user, mode = fields[5], fields[6], fields[7]
    posix = [group, user] if not mode else [group, user, mode]
    return {
        "kind": NodeKind.from_value(fields[0]),
        "size": _opt_int(fields[1]),
        "created_at": _opt_int(fields[2]),
        "modified_at": _opt_int(fields[3]),
        "accessed_at": _opt_int(fields[4]),
        "checksum": fields[8] or None,
        "attributes": {ATTRIBUTE_POSIX: posix},
        "schema_version": 0,
    }


def _decode_v1(fields: list[str]) -> dict:
    if len(fields) < 7:
        raise OperationError(f"truncated metadata record: {METADATA_SEPARATOR.join(fields)!r}")
    return {
        "kind": NodeKind.from_value(fields[1]),
        "size": _opt_int(fields[2]),
        "created_at": _opt_int(fields[3]),
        "modified_at": _opt_int(fields[4]),
        "accessed_at": _opt_int(fields[5]),
        "checksum": fields[6] or None,
        "attributes": decode_attributes(fields[7:]),
        "schema_version": 1,
    }


_DECODERS = {0: _decode_v0, 1: _decode_v1}


def decode_fields(fields: list[str]) -> dict:
    version = detect_version(fields)
    decoder = _DECODERS.get(version)
    if decoder is None:
        raise OperationError(f"unsupported metadata version {version} (this build reads up to {METADATA_VERSION})")
    return decoder(fields)


def decode_metadata(text: str) -> dict:
    return decode_fields(text.split(METADATA_SEPARATOR))


def node_from_fields(name: str, remote_id: str | None, fields: list[str]) -> TreeNode:
    return TreeNode(name, remote_id=remote_id, **decode_fields(fields))


def node_from_metadata(
    remote_id: str,
    is_folder: bool,
    name: str,
    text: str | None,
    remote_size: int | None = None,
    remote_created: float | None = None,
) -> TreeNode:
    """Build a node from a remote listing entry.

    Entries without metadata (written by hand, or an interrupted upload)
    fall back to a bare folder or file.
    """
    provenance = RemoteProvenance(size=remote_size, created_at=remote_created)
    if not text:
        kind = NodeKind.FOLDER if is_folder else NodeKind.FILE
        return TreeNode(name, kind, remote_id=remote_id, provenance=provenance)
    node = node_from_fields(name, remote_id, text.split(METADATA_SEPARATOR))
    node.provenance = provenance
    return node
