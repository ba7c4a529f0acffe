"""Canonical encoding and content identifiers.

Every message identity in a DWN is content-addressed:

    descriptorCid = CIDv1(dag-cbor, sha2-256(dag-cbor(descriptor)))
    recordId      = CIDv1(dag-cbor, sha2-256(dag-cbor({author, descriptorCid})))
    dataCid       = CIDv1(raw, sha2-256(data))

DAG-CBOR is deterministic: map keys are sorted (length first, then bytewise),
integers use the shortest form and floats are always 64-bit. Two messages
that differ only in key order therefore share a CID. None-valued entries are
dropped before encoding, so an absent optional field and an explicit null hash
the same way.

CIDs are rendered as base32 multibase strings (`bafy...` / `bafk...`).
"""

from __future__ import annotations

import math
from typing import Any, Optional

import dag_cbor
from multiformats import CID, multihash

from dwn.errors import MalformedDescriptor


DAG_CBOR = "dag-cbor"
RAW = "raw"
HASH_FUNCTION = "sha2-256"
MULTIBASE = "base32"


def _normalize(value: Any, path: str = "$") -> Any:
    """Convert a JSON-like value into the subset DAG-CBOR accepts."""
    if value is None or isinstance(value, (bool, int, bytes)):
        return value
    if isinstance(value, str):
        try:
            value.encode("utf-8")
        except UnicodeEncodeError as ex:
            raise MalformedDescriptor(f"String at {path} is not valid UTF-8") from ex
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise MalformedDescriptor(f"Non-finite number at {path}")
        return value
    if isinstance(value, (list, tuple)):
        return [_normalize(v, f"{path}[{i}]") for i, v in enumerate(value)]
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise MalformedDescriptor(f"Map key at {path} must be a string, got {type(k).__name__}")
            if v is None:
                continue
            out[k] = _normalize(v, f"{path}.{k}")
        return out
    raise MalformedDescriptor(f"Unsupported type {type(value).__name__} at {path}")


def encode(value: Any) -> bytes:
    """Encode a value as canonical DAG-CBOR bytes."""
    normalized = _normalize(value)
    try:
        return dag_cbor.encode(normalized)
    except Exception as ex:
        raise MalformedDescriptor(f"Value cannot be encoded as DAG-CBOR: {ex}") from ex


def decode(data: bytes) -> Any:
    try:
        return dag_cbor.decode(data)
    except Exception as ex:
        raise MalformedDescriptor(f"Invalid DAG-CBOR: {ex}") from ex


def derive_cid(data: bytes, codec: str = DAG_CBOR) -> str:
    """Wrap the sha2-256 multihash of `data` in a CIDv1 string."""
    digest = multihash.digest(bytes(data), HASH_FUNCTION)
    return str(CID(MULTIBASE, 1, codec, digest))


def compute_cid(value: Any) -> str:
    """CID of the canonical DAG-CBOR encoding of `value`."""
    return derive_cid(encode(value), DAG_CBOR)


def data_cid(data: bytes) -> str:
    """CID of raw record data."""
    return derive_cid(data, RAW)


def derive_record_id(descriptor: Any, author: str) -> str:
    """Record id of an initial write.

    The author is part of the preimage: two tenants writing identical
    descriptors get distinct records.
    """
    if not author:
        raise MalformedDescriptor("Record id derivation requires an author")
    return compute_cid({"author": author, "descriptorCid": compute_cid(descriptor)})


def derive_context_id(parent_context_id: Optional[str], record_id: str) -> str:
    """Context id of a protocol record: the slash-joined record ids from the root."""
    if not parent_context_id:
        return record_id
    return f"{parent_context_id}/{record_id}"


def parse_cid(value: str) -> CID:
    try:
        return CID.decode(value)
    except Exception as ex:
        raise MalformedDescriptor(f"Invalid CID: {value!r}") from ex


def is_cid(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        CID.decode(value)
    except Exception:
        return False
    return True
