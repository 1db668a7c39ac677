"""eventchain.core.encoding

Canonical bytes for hashing and signing.

Field sets and order are fixed:

- signed:   messageId, timestamp, payload.data, previousHash
- digested: messageId, timestamp, payload.data, previousHash, signature

New messages encode each field as a 4-byte big-endian length followed by its
UTF-8 bytes, so ``"ab" + "c"`` and ``"a" + "bc"`` never collide. The legacy
raw concatenation is kept only to verify 1.x messages.
"""

from __future__ import annotations

import base64
import binascii
import json
import struct
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from eventchain.core.exceptions import EncodingFailure
from eventchain.core.models import Canonicalization

if TYPE_CHECKING:
    from eventchain.core.models import EventEnvelope, EventPayload

Field = str | int

_MAX_FIELD = 0xFFFFFFFF


def _field_bytes(value: Field) -> bytes:
    if isinstance(value, bool) or not isinstance(value, str | int):
        raise EncodingFailure(f"canonical field must be str or int, got {type(value).__name__}")
    return str(value).encode("utf-8")


def encode_fields(fields: Sequence[Field]) -> bytes:
    """Length-prefixed encoding of an ordered field list."""

    out = bytearray()
    for f in fields:
        raw = _field_bytes(f)
        if len(raw) > _MAX_FIELD:
            raise EncodingFailure("canonical field exceeds 4 GiB")
        out += struct.pack(">I", len(raw))
        out += raw
    return bytes(out)


def legacy_concat(fields: Sequence[Field]) -> bytes:
    """Raw concatenation. Ambiguous across field boundaries; read-only use."""

    return b"".join(_field_bytes(f) for f in fields)


def canonical_bytes(fields: Sequence[Field], canonicalization: Canonicalization | str) -> bytes:
    try:
        mode = Canonicalization(canonicalization)
    except ValueError as e:
        raise EncodingFailure(f"Unsupported canonicalization: {canonicalization}") from e
    if mode is Canonicalization.LENGTH_PREFIXED_V1:
        return encode_fields(fields)
    return legacy_concat(fields)


def signing_fields(envelope: EventEnvelope, payload: EventPayload) -> list[Field]:
    return [envelope.message_id, envelope.timestamp, payload.data, envelope.previous_hash]


def digest_fields(envelope: EventEnvelope, payload: EventPayload) -> list[Field]:
    if envelope.signature is None:
        raise EncodingFailure("message digest requires a signed envelope")
    return [*signing_fields(envelope, payload), envelope.signature]


def canonical_json(data: Any) -> str:
    """Canonical JSON serialization used for snapshots."""

    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def encode_snapshot(snapshot: BaseModel | dict[str, Any]) -> str:
    """Base64 of the snapshot's canonical JSON."""

    try:
        obj = snapshot.model_dump(mode="json") if isinstance(snapshot, BaseModel) else snapshot
        if not isinstance(obj, dict):
            raise TypeError(f"snapshot must be a mapping, got {type(obj).__name__}")
        text = canonical_json(obj)
    except (TypeError, ValueError) as e:
        raise EncodingFailure(f"snapshot is not serializable: {e}") from e
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def decode_snapshot(data: str) -> dict[str, Any]:
    try:
        obj = json.loads(base64.b64decode(data, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise EncodingFailure(f"payload data is not base64 JSON: {e}") from e
    if not isinstance(obj, dict):
        raise EncodingFailure("payload snapshot must be a JSON object")
    return obj
