"""eventchain.core.models

Wire models.

A message is (envelope, payload, metadata). It is built fresh per mutation,
frozen once signed, and discarded after the publish attempt. Only its digest
outlives it, as the entity's next chain tip.

Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from eventchain import GENESIS_HASH, WIRE_VERSION

_WIRE = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class EventKind(StrEnum):
    """Mutation kinds that produce chain events."""

    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"


class Canonicalization(StrEnum):
    """Byte encodings for the signed and digested field lists."""

    # 4-byte big-endian length prefix per field. All new messages.
    LENGTH_PREFIXED_V1 = "lp-v1"
    # Raw concatenation, no delimiters. Only read, for pre-2.0 messages.
    CONCAT_V0 = "concat-v0"


class EventEnvelope(BaseModel):
    """Identity and linkage of one event.

    Only ``message_id``, ``timestamp`` and ``previous_hash`` (with the payload
    data) are signed. ``sequence_number``, ``user_id``, ``service_id`` and
    ``session_id`` are informational and carry no integrity guarantee.
    """

    model_config = _WIRE

    message_id: str
    timestamp: int
    sequence_number: int
    user_id: str | None = None
    service_id: str
    session_id: str | None = None
    previous_hash: str = GENESIS_HASH
    signature: str | None = None


class EventPayload(BaseModel):
    """Entity snapshot, base64 of canonical JSON.

    ``encrypted`` is always true on the wire, but the data is only encoded,
    not encrypted.
    """

    model_config = _WIRE

    encrypted: bool = True
    data: str


class EventMetadata(BaseModel):
    """Informational. Not covered by the signature or the digest."""

    model_config = _WIRE

    version: str = WIRE_VERSION
    content_type: str = "application/json"
    compression_algorithm: str = "none"
    canonicalization: Canonicalization = Canonicalization.LENGTH_PREFIXED_V1


class EventMessage(BaseModel):
    """What crosses the wire."""

    model_config = _WIRE

    envelope: EventEnvelope
    payload: EventPayload
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    @property
    def is_signed(self) -> bool:
        return self.envelope.signature is not None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        return json.dumps(self.to_wire(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_wire(cls, obj: dict[str, Any] | str | bytes) -> EventMessage:
        """Parse a wire document.

        Messages written before the ``canonicalization`` field existed
        (``version`` 1.x) default to the legacy concatenation.
        """

        data = json.loads(obj) if isinstance(obj, str | bytes) else dict(obj)
        meta = dict(data.get("metadata") or {})
        if "canonicalization" not in meta and str(meta.get("version", "")).startswith("1."):
            meta["canonicalization"] = Canonicalization.CONCAT_V0.value
            data["metadata"] = meta
        return cls.model_validate(data)


class ChainTip(BaseModel):
    """Digest of the last confirmed event for an entity, and its sequence number."""

    model_config = ConfigDict(frozen=True)

    hash: str
    sequence: int = 0

    @classmethod
    def genesis(cls) -> ChainTip:
        return cls(hash=GENESIS_HASH, sequence=0)
