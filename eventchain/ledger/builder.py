"""eventchain.ledger.builder

Assembles one signed, linked event.

The builder is pure with respect to chain state: it reads the tip it is
handed and returns the prospective new tip. Committing that tip is someone
else's job, and only after the broker confirms delivery.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from eventchain import GENESIS_HASH
from eventchain.core.encoding import canonical_bytes, digest_fields, encode_snapshot, signing_fields
from eventchain.core.models import (
    Canonicalization,
    ChainTip,
    EventEnvelope,
    EventKind,
    EventMessage,
    EventMetadata,
    EventPayload,
)
from eventchain.core.time import MillisClock
from eventchain.security.hashing import digest
from eventchain.security.signer import Ed25519Signer


@dataclass(frozen=True, slots=True)
class Correlation:
    """Who acted, and which operation triggered the event. Not signed."""

    user_id: str | None = None
    session_id: str | None = None


@dataclass(frozen=True, slots=True)
class BuiltEvent:
    message: EventMessage
    tip: ChainTip
    kind: EventKind

    @property
    def previous_hash(self) -> str:
        return self.message.envelope.previous_hash

    @property
    def message_id(self) -> str:
        return self.message.envelope.message_id


def signing_bytes(message: EventMessage) -> bytes:
    """Exact bytes the signature covers, per the message's canonicalization."""

    return canonical_bytes(
        signing_fields(message.envelope, message.payload),
        message.metadata.canonicalization,
    )


def message_digest(message: EventMessage) -> str:
    """Digest of a signed message. This is the value the next event links to."""

    return digest(
        canonical_bytes(
            digest_fields(message.envelope, message.payload),
            message.metadata.canonicalization,
        )
    )


class ChainBuilder:
    def __init__(
        self,
        signer: Ed25519Signer,
        *,
        service_id: str,
        clock: Callable[[], int] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.signer = signer
        self.service_id = service_id
        self._clock = clock or MillisClock()
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))

    def build(
        self,
        snapshot: BaseModel | dict[str, Any],
        kind: EventKind,
        tip: ChainTip | None,
        correlation: Correlation | None = None,
    ) -> BuiltEvent:
        """Build, sign and digest one event linked to ``tip``.

        Raises:
            EncodingFailure: snapshot cannot be serialized.
            SigningUnavailable: signer has no usable key.
        """

        corr = correlation or Correlation()
        prev = tip.hash if tip is not None else GENESIS_HASH
        seq = (tip.sequence if tip is not None else 0) + 1

        payload = EventPayload(encrypted=True, data=encode_snapshot(snapshot))
        envelope = EventEnvelope(
            message_id=self._new_id(),
            timestamp=self._clock(),
            sequence_number=seq,
            user_id=corr.user_id,
            service_id=self.service_id,
            session_id=corr.session_id,
            previous_hash=prev,
        )
        metadata = EventMetadata(canonicalization=Canonicalization.LENGTH_PREFIXED_V1)

        unsigned = EventMessage(envelope=envelope, payload=payload, metadata=metadata)
        signature = self.signer.sign_b64(signing_bytes(unsigned))
        message = unsigned.model_copy(
            update={"envelope": envelope.model_copy(update={"signature": signature})}
        )

        return BuiltEvent(
            message=message,
            tip=ChainTip(hash=message_digest(message), sequence=seq),
            kind=kind,
        )
