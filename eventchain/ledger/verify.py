"""eventchain.ledger.verify

Chain verification, independent of any database.

Input is what a consumer sees on the broker: messages for one partition key.
Two views:

- ``verify_chain``: an ordered list must start at genesis, link each event
  to the previous digest, and carry valid signatures
- ``walk_back``: starting from a committed tip, follow ``previousHash`` to
  genesis; events not on that path (orphans from lost races or failed
  commits) are ignored
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from eventchain import GENESIS_HASH
from eventchain.core.exceptions import ChainIntegrityError, EncodingFailure
from eventchain.core.models import EventMessage
from eventchain.ledger.builder import message_digest, signing_bytes
from eventchain.security.signer import Ed25519Signer, PublicKeyLike


@dataclass
class ChainVerificationResult:
    """Result of verifying a chain.

    Attributes
    ----------
    is_valid:
        ``True`` if every event checked out.
    verified_count:
        Number of events verified before the first break.
    first_break_at:
        Zero-based index of the first bad event, or ``None``.
    tip:
        Digest of the last verified event (genesis for an empty chain).
    errors:
        Human-readable descriptions of integrity violations.
    """

    is_valid: bool = True
    verified_count: int = 0
    first_break_at: int | None = None
    tip: str = GENESIS_HASH
    errors: list[str] = field(default_factory=list)

    def _fail(self, index: int, msg: str) -> ChainVerificationResult:
        self.is_valid = False
        if self.first_break_at is None:
            self.first_break_at = index
        self.errors.append(f"Event at index {index}: {msg}")
        return self


def verify_message(message: EventMessage, public_key: PublicKeyLike) -> bool:
    """Signature check using the canonicalization recorded in metadata."""

    sig = message.envelope.signature
    if sig is None:
        return False
    try:
        data = signing_bytes(message)
    except EncodingFailure:
        return False
    return Ed25519Signer.verify(data, sig, public_key)


def verify_chain(
    messages: Iterable[EventMessage],
    public_key: PublicKeyLike,
    *,
    expected_tip: str | None = None,
) -> ChainVerificationResult:
    """Verify an ordered chain for one entity. Stops at the first break."""

    result = ChainVerificationResult()
    prev = GENESIS_HASH
    seen: set[str] = {GENESIS_HASH}

    for i, msg in enumerate(messages):
        if msg.envelope.previous_hash != prev:
            return result._fail(
                i,
                f"previousHash mismatch (stored={msg.envelope.previous_hash!r}, expected={prev!r})",
            )
        if not verify_message(msg, public_key):
            return result._fail(i, f"bad signature on {msg.envelope.message_id}")
        h = message_digest(msg)
        if h in seen:
            return result._fail(i, f"repeated digest {h}")
        seen.add(h)
        prev = h
        result.tip = h
        result.verified_count += 1

    if expected_tip is not None and result.tip != expected_tip:
        result.is_valid = False
        result.errors.append(f"final digest {result.tip!r} does not match expected tip {expected_tip!r}")
    return result


def walk_back(tip: str, messages: Iterable[EventMessage]) -> list[EventMessage]:
    """Return the chain ending at ``tip``, oldest first.

    Raises:
        ChainIntegrityError: dangling link, cycle, or two events with the
            same digest.
    """

    by_digest: dict[str, EventMessage] = {}
    for msg in messages:
        if msg.envelope.signature is None:
            continue
        h = message_digest(msg)
        if h in by_digest and by_digest[h].envelope.message_id != msg.envelope.message_id:
            raise ChainIntegrityError(f"two events share digest {h}")
        by_digest[h] = msg

    out: list[EventMessage] = []
    visited: set[str] = set()
    cur = tip
    while cur != GENESIS_HASH:
        if cur in visited:
            raise ChainIntegrityError(f"cycle at {cur}")
        visited.add(cur)
        msg = by_digest.get(cur)
        if msg is None:
            raise ChainIntegrityError(f"no event with digest {cur}")
        out.append(msg)
        cur = msg.envelope.previous_hash
    out.reverse()
    return out


def read_jsonl(path: str | Path) -> list[EventMessage]:
    """Load wire documents, one per line. Blank lines are skipped."""

    out: list[EventMessage] = []
    with Path(path).open(encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                out.append(EventMessage.from_wire(json.loads(line)))
            except ValueError as e:
                raise ChainIntegrityError(f"{path}:{lineno}: not a wire message: {e}") from e
    return out
