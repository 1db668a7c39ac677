from __future__ import annotations

import base64
from pathlib import Path

import pytest

from eventchain import GENESIS_HASH
from eventchain.core.encoding import legacy_concat
from eventchain.core.exceptions import ChainIntegrityError
from eventchain.core.models import (
    Canonicalization,
    ChainTip,
    EventEnvelope,
    EventKind,
    EventMessage,
    EventMetadata,
    EventPayload,
)
from eventchain.ledger.builder import BuiltEvent, ChainBuilder, message_digest
from eventchain.ledger.verify import read_jsonl, verify_chain, verify_message, walk_back
from eventchain.security.hashing import digest
from eventchain.security.signer import Ed25519Signer


def _chain(builder: ChainBuilder, n: int, identity: str = "u-1") -> list[BuiltEvent]:
    out: list[BuiltEvent] = []
    tip: ChainTip | None = None
    for i in range(n):
        kind = EventKind.USER_CREATED if i == 0 else EventKind.USER_UPDATED
        built = builder.build({"id": identity, "rev": i}, kind, tip)
        out.append(built)
        tip = built.tip
    return out


def _flip_bit(text: str) -> str:
    raw = bytearray(base64.b64decode(text))
    raw[0] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


def test_valid_chain(builder: ChainBuilder, signer: Ed25519Signer) -> None:
    chain = _chain(builder, 3)
    result = verify_chain([b.message for b in chain], signer.public_key_hex, expected_tip=chain[-1].tip.hash)
    assert result.is_valid
    assert result.verified_count == 3
    assert result.tip == chain[-1].tip.hash
    assert result.errors == []


def test_empty_chain_is_valid_at_genesis(signer: Ed25519Signer) -> None:
    result = verify_chain([], signer.public_key)
    assert result.is_valid
    assert result.tip == GENESIS_HASH


def test_verification_is_deterministic(builder: ChainBuilder, signer: Ed25519Signer) -> None:
    msgs = [b.message for b in _chain(builder, 3)]
    assert verify_chain(msgs, signer.public_key) == verify_chain(msgs, signer.public_key)


def test_single_bit_flip_in_payload_is_detected(builder: ChainBuilder, signer: Ed25519Signer) -> None:
    msgs = [b.message for b in _chain(builder, 3)]
    bad = msgs[1].model_copy(update={"payload": msgs[1].payload.model_copy(update={"data": _flip_bit(msgs[1].payload.data)})})
    result = verify_chain([msgs[0], bad, msgs[2]], signer.public_key)
    assert not result.is_valid
    assert result.first_break_at == 1
    assert "bad signature" in result.errors[0]


def test_single_bit_flip_in_signature_is_detected(builder: ChainBuilder, signer: Ed25519Signer) -> None:
    msgs = [b.message for b in _chain(builder, 2)]
    env = msgs[0].envelope
    bad = msgs[0].model_copy(update={"envelope": env.model_copy(update={"signature": _flip_bit(env.signature)})})
    result = verify_chain([bad, msgs[1]], signer.public_key)
    assert not result.is_valid
    assert result.first_break_at == 0


def test_broken_link_is_detected(builder: ChainBuilder, signer: Ed25519Signer) -> None:
    msgs = [b.message for b in _chain(builder, 3)]
    result = verify_chain([msgs[0], msgs[2]], signer.public_key)
    assert not result.is_valid
    assert result.first_break_at == 1
    assert "previousHash mismatch" in result.errors[0]


def test_unexpected_tip_is_reported(builder: ChainBuilder, signer: Ed25519Signer) -> None:
    msgs = [b.message for b in _chain(builder, 2)]
    result = verify_chain(msgs, signer.public_key, expected_tip="f" * 64)
    assert not result.is_valid
    assert result.verified_count == 2


def test_unsigned_message_fails_signature_check(builder: ChainBuilder, signer: Ed25519Signer) -> None:
    msg = _chain(builder, 1)[0].message
    unsigned = msg.model_copy(update={"envelope": msg.envelope.model_copy(update={"signature": None})})
    assert verify_message(unsigned, signer.public_key) is False


def test_unsigned_fields_are_not_covered(builder: ChainBuilder, signer: Ed25519Signer) -> None:
    msg = _chain(builder, 1)[0].message
    relabeled = msg.model_copy(
        update={"envelope": msg.envelope.model_copy(update={"session_id": "other", "sequence_number": 99})}
    )
    assert verify_message(relabeled, signer.public_key) is True
    assert message_digest(relabeled) == message_digest(msg)


def test_legacy_concat_message_still_verifies(signer: Ed25519Signer) -> None:
    env = EventEnvelope(message_id="m-1", timestamp=1, sequence_number=1, service_id="svc")
    pay = EventPayload(data="e30=")
    fields = [env.message_id, env.timestamp, pay.data, env.previous_hash]
    sig = signer.sign_b64(legacy_concat(fields))
    legacy = EventMessage(
        envelope=env.model_copy(update={"signature": sig}),
        payload=pay,
        metadata=EventMetadata(version="1.0", canonicalization=Canonicalization.CONCAT_V0),
    )
    assert verify_message(legacy, signer.public_key)
    assert message_digest(legacy) == digest(legacy_concat([*fields, sig]))


def test_walk_back_ignores_orphans(builder: ChainBuilder) -> None:
    chain = _chain(builder, 3)
    orphan = builder.build({"id": "u-1", "rev": "lost"}, EventKind.USER_UPDATED, chain[0].tip)
    shuffled = [chain[2].message, orphan.message, chain[0].message, chain[1].message]

    walked = walk_back(chain[-1].tip.hash, shuffled)
    assert [m.envelope.message_id for m in walked] == [b.message_id for b in chain]


def test_walk_back_from_genesis_is_empty(builder: ChainBuilder) -> None:
    assert walk_back(GENESIS_HASH, [b.message for b in _chain(builder, 2)]) == []


def test_walk_back_reports_dangling_link(builder: ChainBuilder) -> None:
    chain = _chain(builder, 3)
    with pytest.raises(ChainIntegrityError, match="no event with digest"):
        walk_back(chain[-1].tip.hash, [chain[0].message, chain[2].message])


def test_read_jsonl(builder: ChainBuilder, temp_dir: Path) -> None:
    msgs = [b.message for b in _chain(builder, 2)]
    path = temp_dir / "chain.jsonl"
    path.write_text("\n".join(m.to_json() for m in msgs) + "\n\n", encoding="utf-8")
    assert read_jsonl(path) == msgs

    path.write_text("{not json}\n", encoding="utf-8")
    with pytest.raises(ChainIntegrityError, match=":1:"):
        read_jsonl(path)
