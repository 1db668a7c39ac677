from __future__ import annotations

import pytest

from eventchain import GENESIS_HASH
from eventchain.core.encoding import decode_snapshot, encode_fields
from eventchain.core.exceptions import EncodingFailure, SigningUnavailable
from eventchain.core.models import ChainTip, EventKind
from eventchain.ledger.builder import ChainBuilder, Correlation, message_digest, signing_bytes
from eventchain.ledger.verify import verify_message
from eventchain.security.hashing import digest
from eventchain.security.signer import Ed25519Signer

USER = {"id": "u-1", "username": "alice", "email": "alice@example.com"}


def test_first_event_links_to_genesis(builder: ChainBuilder, signer: Ed25519Signer) -> None:
    built = builder.build(USER, EventKind.USER_CREATED, None, Correlation("u-1", "s-1"))
    env = built.message.envelope

    assert built.previous_hash == GENESIS_HASH
    assert env.sequence_number == 1
    assert env.user_id == "u-1"
    assert env.session_id == "s-1"
    assert env.service_id == "user-service"
    assert built.tip.sequence == 1
    assert verify_message(built.message, signer.public_key)


def test_next_event_links_to_given_tip(builder: ChainBuilder) -> None:
    first = builder.build(USER, EventKind.USER_CREATED, None)
    second = builder.build({**USER, "email": "new@example.com"}, EventKind.USER_UPDATED, first.tip)

    assert second.previous_hash == first.tip.hash
    assert second.tip.sequence == 2
    assert second.message.envelope.sequence_number == 2


def test_tip_is_digest_of_length_prefixed_fields(builder: ChainBuilder) -> None:
    built = builder.build(USER, EventKind.USER_CREATED, None)
    env, pay = built.message.envelope, built.message.payload

    expected = digest(encode_fields([env.message_id, env.timestamp, pay.data, env.previous_hash, env.signature]))
    assert built.tip.hash == expected
    assert message_digest(built.message) == expected


def test_signature_covers_signing_fields_only(builder: ChainBuilder, signer: Ed25519Signer) -> None:
    built = builder.build(USER, EventKind.USER_CREATED, None)
    env, pay = built.message.envelope, built.message.payload
    assert signing_bytes(built.message) == encode_fields(
        [env.message_id, env.timestamp, pay.data, env.previous_hash]
    )
    assert Ed25519Signer.verify(signing_bytes(built.message), env.signature, signer.public_key)


def test_payload_carries_the_snapshot(builder: ChainBuilder) -> None:
    built = builder.build(USER, EventKind.USER_CREATED, None)
    assert built.message.payload.encrypted is True
    assert decode_snapshot(built.message.payload.data) == USER


def test_builder_does_not_mutate_the_tip(builder: ChainBuilder) -> None:
    tip = ChainTip(hash="a" * 64, sequence=7)
    built = builder.build(USER, EventKind.USER_UPDATED, tip)
    assert tip == ChainTip(hash="a" * 64, sequence=7)
    assert built.tip.sequence == 8


def test_message_ids_are_unique(signer: Ed25519Signer) -> None:
    b = ChainBuilder(signer, service_id="user-service")
    ids = {b.build(USER, EventKind.USER_UPDATED, None).message_id for _ in range(50)}
    assert len(ids) == 50


def test_missing_key_surfaces_signing_unavailable() -> None:
    b = ChainBuilder(Ed25519Signer(None), service_id="user-service")
    with pytest.raises(SigningUnavailable):
        b.build(USER, EventKind.USER_CREATED, None)


def test_unserializable_snapshot_surfaces_encoding_failure(builder: ChainBuilder) -> None:
    with pytest.raises(EncodingFailure):
        builder.build({"id": "u-1", "blob": object()}, EventKind.USER_CREATED, None)
