from __future__ import annotations

import io
import json
from collections.abc import Iterator
from pathlib import Path

import pytest

from eventchain import GENESIS_HASH
from eventchain.core.config import LoggingConfig
from eventchain.core.encoding import decode_snapshot
from eventchain.core.exceptions import EntityNotFound, PublishFailure
from eventchain.core.logging import configure_logging, get_logger
from eventchain.core.metrics import MetricsRegistry
from eventchain.core.models import EventKind
from eventchain.ledger.builder import ChainBuilder
from eventchain.ledger.service import EventService
from eventchain.users.service import UserService
from eventchain.users.store import UserStore
from tests.unit._fakes import ScriptedPublisher


@pytest.fixture()
def store(temp_dir: Path) -> Iterator[UserStore]:
    s = UserStore(temp_dir / "data" / "users.db")
    yield s
    s.close()


@pytest.fixture()
def users(store: UserStore, builder: ChainBuilder, publisher: ScriptedPublisher) -> UserService:
    events = EventService(builder, publisher, store, topic="user-events", metrics=MetricsRegistry())
    return UserService(store, events, logger=get_logger("users.service"))


def test_register_emits_created_event(users: UserService, store: UserStore, publisher: ScriptedPublisher) -> None:
    user, pending = users.register("alice", "alice@example.com", session_id="s-1")
    outcome = pending.result(timeout=1)

    assert pending.kind is EventKind.USER_CREATED
    assert outcome.previous_hash == GENESIS_HASH
    assert store.get_chain_tip(user.id) == outcome.tip

    msg = publisher.sent[0].message
    assert publisher.sent[0].key == user.id
    assert msg.envelope.user_id == user.id
    assert msg.envelope.session_id == "s-1"
    assert decode_snapshot(msg.payload.data)["username"] == "alice"


def test_update_links_to_registration(users: UserService, store: UserStore, publisher: ScriptedPublisher) -> None:
    user, created = users.register("alice", "alice@example.com")
    e1 = created.result(timeout=1)

    _, updated = users.update_email("alice", "alice@new.example.com")
    e2 = updated.result(timeout=1)

    assert e2.previous_hash == e1.tip.hash
    assert e2.tip.sequence == 2
    assert decode_snapshot(publisher.sent[1].message.payload.data)["email"] == "alice@new.example.com"
    assert publisher.sent[1].message.envelope.session_id.startswith("session-")  # type: ignore[union-attr]


def test_failed_event_keeps_the_mutation_and_logs(
    users: UserService, store: UserStore, publisher: ScriptedPublisher
) -> None:
    buf = io.StringIO()
    configure_logging(LoggingConfig(json_output=True), stream=buf)

    user, created = users.register("alice", "alice@example.com")
    e1 = created.result(timeout=1)

    publisher.fail_next = 1
    _, pending = users.update_email("alice", "alice@new.example.com")
    with pytest.raises(PublishFailure):
        pending.result(timeout=1)

    assert store.get_user(user.id).email == "alice@new.example.com"
    assert store.get_chain_tip(user.id) == e1.tip

    lines = [json.loads(line) for line in buf.getvalue().splitlines()]
    unrecorded = [line for line in lines if line["event"] == "user_event_unrecorded"]
    assert unrecorded[0]["identity"] == user.id
    assert unrecorded[0]["kind"] == "USER_UPDATED"


def test_update_of_unknown_user_raises(users: UserService, publisher: ScriptedPublisher) -> None:
    with pytest.raises(EntityNotFound):
        users.update_email("nobody", "x@example.com")
    assert publisher.sent == []
