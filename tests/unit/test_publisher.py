from __future__ import annotations

import time
from typing import Any

import pytest

from eventchain.core.config import KafkaConfig
from eventchain.core.exceptions import PublishFailure
from eventchain.core.models import EventKind
from eventchain.ledger.builder import ChainBuilder
from eventchain.ledger.publisher import InMemoryPublisher, KafkaPublisher, Publisher


class _Msg:
    def __init__(self, topic: str, partition: int, offset: int) -> None:
        self._t, self._p, self._o = topic, partition, offset

    def topic(self) -> str:
        return self._t

    def partition(self) -> int:
        return self._p

    def offset(self) -> int:
        return self._o


class FakeProducer:
    def __init__(self, conf: dict[str, Any], *, raise_on_produce: BaseException | None = None) -> None:
        self.conf = conf
        self.produced: list[dict[str, Any]] = []
        self.raise_on_produce = raise_on_produce
        self.polls = 0

    def produce(self, **kw: Any) -> None:
        if self.raise_on_produce is not None:
            raise self.raise_on_produce
        self.produced.append(kw)

    def poll(self, timeout: float) -> int:
        self.polls += 1
        time.sleep(timeout)
        return 0

    def flush(self, timeout: float) -> int:
        return 0

    def deliver(self, index: int = -1, err: Any = None, offset: int = 0) -> None:
        kw = self.produced[index]
        kw["on_delivery"](err, _Msg(kw["topic"], 0, offset))


def _publisher(**fake_kw: Any) -> tuple[KafkaPublisher, list[FakeProducer]]:
    made: list[FakeProducer] = []

    def factory(conf: dict[str, Any]) -> FakeProducer:
        p = FakeProducer(conf, **fake_kw)
        made.append(p)
        return p

    cfg = KafkaConfig(bootstrap_servers="broker:9092", poll_interval_s=0.01, extra={"client.id": "test"})
    return KafkaPublisher(cfg, publish_timeout_s=5.0, producer_factory=factory), made


def test_producer_config_pins_single_attempt_and_timeout() -> None:
    pub, _ = _publisher()
    conf = pub.producer_config()
    assert conf["bootstrap.servers"] == "broker:9092"
    assert conf["acks"] == "all"
    assert conf["enable.idempotence"] is True
    assert conf["retries"] == 0
    assert conf["message.timeout.ms"] == 5000
    assert conf["client.id"] == "test"


def test_publish_is_keyed_and_resolves_on_delivery(builder: ChainBuilder) -> None:
    pub, made = _publisher()
    msg = builder.build({"id": "u-1"}, EventKind.USER_CREATED, None).message
    try:
        fut = pub.publish("user-events", "u-1", msg, headers=[("event_kind", b"USER_CREATED")])
        assert not fut.done()

        sent = made[0].produced[0]
        assert sent["key"] == b"u-1"
        assert sent["topic"] == "user-events"
        assert sent["value"] == msg.to_json().encode("utf-8")
        assert sent["headers"] == [("event_kind", b"USER_CREATED")]

        made[0].deliver(offset=42)
        report = fut.result(timeout=1)
        assert report.offset == 42
        assert report.key == "u-1"
    finally:
        pub.close()


def test_delivery_error_fails_the_future(builder: ChainBuilder) -> None:
    pub, made = _publisher()
    msg = builder.build({"id": "u-1"}, EventKind.USER_CREATED, None).message
    try:
        fut = pub.publish("user-events", "u-1", msg)
        made[0].deliver(err="_MSG_TIMED_OUT")
        with pytest.raises(PublishFailure, match="_MSG_TIMED_OUT"):
            fut.result(timeout=1)
    finally:
        pub.close()


def test_late_delivery_report_is_ignored(builder: ChainBuilder) -> None:
    pub, made = _publisher()
    msg = builder.build({"id": "u-1"}, EventKind.USER_CREATED, None).message
    try:
        fut = pub.publish("user-events", "u-1", msg)
        fut.set_exception(PublishFailure("watchdog"))
        made[0].deliver()
        with pytest.raises(PublishFailure, match="watchdog"):
            fut.result(timeout=1)
    finally:
        pub.close()


def test_full_local_queue_is_a_failed_future_not_an_exception(builder: ChainBuilder) -> None:
    pub, _ = _publisher(raise_on_produce=BufferError("Local: Queue full"))
    msg = builder.build({"id": "u-1"}, EventKind.USER_CREATED, None).message
    fut = pub.publish("user-events", "u-1", msg)
    assert fut.done()
    with pytest.raises(PublishFailure, match="queue full"):
        fut.result()
    pub.close()


def test_poll_thread_runs_until_close(builder: ChainBuilder) -> None:
    pub, made = _publisher()
    pub.publish("user-events", "u-1", builder.build({"id": "u-1"}, EventKind.USER_CREATED, None).message)
    deadline = time.monotonic() + 2
    while made[0].polls == 0 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert made[0].polls > 0
    pub.close()
    assert pub._poller is None


def test_in_memory_publisher_groups_by_key(builder: ChainBuilder) -> None:
    pub = InMemoryPublisher()
    assert isinstance(pub, Publisher)
    m1 = builder.build({"id": "u-1"}, EventKind.USER_CREATED, None).message
    m2 = builder.build({"id": "u-2"}, EventKind.USER_CREATED, None).message

    assert pub.publish("t", "u-1", m1).result().offset == 0
    assert pub.publish("t", "u-2", m2).result().offset == 0
    assert pub.messages("t", "u-1") == [m1]
    assert pub.keys("t") == ["u-1", "u-2"]
