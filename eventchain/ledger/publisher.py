"""eventchain.ledger.publisher

Hands signed messages to the broker.

Contract:
- ``publish`` returns a ``Future[DeliveryReport]`` and never blocks on the broker
- one delivery attempt per call; retrying is the caller's decision
- failures arrive as ``PublishFailure`` on the future, never raised
- per-key ordering is the transport's job (same key, same partition)
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from eventchain.core.config import KafkaConfig
from eventchain.core.exceptions import PublishFailure
from eventchain.core.models import EventMessage

Headers = list[tuple[str, bytes]]


@dataclass(frozen=True, slots=True)
class DeliveryReport:
    topic: str
    key: str
    partition: int | None = None
    offset: int | None = None


@runtime_checkable
class Publisher(Protocol):
    def publish(
        self,
        topic: str,
        key: str,
        message: EventMessage,
        *,
        headers: Headers | None = None,
    ) -> Future[DeliveryReport]: ...

    def flush(self, timeout: float | None = None) -> int: ...

    def close(self) -> None: ...


def _failed(exc: PublishFailure) -> Future[DeliveryReport]:
    fut: Future[DeliveryReport] = Future()
    fut.set_exception(exc)
    return fut


class KafkaPublisher:
    """confluent-kafka producer with a background poll thread.

    The poll thread drives delivery callbacks; futures resolve on that thread.
    ``retries`` is pinned to 0 so each ``publish`` is exactly one attempt, and
    ``message.timeout.ms`` bounds how long an attempt can stay unresolved.
    """

    def __init__(
        self,
        cfg: KafkaConfig,
        *,
        publish_timeout_s: float,
        logger: logging.Logger | None = None,
        producer_factory: Callable[[dict[str, Any]], Any] | None = None,
    ) -> None:
        self.cfg = cfg
        self.publish_timeout_s = publish_timeout_s
        self.logger = logger or logging.getLogger("eventchain.ledger.publisher")
        self._producer_factory = producer_factory
        self._producer: Any = None
        self._producer_lock = threading.Lock()
        self._stop = threading.Event()
        self._poller: threading.Thread | None = None

    def producer_config(self) -> dict[str, Any]:
        timeout_ms = int(self.publish_timeout_s * 1000)
        conf: dict[str, Any] = {
            "bootstrap.servers": self.cfg.bootstrap_servers,
            "acks": self.cfg.acks,
            "enable.idempotence": self.cfg.acks == "all",
            "retries": 0,
            "message.timeout.ms": timeout_ms,
            "request.timeout.ms": min(timeout_ms, 30_000),
            "compression.type": self.cfg.compression,
        }
        conf.update(self.cfg.extra)
        return conf

    def _get_producer(self) -> Any:
        """Get or create the Kafka producer."""
        with self._producer_lock:
            if self._producer is None:
                if self._producer_factory is not None:
                    self._producer = self._producer_factory(self.producer_config())
                else:
                    from confluent_kafka import Producer

                    self._producer = Producer(self.producer_config())
                self._start_poller()
            return self._producer

    def _start_poller(self) -> None:
        self._stop.clear()
        self._poller = threading.Thread(target=self._poll_loop, name="eventchain-kafka-poll", daemon=True)
        self._poller.start()

    def _poll_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._producer.poll(self.cfg.poll_interval_s)
            except Exception:  # noqa: BLE001 - poll loop must outlive a bad callback
                self.logger.exception("kafka_poll_failed")

    def publish(
        self,
        topic: str,
        key: str,
        message: EventMessage,
        *,
        headers: Headers | None = None,
    ) -> Future[DeliveryReport]:
        fut: Future[DeliveryReport] = Future()

        def on_delivery(err: Any, msg: Any) -> None:
            # The service watchdog may have failed this future already.
            try:
                if err is not None:
                    fut.set_exception(PublishFailure(f"delivery failed: {err}", topic=topic, key=key))
                else:
                    fut.set_result(
                        DeliveryReport(topic=msg.topic(), key=key, partition=msg.partition(), offset=msg.offset())
                    )
            except InvalidStateError:
                self.logger.warning("kafka_late_delivery_report", extra={"key": key, "error": str(err)})

        try:
            producer = self._get_producer()
            producer.produce(
                topic=topic,
                key=key.encode("utf-8"),
                value=message.to_json().encode("utf-8"),
                headers=headers or [],
                on_delivery=on_delivery,
            )
        except BufferError as e:
            return _failed(PublishFailure(f"producer queue full: {e}", topic=topic, key=key))
        except Exception as e:  # noqa: BLE001 - transport errors are reported, not raised
            return _failed(PublishFailure(f"produce failed: {e}", topic=topic, key=key))

        return fut

    def flush(self, timeout: float | None = None) -> int:
        """Wait for outstanding deliveries. Returns the number still queued."""

        if self._producer is None:
            return 0
        return int(self._producer.flush(self.publish_timeout_s if timeout is None else timeout))

    def close(self) -> None:
        remaining = self.flush()
        if remaining:
            self.logger.warning("kafka_close_with_pending", extra={"pending": remaining})
        self._stop.set()
        if self._poller is not None:
            self._poller.join(timeout=max(1.0, self.cfg.poll_interval_s * 10))
            self._poller = None


@dataclass
class InMemoryPublisher:
    """Confirms every publish immediately and keeps what it saw.

    Stands in for the broker in local runs. Messages are grouped by
    (topic, key), which mirrors per-partition-key ordering.
    """

    _log: defaultdict[tuple[str, str], list[EventMessage]] = field(default_factory=lambda: defaultdict(list))
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def publish(
        self,
        topic: str,
        key: str,
        message: EventMessage,
        *,
        headers: Headers | None = None,
    ) -> Future[DeliveryReport]:
        fut: Future[DeliveryReport] = Future()
        with self._lock:
            stream = self._log[(topic, key)]
            stream.append(message)
            offset = len(stream) - 1
        fut.set_result(DeliveryReport(topic=topic, key=key, partition=0, offset=offset))
        return fut

    def messages(self, topic: str, key: str) -> list[EventMessage]:
        with self._lock:
            return list(self._log.get((topic, key), []))

    def keys(self, topic: str) -> list[str]:
        with self._lock:
            return sorted(k for (t, k) in self._log if t == topic)

    def flush(self, timeout: float | None = None) -> int:
        return 0

    def close(self) -> None:
        return None
