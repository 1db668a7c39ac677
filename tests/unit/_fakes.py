"""Transport fakes shared by unit and integration tests."""

from __future__ import annotations

import threading
from concurrent.futures import Future
from dataclasses import dataclass

from eventchain.core.exceptions import PublishFailure
from eventchain.core.models import EventMessage
from eventchain.ledger.publisher import DeliveryReport, Headers


@dataclass
class Sent:
    topic: str
    key: str
    message: EventMessage
    headers: Headers
    future: Future[DeliveryReport]


class ScriptedPublisher:
    """Transport fake. Confirms on publish when ``auto``; otherwise the test settles each send."""

    def __init__(self, *, auto: bool = True) -> None:
        self.auto = auto
        self.fail_next = 0
        self.sent: list[Sent] = []
        self._lock = threading.Lock()

    def publish(self, topic, key, message, *, headers=None):  # type: ignore[no-untyped-def]
        fut: Future[DeliveryReport] = Future()
        with self._lock:
            self.sent.append(Sent(topic, key, message, list(headers or []), fut))
            offset = len(self.sent) - 1
            fail = self.fail_next > 0
            if fail:
                self.fail_next -= 1
        if fail:
            fut.set_exception(PublishFailure("broker unavailable", topic=topic, key=key))
        elif self.auto:
            fut.set_result(DeliveryReport(topic=topic, key=key, partition=0, offset=offset))
        return fut

    def confirm(self, index: int = -1) -> None:
        s = self.sent[index]
        s.future.set_result(DeliveryReport(topic=s.topic, key=s.key, partition=0, offset=index))

    def fail(self, index: int = -1, reason: str = "delivery timed out") -> None:
        s = self.sent[index]
        s.future.set_exception(PublishFailure(reason, topic=s.topic, key=s.key))

    def delivered(self, key: str | None = None) -> list[EventMessage]:
        return [
            s.message
            for s in self.sent
            if (key is None or s.key == key) and s.future.done() and s.future.exception() is None
        ]

    def flush(self, timeout: float | None = None) -> int:
        return sum(1 for s in self.sent if not s.future.done())

    def close(self) -> None:
        return None


