"""eventchain.ledger.service

Per-mutation orchestration: read tip → build → publish → commit tip.

The tip only moves after the broker confirms delivery, and only through the
tip store's compare-and-swap. A failed publish leaves the tip where it was,
so the next event links to the last event the broker actually has.

Ordering:
- events for one identity run one at a time inside a service instance (a
  lane); the next one is built only after the previous one settled
- different identities never wait on each other
- writers in other processes are caught by the CAS; the loser rebuilds
  against the new tip

``record_event`` never blocks on the broker and never raises into the
business flow. Every outcome, good or bad, lands on the returned
``PendingEvent``.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future, InvalidStateError
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel

from eventchain.core import metrics as m
from eventchain.core.exceptions import (
    EncodingFailure,
    EventChainError,
    PublishFailure,
    SigningUnavailable,
    TipConflict,
    TipStoreError,
)
from eventchain.core.metrics import REGISTRY, MetricsRegistry
from eventchain.core.models import ChainTip, EventKind, EventMessage
from eventchain.ledger.builder import BuiltEvent, ChainBuilder, Correlation
from eventchain.ledger.outbox import Outbox, OutboxEntry, OutboxStatus
from eventchain.ledger.publisher import DeliveryReport, Headers, Publisher
from eventchain.ledger.tips import TipStore

# Transport timeouts should fire first; the watchdog only catches transports
# that never call back.
_WATCHDOG_GRACE_S = 1.0

T = TypeVar("T")


def _call(wrap: Callable[[str], EventChainError], fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Call a collaborator; errors outside the EventChainError family come back as ``wrap``."""

    try:
        return fn(*args, **kwargs)
    except EventChainError:
        raise
    except Exception as e:
        raise wrap(f"{type(e).__name__}: {e}") from e


@dataclass(frozen=True, slots=True)
class RecordOutcome:
    identity: str
    tip: ChainTip
    previous_hash: str
    message_id: str
    attempts: int
    conflicts: int
    delivery: DeliveryReport


class PendingEvent:
    """Handle for one ``record_event`` call.

    ``prospective_tip`` is the digest of the most recently built candidate. It
    is ``None`` while the event waits behind earlier events for the same
    identity, and it is only a prospect until ``result()`` returns.
    """

    def __init__(self, identity: str, kind: EventKind) -> None:
        self.identity = identity
        self.kind = kind
        self.future: Future[RecordOutcome] = Future()
        self._built: BuiltEvent | None = None

    @property
    def prospective_tip(self) -> str | None:
        built = self._built
        return None if built is None else built.tip.hash

    @property
    def message(self) -> EventMessage | None:
        built = self._built
        return None if built is None else built.message

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: float | None = None) -> RecordOutcome:
        return self.future.result(timeout)

    def exception(self, timeout: float | None = None) -> BaseException | None:
        return self.future.exception(timeout)


@dataclass
class _Job:
    pending: PendingEvent
    snapshot: BaseModel | dict[str, Any] | None
    correlation: Correlation
    replay: OutboxEntry | None = None
    attempts: int = 0
    conflicts: int = 0


@dataclass
class _Lane:
    queue: deque[_Job] = field(default_factory=deque)


def identity_of(snapshot: BaseModel | dict[str, Any]) -> str:
    if isinstance(snapshot, BaseModel):
        raw = getattr(snapshot, "id", None)
    elif isinstance(snapshot, dict):
        raw = snapshot.get("id")
    else:
        raise EncodingFailure(f"cannot snapshot {type(snapshot).__name__}")
    if raw is None or str(raw) == "":
        raise EncodingFailure("snapshot has no id; pass identity explicitly")
    return str(raw)


class EventService:
    def __init__(
        self,
        builder: ChainBuilder,
        publisher: Publisher,
        tips: TipStore,
        *,
        topic: str,
        publish_timeout_s: float = 10.0,
        max_conflict_retries: int = 3,
        outbox: Outbox | None = None,
        metrics: MetricsRegistry | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.builder = builder
        self.publisher = publisher
        self.tips = tips
        self.topic = topic
        self.publish_timeout_s = publish_timeout_s
        self.max_conflict_retries = max_conflict_retries
        self.outbox = outbox
        self.metrics = metrics or REGISTRY
        self.logger = logger or logging.getLogger("eventchain.ledger.service")

        self._lanes: dict[str, _Lane] = {}
        self._lanes_lock = threading.Lock()
        self._idle = threading.Condition(self._lanes_lock)
        self._local = threading.local()

    # ------------------------------------------------------------------
    # public surface
    # ------------------------------------------------------------------

    def record_event(
        self,
        snapshot: BaseModel | dict[str, Any],
        kind: EventKind,
        session_id: str | None,
        *,
        identity: str | None = None,
        user_id: str | None = None,
    ) -> PendingEvent:
        """Record one mutation of an entity.

        Returns once the event is handed to the transport (or queued behind
        the identity's in-flight event). The tip commit happens on delivery.
        """

        try:
            ident = identity if identity is not None else identity_of(snapshot)
        except EncodingFailure as e:
            pending = PendingEvent(identity="", kind=kind)
            self.metrics.counter(m.EVENTS_ENCODING_FAILED).inc()
            self.logger.error("event_identity_missing", extra={"kind": str(kind), "error": str(e)})
            pending.future.set_exception(e)
            return pending

        pending = PendingEvent(identity=ident, kind=kind)
        job = _Job(
            pending=pending,
            snapshot=snapshot,
            correlation=Correlation(user_id=user_id if user_id is not None else ident, session_id=session_id),
        )
        self._enqueue(job)
        return pending

    def replay(self, entry: OutboxEntry) -> PendingEvent:
        """Republish an outbox row verbatim and settle its tip.

        No rebuild: if the tip has moved past ``entry.expected_old`` the row
        is orphaned and the pending event fails with ``TipConflict``.
        """

        pending = PendingEvent(identity=entry.identity, kind=entry.kind)
        job = _Job(
            pending=pending,
            snapshot=None,
            correlation=Correlation(entry.message.envelope.user_id, entry.message.envelope.session_id),
            replay=entry,
        )
        self._enqueue(job)
        return pending

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until every lane is empty. False on timeout."""

        with self._idle:
            return self._idle.wait_for(lambda: not self._lanes, timeout=timeout)

    def close(self, timeout: float | None = None) -> None:
        self.publisher.flush(timeout)
        if not self.drain(timeout if timeout is not None else self.publish_timeout_s + _WATCHDOG_GRACE_S):
            self.logger.warning("event_service_close_with_inflight", extra={"identities": len(self._lanes)})
        self.publisher.close()

    # ------------------------------------------------------------------
    # lanes
    # ------------------------------------------------------------------

    def _enqueue(self, job: _Job) -> None:
        ident = job.pending.identity
        with self._lanes_lock:
            lane = self._lanes.get(ident)
            if lane is not None:
                lane.queue.append(job)
                return
            self._lanes[ident] = _Lane()
            self.metrics.gauge(m.EVENTS_IN_FLIGHT).add(1)
        self._kick(job)

    def _advance_lane(self, identity: str) -> None:
        with self._lanes_lock:
            lane = self._lanes.get(identity)
            if lane is None:
                return
            if lane.queue:
                job = lane.queue.popleft()
            else:
                del self._lanes[identity]
                self.metrics.gauge(m.EVENTS_IN_FLIGHT).add(-1)
                self._idle.notify_all()
                return
        self._kick(job)

    def _kick(self, job: _Job) -> None:
        # Synchronous transports complete inside publish(); run follow-up
        # attempts from a loop instead of recursing through callbacks.
        deferred: deque[_Job] | None = getattr(self._local, "deferred", None)
        if deferred is not None:
            deferred.append(job)
            return
        self._local.deferred = deferred = deque([job])
        try:
            while deferred:
                nxt = deferred.popleft()
                try:
                    self._attempt(nxt)
                except Exception as e:  # noqa: BLE001 - the lane must advance whatever a collaborator does
                    self._abandon(nxt, e)
        finally:
            self._local.deferred = None

    def _abandon(self, job: _Job, error: Exception) -> None:
        self.logger.exception(
            "event_attempt_crashed",
            extra={"identity": job.pending.identity, "kind": str(job.pending.kind), "error": repr(error)},
        )
        if not job.pending.future.done():
            self._finish(job, error=TipStoreError(f"{type(error).__name__}: {error}"))

    # ------------------------------------------------------------------
    # one attempt
    # ------------------------------------------------------------------

    def _prepare(self, job: _Job) -> tuple[BuiltEvent, str | None]:
        if job.replay is not None:
            entry = job.replay
            return BuiltEvent(message=entry.message, tip=entry.tip, kind=entry.kind), entry.expected_old
        if job.snapshot is None:
            raise EncodingFailure("nothing to build: no snapshot and no outbox entry")

        ident = job.pending.identity
        current = _call(TipStoreError, self.tips.get_chain_tip, ident)
        expected_old = current.hash if current is not None else None
        built = _call(EncodingFailure, self.builder.build, job.snapshot, job.pending.kind, current, job.correlation)
        self.metrics.counter(m.EVENTS_BUILT).inc()
        if self.outbox is not None:
            _call(TipStoreError, self.outbox.add, ident, expected_old, built)
        return built, expected_old

    def _attempt(self, job: _Job) -> None:
        job.attempts += 1
        ident = job.pending.identity
        try:
            built, expected_old = self._prepare(job)
        except (EncodingFailure, SigningUnavailable) as e:
            self.metrics.counter(m.EVENTS_ENCODING_FAILED).inc()
            self.logger.error(
                "event_build_failed",
                extra={"identity": ident, "kind": str(job.pending.kind), "error": f"{type(e).__name__}: {e}"},
            )
            self._finish(job, error=e)
            return
        except EventChainError as e:
            self.logger.error("event_build_failed", extra={"identity": ident, "error": f"{type(e).__name__}: {e}"})
            self._finish(job, error=e)
            return

        job.pending._built = built
        self.logger.debug(
            "event_built",
            extra={
                "identity": ident,
                "message_id": built.message_id,
                "previous_hash": built.previous_hash,
                "sequence": built.tip.sequence,
                "attempt": job.attempts,
            },
        )

        try:
            fut = _call(
                lambda msg: PublishFailure(msg, topic=self.topic, key=ident),
                self.publisher.publish,
                self.topic,
                ident,
                built.message,
                headers=self._headers(built),
            )
        except EventChainError as e:
            # Settled through the same path as an asynchronous failure.
            fut = Future()
            fut.set_exception(e)
        self._watch(fut, ident)
        fut.add_done_callback(lambda f: self._settle(job, built, expected_old, f))

    def _headers(self, built: BuiltEvent) -> Headers:
        return [
            ("event_kind", str(built.kind).encode("utf-8")),
            ("message_id", built.message_id.encode("utf-8")),
            ("service_id", built.message.envelope.service_id.encode("utf-8")),
        ]

    def _watch(self, fut: Future[DeliveryReport], identity: str) -> None:
        if fut.done():
            return

        def expire() -> None:
            try:
                fut.set_exception(
                    PublishFailure(
                        f"no delivery report after {self.publish_timeout_s}s", topic=self.topic, key=identity
                    )
                )
            except InvalidStateError:
                pass

        timer = threading.Timer(self.publish_timeout_s + _WATCHDOG_GRACE_S, expire)
        timer.daemon = True
        timer.start()
        fut.add_done_callback(lambda _: timer.cancel())

    def _settle(self, job: _Job, built: BuiltEvent, expected_old: str | None, fut: Future[DeliveryReport]) -> None:
        # concurrent.futures swallows callback errors; settle the job here instead.
        try:
            self._on_delivery(job, built, expected_old, fut)
        except Exception as e:  # noqa: BLE001 - the lane must advance whatever a collaborator does
            self._abandon(job, e)

    def _on_delivery(self, job: _Job, built: BuiltEvent, expected_old: str | None, fut: Future[DeliveryReport]) -> None:
        ident = job.pending.identity
        exc = fut.exception()
        if exc is not None:
            err = exc if isinstance(exc, PublishFailure) else PublishFailure(str(exc), topic=self.topic, key=ident)
            self.metrics.counter(m.EVENTS_PUBLISH_FAILED).inc()
            self.logger.warning(
                "event_publish_failed",
                extra={"identity": ident, "message_id": built.message_id, "tip": expected_old, "error": str(err)},
            )
            self._mark(built, OutboxStatus.FAILED, str(err))
            self._finish(job, error=err)
            return

        report = fut.result()
        self.metrics.counter(m.EVENTS_PUBLISHED).inc()

        try:
            committed = _call(TipStoreError, self.tips.commit_chain_tip, ident, expected_old, built.tip)
        except EventChainError as e:
            # Delivered but not committed. The outbox row stays pending for reconcile.
            self.logger.error(
                "tip_commit_failed",
                extra={"identity": ident, "message_id": built.message_id, "error": f"{type(e).__name__}: {e}"},
            )
            self._finish(job, error=e)
            return

        if committed:
            self.metrics.counter(m.TIPS_COMMITTED).inc()
            self._mark(built, OutboxStatus.CONFIRMED)
            self.logger.info(
                "tip_committed",
                extra={
                    "identity": ident,
                    "message_id": built.message_id,
                    "tip": built.tip.hash,
                    "sequence": built.tip.sequence,
                },
            )
            self._finish(
                job,
                outcome=RecordOutcome(
                    identity=ident,
                    tip=built.tip,
                    previous_hash=built.previous_hash,
                    message_id=built.message_id,
                    attempts=job.attempts,
                    conflicts=job.conflicts,
                    delivery=report,
                ),
            )
            return

        self._on_conflict(job, built, expected_old)

    def _on_conflict(self, job: _Job, built: BuiltEvent, expected_old: str | None) -> None:
        ident = job.pending.identity
        try:
            current = _call(TipStoreError, self.tips.get_chain_tip, ident)
        except EventChainError as e:
            self.logger.error(
                "tip_read_failed",
                extra={"identity": ident, "message_id": built.message_id, "error": f"{type(e).__name__}: {e}"},
            )
            self._mark(built, OutboxStatus.ORPHANED, str(e))
            self._finish(job, error=e)
            return
        actual = current.hash if current is not None else None

        if job.replay is not None and actual == built.tip.hash:
            # Committed before the crash; only the outbox row was left behind.
            self._mark(built, OutboxStatus.CONFIRMED)
            self._finish(
                job,
                outcome=RecordOutcome(
                    identity=ident,
                    tip=built.tip,
                    previous_hash=built.previous_hash,
                    message_id=built.message_id,
                    attempts=job.attempts,
                    conflicts=job.conflicts,
                    delivery=DeliveryReport(topic=self.topic, key=ident),
                ),
            )
            return

        job.conflicts += 1
        self.metrics.counter(m.TIPS_CONFLICTS).inc()
        self._mark(built, OutboxStatus.ORPHANED, f"tip moved from {expected_old} to {actual}")
        conflict = TipConflict(ident, expected=expected_old, actual=actual)

        if job.replay is not None or job.conflicts > self.max_conflict_retries:
            self.logger.warning(
                "tip_conflict",
                extra={"identity": ident, "message_id": built.message_id, "expected": expected_old, "actual": actual},
            )
            self._finish(job, error=conflict)
            return

        self.logger.info(
            "tip_conflict_retry",
            extra={"identity": ident, "message_id": built.message_id, "actual": actual, "conflicts": job.conflicts},
        )
        self._kick(job)

    def _mark(self, built: BuiltEvent, status: OutboxStatus, error: str | None = None) -> None:
        if self.outbox is None:
            return
        try:
            self.outbox.mark(built.message_id, status, error=error)
        except Exception:  # noqa: BLE001 - outbox bookkeeping must not strand the lane
            self.logger.exception("outbox_mark_failed", extra={"message_id": built.message_id})

    def _finish(self, job: _Job, *, outcome: RecordOutcome | None = None, error: BaseException | None = None) -> None:
        try:
            if error is not None:
                job.pending.future.set_exception(error)
            else:
                job.pending.future.set_result(outcome)  # type: ignore[arg-type]
        finally:
            self._advance_lane(job.pending.identity)
