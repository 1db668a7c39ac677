"""eventchain.ledger.outbox

Durable record of events that were handed to the broker but not yet settled.

A row is written as ``pending`` before the publish call and settled once the
delivery outcome and the tip commit are known. Rows still ``pending`` at
startup belong to a process that died mid-flight; ``reconcile`` replays them.
"""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from eventchain.core.exceptions import TipStoreError
from eventchain.core.models import ChainTip, EventKind, EventMessage

if TYPE_CHECKING:
    from eventchain.ledger.builder import BuiltEvent
    from eventchain.ledger.service import EventService, PendingEvent

SCHEMA = """
CREATE TABLE IF NOT EXISTS outbox (
    message_id TEXT PRIMARY KEY,
    identity TEXT NOT NULL,
    kind TEXT NOT NULL,
    expected_old TEXT,
    new_tip TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    message TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN (
        'pending', 'confirmed', 'failed', 'orphaned'
    )),
    error TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_outbox_status ON outbox(status);
CREATE INDEX IF NOT EXISTS idx_outbox_identity ON outbox(identity);
"""


class OutboxStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    # Delivered, but the tip had already moved on; not part of the chain.
    ORPHANED = "orphaned"


@dataclass(frozen=True)
class OutboxEntry:
    message_id: str
    identity: str
    kind: EventKind
    expected_old: str | None
    tip: ChainTip
    message: EventMessage
    status: OutboxStatus
    error: str | None = None


class Outbox:
    """SQLite-backed outbox. Safe to share across threads."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        with self.conn:
            self.conn.executescript(SCHEMA)

    def close(self) -> None:
        self.conn.close()

    def add(self, identity: str, expected_old: str | None, built: BuiltEvent) -> None:
        with self._lock:
            try:
                with self.conn:
                    self.conn.execute(
                        """
                        INSERT INTO outbox (
                            message_id, identity, kind, expected_old, new_tip, sequence, message
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            built.message_id,
                            identity,
                            str(built.kind),
                            expected_old,
                            built.tip.hash,
                            built.tip.sequence,
                            built.message.to_json(),
                        ),
                    )
            except sqlite3.Error as e:
                raise TipStoreError(f"outbox insert failed: {e}") from e

    def mark(self, message_id: str, status: OutboxStatus, *, error: str | None = None) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "UPDATE outbox SET status = ?, error = ?, updated_at = datetime('now') WHERE message_id = ?",
                (str(status), error, message_id),
            )

    def get(self, message_id: str) -> OutboxEntry | None:
        with self._lock:
            row = self.conn.execute("SELECT * FROM outbox WHERE message_id = ?", (message_id,)).fetchone()
        return None if row is None else self._row_to_entry(row)

    def entries(self, status: OutboxStatus | None = None, *, limit: int = 1000) -> list[OutboxEntry]:
        q = "SELECT * FROM outbox"
        params: list[Any] = []
        if status is not None:
            q += " WHERE status = ?"
            params.append(str(status))
        q += " ORDER BY created_at ASC, rowid ASC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(q, tuple(params)).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def pending(self) -> list[OutboxEntry]:
        return self.entries(OutboxStatus.PENDING)

    def counts(self) -> dict[str, int]:
        with self._lock:
            rows = self.conn.execute("SELECT status, COUNT(*) FROM outbox GROUP BY status").fetchall()
        out = {str(s): 0 for s in OutboxStatus}
        out.update({str(r[0]): int(r[1]) for r in rows})
        return out

    def reconcile(self, service: EventService) -> list[PendingEvent]:
        """Replay every pending row through ``service``.

        Rows are replayed oldest first; the service serializes per identity,
        so an entity's rows settle in order.
        """

        return [service.replay(entry) for entry in self.pending()]

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> OutboxEntry:
        return OutboxEntry(
            message_id=str(row["message_id"]),
            identity=str(row["identity"]),
            kind=EventKind(str(row["kind"])),
            expected_old=row["expected_old"],
            tip=ChainTip(hash=str(row["new_tip"]), sequence=int(row["sequence"])),
            message=EventMessage.from_wire(str(row["message"])),
            status=OutboxStatus(str(row["status"])),
            error=row["error"],
        )
