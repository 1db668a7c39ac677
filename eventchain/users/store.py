"""eventchain.users.store

User records plus their chain tips, in one SQLite table.

The tip columns (``previous_message_hash``, ``chain_sequence``) are written
only through ``commit_chain_tip``. Profile writes never touch them, so a
mutation that fails to publish leaves the chain exactly where it was.
"""

from __future__ import annotations

import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict

from eventchain.core.exceptions import DuplicateEntity, EntityNotFound, TipStoreError
from eventchain.core.models import ChainTip
from eventchain.core.time import parse_dt, to_iso, utc_now
from eventchain.ledger.tips import check_new_tip

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    email TEXT NOT NULL UNIQUE,
    role TEXT NOT NULL DEFAULT 'USER',
    previous_message_hash TEXT,
    chain_sequence INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_users_username ON users(username);
"""


class UserRole(StrEnum):
    USER = "USER"
    ADMIN = "ADMIN"


class UserRecord(BaseModel):
    """Snapshot of a user as it appears in event payloads.

    Credentials and chain bookkeeping are never part of it.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    email: str
    role: UserRole = UserRole.USER
    created_at: datetime
    updated_at: datetime


@dataclass
class UserStore:
    """SQLite user store. Implements the tip store contract for users."""

    db_path: Path

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        with self.conn:
            self.conn.executescript(SCHEMA)
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")

    # ------------------------------------------------------------------
    # records
    # ------------------------------------------------------------------

    def create_user(
        self,
        *,
        username: str,
        email: str,
        role: UserRole = UserRole.USER,
        user_id: str | None = None,
    ) -> UserRecord:
        """Insert a new user with an empty chain.

        Raises:
            DuplicateEntity: username or email already taken.
        """

        now = utc_now()
        uid = user_id or str(uuid.uuid4())
        with self._lock:
            try:
                with self.conn:
                    self.conn.execute(
                        """
                        INSERT INTO users (id, username, email, role, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (uid, username, email, str(role), to_iso(now), to_iso(now)),
                    )
            except sqlite3.IntegrityError as e:
                raise DuplicateEntity(f"user already exists: {username} / {email}") from e
            except sqlite3.Error as e:
                raise TipStoreError(f"user insert failed: {e}") from e
        return UserRecord(id=uid, username=username, email=email, role=role, created_at=now, updated_at=now)

    def get_user(self, user_id: str) -> UserRecord:
        return self._to_record(self._row("id", user_id))

    def get_by_username(self, username: str) -> UserRecord:
        return self._to_record(self._row("username", username))

    def update_email(self, username: str, email: str) -> UserRecord:
        """Change a user's email. The chain tip is left alone.

        Raises:
            EntityNotFound: no such user.
            DuplicateEntity: email belongs to someone else.
        """

        with self._lock:
            try:
                with self.conn:
                    cur = self.conn.execute(
                        "UPDATE users SET email = ?, updated_at = ? WHERE username = ?",
                        (email, to_iso(utc_now()), username),
                    )
            except sqlite3.IntegrityError as e:
                raise DuplicateEntity(f"email already in use: {email}") from e
            except sqlite3.Error as e:
                raise TipStoreError(f"email update failed: {e}") from e
            if cur.rowcount == 0:
                raise EntityNotFound(username)
            return self.get_by_username(username)

    def count(self) -> int:
        with self._lock:
            row = self.conn.execute("SELECT COUNT(*) FROM users").fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # tip store contract
    # ------------------------------------------------------------------

    def get_chain_tip(self, identity: str) -> ChainTip | None:
        row = self._row("id", identity)
        if row["previous_message_hash"] is None:
            return None
        return ChainTip(hash=str(row["previous_message_hash"]), sequence=int(row["chain_sequence"]))

    def commit_chain_tip(self, identity: str, expected_old: str | None, new_tip: ChainTip) -> bool:
        check_new_tip(new_tip)
        with self._lock:
            try:
                with self.conn:
                    cur = self.conn.execute(
                        """
                        UPDATE users
                        SET previous_message_hash = ?, chain_sequence = ?
                        WHERE id = ? AND previous_message_hash IS ?
                        """,
                        (new_tip.hash, new_tip.sequence, identity, expected_old),
                    )
            except sqlite3.Error as e:
                raise TipStoreError(f"tip commit failed: {e}") from e
            if cur.rowcount == 1:
                return True
            # Distinguish a lost race from a missing user.
            self._row("id", identity)
            return False

    def get_entity_snapshot(self, identity: str) -> dict[str, Any]:
        return self.get_user(identity).model_dump(mode="json")

    # ------------------------------------------------------------------

    def _row(self, column: str, value: str) -> sqlite3.Row:
        if column not in ("id", "username"):
            raise ValueError(column)
        with self._lock:
            try:
                row = self.conn.execute(f"SELECT * FROM users WHERE {column} = ?", (value,)).fetchone()
            except sqlite3.Error as e:
                raise TipStoreError(f"user lookup failed: {e}") from e
        if row is None:
            raise EntityNotFound(value)
        return row

    @staticmethod
    def _to_record(row: sqlite3.Row) -> UserRecord:
        return UserRecord(
            id=str(row["id"]),
            username=str(row["username"]),
            email=str(row["email"]),
            role=UserRole(str(row["role"])),
            created_at=parse_dt(str(row["created_at"])),
            updated_at=parse_dt(str(row["updated_at"])),
        )
