"""eventchain.users.service

Registration and profile updates, each followed by a chain event.

The user mutation commits first. Event recording is asynchronous and its
failures are logged for reconciliation; they never undo the mutation.
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import Future

from eventchain.core.models import EventKind
from eventchain.ledger.service import EventService, PendingEvent, RecordOutcome
from eventchain.users.store import UserRecord, UserStore


class UserService:
    def __init__(self, store: UserStore, events: EventService, *, logger: logging.Logger | None = None) -> None:
        self.store = store
        self.events = events
        self.logger = logger or logging.getLogger("eventchain.users.service")

    def register(self, username: str, email: str, *, session_id: str | None = None) -> tuple[UserRecord, PendingEvent]:
        user = self.store.create_user(username=username, email=email)
        self.logger.info("user_registered", extra={"identity": user.id, "username": username})
        return user, self._record(user, EventKind.USER_CREATED, session_id)

    def update_email(
        self,
        username: str,
        email: str,
        *,
        session_id: str | None = None,
    ) -> tuple[UserRecord, PendingEvent]:
        user = self.store.update_email(username, email)
        self.logger.info("user_email_updated", extra={"identity": user.id, "username": username})
        return user, self._record(user, EventKind.USER_UPDATED, session_id)

    def _record(self, user: UserRecord, kind: EventKind, session_id: str | None) -> PendingEvent:
        sid = session_id or f"session-{uuid.uuid4()}"
        pending = self.events.record_event(user, kind, sid, identity=user.id, user_id=user.id)
        pending.future.add_done_callback(lambda f: self._settled(user, kind, f))
        return pending

    def _settled(self, user: UserRecord, kind: EventKind, fut: Future[RecordOutcome]) -> None:
        exc = fut.exception()
        if exc is None:
            self.logger.debug("user_event_recorded", extra={"identity": user.id, "tip": fut.result().tip.hash})
            return
        self.logger.error(
            "user_event_unrecorded",
            extra={
                "identity": user.id,
                "kind": str(kind),
                "error": f"{type(exc).__name__}: {exc}",
                "action": "reconcile",
            },
        )
