"""eventchain.ledger.tips

Chain tip contract.

The tip store belongs to whoever owns the entity records. This package only
ever writes tips through ``commit_chain_tip``, an atomic compare-and-swap:
advance from ``expected_old`` to ``new_tip`` only if the stored tip still
equals ``expected_old``. A ``False`` return is a lost race, never an error.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from eventchain.core.exceptions import EntityNotFound, TipStoreError
from eventchain.core.models import ChainTip
from eventchain.security.hashing import is_digest


@runtime_checkable
class TipStore(Protocol):
    def get_chain_tip(self, identity: str) -> ChainTip | None: ...

    def commit_chain_tip(self, identity: str, expected_old: str | None, new_tip: ChainTip) -> bool: ...

    def get_entity_snapshot(self, identity: str) -> dict[str, Any]: ...


def check_new_tip(new_tip: ChainTip) -> None:
    if not is_digest(new_tip.hash):
        raise TipStoreError(f"not a digest: {new_tip.hash!r}")
    if new_tip.sequence < 1:
        raise TipStoreError(f"tip sequence must be >= 1, got {new_tip.sequence}")


@dataclass
class InMemoryTipStore:
    """Tip store for tests and short-lived single-process tools.

    Locks are per identity; writers on different entities never contend.
    Nothing is ever evicted: tips, snapshots and locks are held for every
    identity seen, so memory grows with the number of entities. Long-running
    services should use a persistent store such as ``UserStore``.
    """

    _tips: dict[str, ChainTip] = field(default_factory=dict)
    _snapshots: dict[str, dict[str, Any]] = field(default_factory=dict)
    _locks: defaultdict[str, threading.Lock] = field(default_factory=lambda: defaultdict(threading.Lock))
    _guard: threading.Lock = field(default_factory=threading.Lock)

    def _lock_for(self, identity: str) -> threading.Lock:
        with self._guard:
            return self._locks[identity]

    def put_entity(self, identity: str, snapshot: dict[str, Any]) -> None:
        with self._lock_for(identity):
            self._snapshots[identity] = dict(snapshot)

    def get_chain_tip(self, identity: str) -> ChainTip | None:
        with self._lock_for(identity):
            return self._tips.get(identity)

    def commit_chain_tip(self, identity: str, expected_old: str | None, new_tip: ChainTip) -> bool:
        check_new_tip(new_tip)
        with self._lock_for(identity):
            current = self._tips.get(identity)
            current_hash = current.hash if current is not None else None
            if current_hash != expected_old:
                return False
            self._tips[identity] = new_tip
            return True

    def get_entity_snapshot(self, identity: str) -> dict[str, Any]:
        with self._lock_for(identity):
            snap = self._snapshots.get(identity)
        if snap is None:
            raise EntityNotFound(identity)
        return dict(snap)
