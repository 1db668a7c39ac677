"""eventchain.core.exceptions

Errors are part of the interface.

Event recording never aborts the business mutation that triggered it. These
types travel through pending-event futures and logs far more often than they
propagate up a call stack.
"""

from __future__ import annotations


class EventChainError(Exception):
    """Base exception for eventchain."""


class ConfigError(EventChainError):
    """Configuration is missing, invalid, or inconsistent."""


class EncodingFailure(EventChainError):
    """Snapshot or canonical bytes could not be produced."""


class SigningUnavailable(EventChainError):
    """Signing key is not initialized or cannot be used."""


class PublishFailure(EventChainError):
    """Broker did not confirm delivery (error or timeout)."""

    def __init__(self, message: str, *, topic: str | None = None, key: str | None = None) -> None:
        super().__init__(message)
        self.topic = topic
        self.key = key


class TipConflict(EventChainError):
    """Another writer advanced the chain tip first."""

    def __init__(self, identity: str, *, expected: str | None, actual: str | None) -> None:
        super().__init__(f"chain tip for {identity} moved: expected {expected}, found {actual}")
        self.identity = identity
        self.expected = expected
        self.actual = actual


class TipStoreError(EventChainError):
    """Tip store failures: schema, IO, or invariants."""


class EntityNotFound(TipStoreError):
    """No entity exists for the requested identity."""


class ChainIntegrityError(EventChainError):
    """A chain failed linkage, signature, or digest checks."""


class DuplicateEntity(TipStoreError):
    """An entity with the same unique key already exists."""
