"""eventchain: tamper-evident entity event log.

Every mutation of a tracked entity becomes a signed event that points at the
digest of the entity's previous event. The chain lives on the broker; the only
state kept next to the entity is the digest of the last confirmed event.
"""

from __future__ import annotations

__all__ = [
    "__version__",
    "GENESIS_HASH",
    "WIRE_VERSION",
]

__version__ = "0.3.0"

# previousHash of the first event in every entity chain. Same width as a SHA-256 hex digest.
GENESIS_HASH = "0" * 64

# Bumped on any incompatible change to the wire document or its canonical bytes.
WIRE_VERSION = "2.0"
