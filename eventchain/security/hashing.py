"""eventchain.security.hashing

SHA-256 content digests, lowercase hex.
"""

from __future__ import annotations

import hashlib
import re

DIGEST_HEX_LEN = 64

_HEX64 = re.compile(r"[0-9a-f]{64}")

# A missing provider must fail at import, not on the first event.
hashlib.sha256(b"")


def digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def is_digest(value: object) -> bool:
    """True for a 64-char lowercase hex string (the genesis sentinel included)."""

    return isinstance(value, str) and _HEX64.fullmatch(value) is not None
