"""eventchain.security

Hashing + signing primitives.

The signer holds the only secret in the system. The chain remembers.
"""

from eventchain.security.hashing import DIGEST_HEX_LEN, digest, is_digest
from eventchain.security.signer import Ed25519Signer, load_public_key

__all__ = [
    "DIGEST_HEX_LEN",
    "Ed25519Signer",
    "digest",
    "is_digest",
    "load_public_key",
]
