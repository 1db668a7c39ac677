"""eventchain.security.signer

Ed25519 signing key for the process.

One keypair signs every event this process emits. It is constructed
explicitly and injected; there is no module-level singleton. Key material can
come from a key file, from hex (usually via env), or be generated.

A generated key that is never saved dies with the process, and chains signed
with it can no longer be checked against a known public key.
"""

from __future__ import annotations

import base64
import binascii
import contextlib
import json
import os
from datetime import UTC, datetime
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from eventchain.core.config import SigningConfig
from eventchain.core.exceptions import SigningUnavailable

_ITERATIONS = 480_000
_KEY_FILE_VERSION = 1

PublicKeyLike = Ed25519PublicKey | bytes | str


# ---------------------------------------------------------------------------
# Encryption helpers
# ---------------------------------------------------------------------------

def _derive_fernet_key(password: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(password.encode("utf-8")))


def _password() -> str | None:
    return os.environ.get("EVENTCHAIN_MASTER_PASSWORD") or None


def _dev_mode() -> bool:
    return os.environ.get("EVENTCHAIN_DEV_MODE", "").lower() in ("1", "true", "yes")


def _raw_private(key: Ed25519PrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _raw_public(key: Ed25519PublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def load_public_key(value: PublicKeyLike) -> Ed25519PublicKey:
    """Accept a key object, 32 raw bytes, hex, base64, or PEM text.

    Raises:
        ValueError: if the value is not an Ed25519 public key.
    """

    if isinstance(value, Ed25519PublicKey):
        return value
    if isinstance(value, bytes):
        return Ed25519PublicKey.from_public_bytes(value)

    text = value.strip()
    if text.startswith("-----BEGIN"):
        key = serialization.load_pem_public_key(text.encode("utf-8"))
        if not isinstance(key, Ed25519PublicKey):
            raise ValueError("Expected an Ed25519 public key")
        return key
    if len(text) == 64:
        with contextlib.suppress(ValueError):
            return Ed25519PublicKey.from_public_bytes(bytes.fromhex(text))
    try:
        raw = base64.b64decode(text, validate=True)
    except binascii.Error as e:
        raise ValueError("public key is neither hex, base64 nor PEM") from e
    return Ed25519PublicKey.from_public_bytes(raw)


class Ed25519Signer:
    """Process signing identity.

    ``Ed25519Signer(None)`` is a valid object that refuses to sign. This is
    the state a failed key load leaves behind.
    """

    def __init__(self, private_key: Ed25519PrivateKey | None, *, created_at: str | None = None) -> None:
        self._private_key = private_key
        self.created_at = created_at or datetime.now(tz=UTC).isoformat()

    # -- construction -------------------------------------------------------

    @classmethod
    def generate(cls) -> Ed25519Signer:
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_private_hex(cls, private_key_hex: str) -> Ed25519Signer:
        try:
            raw = bytes.fromhex(private_key_hex.strip().removeprefix("0x"))
            return cls(Ed25519PrivateKey.from_private_bytes(raw))
        except ValueError as e:
            raise SigningUnavailable(f"invalid Ed25519 private key hex: {e}") from e

    @classmethod
    def from_private_pem(cls, pem: str | bytes, *, password: bytes | None = None) -> Ed25519Signer:
        data = pem.encode("utf-8") if isinstance(pem, str) else pem
        try:
            key = serialization.load_pem_private_key(data, password=password)
        except (ValueError, TypeError) as e:
            raise SigningUnavailable(f"invalid private key PEM: {e}") from e
        if not isinstance(key, Ed25519PrivateKey):
            raise SigningUnavailable("Expected an Ed25519 private key")
        return cls(key)

    @classmethod
    def from_config(cls, cfg: SigningConfig) -> Ed25519Signer:
        """Resolve key material in order: hex, key file, ephemeral.

        Raises:
            SigningUnavailable: configured material is unusable, or nothing is
                configured and ephemeral keys are disabled.
        """

        if cfg.private_key_hex:
            return cls.from_private_hex(cfg.private_key_hex)
        if cfg.key_path is not None:
            return cls.load(cfg.key_path)
        if cfg.allow_ephemeral:
            return cls.generate()
        raise SigningUnavailable("no signing key configured and ephemeral keys are disabled")

    # -- key material -------------------------------------------------------

    @property
    def available(self) -> bool:
        return self._private_key is not None

    def _require(self) -> Ed25519PrivateKey:
        if self._private_key is None:
            raise SigningUnavailable("Ed25519 key pair not initialized")
        return self._private_key

    @property
    def public_key(self) -> Ed25519PublicKey:
        return self._require().public_key()

    @property
    def public_key_hex(self) -> str:
        return _raw_public(self.public_key).hex()

    @property
    def public_key_b64(self) -> str:
        return base64.b64encode(_raw_public(self.public_key)).decode("ascii")

    def public_key_pem(self) -> str:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("utf-8")

    # -- sign / verify ------------------------------------------------------

    def sign(self, data: bytes) -> bytes:
        return self._require().sign(data)

    def sign_b64(self, data: bytes) -> str:
        return base64.b64encode(self.sign(data)).decode("ascii")

    @staticmethod
    def verify(data: bytes, signature: bytes | str, public_key: PublicKeyLike) -> bool:
        """Check a signature. Never raises on malformed input.

        ``signature`` may be raw bytes or base64 text.
        """

        try:
            key = load_public_key(public_key)
            sig = base64.b64decode(signature, validate=True) if isinstance(signature, str) else signature
            key.verify(sig, data)
            return True
        except (InvalidSignature, ValueError, TypeError, binascii.Error):
            return False

    # -- persistence --------------------------------------------------------

    def save(self, path: str | Path) -> None:
        """Save the keypair to JSON, private key encrypted when a password is set."""

        key = self._require()
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        blob: dict = {
            "alg": "ed25519",
            "version": _KEY_FILE_VERSION,
            "created_at": self.created_at,
            "public_key": self.public_key_hex,
        }

        pw = _password()
        if pw:
            salt = os.urandom(16)
            f = Fernet(_derive_fernet_key(pw, salt))
            blob["private_key_enc"] = base64.b64encode(f.encrypt(_raw_private(key))).decode("ascii")
            blob["kdf"] = {
                "name": "pbkdf2_hmac_sha256",
                "iterations": _ITERATIONS,
                "salt_b64": base64.b64encode(salt).decode("ascii"),
            }
        else:
            if not _dev_mode():
                raise SigningUnavailable(
                    "Refusing to save plaintext signing key without EVENTCHAIN_DEV_MODE=1. "
                    "Set EVENTCHAIN_MASTER_PASSWORD to encrypt it at rest."
                )
            blob["private_key"] = _raw_private(key).hex()
            blob["warning"] = "DEVELOPMENT MODE: signing key stored unencrypted"

        path.write_text(json.dumps(blob, indent=2, sort_keys=True), encoding="utf-8")
        with contextlib.suppress(OSError):
            os.chmod(path, 0o600)

    @classmethod
    def load(cls, path: str | Path) -> Ed25519Signer:
        path = Path(path)
        try:
            blob = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise SigningUnavailable(f"cannot read signing key file {path}: {e}") from e
        if not isinstance(blob, dict):
            raise SigningUnavailable(f"signing key file {path} is not a JSON object")

        if blob.get("alg") != "ed25519":
            raise SigningUnavailable("Unsupported signing key alg")

        try:
            if "private_key_enc" in blob:
                pw = _password()
                if not pw:
                    raise SigningUnavailable("Encrypted signing key requires EVENTCHAIN_MASTER_PASSWORD")
                salt = base64.b64decode(blob["kdf"]["salt_b64"])
                f = Fernet(_derive_fernet_key(pw, salt))
                try:
                    raw = f.decrypt(base64.b64decode(blob["private_key_enc"]))
                except InvalidToken as e:
                    raise SigningUnavailable("Invalid password or corrupted signing key file") from e
                priv_hex = raw.hex()
            else:
                priv_hex = str(blob["private_key"])
        except (KeyError, TypeError, ValueError) as e:
            raise SigningUnavailable(f"signing key file {path} is incomplete: {type(e).__name__}: {e}") from e

        signer = cls.from_private_hex(priv_hex)
        signer.created_at = str(blob.get("created_at", signer.created_at))
        if signer.public_key_hex != blob.get("public_key"):
            raise SigningUnavailable("signing key file public key does not match private key")
        return signer
