"""
Sealing of runtime credentials at rest.

Generated agent passwords are handed to the user in plaintext exactly once.
Whatever the orchestrator keeps (on the runtime row, or on a queued
provision request until its owner reads it) is Fernet ciphertext
(AES-128-CBC + HMAC-SHA256) under a key derived from RUNTIME_SECRET via PBKDF2.

Usage:
    from .crypto import seal_credential, open_credential

    sealed = seal_credential("hunter2")
    plaintext = open_credential(sealed)
"""

from __future__ import annotations

import base64
import logging
import os

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives import hashes

log = logging.getLogger("orchestrator.crypto")

# ── Key derivation ─────────────────────────────────────────

_SECRET = os.getenv("RUNTIME_SECRET", "")

# Fixed salt; the same secret must derive the same key on every startup.
_SALT = b"agent-runtime-credential-v1"


def _derive_fernet_key(secret: str) -> bytes:
    """Derive a 32-byte Fernet key from the app secret via PBKDF2."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_SALT,
        iterations=480_000,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


if _SECRET:
    _fernet = Fernet(_derive_fernet_key(_SECRET))
else:
    # Sealed values will not survive a restart, but plaintext never hits the DB.
    log.warning("⚠ RUNTIME_SECRET not set — using an ephemeral credential key")
    _fernet = Fernet(Fernet.generate_key())


# ── Public API ─────────────────────────────────────────────


def seal_credential(plaintext: str | None) -> str | None:
    if plaintext is None:
        return None
    return _fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")


def open_credential(sealed: str | None) -> str | None:
    """Decrypt a sealed credential. Returns None if it cannot be opened."""
    if not sealed:
        return None
    try:
        return _fernet.decrypt(sealed.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        log.warning("Could not open sealed credential (key changed?)")
        return None
