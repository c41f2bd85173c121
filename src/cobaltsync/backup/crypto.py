"""
Password protection for local backup packages.

An encrypted package is a JSON envelope around the raw package bytes
(manifest JSON or zip archive):

    - Key derived from the password with PBKDF2-SHA256, 210,000 iterations,
      random 16-byte salt, 256-bit key
    - Payload sealed with AES-GCM under a random 12-byte IV; the
      authentication tag is appended to the ciphertext
    - Salt, IV and ciphertext are base64 encoded
    - An optional plaintext summary (entity counts only) lets a caller
      preview the package without the password

Error messages never contain decrypted content.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from cobaltsync.backup.errors import EncryptionError

ENCRYPTED_BACKUP_KIND = "cobalt-backup-encrypted"
ENCRYPTED_BACKUP_VERSION = 1
ALGORITHM = "AES-GCM"
KDF = "PBKDF2-SHA256"

# Do not reduce these values; existing packages record their iteration count
PBKDF2_ITERATIONS = 210_000
KEY_LENGTH = 32
SALT_LENGTH = 16
IV_LENGTH = 12


@dataclass
class EncryptedBackupEnvelope:
    """JSON envelope of a password-protected package."""

    iterations: int
    salt_b64: str
    iv_b64: str
    payload_b64: str
    summary: dict[str, Any] | None = None
    kind: str = ENCRYPTED_BACKUP_KIND
    version: int = ENCRYPTED_BACKUP_VERSION
    algorithm: str = ALGORITHM
    kdf: str = KDF

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind,
            "version": self.version,
            "algorithm": self.algorithm,
            "kdf": self.kdf,
            "iterations": self.iterations,
            "saltB64": self.salt_b64,
            "ivB64": self.iv_b64,
            "payloadB64": self.payload_b64,
        }
        if self.summary is not None:
            data["summary"] = self.summary
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EncryptedBackupEnvelope:
        """
        Create an envelope from its JSON object.

        Raises:
            EncryptionError: If the object is not an encrypted package.
        """
        if not is_encrypted_envelope(data):
            raise EncryptionError("Invalid encrypted backup envelope")
        summary = data.get("summary")
        return cls(
            iterations=int(data["iterations"]),
            salt_b64=data["saltB64"],
            iv_b64=data["ivB64"],
            payload_b64=data["payloadB64"],
            summary=summary if isinstance(summary, dict) else None,
            kind=data["kind"],
            version=data["version"],
            algorithm=data["algorithm"],
            kdf=data["kdf"],
        )


def is_encrypted_envelope(value: Any) -> bool:
    """Return True if value looks like an encrypted package envelope."""
    if not isinstance(value, dict):
        return False
    iterations = value.get("iterations")
    return (
        value.get("kind") == ENCRYPTED_BACKUP_KIND
        and value.get("version") == ENCRYPTED_BACKUP_VERSION
        and value.get("algorithm") == ALGORITHM
        and value.get("kdf") == KDF
        and isinstance(iterations, int)
        and not isinstance(iterations, bool)
        and iterations > 0
        and all(isinstance(value.get(key), str) for key in ("saltB64", "ivB64", "payloadB64"))
    )


def _derive_key(password: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def encrypt_backup_payload(
    payload: bytes,
    password: str,
    summary: dict[str, Any] | None = None,
) -> EncryptedBackupEnvelope:
    """
    Encrypt package bytes under a password.

    Args:
        payload: Raw package bytes.
        password: User password.
        summary: Optional plaintext entity counts.

    Returns:
        The sealed envelope.

    Raises:
        EncryptionError: If no password is given.
    """
    if not password:
        raise EncryptionError("Password required")

    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = _derive_key(password, salt, PBKDF2_ITERATIONS)
    ciphertext = AESGCM(key).encrypt(iv, payload, None)

    return EncryptedBackupEnvelope(
        iterations=PBKDF2_ITERATIONS,
        salt_b64=base64.b64encode(salt).decode("ascii"),
        iv_b64=base64.b64encode(iv).decode("ascii"),
        payload_b64=base64.b64encode(ciphertext).decode("ascii"),
        summary=summary,
    )


def decrypt_backup_payload(
    envelope: EncryptedBackupEnvelope | dict[str, Any],
    password: str,
) -> bytes:
    """
    Decrypt an envelope back to the package bytes.

    Args:
        envelope: Envelope object or its JSON dict.
        password: User password.

    Returns:
        The original package bytes.

    Raises:
        EncryptionError: On a missing or wrong password, a malformed
            envelope or a tampered payload.
    """
    if not password:
        raise EncryptionError("Password required")
    if isinstance(envelope, dict):
        envelope = EncryptedBackupEnvelope.from_dict(envelope)
    if envelope.kind != ENCRYPTED_BACKUP_KIND:
        raise EncryptionError("Invalid encrypted backup envelope")

    try:
        salt = base64.b64decode(envelope.salt_b64, validate=True)
        iv = base64.b64decode(envelope.iv_b64, validate=True)
        ciphertext = base64.b64decode(envelope.payload_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncryptionError("Encrypted backup envelope is corrupt") from e

    if len(iv) != IV_LENGTH:
        raise EncryptionError("Encrypted backup envelope is corrupt")

    key = _derive_key(password, salt, envelope.iterations)
    try:
        return AESGCM(key).decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        raise EncryptionError("Wrong password or corrupted backup") from e
