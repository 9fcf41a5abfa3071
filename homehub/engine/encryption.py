"""AES-256-GCM encryption for device message bodies.

Every device record carries an opaque secret string (its *key material*).
The symmetric key is derived from it with SHA-256, which gives exactly the
256 bits AES-256 needs, so the device firmware can derive the same key with
nothing more than a hash primitive.

Security model
--------------
- One key per device; a message can only be opened with the key material of
  the device it was sealed for.
- Every ``encrypt()`` call draws a fresh random 96-bit nonce from
  ``os.urandom``.  Nonces are never reused for the same key.
- AES-GCM is *authenticated* encryption: a flipped bit anywhere in the
  ciphertext or tag, or a wrong key, makes ``decrypt()`` raise
  ``DecryptionError``.  No partial plaintext is ever returned.
"""

from __future__ import annotations

import hashlib
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from homehub.engine.errors import DecryptionError, EncryptionError
from homehub.engine.protocol import IV_LENGTH, TAG_LENGTH, EncryptedEnvelope


def derive_key(key_material: str) -> bytes:
    """Derive the 32-byte AES key for a device: ``SHA-256(key_material)``."""
    return hashlib.sha256(key_material.encode("utf-8")).digest()


class CryptoChannel:
    """Stateless per-device encrypt/decrypt.

    Kept as a class so the router and publisher can be handed a fake in tests.
    """

    def encrypt(self, plaintext: bytes, key_material: str) -> EncryptedEnvelope:
        """Seal *plaintext* for the device owning *key_material*."""
        if not key_material:
            raise EncryptionError("device key material is empty")
        try:
            iv = os.urandom(IV_LENGTH)
            sealed = AESGCM(derive_key(key_material)).encrypt(iv, bytes(plaintext), None)
        except (TypeError, ValueError, OverflowError) as exc:
            raise EncryptionError(f"encryption failed: {exc}") from exc
        # AESGCM appends the tag to the ciphertext
        return EncryptedEnvelope(
            iv=iv,
            auth_tag=sealed[-TAG_LENGTH:],
            ciphertext=sealed[:-TAG_LENGTH],
        )

    def decrypt(
        self,
        envelope: EncryptedEnvelope | str | bytes,
        key_material: str,
    ) -> bytes:
        """Open an envelope (or its wire form) with *key_material*."""
        if not key_material:
            raise DecryptionError("device key material is empty")
        if not isinstance(envelope, EncryptedEnvelope):
            envelope = EncryptedEnvelope.from_wire(envelope)
        try:
            return AESGCM(derive_key(key_material)).decrypt(
                envelope.iv, envelope.ciphertext + envelope.auth_tag, None,
            )
        except InvalidTag as exc:
            raise DecryptionError("authentication tag verification failed") from exc
        except ValueError as exc:
            raise DecryptionError(f"decryption failed: {exc}") from exc

    # -- JSON helpers --------------------------------------------------------

    def encrypt_json(self, obj: Any, key_material: str) -> EncryptedEnvelope:
        """Serialise *obj* as UTF-8 JSON and encrypt it."""
        try:
            plaintext = json.dumps(obj, ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"payload is not JSON-serialisable: {exc}") from exc
        return self.encrypt(plaintext, key_material)

    def decrypt_json(
        self,
        envelope: EncryptedEnvelope | str | bytes,
        key_material: str,
    ) -> Any:
        """Decrypt and parse a JSON body.

        Raises ``DecryptionError`` for envelope/auth failures and
        ``ValueError`` (``json.JSONDecodeError`` or ``UnicodeDecodeError``)
        when the plaintext is not valid UTF-8 JSON.
        """
        return json.loads(self.decrypt(envelope, key_material).decode("utf-8"))
