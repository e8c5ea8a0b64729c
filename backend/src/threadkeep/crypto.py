"""AES-GCM record encryption.

Every record is JSON-encoded and sealed into an envelope before it reaches
a storage backend::

    {"v": 1, "alg": "AES-GCM", "iv": "<base64 nonce>", "data": "<base64 ciphertext>"}

A fresh 12-byte nonce is drawn for every write, so encrypting the same
record twice never yields the same envelope.

Key lifecycle
-------------
``KeyProvider`` resolves the 256-bit key once per process: an explicit key
passed in, then ``settings.encryption_key`` (base64), then the key file.
If none exists a new key is generated and written to the key file with
mode 0600. Rotating the key (``generate_key()`` + replacing the file)
makes existing records read as missing rather than raising.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from threadkeep.config import Settings, settings as default_settings
from threadkeep.errors import DecryptionError

logger = logging.getLogger(__name__)

ALGORITHM = "AES-GCM"
ENVELOPE_VERSION = 1
KEY_BYTES = 32
NONCE_BYTES = 12


def generate_key() -> bytes:
    """Return a new random 256-bit key."""
    return AESGCM.generate_key(bit_length=KEY_BYTES * 8)


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


class KeyProvider:
    """Resolves (and on first use creates) the record encryption key."""

    def __init__(
        self,
        key: bytes | None = None,
        config: Settings | None = None,
        key_file: Path | None = None,
    ):
        self._config = config or default_settings
        self._key_file = key_file or self._config.key_file
        self._key = key

    def get_key(self) -> bytes:
        if self._key is None:
            self._key = self._resolve()
        return self._key

    def _resolve(self) -> bytes:
        if self._config.encryption_key:
            key = _b64decode(self._config.encryption_key)
            if len(key) != KEY_BYTES:
                raise ValueError(f"encryption_key must decode to {KEY_BYTES} bytes")
            return key

        if self._key_file.exists():
            key = _b64decode(self._key_file.read_text().strip())
            if len(key) == KEY_BYTES:
                return key
            logger.warning(f"Ignoring malformed key file {self._key_file}")

        key = generate_key()
        self._key_file.parent.mkdir(parents=True, exist_ok=True)
        self._key_file.write_text(_b64encode(key) + "\n")
        os.chmod(self._key_file, 0o600)
        logger.info(f"Generated new chat encryption key at {self._key_file}")
        return key


class RecordCipher:
    """Encrypts and decrypts JSON records into AES-GCM envelopes."""

    def __init__(self, keys: KeyProvider | bytes):
        self._keys = keys if isinstance(keys, KeyProvider) else KeyProvider(key=keys)

    async def encrypt_json(self, value: Any) -> dict[str, Any]:
        """Seal a JSON-serializable value into an envelope."""
        cipher = AESGCM(self._keys.get_key())
        nonce = os.urandom(NONCE_BYTES)
        plaintext = json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        ciphertext = cipher.encrypt(nonce, plaintext, None)
        return {
            "v": ENVELOPE_VERSION,
            "alg": ALGORITHM,
            "iv": _b64encode(nonce),
            "data": _b64encode(ciphertext),
        }

    def open_envelope(self, envelope: dict[str, Any] | None) -> Any:
        """Decrypt an envelope, raising ``DecryptionError`` on any failure."""
        if not isinstance(envelope, dict) or envelope.get("alg") != ALGORITHM:
            raise DecryptionError("Not an AES-GCM envelope")
        if not isinstance(envelope.get("iv"), str) or not isinstance(envelope.get("data"), str):
            raise DecryptionError("Envelope is missing iv or data")
        try:
            nonce = _b64decode(envelope["iv"])
            ciphertext = _b64decode(envelope["data"])
            plaintext = AESGCM(self._keys.get_key()).decrypt(nonce, ciphertext, None)
            return json.loads(plaintext.decode("utf-8"))
        except (InvalidTag, binascii.Error, ValueError, UnicodeDecodeError) as e:
            raise DecryptionError(str(e) or type(e).__name__) from e

    async def decrypt_json(self, envelope: dict[str, Any] | None) -> Any | None:
        """Decrypt an envelope, returning ``None`` if it cannot be read.

        A wrong or rotated key, truncated bytes or a foreign envelope all
        read as "record not found" so that a single bad record cannot take
        down the caller.
        """
        try:
            return self.open_envelope(envelope)
        except DecryptionError as e:
            logger.warning(f"Dropping undecryptable record: {e}")
            return None
