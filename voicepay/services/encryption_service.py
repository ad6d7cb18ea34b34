"""
Authenticated encryption for data at rest.

Tokens look like ``v1:<base64(nonce || ciphertext)>`` where the nonce is a
fresh 96-bit random value and the ciphertext carries the AES-GCM tag. The
plaintext is JSON; ``Decimal`` and ``datetime`` values survive a round trip.
"""

import base64
import binascii
import json
import logging
import os
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "v1:"
NONCE_SIZE = 12
KEY_SIZES = (16, 24, 32)


class EncryptionError(Exception):
    """Raised when data cannot be encrypted or decrypted."""
    pass


def generate_key() -> str:
    """New random AES-256 key, urlsafe base64 encoded."""
    return base64.urlsafe_b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


def _decode_key(key: str) -> bytes:
    try:
        raw = base64.urlsafe_b64decode(key.encode("ascii"))
    except (binascii.Error, ValueError) as e:
        raise EncryptionError(f"Encryption key is not valid base64: {e}")
    if len(raw) not in KEY_SIZES:
        raise EncryptionError(f"Encryption key must be 16, 24 or 32 bytes, got {len(raw)}")
    return raw


def _default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return {"__decimal__": str(value)}
    if isinstance(value, datetime):
        return {"__datetime__": value.isoformat()}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _object_hook(obj: dict) -> Any:
    if len(obj) == 1:
        if "__decimal__" in obj:
            return Decimal(obj["__decimal__"])
        if "__datetime__" in obj:
            return datetime.fromisoformat(obj["__datetime__"])
    return obj


def dumps(data: Any) -> str:
    return json.dumps(data, default=_default, sort_keys=True, separators=(",", ":"))


def loads(text: str) -> Any:
    return json.loads(text, object_hook=_object_hook)


class EncryptionService:
    """AES-GCM cipher for JSON-serializable data."""

    def __init__(self, key: Optional[str] = None, required: bool = True):
        """
        Initialize the cipher.

        Args:
            key: urlsafe base64 AES key. If None, an ephemeral key is generated
                and data encrypted with it cannot be read after a restart.
            required: When False, ``encrypt`` emits plain JSON
        """
        if key is None:
            logger.warning("No encryption key configured; using an ephemeral key")
            key = generate_key()
        self._aead = AESGCM(_decode_key(key))
        self.required = required

    def encrypt(self, data: Any) -> str:
        try:
            plaintext = dumps(data)
        except (TypeError, ValueError) as e:
            raise EncryptionError(f"Data is not serializable: {e}")

        if not self.required:
            return plaintext

        try:
            nonce = os.urandom(NONCE_SIZE)
            ciphertext = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        except Exception as e:
            logger.error(f"Encryption failed: {e}")
            raise EncryptionError(f"Encryption failed: {e}")

        return TOKEN_PREFIX + base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> Any:
        """
        Recover data from ``encrypt`` output.

        Accepts encrypted tokens and the plain JSON produced when encryption
        is not required.

        Raises:
            EncryptionError: If the token is malformed, tampered with or
                encrypted under another key
        """
        if not isinstance(token, str) or not token:
            raise EncryptionError("Token must be a non-empty string")

        if not token.startswith(TOKEN_PREFIX):
            try:
                return loads(token)
            except ValueError as e:
                raise EncryptionError(f"Token is neither encrypted nor valid JSON: {e}")

        try:
            blob = base64.b64decode(token[len(TOKEN_PREFIX):], validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncryptionError(f"Token is not valid base64: {e}")

        if len(blob) <= NONCE_SIZE:
            raise EncryptionError("Token is too short")

        try:
            plaintext = self._aead.decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None)
        except InvalidTag:
            logger.error("Decryption failed: authentication tag mismatch")
            raise EncryptionError("Decryption failed: token was tampered with or uses another key")

        try:
            return loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise EncryptionError(f"Decrypted payload is not valid JSON: {e}")
