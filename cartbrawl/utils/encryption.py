"""
Symmetric encryption for stored Shopify access tokens.

Tokens are sealed with a NaCl secret box (XSalsa20-Poly1305) keyed by
ENCRYPTION_KEY and stored as ``nonce_hex:ciphertext_hex``.
"""

from typing import Optional

import nacl.exceptions
import nacl.secret
import nacl.utils
import structlog

from cartbrawl.core.config import settings
from cartbrawl.core.exceptions import ConfigurationError, ValidationError

logger = structlog.get_logger(__name__)


class TokenCipher:
    """Encrypts and decrypts credentials with a single secret key."""

    def __init__(self, key_hex: Optional[str] = None):
        key_hex = key_hex or settings.encryption_key
        try:
            if not key_hex or len(key_hex) != 64:
                raise ValueError("wrong key length")
            key = bytes.fromhex(key_hex)
        except ValueError:
            raise ConfigurationError(
                "ENCRYPTION_KEY must be 64 characters (32 bytes) hex string"
            )
        self._box = nacl.secret.SecretBox(key)

    def encrypt(self, text: str) -> str:
        nonce = nacl.utils.random(nacl.secret.SecretBox.NONCE_SIZE)
        sealed = self._box.encrypt(text.encode("utf-8"), nonce)
        return f"{nonce.hex()}:{sealed.ciphertext.hex()}"

    def decrypt(self, encrypted_data: str) -> str:
        """
        Decrypt a value produced by :meth:`encrypt`.

        Raises:
            ValidationError: If the value is malformed or fails authentication
        """
        parts = encrypted_data.split(":")
        if len(parts) != 2:
            raise ValidationError("Invalid encrypted data format")

        nonce_hex, ciphertext_hex = parts
        try:
            nonce = bytes.fromhex(nonce_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
        except ValueError:
            raise ValidationError("Invalid encrypted data format")

        try:
            return self._box.decrypt(ciphertext, nonce).decode("utf-8")
        except (nacl.exceptions.CryptoError, ValueError) as e:
            logger.warning("Token decryption failed", error=str(e))
            raise ValidationError("Encrypted data failed authentication")


_cipher: Optional[TokenCipher] = None


def get_cipher() -> TokenCipher:
    global _cipher
    if _cipher is None:
        _cipher = TokenCipher()
    return _cipher


def encrypt(text: str) -> str:
    return get_cipher().encrypt(text)


def decrypt(encrypted_data: str) -> str:
    return get_cipher().decrypt(encrypted_data)
