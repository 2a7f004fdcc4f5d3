"""Cipher for doctors' stored calendar refresh tokens.

Tokens are stored as ``"<iv hex>:<ciphertext hex>"`` using AES-256-CBC with
PKCS7 padding. ``decrypt`` returns ``None`` for malformed input so callers can
tell a missing credential apart from a broken key, which is rejected when the
cipher is constructed.
"""

import logging
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from scheduling.core.errors import CredentialConfigError

logger = logging.getLogger(__name__)

KEY_LENGTH_BYTES = 32
IV_LENGTH_BYTES = 16
BLOCK_SIZE_BITS = 128


class CredentialCipher:
    __slots__ = ('_key',)

    def __init__(self, key_hex: str):
        try:
            key = bytes.fromhex((key_hex or '').strip())
        except ValueError as exc:
            raise CredentialConfigError('Refresh token encryption key must be a hex string.') from exc

        if len(key) != KEY_LENGTH_BYTES:
            raise CredentialConfigError(
                f'Refresh token encryption key must be {KEY_LENGTH_BYTES} bytes '
                f'({KEY_LENGTH_BYTES * 2} hex characters), got {len(key)} bytes.'
            )
        self._key = key

    def encrypt(self, token: str) -> str | None:
        if not token:
            return None

        iv = os.urandom(IV_LENGTH_BYTES)
        padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
        padded = padder.update(token.encode('utf-8')) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f'{iv.hex()}:{ciphertext.hex()}'

    def decrypt(self, ciphertext: str | None) -> str | None:
        if not ciphertext or not isinstance(ciphertext, str) or ':' not in ciphertext:
            return None

        iv_hex, _, body_hex = ciphertext.strip().partition(':')
        try:
            iv = bytes.fromhex(iv_hex)
            body = bytes.fromhex(body_hex)
            if len(iv) != IV_LENGTH_BYTES or not body or len(body) % (BLOCK_SIZE_BITS // 8):
                return None

            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(body) + decryptor.finalize()
            unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode('utf-8')
        except (ValueError, UnicodeDecodeError):
            logger.warning('Stored calendar credential could not be decrypted.')
            return None


def build_cipher(key_hex: str | None) -> CredentialCipher | None:
    """Return a cipher for ``key_hex`` or ``None`` when no key is configured."""
    if not key_hex:
        return None
    return CredentialCipher(key_hex)
