"""Credential vault: AES-256-CBC encryption for stored mailbox passwords and SMS tokens.

Stored values look like ``v1:<iv hex>:<ciphertext hex>``.  Untagged
``<iv hex>:<ciphertext hex>`` values written before the scheme prefix was
introduced are still decrypted.  Anything else is treated as a legacy
plaintext value and returned unchanged.
"""

from __future__ import annotations

import hashlib
import os
import re

import structlog
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = structlog.get_logger()

SCHEME = "v1"
IV_LENGTH = 16

_TAGGED = re.compile(r"^v1:([0-9a-f]{32}):((?:[0-9a-f]{32})+)$")
_LEGACY = re.compile(r"^([0-9a-f]{32}):((?:[0-9a-f]{32})+)$")


class CredentialVault:
    """Symmetric encryption keyed by a server-wide passphrase.

    The 256-bit key is the SHA-256 digest of the passphrase, so the same
    passphrase always yields the same key and nothing key-related is
    stored next to the data.
    """

    def __init__(self, passphrase: str) -> None:
        if not passphrase:
            raise ValueError("vault passphrase must not be empty")
        self._key = hashlib.sha256(passphrase.encode("utf-8")).digest()

    @staticmethod
    def is_encrypted(value: str) -> bool:
        """True if *value* carries the current scheme tag."""
        return value.startswith(f"{SCHEME}:")

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{SCHEME}:{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, blob: str) -> str:
        """Decrypt *blob*, falling back to returning it unchanged.

        Never raises: malformed ciphertext and pre-migration plaintext
        both come back as-is, with a warning.
        """
        match = _TAGGED.match(blob) or _LEGACY.match(blob)
        if match is None:
            logger.warning("vault_plaintext_value", scheme=None, length=len(blob))
            return blob

        try:
            return self._decrypt_parts(bytes.fromhex(match[1]), bytes.fromhex(match[2]))
        except ValueError as exc:
            logger.warning("vault_decrypt_failed", error=type(exc).__name__)
            return blob

    def _decrypt_parts(self, iv: bytes, ciphertext: bytes) -> str:
        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plain = unpadder.update(padded) + unpadder.finalize()
        return plain.decode("utf-8")
