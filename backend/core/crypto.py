# backend/core/crypto.py

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from typing import Any, Optional, Tuple, Union
import json
import logging
import os

from core.config import settings

logger = logging.getLogger(__name__)

IV_LENGTH = 16


class SymmetricCipher:
    """
    AES-256-CBC with PKCS7 padding and a fresh random IV per encryption.

    The key is process-wide configuration; it is never derived per record.
    Used for signature images and identity-document fields.
    """

    def __init__(self, key: Optional[bytes] = None):
        self.key = key or bytes.fromhex(settings.encryption_key)
        if len(self.key) != 32:
            raise ValueError("AES-256 requires a 32 byte key")

    def encrypt(self, plaintext: Union[str, bytes]) -> Tuple[str, bytes]:
        """Encrypt plaintext; returns (iv_hex, ciphertext)."""
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self.key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return iv.hex(), ciphertext

    def decrypt(self, ciphertext: bytes, iv_hex: str) -> bytes:
        """Decrypt ciphertext produced by ``encrypt``."""
        try:
            iv = bytes.fromhex(iv_hex)
            decryptor = Cipher(algorithms.AES(self.key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            logger.error(f"Error decrypting payload: {e}")
            raise ValueError("Failed to decrypt payload")

    def encrypt_object(self, obj: Any) -> Tuple[str, bytes]:
        return self.encrypt(json.dumps(obj, ensure_ascii=False))

    def decrypt_object(self, ciphertext: bytes, iv_hex: str) -> Any:
        return json.loads(self.decrypt(ciphertext, iv_hex).decode("utf-8"))


_default_cipher: Optional[SymmetricCipher] = None


def get_cipher() -> SymmetricCipher:
    """Process-wide cipher built from settings."""
    global _default_cipher
    if _default_cipher is None:
        _default_cipher = SymmetricCipher()
    return _default_cipher
