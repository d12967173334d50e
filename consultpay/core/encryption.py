"""AES-256-GCM encryption for bank account numbers."""

import os
from functools import lru_cache

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from consultpay.config import settings

NONCE_SIZE = 12


class EncryptionService:
    """Encrypts account numbers at rest; the nonce is stored with the ciphertext."""

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise ValueError("Encryption key must be 32 bytes for AES-256")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)

    def decrypt(self, ciphertext: bytes) -> str:
        if len(ciphertext) < NONCE_SIZE:
            raise ValueError("Ciphertext too short")
        nonce, payload = ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:]
        return self._aesgcm.decrypt(nonce, payload, None).decode("utf-8")


@lru_cache
def get_encryption_service() -> EncryptionService:
    """Cached service keyed from settings (padded or truncated to 32 bytes)."""
    key = settings.encryption_key.encode("utf-8")
    key = key.ljust(32, b"\0")[:32]
    return EncryptionService(key)


def encrypt_account_number(account_number: str) -> bytes:
    return get_encryption_service().encrypt(account_number)


def decrypt_account_number(ciphertext: bytes) -> str:
    return get_encryption_service().decrypt(ciphertext)


def mask_account_number(account_number: str) -> str:
    """Keep the last four digits visible."""
    return "*" * max(len(account_number) - 4, 0) + account_number[-4:]
