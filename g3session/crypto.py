"""Authenticated encryption using XChaCha20-Poly1305."""

import os
from dataclasses import dataclass

from Crypto.Cipher import ChaCha20_Poly1305

from .error import DecryptionFailed
from .types import KEY_LEN, NONCE_SIZE, TAG_SIZE


@dataclass(frozen=True)
class EncryptedData:
    """Ciphertext (with appended tag) and the nonce it was sealed under."""

    ciphertext: bytes
    nonce: bytes


def rand_bytes(n: int) -> bytes:
    """Generate n random bytes using OS-provided secure random."""
    return os.urandom(n)


def zero_bytes(data: bytearray) -> None:
    """
    Securely zero a bytearray to prevent sensitive data from lingering in memory.
    Note: Python doesn't guarantee memory clearing, but we overwrite anyway.
    """
    for i in range(len(data)):
        data[i] = 0


def _check_key(key: bytes) -> None:
    if len(key) != KEY_LEN:
        raise ValueError(f"Key must be {KEY_LEN} bytes, got {len(key)}")


def encrypt_with_ad(plaintext: bytes, key: bytes, associated_data: bytes) -> EncryptedData:
    """
    Encrypt plaintext and authenticate associated data.

    A fresh 24-byte random nonce is drawn per call, so nonces never repeat
    under one key in practice.

    Args:
        plaintext: Data to encrypt
        key: 32-byte key
        associated_data: Data authenticated but not encrypted (e.g. header bytes)

    Returns:
        EncryptedData with ciphertext || tag and the nonce

    Note: The caller is responsible for zeroing the key after use.
    """
    _check_key(key)
    nonce = rand_bytes(NONCE_SIZE)
    cipher = ChaCha20_Poly1305.new(key=bytes(key), nonce=nonce)
    cipher.update(associated_data)
    ciphertext, tag = cipher.encrypt_and_digest(plaintext)
    return EncryptedData(ciphertext=ciphertext + tag, nonce=nonce)


def decrypt_with_ad(ciphertext: bytes, nonce: bytes, key: bytes, associated_data: bytes) -> bytes:
    """
    Decrypt ciphertext and verify the tag over it and the associated data.

    Raises:
        DecryptionFailed: on any failure. The message never says whether the
            key, the ciphertext, the nonce or the associated data was wrong.
    """
    if len(key) != KEY_LEN or len(nonce) != NONCE_SIZE or len(ciphertext) < TAG_SIZE:
        raise DecryptionFailed("Decryption failed")

    cipher = ChaCha20_Poly1305.new(key=bytes(key), nonce=bytes(nonce))
    cipher.update(associated_data)
    try:
        return cipher.decrypt_and_verify(ciphertext[:-TAG_SIZE], ciphertext[-TAG_SIZE:])
    except ValueError:
        raise DecryptionFailed("Decryption failed") from None


def encrypt(plaintext: bytes, key: bytes) -> EncryptedData:
    """Encrypt plaintext with no associated data."""
    return encrypt_with_ad(plaintext, key, b"")


def decrypt(ciphertext: bytes, nonce: bytes, key: bytes) -> bytes:
    """Decrypt ciphertext produced by encrypt()."""
    return decrypt_with_ad(ciphertext, nonce, key, b"")
