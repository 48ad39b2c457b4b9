"""Tests for the AEAD cipher."""

import pytest
from g3session import (
    DecryptionFailed,
    NONCE_SIZE,
    encrypt,
    decrypt,
    encrypt_with_ad,
    decrypt_with_ad,
    rand_bytes,
    zero_bytes,
)


def test_encrypt_decrypt():
    """Test basic round trip."""
    key = rand_bytes(32)
    plaintext = b"Hello, World!"

    sealed = encrypt(plaintext, key)

    assert len(sealed.nonce) == NONCE_SIZE
    assert sealed.ciphertext != plaintext
    assert decrypt(sealed.ciphertext, sealed.nonce, key) == plaintext


def test_empty_plaintext():
    """An empty message still carries a tag."""
    key = rand_bytes(32)
    sealed = encrypt(b"", key)
    assert len(sealed.ciphertext) == 16
    assert decrypt(sealed.ciphertext, sealed.nonce, key) == b""


def test_bytearray_key():
    """Keys held as bytearray work like bytes."""
    key = bytearray(rand_bytes(32))
    sealed = encrypt(b"ratchet key", key)
    assert decrypt(sealed.ciphertext, sealed.nonce, bytes(key)) == b"ratchet key"


def test_wrong_key_fails():
    """Decrypting with any other key raises DecryptionFailed."""
    key = rand_bytes(32)
    sealed = encrypt(b"secret", key)

    with pytest.raises(DecryptionFailed):
        decrypt(sealed.ciphertext, sealed.nonce, rand_bytes(32))


def test_tampered_ciphertext_fails():
    """Flipping any ciphertext bit is detected."""
    key = rand_bytes(32)
    sealed = encrypt(b"do not touch", key)
    tampered = bytearray(sealed.ciphertext)
    tampered[0] ^= 0x01

    with pytest.raises(DecryptionFailed):
        decrypt(bytes(tampered), sealed.nonce, key)


def test_fresh_nonce_per_call():
    """Two encryptions under one key never share a nonce."""
    key = rand_bytes(32)
    first = encrypt(b"same", key)
    second = encrypt(b"same", key)

    assert first.nonce != second.nonce
    assert first.ciphertext != second.ciphertext


def test_associated_data_is_bound():
    """Ciphertext only opens with the associated data it was sealed with."""
    key = rand_bytes(32)
    sealed = encrypt_with_ad(b"payload", key, b"header-1")

    assert decrypt_with_ad(sealed.ciphertext, sealed.nonce, key, b"header-1") == b"payload"
    with pytest.raises(DecryptionFailed):
        decrypt_with_ad(sealed.ciphertext, sealed.nonce, key, b"header-2")
    with pytest.raises(DecryptionFailed):
        decrypt(sealed.ciphertext, sealed.nonce, key)


def test_failures_look_identical():
    """Wrong key, wrong AD and bad ciphertext give the same error text."""
    key = rand_bytes(32)
    sealed = encrypt_with_ad(b"payload", key, b"ad")
    messages = set()

    for args in (
        (sealed.ciphertext, sealed.nonce, rand_bytes(32), b"ad"),
        (sealed.ciphertext, sealed.nonce, key, b"other"),
        (sealed.ciphertext[:-1] + bytes([sealed.ciphertext[-1] ^ 0xFF]), sealed.nonce, key, b"ad"),
        (b"short", sealed.nonce, key, b"ad"),
    ):
        with pytest.raises(DecryptionFailed) as exc:
            decrypt_with_ad(*args)
        messages.add(str(exc.value))

    assert len(messages) == 1


def test_key_length_checked():
    """Only 32-byte keys are accepted."""
    with pytest.raises(ValueError):
        encrypt(b"data", b"short key")
    with pytest.raises(DecryptionFailed):
        decrypt(b"\x00" * 32, b"\x00" * NONCE_SIZE, b"short key")


def test_zero_bytes():
    """zero_bytes clears a buffer in place."""
    buf = bytearray(b"\x01\x02\x03")
    zero_bytes(buf)
    assert buf == bytearray(3)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
