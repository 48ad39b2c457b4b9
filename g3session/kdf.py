"""Key derivation functions using HKDF-SHA256 and HMAC-SHA256."""

import hashlib
import hmac
from typing import Iterable, Tuple

from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import HKDF

from .types import (
    KEY_LEN,
    X3DH_INFO,
    X3DH_PAD,
    RATCHET_INIT_INFO,
    RATCHET_ROOT_INFO,
    MESSAGE_KEY_SEED,
    CHAIN_KEY_SEED,
    COMMITMENT_PREFIX,
)
from .crypto import zero_bytes


def hkdf_expand_with_salt(secret: bytes, salt: bytes, info: bytes, length: int = KEY_LEN) -> bytearray:
    """HKDF-SHA256 extract-and-expand. An empty salt means a zero salt."""
    return bytearray(HKDF(bytes(secret), length, salt=bytes(salt), hashmod=SHA256, num_keys=1, context=info))


def derive_x3dh_secret(dh_outputs: Iterable[bytes]) -> bytearray:
    """
    Combine X3DH agreements into the shared secret.

    SK = HKDF(0xFF*32 || DH1 || DH2 || DH3 [|| DH4], salt=0, "G3ZKP-X3DH")

    Args:
        dh_outputs: DH results in protocol order

    Returns:
        32-byte shared secret
    """
    ikm = bytearray(X3DH_PAD)
    for dh in dh_outputs:
        ikm += dh
    try:
        return hkdf_expand_with_salt(ikm, b"", X3DH_INFO)
    finally:
        zero_bytes(ikm)


def derive_initial_root_key(shared_secret: bytes) -> bytearray:
    """Seed the ratchet root key from the X3DH shared secret."""
    return hkdf_expand_with_salt(shared_secret, b"", RATCHET_INIT_INFO)


def kdf_rk(root_key: bytes, dh_output: bytes) -> Tuple[bytearray, bytearray]:
    """
    Root KDF for a DH ratchet step.

    RK' || CK = HKDF(ikm=DH, salt=RK, "G3ZKP-Ratchet-Root")

    Returns:
        Tuple of (new_root_key, new_chain_key)
    """
    out = hkdf_expand_with_salt(dh_output, root_key, RATCHET_ROOT_INFO, 2 * KEY_LEN)
    try:
        return out[:KEY_LEN], out[KEY_LEN:]
    finally:
        zero_bytes(out)


def kdf_ck(chain_key: bytes) -> Tuple[bytearray, bytearray]:
    """
    Symmetric chain step.

    MK = HMAC(CK, 0x01), CK' = HMAC(CK, 0x02)

    Returns:
        Tuple of (next_chain_key, message_key)
    """
    ck = bytes(chain_key)
    message_key = bytearray(hmac.new(ck, MESSAGE_KEY_SEED, hashlib.sha256).digest())
    next_chain_key = bytearray(hmac.new(ck, CHAIN_KEY_SEED, hashlib.sha256).digest())
    return next_chain_key, message_key


def key_fingerprint(public_key: bytes) -> str:
    """Short identifier for a public key: hex of the first 8 bytes of SHA-256."""
    return hashlib.sha256(public_key).hexdigest()[:16]


def commit_message(header: bytes, nonce: bytes, ciphertext: bytes) -> str:
    """
    SHA-256 commitment over an encrypted message.

    Handed to the proof-of-authenticity subsystem; it never feeds back into
    the ratchet.
    """
    h = hashlib.sha256()
    h.update(COMMITMENT_PREFIX)
    h.update(header)
    h.update(nonce)
    h.update(ciphertext)
    return h.hexdigest()


def constant_time_compare(a: bytes, b: bytes) -> bool:
    return hmac.compare_digest(a, b)
