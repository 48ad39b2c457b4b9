"""
g3session: secure-session core for peer-to-peer messaging

Establishes and evolves the symmetric keys of an end-to-end encrypted
conversation.

Features:
- X3DH key agreement over X25519 with Ed25519-signed prekeys
- Double Ratchet with forward secrecy and post-compromise recovery
- Bounded skipped-key cache for out-of-order delivery
- XChaCha20-Poly1305 AEAD with the ratchet header as associated data

Transport, discovery and persistence are left to the caller; ratchet and
key store state can be exported and imported as JSON.
"""

from .types import (
    KEY_LEN,
    PUBLIC_KEY_SIZE,
    SIGNATURE_SIZE,
    NONCE_SIZE,
    HEADER_SIZE,
    X3DH_INFO,
    RATCHET_INIT_INFO,
    RATCHET_ROOT_INFO,
    SessionConfig,
    KeyPair,
    IdentityKeys,
    SignedPreKey,
    MessageKey,
    KeyBundle,
    RatchetHeader,
    HandshakeMessage,
    Envelope,
)
from .crypto import (
    EncryptedData,
    encrypt,
    decrypt,
    encrypt_with_ad,
    decrypt_with_ad,
    rand_bytes,
    zero_bytes,
)
from .kdf import (
    derive_x3dh_secret,
    derive_initial_root_key,
    kdf_rk,
    kdf_ck,
    commit_message,
)
from .handshake import (
    generate_x25519_keypair,
    generate_signing_keypair,
    x25519_shared_secret,
    X3DHProtocol,
    X3DHResult,
)
from .keystore import KeyStore
from .skipped import SkippedKeyCache
from .ratchet import DoubleRatchet, PendingReceive
from .session import Session, SessionManager
from .error import (
    SessionError,
    InvalidBundleSignature,
    InvalidPublicKey,
    MissingKeyMaterial,
    DecryptionFailed,
    UndecryptableMessage,
    ReplayDetected,
    SkippedKeyEvicted,
    TooManySkippedKeys,
    MalformedMessage,
    ConfigError,
)

__version__ = "0.1.0"
__all__ = [
    # Constants
    "KEY_LEN",
    "PUBLIC_KEY_SIZE",
    "SIGNATURE_SIZE",
    "NONCE_SIZE",
    "HEADER_SIZE",
    "X3DH_INFO",
    "RATCHET_INIT_INFO",
    "RATCHET_ROOT_INFO",
    # Types
    "SessionConfig",
    "KeyPair",
    "IdentityKeys",
    "SignedPreKey",
    "MessageKey",
    "KeyBundle",
    "RatchetHeader",
    "HandshakeMessage",
    "Envelope",
    # AEAD
    "EncryptedData",
    "encrypt",
    "decrypt",
    "encrypt_with_ad",
    "decrypt_with_ad",
    "rand_bytes",
    "zero_bytes",
    # KDF
    "derive_x3dh_secret",
    "derive_initial_root_key",
    "kdf_rk",
    "kdf_ck",
    "commit_message",
    # Handshake
    "generate_x25519_keypair",
    "generate_signing_keypair",
    "x25519_shared_secret",
    "X3DHProtocol",
    "X3DHResult",
    # Key store
    "KeyStore",
    # Ratchet
    "SkippedKeyCache",
    "DoubleRatchet",
    "PendingReceive",
    # Session
    "Session",
    "SessionManager",
    # Errors
    "SessionError",
    "InvalidBundleSignature",
    "InvalidPublicKey",
    "MissingKeyMaterial",
    "DecryptionFailed",
    "UndecryptableMessage",
    "ReplayDetected",
    "SkippedKeyEvicted",
    "TooManySkippedKeys",
    "MalformedMessage",
    "ConfigError",
]
