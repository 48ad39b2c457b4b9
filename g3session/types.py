"""Constants and types for the g3session protocol."""

import base64
import os
import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from .error import ConfigError, MalformedMessage


# Key length in bytes
KEY_LEN: int = 32

# Curve25519 / Ed25519 sizes
PUBLIC_KEY_SIZE: int = 32
SIGNATURE_SIZE: int = 64

# XChaCha20-Poly1305
NONCE_SIZE: int = 24
TAG_SIZE: int = 16

# KDF info strings
X3DH_INFO: bytes = b"G3ZKP-X3DH"
RATCHET_INIT_INFO: bytes = b"G3ZKP-Ratchet-Init"
RATCHET_ROOT_INFO: bytes = b"G3ZKP-Ratchet-Root"

# X3DH discontinuity prefix for X25519
X3DH_PAD: bytes = b"\xff" * 32

# Chain KDF constants
MESSAGE_KEY_SEED: bytes = b"\x01"
CHAIN_KEY_SEED: bytes = b"\x02"

# Commitment prefix handed to the proof subsystem
COMMITMENT_PREFIX: bytes = b"G3ZKP-Commit"

# Defaults
DEFAULT_MAX_SKIP: int = 1000
DEFAULT_MAX_SKIPPED_KEYS: int = 1000
DEFAULT_ONE_TIME_PREKEYS: int = 100
DEFAULT_MAX_ISSUED_PREKEYS: int = 100

# Header: ratchet public key, previous chain length, message number
_HEADER_FORMAT = ">32sII"
HEADER_SIZE: int = struct.calcsize(_HEADER_FORMAT)

_U32_MAX = 0xFFFFFFFF


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data)


def _read_optional_key(data: bytes, offset: int, what: str) -> Optional[bytes]:
    """Decode a presence flag followed by an optional 32-byte key."""
    if len(data) < offset + 1:
        raise MalformedMessage(f"{what} truncated")
    flag = data[offset]
    rest = data[offset + 1:]
    if flag == 0:
        if rest:
            raise MalformedMessage(f"{what} has trailing bytes")
        return None
    if flag != 1:
        raise MalformedMessage(f"{what} has invalid presence flag {flag}")
    if len(rest) != PUBLIC_KEY_SIZE:
        raise MalformedMessage(f"{what} one-time prekey must be {PUBLIC_KEY_SIZE} bytes")
    return bytes(rest)


def _write_optional_key(key: Optional[bytes]) -> bytes:
    if key is None:
        return b"\x00"
    return b"\x01" + key


@dataclass
class KeyPair:
    """A Curve25519 or Ed25519 key pair; the secret is zeroable in place."""

    public: bytes
    secret: bytearray

    def wipe(self) -> None:
        """Overwrite the secret half."""
        # Note: Python doesn't guarantee memory clearing, but we overwrite anyway
        for i in range(len(self.secret)):
            self.secret[i] = 0


@dataclass
class IdentityKeys:
    """Long-term identity material.

    ``identity`` is the X25519 pair used in DH; ``signing`` is the Ed25519
    pair it is derived from. The published identity key is
    ``signing.public``.
    """

    identity: KeyPair
    signing: KeyPair
    key_id: str
    created_at: datetime = field(default_factory=_now)


@dataclass
class SignedPreKey:
    """Medium-term prekey and its signature by the identity signing key."""

    key_pair: KeyPair
    signature: bytes
    key_id: str
    created_at: datetime = field(default_factory=_now)


@dataclass
class MessageKey:
    """Single-use key for one message on one chain."""

    key: bytearray
    number: int
    ratchet_public_key: bytes

    @property
    def index(self) -> Tuple[bytes, int]:
        return self.ratchet_public_key, self.number

    def wipe(self) -> None:
        for i in range(len(self.key)):
            self.key[i] = 0


@dataclass(frozen=True)
class KeyBundle:
    """Public material a peer publishes so others can start a session."""

    identity_key: bytes
    signed_prekey: bytes
    signed_prekey_signature: bytes
    one_time_prekey: Optional[bytes] = None

    def to_bytes(self) -> bytes:
        """Serialize to the fixed wire layout."""
        return (
            self.identity_key
            + self.signed_prekey
            + self.signed_prekey_signature
            + _write_optional_key(self.one_time_prekey)
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "KeyBundle":
        """Parse the wire layout, raises MalformedMessage."""
        fixed = 2 * PUBLIC_KEY_SIZE + SIGNATURE_SIZE
        if len(data) < fixed + 1:
            raise MalformedMessage("Key bundle truncated")
        return cls(
            identity_key=bytes(data[:PUBLIC_KEY_SIZE]),
            signed_prekey=bytes(data[PUBLIC_KEY_SIZE:2 * PUBLIC_KEY_SIZE]),
            signed_prekey_signature=bytes(data[2 * PUBLIC_KEY_SIZE:fixed]),
            one_time_prekey=_read_optional_key(data, fixed, "Key bundle"),
        )

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {
            "identity_key": self.identity_key.hex(),
            "signed_prekey": self.signed_prekey.hex(),
            "signed_prekey_signature": self.signed_prekey_signature.hex(),
            "one_time_prekey": self.one_time_prekey.hex() if self.one_time_prekey else None,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "KeyBundle":
        """Create from dictionary"""
        return cls(
            identity_key=bytes.fromhex(data["identity_key"]),
            signed_prekey=bytes.fromhex(data["signed_prekey"]),
            signed_prekey_signature=bytes.fromhex(data["signed_prekey_signature"]),
            one_time_prekey=bytes.fromhex(data["one_time_prekey"]) if data.get("one_time_prekey") else None,
        )


@dataclass(frozen=True)
class RatchetHeader:
    """Header attached to every ciphertext; also bound as associated data."""

    ratchet_public_key: bytes
    previous_chain_length: int
    message_number: int

    def __post_init__(self):
        if len(self.ratchet_public_key) != PUBLIC_KEY_SIZE:
            raise MalformedMessage("Ratchet public key must be 32 bytes")
        for name in ("previous_chain_length", "message_number"):
            value = getattr(self, name)
            if not 0 <= value <= _U32_MAX:
                raise MalformedMessage(f"{name} out of range: {value}")

    def to_bytes(self) -> bytes:
        """Serialize header to its 40-byte wire form."""
        return struct.pack(
            _HEADER_FORMAT,
            self.ratchet_public_key,
            self.previous_chain_length,
            self.message_number,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "RatchetHeader":
        """Deserialize header from its wire form."""
        if len(data) != HEADER_SIZE:
            raise MalformedMessage(f"Header must be {HEADER_SIZE} bytes, got {len(data)}")
        pub, pn, n = struct.unpack(_HEADER_FORMAT, data)
        return cls(ratchet_public_key=pub, previous_chain_length=pn, message_number=n)


@dataclass(frozen=True)
class HandshakeMessage:
    """First-contact data the initiator sends alongside its first envelope."""

    identity_key: bytes
    ephemeral_key: bytes
    one_time_prekey: Optional[bytes] = None

    @property
    def used_one_time_prekey(self) -> bool:
        return self.one_time_prekey is not None

    def to_bytes(self) -> bytes:
        return self.identity_key + self.ephemeral_key + _write_optional_key(self.one_time_prekey)

    @classmethod
    def from_bytes(cls, data: bytes) -> "HandshakeMessage":
        fixed = 2 * PUBLIC_KEY_SIZE
        if len(data) < fixed + 1:
            raise MalformedMessage("Handshake message truncated")
        return cls(
            identity_key=bytes(data[:PUBLIC_KEY_SIZE]),
            ephemeral_key=bytes(data[PUBLIC_KEY_SIZE:fixed]),
            one_time_prekey=_read_optional_key(data, fixed, "Handshake message"),
        )


@dataclass
class Envelope:
    """Encrypted message as handed to the transport.

    ``commitment`` and ``message_id`` are consumed by the proof subsystem;
    they do not take part in decryption.
    """

    header: RatchetHeader
    ciphertext: bytes
    nonce: bytes
    commitment: str = ""
    message_id: str = ""

    def to_dict(self) -> Dict:
        return {
            "header": _b64(self.header.to_bytes()),
            "ciphertext": _b64(self.ciphertext),
            "nonce": _b64(self.nonce),
            "commitment": self.commitment,
            "message_id": self.message_id,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Envelope":
        try:
            return cls(
                header=RatchetHeader.from_bytes(_unb64(data["header"])),
                ciphertext=_unb64(data["ciphertext"]),
                nonce=_unb64(data["nonce"]),
                commitment=data.get("commitment", ""),
                message_id=data.get("message_id", ""),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise MalformedMessage(f"Invalid envelope: {e}")


@dataclass
class SessionConfig:
    """Limits applied to every session."""

    max_skip: int = DEFAULT_MAX_SKIP  # keys a single receive may skip
    max_skipped_keys: int = DEFAULT_MAX_SKIPPED_KEYS  # skipped-key cache capacity
    one_time_prekey_count: int = DEFAULT_ONE_TIME_PREKEYS

    @classmethod
    def default(cls) -> "SessionConfig":
        """Return the default configuration."""
        return cls()

    @classmethod
    def from_env(cls) -> "SessionConfig":
        """Build a configuration from G3SESSION_* environment variables."""
        def _int(name: str, fallback: int) -> int:
            raw = os.environ.get(name)
            if raw is None or raw == "":
                return fallback
            try:
                return int(raw)
            except ValueError:
                raise ConfigError(f"{name} must be an integer, got {raw!r}")

        config = cls(
            max_skip=_int("G3SESSION_MAX_SKIP", DEFAULT_MAX_SKIP),
            max_skipped_keys=_int("G3SESSION_MAX_SKIPPED_KEYS", DEFAULT_MAX_SKIPPED_KEYS),
            one_time_prekey_count=_int("G3SESSION_ONE_TIME_PREKEYS", DEFAULT_ONE_TIME_PREKEYS),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate the configuration, raises ConfigError if invalid."""
        if self.max_skip < 0:
            raise ConfigError("max_skip must be >= 0")
        if self.max_skipped_keys < 1:
            raise ConfigError("max_skipped_keys must be >= 1")
        if self.one_time_prekey_count < 0:
            raise ConfigError("one_time_prekey_count must be >= 0")
