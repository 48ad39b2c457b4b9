"""g3session error types."""

from typing import Any, Dict, Optional


class SessionError(Exception):
    """Base exception for secure-session errors."""

    code = "SESSION_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class InvalidBundleSignature(SessionError):
    """Signed-prekey signature did not verify against the identity key."""

    code = "VERIFICATION_FAILURE"


class InvalidPublicKey(SessionError):
    """Public key is malformed or of low order."""

    code = "INVALID_PUBLIC_KEY"


class MissingKeyMaterial(SessionError):
    """Required key material has not been generated or was already consumed."""

    code = "MISSING_KEY_MATERIAL"


class DecryptionFailed(SessionError):
    """AEAD decryption failed."""

    code = "AUTHENTICATION_FAILURE"


class UndecryptableMessage(SessionError):
    """No message key can ever be produced for this message."""

    code = "UNDECRYPTABLE_MESSAGE"


class ReplayDetected(UndecryptableMessage):
    """Message number was already consumed on its chain."""

    code = "REPLAY_OR_DESYNC"


class SkippedKeyEvicted(UndecryptableMessage):
    """Cached key for an out-of-order message was evicted before use."""

    code = "CACHE_EVICTION"


class TooManySkippedKeys(UndecryptableMessage):
    """Message would skip more keys than the session allows."""

    code = "TOO_MANY_SKIPPED"


class MalformedMessage(SessionError):
    """Wire data could not be decoded."""

    code = "MALFORMED_MESSAGE"


class ConfigError(SessionError):
    """Configuration error."""

    code = "CONFIG_ERROR"
