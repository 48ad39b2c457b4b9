"""Per-peer sessions: a ratchet, a lock and the AEAD cipher."""

import json
import logging
import threading
from typing import Dict, List, Optional

from .crypto import decrypt_with_ad, encrypt_with_ad, rand_bytes
from .error import MissingKeyMaterial, MalformedMessage
from .handshake import X3DHProtocol
from .kdf import commit_message
from .keystore import KeyStore
from .ratchet import DoubleRatchet
from .types import Envelope, HandshakeMessage, KeyBundle, SessionConfig

logger = logging.getLogger(__name__)


def generate_message_id() -> str:
    return rand_bytes(16).hex()


class Session:
    """Encrypted conversation with one peer."""

    def __init__(self, peer_id: str, ratchet: DoubleRatchet, associated_data: bytes = b""):
        """
        Args:
            peer_id: Opaque peer identifier supplied by the caller
            ratchet: Seeded ratchet owned by this session from now on
            associated_data: X3DH associated data, prefixed to every header AD
        """
        self._lock = threading.Lock()
        self._peer_id = peer_id
        self._ratchet = ratchet
        self._associated_data = bytes(associated_data)

    @property
    def peer_id(self) -> str:
        return self._peer_id

    @property
    def ratchet(self) -> DoubleRatchet:
        return self._ratchet

    @property
    def associated_data(self) -> bytes:
        return self._associated_data

    def encrypt(self, plaintext: bytes) -> Envelope:
        """Encrypt one message, binding the ratchet header as associated data."""
        with self._lock:
            message_key, header = self._ratchet.ratchet_send()
            header_bytes = header.to_bytes()
            try:
                sealed = encrypt_with_ad(plaintext, message_key.key, self._associated_data + header_bytes)
            finally:
                message_key.wipe()

            return Envelope(
                header=header,
                ciphertext=sealed.ciphertext,
                nonce=sealed.nonce,
                commitment=commit_message(header_bytes, sealed.nonce, sealed.ciphertext),
                message_id=generate_message_id(),
            )

    def decrypt(self, envelope: Envelope) -> bytes:
        """
        Decrypt one message.

        The ratchet only advances once the ciphertext authenticates, so a
        forged or corrupted message costs nothing but itself.

        Raises:
            DecryptionFailed: authentication failed
            UndecryptableMessage: replayed, evicted or too far ahead
        """
        with self._lock:
            pending = self._ratchet.prepare_receive(envelope.header)
            try:
                plaintext = decrypt_with_ad(
                    envelope.ciphertext,
                    envelope.nonce,
                    pending.message_key.key,
                    self._associated_data + envelope.header.to_bytes(),
                )
            except Exception:
                pending.discard()
                logger.warning(
                    "Rejected message %d from %s", envelope.header.message_number, self._peer_id
                )
                raise
            pending.commit().wipe()
            return plaintext

    def close(self) -> None:
        with self._lock:
            self._ratchet.destroy()

    def export_state(self) -> str:
        with self._lock:
            return json.dumps({
                "peer_id": self._peer_id,
                "associated_data": self._associated_data.hex(),
                "ratchet": self._ratchet.export_state(),
            })

    @classmethod
    def import_state(cls, state_json: str, config: Optional[SessionConfig] = None) -> "Session":
        try:
            state = json.loads(state_json)
            ratchet = DoubleRatchet.import_state(state["ratchet"], config)
            return cls(state["peer_id"], ratchet, bytes.fromhex(state["associated_data"]))
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedMessage(f"Invalid session state: {e}")


class SessionManager:
    """
    One Session per peer, all backed by one local KeyStore.

    The registry lock only guards the peer map; each session serializes its
    own sends and receives, so different peers proceed in parallel.
    """

    def __init__(self, key_store: KeyStore, config: Optional[SessionConfig] = None):
        self._config = config or SessionConfig()
        self._config.validate()
        self._key_store = key_store
        self._x3dh = X3DHProtocol(key_store)
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    @property
    def key_store(self) -> KeyStore:
        return self._key_store

    def publish_bundle(self) -> KeyBundle:
        """Bundle for the directory; refills the one-time prekey pool when empty."""
        self._key_store.initialize()
        if self._key_store.one_time_prekey_count == 0 and self._config.one_time_prekey_count > 0:
            self._key_store.generate_one_time_prekeys(self._config.one_time_prekey_count)
        return self._key_store.create_bundle()

    def initiate(self, peer_id: str, bundle: KeyBundle) -> HandshakeMessage:
        """
        Start a session from the peer's bundle.

        Returns:
            The handshake message the peer needs to call accept()
        """
        result = self._x3dh.initiate_handshake(bundle)
        ratchet = DoubleRatchet.initiator(result.shared_secret, bundle.signed_prekey, self._config)
        self._register(Session(peer_id, ratchet, result.associated_data))
        return HandshakeMessage(
            identity_key=self._key_store.identity_key,
            ephemeral_key=result.ephemeral_key,
            one_time_prekey=result.one_time_prekey,
        )

    def accept(self, peer_id: str, message: HandshakeMessage) -> Session:
        """Complete a session started by the peer."""
        result = self._x3dh.accept(message)
        ratchet = DoubleRatchet.responder(
            result.shared_secret, self._key_store.signed_prekey.key_pair, self._config
        )
        session = Session(peer_id, ratchet, result.associated_data)
        self._register(session)
        return session

    def _register(self, session: Session) -> None:
        with self._lock:
            previous = self._sessions.get(session.peer_id)
            self._sessions[session.peer_id] = session
        if previous is not None:
            previous.close()
            logger.info("Replaced session with %s", session.peer_id)
        else:
            logger.info("Opened session with %s", session.peer_id)

    def session(self, peer_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(peer_id)
        if session is None:
            raise MissingKeyMaterial(f"No session with {peer_id}", {"peer_id": peer_id})
        return session

    def has_session(self, peer_id: str) -> bool:
        with self._lock:
            return peer_id in self._sessions

    def peers(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def encrypt(self, peer_id: str, plaintext: bytes) -> Envelope:
        return self.session(peer_id).encrypt(plaintext)

    def decrypt(self, peer_id: str, envelope: Envelope) -> bytes:
        return self.session(peer_id).decrypt(envelope)

    def close_session(self, peer_id: str) -> bool:
        """Destroy a session's key material; False if there was none."""
        with self._lock:
            session = self._sessions.pop(peer_id, None)
        if session is None:
            return False
        session.close()
        logger.info("Closed session with %s", peer_id)
        return True

    def close_all(self) -> None:
        for peer_id in self.peers():
            self.close_session(peer_id)

    def export_session(self, peer_id: str) -> str:
        return self.session(peer_id).export_state()

    def import_session(self, state_json: str) -> Session:
        session = Session.import_state(state_json, self._config)
        self._register(session)
        return session
