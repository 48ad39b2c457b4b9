"""Double Ratchet: DH ratchet plus sending and receiving KDF chains."""

import json
import logging
import threading
from collections import deque
from typing import Deque, List, Optional, Tuple

from .crypto import zero_bytes
from .error import (
    MissingKeyMaterial,
    MalformedMessage,
    ReplayDetected,
    SkippedKeyEvicted,
    TooManySkippedKeys,
)
from .handshake import generate_x25519_keypair, x25519_shared_secret
from .kdf import derive_initial_root_key, kdf_ck, kdf_rk
from .skipped import SkippedKeyCache
from .types import KeyPair, MessageKey, RatchetHeader, SessionConfig

logger = logging.getLogger(__name__)

# Closed receiving chains whose ratchet keys are still recognised
MAX_PREVIOUS_CHAINS = 32


def _wipe(*buffers: Optional[bytearray]) -> None:
    for buf in buffers:
        if buf is not None:
            zero_bytes(buf)


def _short(public_key: Optional[bytes]) -> str:
    return public_key[:4].hex() if public_key else "-"


class PendingReceive:
    """
    A message key derived by DoubleRatchet.prepare_receive but not yet applied.

    commit() applies the state change and hands over the key; discard() drops
    every derived secret and leaves the ratchet as it was.
    """

    def __init__(
        self,
        generation: int,
        message_key: MessageKey,
        from_cache: bool = False,
        root_key: Optional[bytearray] = None,
        receiving_chain_key: Optional[bytearray] = None,
        receiving_count: int = 0,
        remote_key: Optional[bytes] = None,
        skipped: Optional[List[MessageKey]] = None,
    ):
        self.generation = generation
        self.message_key = message_key
        self.from_cache = from_cache
        self.root_key = root_key
        self.receiving_chain_key = receiving_chain_key
        self.receiving_count = receiving_count
        self.remote_key = remote_key
        self.skipped = skipped or []
        self._ratchet: Optional["DoubleRatchet"] = None
        self._resolved = False

    @property
    def dh_step(self) -> bool:
        return self.root_key is not None

    def commit(self) -> MessageKey:
        if self._resolved:
            raise RuntimeError("Pending receive already resolved")
        try:
            self._ratchet._commit_receive(self)
        except Exception:
            self.discard()
            raise
        self._resolved = True
        return self.message_key

    def discard(self) -> None:
        if self._resolved:
            return
        self._resolved = True
        if not self.from_cache:
            self.message_key.wipe()
        for key in self.skipped:
            key.wipe()
        _wipe(self.root_key, self.receiving_chain_key)


class DoubleRatchet:
    """
    Per-session ratchet state.

    Message numbers start at 1 on every chain: the first ratchet_send() after
    a DH ratchet step yields message number 1, and previous_chain_length is
    the number of messages sent on the chain before it. The receiving
    counter is the highest message number derived on the current receiving
    chain (0 when none yet).

    All public methods take the instance lock, so send and receive on one
    session are serialized. Different sessions share nothing.
    """

    def __init__(self, root_key: bytearray, config: Optional[SessionConfig] = None):
        self._config = config or SessionConfig()
        self._config.validate()
        self._lock = threading.RLock()

        self._root_key: Optional[bytearray] = root_key
        self._sending_chain_key: Optional[bytearray] = None
        self._receiving_chain_key: Optional[bytearray] = None
        self._local_ratchet: Optional[KeyPair] = None
        self._remote_ratchet_key: Optional[bytes] = None
        self._previous_remote_keys: Deque[bytes] = deque(maxlen=MAX_PREVIOUS_CHAINS)

        self._sending_count: int = 0
        self._receiving_count: int = 0
        self._previous_chain_length: int = 0
        self._dh_step_pending: bool = False
        self._generation: int = 0

        self._skipped = SkippedKeyCache(self._config.max_skipped_keys)

    @staticmethod
    def _seed(shared_secret: bytes) -> bytearray:
        root_key = derive_initial_root_key(shared_secret)
        if isinstance(shared_secret, bytearray):
            zero_bytes(shared_secret)
        return root_key

    @classmethod
    def initiator(
        cls,
        shared_secret: bytes,
        remote_ratchet_key: bytes,
        config: Optional[SessionConfig] = None,
    ) -> "DoubleRatchet":
        """
        Seed the side that sends first.

        Args:
            shared_secret: X3DH output; wiped here when it is a bytearray
            remote_ratchet_key: The responder's signed prekey public key
        """
        ratchet = cls(cls._seed(shared_secret), config)
        ratchet._remote_ratchet_key = bytes(remote_ratchet_key)
        return ratchet

    @classmethod
    def responder(
        cls,
        shared_secret: bytes,
        ratchet_key_pair: KeyPair,
        config: Optional[SessionConfig] = None,
    ) -> "DoubleRatchet":
        """
        Seed the side that receives first.

        Args:
            shared_secret: X3DH output; wiped here when it is a bytearray
            ratchet_key_pair: Our signed prekey pair (copied, the caller keeps its own)
        """
        ratchet = cls(cls._seed(shared_secret), config)
        ratchet._local_ratchet = KeyPair(
            public=ratchet_key_pair.public,
            secret=bytearray(ratchet_key_pair.secret),
        )
        return ratchet

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def sending_count(self) -> int:
        return self._sending_count

    @property
    def receiving_count(self) -> int:
        return self._receiving_count

    @property
    def previous_chain_length(self) -> int:
        return self._previous_chain_length

    @property
    def local_ratchet_key(self) -> Optional[bytes]:
        return self._local_ratchet.public if self._local_ratchet else None

    @property
    def remote_ratchet_key(self) -> Optional[bytes]:
        return self._remote_ratchet_key

    @property
    def dh_step_pending(self) -> bool:
        return self._dh_step_pending

    @property
    def skipped_keys(self) -> SkippedKeyCache:
        return self._skipped

    @property
    def destroyed(self) -> bool:
        return self._root_key is None

    def header(self) -> RatchetHeader:
        """Header describing the current sending chain."""
        with self._lock:
            if self._local_ratchet is None:
                raise MissingKeyMaterial("No local ratchet key yet")
            return RatchetHeader(
                ratchet_public_key=self._local_ratchet.public,
                previous_chain_length=self._previous_chain_length,
                message_number=self._sending_count,
            )

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def ratchet_send(self) -> Tuple[MessageKey, RatchetHeader]:
        """
        Derive the key and header for the next outgoing message.

        A DH ratchet step runs first when there is no sending chain yet or
        the last receive saw a new remote ratchet key.

        Raises:
            MissingKeyMaterial: before the remote ratchet key is known, or after destroy()
        """
        with self._lock:
            self._check_alive()
            root_key = self._root_key
            chain_key = self._sending_chain_key
            local = self._local_ratchet
            previous_chain_length = self._previous_chain_length
            count = self._sending_count

            stepped = chain_key is None or self._dh_step_pending
            if stepped:
                if self._remote_ratchet_key is None:
                    raise MissingKeyMaterial("Remote ratchet key unknown; cannot open a sending chain")
                local = generate_x25519_keypair()
                try:
                    dh_output = x25519_shared_secret(local.secret, self._remote_ratchet_key)
                except Exception:
                    local.wipe()
                    raise
                try:
                    root_key, chain_key = kdf_rk(self._root_key, dh_output)
                finally:
                    zero_bytes(dh_output)
                previous_chain_length = self._sending_count
                count = 0

            next_chain_key, mk = kdf_ck(chain_key)
            count += 1

            _wipe(self._sending_chain_key)
            if stepped:
                _wipe(chain_key, self._root_key)
                if self._local_ratchet is not None:
                    self._local_ratchet.wipe()
                self._root_key = root_key
                self._local_ratchet = local
                self._previous_chain_length = previous_chain_length
                self._dh_step_pending = False
                logger.debug(
                    "Sending DH ratchet step: local %s, remote %s, previous chain %d",
                    _short(local.public),
                    _short(self._remote_ratchet_key),
                    previous_chain_length,
                )
            self._sending_chain_key = next_chain_key
            self._sending_count = count
            self._generation += 1

            message_key = MessageKey(key=mk, number=count, ratchet_public_key=local.public)
            header = RatchetHeader(
                ratchet_public_key=local.public,
                previous_chain_length=previous_chain_length,
                message_number=count,
            )
            return message_key, header

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------

    def ratchet_receive(self, header: RatchetHeader) -> MessageKey:
        """
        Derive the key for an incoming message and apply the state change.

        Raises:
            SkippedKeyEvicted: the cached key for this message was evicted
            ReplayDetected: the message number was already consumed
            TooManySkippedKeys: the header would skip more than config.max_skip keys
            InvalidPublicKey: the header's ratchet key is unusable
            MissingKeyMaterial: no local ratchet key, or after destroy()
        """
        with self._lock:
            return self.prepare_receive(header).commit()

    def prepare_receive(self, header: RatchetHeader) -> PendingReceive:
        """Derive the key for an incoming message without changing any state."""
        with self._lock:
            self._check_alive()
            pub = header.ratchet_public_key
            number = header.message_number

            cached = self._skipped.get(pub, number)
            if cached is not None:
                logger.debug("Using skipped key for message %d on chain %s", number, _short(pub))
                return self._pending(PendingReceive(self._generation, cached, from_cache=True))

            if self._skipped.was_evicted(pub, number):
                raise SkippedKeyEvicted(
                    "Message key was evicted from the skipped-key cache",
                    {"message_number": number},
                )

            if pub == self._remote_ratchet_key:
                return self._pending(self._plan_current_chain(header))
            if pub in self._previous_remote_keys:
                raise ReplayDetected(
                    "Message on a closed chain was already consumed",
                    {"message_number": number},
                )
            return self._pending(self._plan_new_chain(header))

    def _pending(self, pending: PendingReceive) -> PendingReceive:
        pending._ratchet = self
        return pending

    def _plan_current_chain(self, header: RatchetHeader) -> PendingReceive:
        number = header.message_number
        if self._receiving_chain_key is None or number <= self._receiving_count:
            raise ReplayDetected("Message number already consumed", {"message_number": number})
        if number - self._receiving_count - 1 > self._config.max_skip:
            raise TooManySkippedKeys(
                "Too many skipped messages",
                {"skipped": number - self._receiving_count - 1},
            )

        keys, chain_key = self._advance(
            self._receiving_chain_key, self._receiving_count, number, header.ratchet_public_key
        )
        message_key = keys.pop()
        return PendingReceive(
            self._generation,
            message_key,
            receiving_chain_key=chain_key,
            receiving_count=number,
            skipped=keys,
        )

    def _plan_new_chain(self, header: RatchetHeader) -> PendingReceive:
        number = header.message_number
        if self._local_ratchet is None:
            raise MissingKeyMaterial("No local ratchet key to answer a new remote ratchet key")
        if number < 1:
            raise ReplayDetected("Message numbers start at 1", {"message_number": number})

        old_skip = 0
        if self._receiving_chain_key is not None:
            old_skip = max(0, header.previous_chain_length - self._receiving_count)
        if old_skip + number - 1 > self._config.max_skip:
            raise TooManySkippedKeys(
                "Too many skipped messages",
                {"skipped": old_skip + number - 1},
            )

        dh_output = x25519_shared_secret(self._local_ratchet.secret, header.ratchet_public_key)
        try:
            root_key, new_chain_key = kdf_rk(self._root_key, dh_output)
        finally:
            zero_bytes(dh_output)

        skipped: List[MessageKey] = []
        if old_skip:
            skipped, old_chain_key = self._advance(
                self._receiving_chain_key,
                self._receiving_count,
                header.previous_chain_length,
                self._remote_ratchet_key,
            )
            zero_bytes(old_chain_key)

        keys, chain_key = self._advance(new_chain_key, 0, number, header.ratchet_public_key)
        zero_bytes(new_chain_key)
        message_key = keys.pop()
        return PendingReceive(
            self._generation,
            message_key,
            root_key=root_key,
            receiving_chain_key=chain_key,
            receiving_count=number,
            remote_key=header.ratchet_public_key,
            skipped=skipped + keys,
        )

    @staticmethod
    def _advance(
        chain_key: bytes, start: int, stop: int, ratchet_public_key: bytes
    ) -> Tuple[List[MessageKey], bytearray]:
        """Keys for message numbers start+1..stop, and the chain key after stop."""
        ck = bytearray(chain_key)
        keys: List[MessageKey] = []
        for number in range(start + 1, stop + 1):
            next_ck, mk = kdf_ck(ck)
            zero_bytes(ck)
            ck = next_ck
            keys.append(MessageKey(key=mk, number=number, ratchet_public_key=ratchet_public_key))
        return keys, ck

    def _commit_receive(self, pending: PendingReceive) -> None:
        with self._lock:
            if pending.generation != self._generation:
                raise ReplayDetected("Ratchet state changed since the message key was derived")

            if pending.from_cache:
                self._skipped.take(*pending.message_key.index)
            else:
                if pending.dh_step:
                    if self._remote_ratchet_key is not None:
                        self._previous_remote_keys.append(self._remote_ratchet_key)
                    _wipe(self._root_key)
                    self._root_key = pending.root_key
                    self._remote_ratchet_key = pending.remote_key
                    self._dh_step_pending = True
                    logger.debug(
                        "Receiving DH ratchet step: remote %s, %d keys skipped",
                        _short(pending.remote_key),
                        len(pending.skipped),
                    )
                _wipe(self._receiving_chain_key)
                self._receiving_chain_key = pending.receiving_chain_key
                self._receiving_count = pending.receiving_count
                for key in pending.skipped:
                    self._skipped.put(key)
            self._generation += 1

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _check_alive(self) -> None:
        if self._root_key is None:
            raise MissingKeyMaterial("Ratchet state has been destroyed")

    def destroy(self) -> None:
        """Zero all key material; the ratchet is unusable afterwards."""
        with self._lock:
            _wipe(self._root_key, self._sending_chain_key, self._receiving_chain_key)
            if self._local_ratchet is not None:
                self._local_ratchet.wipe()
            self._skipped.clear()
            self._root_key = None
            self._sending_chain_key = None
            self._receiving_chain_key = None
            self._local_ratchet = None
            self._generation += 1

    def export_state(self) -> str:
        """
        Export ratchet state for persistence.

        Returns:
            JSON string of serialized state; contains secrets in hex
        """
        with self._lock:
            self._check_alive()
            state_dict = {
                "root_key": self._root_key.hex(),
                "sending_chain_key": self._sending_chain_key.hex() if self._sending_chain_key else None,
                "receiving_chain_key": self._receiving_chain_key.hex() if self._receiving_chain_key else None,
                "local_ratchet": {
                    "public": self._local_ratchet.public.hex(),
                    "secret": self._local_ratchet.secret.hex(),
                } if self._local_ratchet else None,
                "remote_ratchet_key": self._remote_ratchet_key.hex() if self._remote_ratchet_key else None,
                "previous_remote_keys": [k.hex() for k in self._previous_remote_keys],
                "sending_count": self._sending_count,
                "receiving_count": self._receiving_count,
                "previous_chain_length": self._previous_chain_length,
                "dh_step_pending": self._dh_step_pending,
                "skipped_keys": [
                    [k.ratchet_public_key.hex(), k.number, k.key.hex()] for k in self._skipped
                ],
                "evicted": [[pub.hex(), number] for pub, number in self._skipped.evicted()],
            }
            return json.dumps(state_dict)

    @classmethod
    def import_state(cls, state_json: str, config: Optional[SessionConfig] = None) -> "DoubleRatchet":
        """
        Import ratchet state from persistence.

        Raises:
            MalformedMessage: if the JSON does not describe a ratchet
        """
        def _opt(value: Optional[str]) -> Optional[bytearray]:
            return bytearray.fromhex(value) if value else None

        try:
            state = json.loads(state_json)
            instance = cls(bytearray.fromhex(state["root_key"]), config)
            instance._sending_chain_key = _opt(state["sending_chain_key"])
            instance._receiving_chain_key = _opt(state["receiving_chain_key"])
            local = state["local_ratchet"]
            if local:
                instance._local_ratchet = KeyPair(
                    public=bytes.fromhex(local["public"]),
                    secret=bytearray.fromhex(local["secret"]),
                )
            remote = state["remote_ratchet_key"]
            instance._remote_ratchet_key = bytes.fromhex(remote) if remote else None
            instance._previous_remote_keys.extend(bytes.fromhex(k) for k in state.get("previous_remote_keys", []))
            instance._sending_count = int(state["sending_count"])
            instance._receiving_count = int(state["receiving_count"])
            instance._previous_chain_length = int(state["previous_chain_length"])
            instance._dh_step_pending = bool(state.get("dh_step_pending", False))
            for pub, number in state.get("evicted", []):
                instance._skipped.mark_evicted((bytes.fromhex(pub), int(number)))
            for pub, number, key in state.get("skipped_keys", []):
                instance._skipped.put(MessageKey(
                    key=bytearray.fromhex(key),
                    number=int(number),
                    ratchet_public_key=bytes.fromhex(pub),
                ))
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedMessage(f"Invalid ratchet state: {e}")
        return instance
