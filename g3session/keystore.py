"""Long-term and prekey material for one local identity."""

import json
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional

from .error import MissingKeyMaterial, MalformedMessage
from .handshake import (
    generate_signing_keypair,
    generate_x25519_keypair,
    x25519_keypair_from_signing,
    sign,
)
from .kdf import key_fingerprint
from .types import DEFAULT_MAX_ISSUED_PREKEYS, IdentityKeys, KeyBundle, KeyPair, SignedPreKey

logger = logging.getLogger(__name__)


def _pair_to_dict(pair: KeyPair) -> Dict:
    return {"public": pair.public.hex(), "secret": pair.secret.hex()}


def _pair_from_dict(data: Dict) -> KeyPair:
    return KeyPair(public=bytes.fromhex(data["public"]), secret=bytearray.fromhex(data["secret"]))


class KeyStore:
    """
    Owns the identity key, the signed prekey and the one-time prekey pool.

    One-time prekeys leave the pool through consume_one_time_prekey() only;
    a consumed key is removed, never flagged, so it cannot be handed out twice.
    Keys placed in a published bundle are parked in an issued map until the
    matching handshake arrives. The map holds at most max_issued entries;
    the oldest issued key is wiped and dropped to make room, and a handshake
    naming it then fails with MissingKeyMaterial.
    """

    def __init__(self, max_issued: int = DEFAULT_MAX_ISSUED_PREKEYS):
        if max_issued < 1:
            raise ValueError("max_issued must be positive")
        self._max_issued = max_issued
        self._identity: Optional[IdentityKeys] = None
        self._signed_prekey: Optional[SignedPreKey] = None
        self._one_time_prekeys: "OrderedDict[bytes, KeyPair]" = OrderedDict()
        self._issued_one_time_prekeys: "OrderedDict[bytes, KeyPair]" = OrderedDict()

    def initialize(self, one_time_prekeys: int = 0) -> None:
        """Generate whatever material is missing."""
        if self._identity is None:
            self.generate_identity_keys()
        if self._signed_prekey is None:
            self.generate_signed_prekey()
        missing = one_time_prekeys - len(self._one_time_prekeys)
        if missing > 0:
            self.generate_one_time_prekeys(missing)

    def generate_identity_keys(self) -> IdentityKeys:
        """Create a new identity (replacing and wiping any previous one)."""
        signing = generate_signing_keypair()
        identity = x25519_keypair_from_signing(signing)
        if self._identity is not None:
            self._identity.identity.wipe()
            self._identity.signing.wipe()
        self._identity = IdentityKeys(
            identity=identity,
            signing=signing,
            key_id=key_fingerprint(signing.public),
        )
        logger.info("Generated identity key %s", self._identity.key_id)
        return self._identity

    def generate_signed_prekey(self) -> SignedPreKey:
        """Create and sign a new signed prekey; the previous secret is wiped."""
        signing = self.signing_key_pair
        key_pair = generate_x25519_keypair()
        signed = SignedPreKey(
            key_pair=key_pair,
            signature=sign(signing.secret, key_pair.public),
            key_id=key_fingerprint(key_pair.public),
        )
        if self._signed_prekey is not None:
            self._signed_prekey.key_pair.wipe()
        self._signed_prekey = signed
        logger.info("Rotated signed prekey to %s", signed.key_id)
        return signed

    def generate_one_time_prekeys(self, count: int) -> List[KeyPair]:
        """Add count fresh one-time prekeys to the pool."""
        if count < 1:
            raise ValueError("count must be >= 1")
        pairs = [generate_x25519_keypair() for _ in range(count)]
        for pair in pairs:
            self._one_time_prekeys[pair.public] = pair
        logger.debug("Generated %d one-time prekeys, pool size %d", count, len(self._one_time_prekeys))
        return pairs

    def consume_one_time_prekey(self) -> Optional[KeyPair]:
        """
        Remove and return the oldest one-time prekey.

        Returns None when the pool is empty; callers then proceed without
        one-time prekey protection.
        """
        if not self._one_time_prekeys:
            logger.warning("One-time prekey pool is empty")
            return None
        _, pair = self._one_time_prekeys.popitem(last=False)
        return pair

    def create_bundle(self) -> KeyBundle:
        """Publishable bundle; consumes one one-time prekey when available."""
        signed = self.signed_prekey
        one_time = self.consume_one_time_prekey()
        if one_time is not None:
            self._park_issued(one_time)
        return KeyBundle(
            identity_key=self.identity_key,
            signed_prekey=signed.key_pair.public,
            signed_prekey_signature=signed.signature,
            one_time_prekey=one_time.public if one_time is not None else None,
        )

    def _park_issued(self, pair: KeyPair) -> None:
        self._issued_one_time_prekeys[pair.public] = pair
        while len(self._issued_one_time_prekeys) > self._max_issued:
            public, expired = self._issued_one_time_prekeys.popitem(last=False)
            expired.wipe()
            logger.warning("Dropped unanswered one-time prekey %s", key_fingerprint(public))

    @property
    def issued_one_time_prekey_count(self) -> int:
        return len(self._issued_one_time_prekeys)

    def take_issued_one_time_prekey(self, public_key: bytes) -> Optional[KeyPair]:
        """Remove and return an issued one-time prekey, None if unknown or already taken."""
        return self._issued_one_time_prekeys.pop(bytes(public_key), None)

    def has_identity_key(self) -> bool:
        return self._identity is not None

    @property
    def identity_key(self) -> bytes:
        """The published identity key (Ed25519 form)."""
        return self.signing_key_pair.public

    @property
    def identity_key_pair(self) -> KeyPair:
        if self._identity is None:
            raise MissingKeyMaterial("Identity keys have not been generated")
        return self._identity.identity

    @property
    def signing_key_pair(self) -> KeyPair:
        if self._identity is None:
            raise MissingKeyMaterial("Identity keys have not been generated")
        return self._identity.signing

    @property
    def key_id(self) -> str:
        if self._identity is None:
            raise MissingKeyMaterial("Identity keys have not been generated")
        return self._identity.key_id

    @property
    def signed_prekey(self) -> SignedPreKey:
        if self._signed_prekey is None:
            raise MissingKeyMaterial("Signed prekey has not been generated")
        return self._signed_prekey

    @property
    def one_time_prekey_count(self) -> int:
        return len(self._one_time_prekeys)

    def wipe(self) -> None:
        """Zero and drop all secret material."""
        if self._identity is not None:
            self._identity.identity.wipe()
            self._identity.signing.wipe()
            self._identity = None
        if self._signed_prekey is not None:
            self._signed_prekey.key_pair.wipe()
            self._signed_prekey = None
        for pair in list(self._one_time_prekeys.values()) + list(self._issued_one_time_prekeys.values()):
            pair.wipe()
        self._one_time_prekeys.clear()
        self._issued_one_time_prekeys.clear()

    def export_state(self) -> str:
        """
        Export key material for persistence.

        Returns:
            JSON string of serialized state; contains secrets in hex
        """
        state = {
            "identity": None,
            "signed_prekey": None,
            "one_time_prekeys": [_pair_to_dict(p) for p in self._one_time_prekeys.values()],
            "issued_one_time_prekeys": [_pair_to_dict(p) for p in self._issued_one_time_prekeys.values()],
        }
        if self._identity is not None:
            state["identity"] = {
                "identity": _pair_to_dict(self._identity.identity),
                "signing": _pair_to_dict(self._identity.signing),
                "key_id": self._identity.key_id,
                "created_at": self._identity.created_at.isoformat(),
            }
        if self._signed_prekey is not None:
            state["signed_prekey"] = {
                "key_pair": _pair_to_dict(self._signed_prekey.key_pair),
                "signature": self._signed_prekey.signature.hex(),
                "key_id": self._signed_prekey.key_id,
                "created_at": self._signed_prekey.created_at.isoformat(),
            }
        return json.dumps(state)

    @classmethod
    def import_state(cls, state_json: str, max_issued: int = DEFAULT_MAX_ISSUED_PREKEYS) -> "KeyStore":
        """
        Import key material from persistence.

        Raises:
            MalformedMessage: if the JSON does not describe a key store
        """
        store = cls(max_issued)
        try:
            state = json.loads(state_json)
            identity = state.get("identity")
            if identity is not None:
                store._identity = IdentityKeys(
                    identity=_pair_from_dict(identity["identity"]),
                    signing=_pair_from_dict(identity["signing"]),
                    key_id=identity["key_id"],
                    created_at=datetime.fromisoformat(identity["created_at"]),
                )
            signed = state.get("signed_prekey")
            if signed is not None:
                store._signed_prekey = SignedPreKey(
                    key_pair=_pair_from_dict(signed["key_pair"]),
                    signature=bytes.fromhex(signed["signature"]),
                    key_id=signed["key_id"],
                    created_at=datetime.fromisoformat(signed["created_at"]),
                )
            for data in state.get("one_time_prekeys", []):
                pair = _pair_from_dict(data)
                store._one_time_prekeys[pair.public] = pair
            for data in state.get("issued_one_time_prekeys", []):
                pair = _pair_from_dict(data)
                store._park_issued(pair)
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedMessage(f"Invalid key store state: {e}")
        return store
