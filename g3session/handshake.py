"""X3DH key agreement over X25519 with Ed25519-signed prekeys."""

import logging
from dataclasses import dataclass
from typing import List, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
import xeddsa

from .crypto import zero_bytes
from .error import InvalidBundleSignature, InvalidPublicKey, MissingKeyMaterial
from .kdf import derive_x3dh_secret, key_fingerprint
from .types import KeyBundle, KeyPair, HandshakeMessage, PUBLIC_KEY_SIZE

logger = logging.getLogger(__name__)


def generate_x25519_keypair() -> KeyPair:
    """Generate a new X25519 key pair."""
    private_key = X25519PrivateKey.generate()
    return KeyPair(
        public=private_key.public_key().public_bytes_raw(),
        secret=bytearray(private_key.private_bytes_raw()),
    )


def generate_signing_keypair() -> KeyPair:
    """Generate a new Ed25519 key pair; the secret is the 32-byte seed."""
    private_key = Ed25519PrivateKey.generate()
    return KeyPair(
        public=private_key.public_key().public_bytes_raw(),
        secret=bytearray(private_key.private_bytes_raw()),
    )


def ed25519_public_to_x25519(public_key: bytes) -> bytes:
    """
    Map an Ed25519 public key to its X25519 form.

    Raises:
        InvalidPublicKey: if the encoding is not a point of the main subgroup
    """
    if len(public_key) != PUBLIC_KEY_SIZE:
        raise InvalidPublicKey("Identity key must be 32 bytes")
    try:
        return xeddsa.ed25519_pub_to_curve25519_pub(bytes(public_key))
    except xeddsa.XEdDSAException:
        raise InvalidPublicKey("Identity key is not a valid curve point") from None


def x25519_keypair_from_signing(signing: KeyPair) -> KeyPair:
    """
    Derive the X25519 identity pair that matches an Ed25519 signing pair.

    The X25519 scalar is the clamped scalar Ed25519 derives from the seed,
    so its public key equals ed25519_public_to_x25519(signing.public).
    """
    priv = bytearray(xeddsa.seed_to_priv(bytes(signing.secret)))
    return KeyPair(public=xeddsa.priv_to_curve25519_pub(bytes(priv)), secret=priv)


def sign(signing_secret: bytes, data: bytes) -> bytes:
    """Sign data with an Ed25519 seed."""
    return Ed25519PrivateKey.from_private_bytes(bytes(signing_secret)).sign(data)


def verify_signature(public_key: bytes, data: bytes, signature: bytes) -> bool:
    """Verify an Ed25519 signature; malformed keys verify as False."""
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, data)
    except (InvalidSignature, ValueError):
        return False
    return True


def x25519_shared_secret(our_priv: bytes, peer_pub: bytes) -> bytearray:
    """
    Compute X25519 shared secret.

    Args:
        our_priv: Our X25519 private key (32 bytes)
        peer_pub: Peer's X25519 public key (32 bytes)

    Returns:
        Shared secret (32 bytes)

    Raises:
        InvalidPublicKey: if the peer key is malformed or of low order
    """
    try:
        public_key = X25519PublicKey.from_public_bytes(bytes(peer_pub))
        shared = X25519PrivateKey.from_private_bytes(bytes(our_priv)).exchange(public_key)
    except ValueError:
        raise InvalidPublicKey("Diffie-Hellman with peer key failed") from None
    if not any(shared):
        raise InvalidPublicKey("Peer key is of low order")
    return bytearray(shared)


@dataclass
class X3DHResult:
    """
    Result of an X3DH agreement.

    Attributes:
        shared_secret: 32 bytes, to be consumed by the ratchet immediately
        ephemeral_key: Initiator's ephemeral public key, sent to the responder
        used_one_time_prekey: Whether DH4 took part
        associated_data: IK_initiator || IK_responder, bound into every AEAD call
        one_time_prekey: The responder's one-time prekey that was used, if any
    """

    shared_secret: bytearray
    ephemeral_key: bytes
    used_one_time_prekey: bool
    associated_data: bytes
    one_time_prekey: Optional[bytes] = None

    def wipe(self) -> None:
        zero_bytes(self.shared_secret)


class X3DHProtocol:
    """
    Runs X3DH on behalf of a key store.

    The key store is any object providing ``identity_key``,
    ``identity_key_pair``, ``signed_prekey`` and
    ``take_issued_one_time_prekey`` (see KeyStore).

    DH order, shared by both roles:
        DH1 = DH(IK_A, SPK_B)
        DH2 = DH(EK_A, IK_B)
        DH3 = DH(EK_A, SPK_B)
        DH4 = DH(EK_A, OPK_B)   only when a one-time prekey was used
    """

    def __init__(self, key_store):
        self._key_store = key_store

    def initiate_handshake(self, recipient_bundle: KeyBundle) -> X3DHResult:
        """
        Derive a shared secret from a peer's published bundle.

        Raises:
            InvalidBundleSignature: if the signed prekey is not signed by the identity key
            InvalidPublicKey: if any bundle key is unusable for DH
        """
        if not verify_signature(
            recipient_bundle.identity_key,
            recipient_bundle.signed_prekey,
            recipient_bundle.signed_prekey_signature,
        ):
            logger.warning(
                "Rejected bundle with bad signed-prekey signature from %s",
                key_fingerprint(recipient_bundle.identity_key),
            )
            raise InvalidBundleSignature("Signed prekey signature verification failed")

        remote_identity = ed25519_public_to_x25519(recipient_bundle.identity_key)
        identity = self._key_store.identity_key_pair
        ephemeral = generate_x25519_keypair()
        dh_outputs: List[bytearray] = []
        try:
            dh_outputs.append(x25519_shared_secret(identity.secret, recipient_bundle.signed_prekey))
            dh_outputs.append(x25519_shared_secret(ephemeral.secret, remote_identity))
            dh_outputs.append(x25519_shared_secret(ephemeral.secret, recipient_bundle.signed_prekey))
            if recipient_bundle.one_time_prekey is not None:
                dh_outputs.append(x25519_shared_secret(ephemeral.secret, recipient_bundle.one_time_prekey))
            shared_secret = derive_x3dh_secret(dh_outputs)
        finally:
            for dh in dh_outputs:
                zero_bytes(dh)
            ephemeral.wipe()

        used = recipient_bundle.one_time_prekey is not None
        logger.info(
            "X3DH initiated with %s (one-time prekey: %s)",
            key_fingerprint(recipient_bundle.identity_key),
            used,
        )
        return X3DHResult(
            shared_secret=shared_secret,
            ephemeral_key=ephemeral.public,
            used_one_time_prekey=used,
            associated_data=self._key_store.identity_key + recipient_bundle.identity_key,
            one_time_prekey=recipient_bundle.one_time_prekey,
        )

    def respond_to_handshake(
        self,
        sender_identity_key: bytes,
        sender_ephemeral_key: bytes,
        used_one_time_prekey: bool,
        one_time_prekey_secret: Optional[bytes] = None,
    ) -> bytearray:
        """
        Mirror the initiator's agreements with our own secrets.

        Raises:
            MissingKeyMaterial: if the initiator used a one-time prekey we no longer hold
            InvalidPublicKey: if a sender key is unusable for DH
        """
        if used_one_time_prekey and one_time_prekey_secret is None:
            raise MissingKeyMaterial("Initiator used a one-time prekey that is not available")

        remote_identity = ed25519_public_to_x25519(sender_identity_key)
        identity = self._key_store.identity_key_pair
        signed_prekey = self._key_store.signed_prekey.key_pair
        dh_outputs: List[bytearray] = []
        try:
            dh_outputs.append(x25519_shared_secret(signed_prekey.secret, remote_identity))
            dh_outputs.append(x25519_shared_secret(identity.secret, sender_ephemeral_key))
            dh_outputs.append(x25519_shared_secret(signed_prekey.secret, sender_ephemeral_key))
            if used_one_time_prekey:
                dh_outputs.append(x25519_shared_secret(one_time_prekey_secret, sender_ephemeral_key))
            shared_secret = derive_x3dh_secret(dh_outputs)
        finally:
            for dh in dh_outputs:
                zero_bytes(dh)

        logger.info(
            "X3DH completed for %s (one-time prekey: %s)",
            key_fingerprint(sender_identity_key),
            used_one_time_prekey,
        )
        return shared_secret

    def accept(self, message: HandshakeMessage) -> X3DHResult:
        """
        Respond to a handshake message, resolving the one-time prekey secret
        from the key store. The one-time pair is wiped whatever the outcome.
        """
        one_time = None
        if message.used_one_time_prekey:
            one_time = self._key_store.take_issued_one_time_prekey(message.one_time_prekey)
            if one_time is None:
                raise MissingKeyMaterial(
                    "One-time prekey already consumed or never issued",
                    {"one_time_prekey": message.one_time_prekey.hex()},
                )
        try:
            shared_secret = self.respond_to_handshake(
                message.identity_key,
                message.ephemeral_key,
                message.used_one_time_prekey,
                one_time.secret if one_time is not None else None,
            )
        finally:
            if one_time is not None:
                one_time.wipe()

        return X3DHResult(
            shared_secret=shared_secret,
            ephemeral_key=message.ephemeral_key,
            used_one_time_prekey=message.used_one_time_prekey,
            associated_data=message.identity_key + self._key_store.identity_key,
            one_time_prekey=message.one_time_prekey,
        )
