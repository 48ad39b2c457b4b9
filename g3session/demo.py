"""g3session Demo - X3DH handshake and Double Ratchet message exchange."""

import logging
import os

from .keystore import KeyStore
from .session import SessionManager
from .types import SessionConfig


def main():
    """Run the g3session demo."""
    logging.basicConfig(
        level=os.environ.get("G3SESSION_LOG_LEVEL", "WARNING"),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    config = SessionConfig.from_env()

    print("=== g3session X3DH + Double Ratchet Demo ===\n")

    print("Generating identity, signed prekey and one-time prekeys...")
    alice_keys = KeyStore()
    alice_keys.initialize(one_time_prekeys=config.one_time_prekey_count)
    bob_keys = KeyStore()
    bob_keys.initialize(one_time_prekeys=config.one_time_prekey_count)
    print(f"  Alice identity: {alice_keys.key_id}")
    print(f"  Bob identity:   {bob_keys.key_id}")

    alice = SessionManager(alice_keys, config)
    bob = SessionManager(bob_keys, config)

    # Bob publishes a bundle, Alice fetches it from the directory
    bundle = bob.publish_bundle()
    print(f"\nBob's bundle: {len(bundle.to_bytes())} bytes "
          f"(one-time prekey: {bundle.one_time_prekey is not None})")

    print("Alice performing X3DH with Bob's bundle...")
    handshake = alice.initiate("bob", bundle)
    print("Bob completing X3DH...")
    bob.accept("alice", handshake)
    print("✓ Sessions established!")

    print("\n--- Message Exchange ---")
    conversation = [
        (alice, bob, "alice", "bob", "Hello Bob!"),
        (alice, bob, "alice", "bob", "Are you there?"),
        (bob, alice, "bob", "alice", "Hi Alice, loud and clear."),
        (alice, bob, "alice", "bob", "Great, the ratchet turned."),
    ]
    for sender, receiver, sender_name, receiver_name, plaintext in conversation:
        envelope = sender.encrypt(receiver_name, plaintext.encode())
        header = envelope.header
        print(f"\n{sender_name} sends: \"{plaintext}\"")
        print(f"  Ratchet key: {header.ratchet_public_key[:8].hex()}... "
              f"n={header.message_number} pn={header.previous_chain_length}")
        print(f"  Commitment:  {envelope.commitment[:16]}...")
        decrypted = receiver.decrypt(sender_name, envelope)
        print(f"{receiver_name} receives: \"{decrypted.decode('utf-8')}\"")
        assert decrypted == plaintext.encode(), "Message mismatch!"

    print("\n--- Out-of-Order Delivery ---")
    envelopes = [alice.encrypt("bob", f"Message {i}".encode()) for i in range(1, 4)]
    for envelope in reversed(envelopes):
        decrypted = bob.decrypt("alice", envelope)
        print(f"bob receives n={envelope.header.message_number}: \"{decrypted.decode('utf-8')}\"")

    alice.close_all()
    bob.close_all()
    print("\n=== Demo Complete ===")


if __name__ == "__main__":
    main()
