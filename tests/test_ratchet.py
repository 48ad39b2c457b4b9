"""Tests for the Double Ratchet state machine."""

import sys
import threading

import pytest
from g3session import (
    ConfigError,
    DoubleRatchet,
    InvalidPublicKey,
    MissingKeyMaterial,
    RatchetHeader,
    ReplayDetected,
    SessionConfig,
    SkippedKeyEvicted,
    TooManySkippedKeys,
    generate_x25519_keypair,
    rand_bytes,
)


def create_ratchets(config=None):
    """Create an initiator/responder pair seeded with the same secret."""
    shared = rand_bytes(32)
    bob_signed_prekey = generate_x25519_keypair()
    alice = DoubleRatchet.initiator(bytearray(shared), bob_signed_prekey.public, config)
    bob = DoubleRatchet.responder(bytearray(shared), bob_signed_prekey, config)
    return alice, bob


def send(ratchet):
    """ratchet_send() returning the key bytes and header."""
    message_key, header = ratchet.ratchet_send()
    return bytes(message_key.key), header


def receive(ratchet, header):
    return bytes(ratchet.ratchet_receive(header).key)


def test_shared_secret_is_wiped():
    """Seeding the ratchet consumes and zeroes the shared secret."""
    shared = bytearray(rand_bytes(32))
    DoubleRatchet.initiator(shared, generate_x25519_keypair().public)
    assert shared == bytearray(32)


def test_first_message_number_is_one():
    """Message numbers start at 1 on a fresh chain."""
    alice, _bob = create_ratchets()

    _key, header = send(alice)

    assert header.message_number == 1
    assert header.previous_chain_length == 0
    assert header.ratchet_public_key == alice.local_ratchet_key
    assert alice.header() == header


def test_send_keys_never_repeat():
    """Sequential sends never produce the same key twice."""
    alice, _bob = create_ratchets()

    keys = [send(alice)[0] for _ in range(50)]

    assert len(set(keys)) == 50
    assert alice.sending_count == 50


def test_in_order_keys_match():
    """Receiver derives the sender's keys."""
    alice, bob = create_ratchets()

    for _ in range(5):
        key, header = send(alice)
        assert receive(bob, header) == key


def test_out_of_order_delivery():
    """Three messages received as 3, 1, 2 give the sender's three keys."""
    alice, bob = create_ratchets()
    (k1, h1), (k2, h2), (k3, h3) = send(alice), send(alice), send(alice)

    assert receive(bob, h3) == k3
    assert len(bob.skipped_keys) == 2
    assert receive(bob, h1) == k1
    assert receive(bob, h2) == k2
    assert len({k1, k2, k3}) == 3
    assert len(bob.skipped_keys) == 0


def test_dh_step_only_on_new_ratchet_key():
    """A DH step happens exactly when the header carries a new ratchet key."""
    alice, bob = create_ratchets()

    _k, h1 = send(alice)
    receive(bob, h1)
    assert bob.remote_ratchet_key == h1.ratchet_public_key
    assert bob.dh_step_pending
    assert bob.receiving_count == 1

    _k, h2 = send(alice)
    assert h2.ratchet_public_key == h1.ratchet_public_key
    receive(bob, h2)
    assert bob.remote_ratchet_key == h1.ratchet_public_key
    assert bob.receiving_count == 2

    kb, hb = send(bob)
    assert not bob.dh_step_pending
    assert hb.ratchet_public_key != h1.ratchet_public_key
    assert receive(alice, hb) == kb
    assert alice.remote_ratchet_key == hb.ratchet_public_key
    assert alice.dh_step_pending

    k3, h3 = send(alice)
    assert h3.ratchet_public_key != h1.ratchet_public_key
    assert h3.message_number == 1
    assert h3.previous_chain_length == 2

    assert receive(bob, h3) == k3
    assert bob.receiving_count == 1
    assert bob.remote_ratchet_key == h3.ratchet_public_key


def test_ping_pong():
    """Alternating senders keep agreeing on keys."""
    alice, bob = create_ratchets()

    for _ in range(10):
        key, header = send(alice)
        assert receive(bob, header) == key
        key, header = send(bob)
        assert receive(alice, header) == key


def test_skipped_keys_across_dh_step():
    """A message left behind on an old chain still decrypts after a DH step."""
    alice, bob = create_ratchets()
    k1, h1 = send(alice)
    k2, h2 = send(alice)
    assert receive(bob, h1) == k1

    kb, hb = send(bob)
    assert receive(alice, hb) == kb
    k3, h3 = send(alice)

    assert receive(bob, h3) == k3
    assert (h2.ratchet_public_key, 2) in bob.skipped_keys
    assert receive(bob, h2) == k2


def test_replay_rejected_and_session_survives():
    """Receiving the same header twice fails, later messages still work."""
    alice, bob = create_ratchets()
    k1, h1 = send(alice)
    assert receive(bob, h1) == k1

    with pytest.raises(ReplayDetected):
        bob.ratchet_receive(h1)

    k2, h2 = send(alice)
    assert receive(bob, h2) == k2


def test_replay_of_cached_key_rejected():
    """A skipped key is consumed once."""
    alice, bob = create_ratchets()
    k1, h1 = send(alice)
    _k2, h2 = send(alice)
    receive(bob, h2)

    assert receive(bob, h1) == k1
    with pytest.raises(ReplayDetected):
        bob.ratchet_receive(h1)


def test_replay_on_closed_chain_rejected():
    """An old chain's ratchet key never triggers a second DH step."""
    alice, bob = create_ratchets()
    _k1, h1 = send(alice)
    receive(bob, h1)
    _kb, hb = send(bob)
    receive(alice, hb)
    _k2, h2 = send(alice)
    receive(bob, h2)
    remote = bob.remote_ratchet_key

    with pytest.raises(ReplayDetected):
        bob.ratchet_receive(h1)
    assert bob.remote_ratchet_key == remote


def test_message_number_zero_rejected():
    alice, bob = create_ratchets()
    send(alice)
    forged = RatchetHeader(alice.local_ratchet_key, 0, 0)

    with pytest.raises(ReplayDetected):
        bob.ratchet_receive(forged)


def test_too_many_skipped_leaves_state_untouched():
    """A header too far ahead is refused without changing anything."""
    alice, bob = create_ratchets(SessionConfig(max_skip=5))
    sent = [send(alice) for _ in range(7)]

    with pytest.raises(TooManySkippedKeys):
        bob.ratchet_receive(sent[6][1])

    assert bob.remote_ratchet_key is None
    assert bob.receiving_count == 0
    assert len(bob.skipped_keys) == 0
    assert receive(bob, sent[0][1]) == sent[0][0]


def test_eviction_reports_lost_message():
    """Oldest skipped keys are evicted first and report SkippedKeyEvicted."""
    alice, bob = create_ratchets(SessionConfig(max_skip=10, max_skipped_keys=3))
    sent = [send(alice) for _ in range(6)]

    assert receive(bob, sent[5][1]) == sent[5][0]
    assert len(bob.skipped_keys) == 3

    for key, header in sent[:2]:
        with pytest.raises(SkippedKeyEvicted):
            bob.ratchet_receive(header)
    for key, header in sent[2:5]:
        assert receive(bob, header) == key


def test_invalid_ratchet_key_leaves_state_untouched():
    """A low-order ratchet key is rejected before any state changes."""
    alice, bob = create_ratchets()
    k1, h1 = send(alice)
    receive(bob, h1)

    with pytest.raises(InvalidPublicKey):
        bob.ratchet_receive(RatchetHeader(bytes(32), 1, 1))

    assert bob.remote_ratchet_key == h1.ratchet_public_key
    k2, h2 = send(alice)
    assert receive(bob, h2) == k2


def test_discarded_receive_changes_nothing():
    """prepare_receive() followed by discard() leaves the ratchet as it was."""
    alice, bob = create_ratchets()
    k1, h1 = send(alice)
    k2, h2 = send(alice)

    pending = bob.prepare_receive(h2)
    assert bytes(pending.message_key.key) == k2
    pending.discard()

    assert bob.remote_ratchet_key is None
    assert receive(bob, h1) == k1
    assert receive(bob, h2) == k2


def test_stale_pending_receive_rejected():
    """A prepared receive cannot be committed after the state moved on."""
    alice, bob = create_ratchets()
    _k1, h1 = send(alice)
    _k2, h2 = send(alice)

    stale = bob.prepare_receive(h2)
    receive(bob, h1)

    with pytest.raises(ReplayDetected):
        stale.commit()


def test_responder_cannot_send_first():
    """Without a remote ratchet key there is no sending chain."""
    _alice, bob = create_ratchets()
    with pytest.raises(MissingKeyMaterial):
        bob.ratchet_send()


def test_destroy_wipes_state():
    """A destroyed ratchet refuses to work."""
    alice, bob = create_ratchets()
    _k, h1 = send(alice)

    alice.destroy()

    assert alice.destroyed
    with pytest.raises(MissingKeyMaterial):
        alice.ratchet_send()
    with pytest.raises(MissingKeyMaterial):
        alice.export_state()
    receive(bob, h1)


def test_export_import_continues_session():
    """Exported state picks up exactly where it left off, skipped keys included."""
    alice, bob = create_ratchets()
    k1, h1 = send(alice)
    k2, h2 = send(alice)
    receive(bob, h2)

    restored = DoubleRatchet.import_state(bob.export_state())

    assert restored.receiving_count == 2
    assert receive(restored, h1) == k1
    kb, hb = send(restored)
    assert receive(alice, hb) == kb


def test_receive_is_atomic_against_concurrent_sends():
    """Sends on another thread never make an in-order message look replayed."""
    alice, bob = create_ratchets()
    sent = [send(alice) for _ in range(300)]
    assert receive(bob, sent[0][1]) == sent[0][0]
    stop = threading.Event()

    def sender():
        while not stop.is_set():
            bob.ratchet_send()

    interval = sys.getswitchinterval()
    sys.setswitchinterval(1e-6)
    thread = threading.Thread(target=sender)
    thread.start()
    try:
        received = [receive(bob, header) for _key, header in sent[1:]]
    finally:
        stop.set()
        thread.join()
        sys.setswitchinterval(interval)

    assert received == [key for key, _header in sent[1:]]
    assert bob.receiving_count == 300


def test_skip_limit_spans_both_chains():
    """Keys skipped on the old chain count against the same limit as the new chain."""
    alice, bob = create_ratchets(SessionConfig(max_skip=5))
    _k, h1 = send(alice)
    receive(bob, h1)
    for _ in range(3):
        send(alice)
    _kb, hb = send(bob)
    receive(alice, hb)
    for _ in range(3):
        send(alice)
    _k, h_new = send(alice)

    assert h_new.previous_chain_length == 4
    assert h_new.message_number == 4
    with pytest.raises(TooManySkippedKeys):
        bob.ratchet_receive(h_new)
    assert bob.remote_ratchet_key == h1.ratchet_public_key


def test_invalid_config_rejected():
    with pytest.raises(ConfigError):
        create_ratchets(SessionConfig(max_skipped_keys=0))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
