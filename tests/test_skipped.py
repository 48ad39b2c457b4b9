"""Tests for the skipped-key cache."""

import pytest
from g3session import MessageKey, SkippedKeyCache, rand_bytes


CHAIN = b"\x07" * 32


def make_key(number: int, chain: bytes = CHAIN) -> MessageKey:
    return MessageKey(key=bytearray(rand_bytes(32)), number=number, ratchet_public_key=chain)


def test_put_and_take():
    """A cached key is returned once, then gone."""
    cache = SkippedKeyCache(10)
    key = make_key(4)
    cache.put(key)

    assert (CHAIN, 4) in cache
    assert cache.take(CHAIN, 4) is key
    assert cache.take(CHAIN, 4) is None
    assert len(cache) == 0


def test_keys_indexed_by_chain_and_number():
    cache = SkippedKeyCache(10)
    other_chain = b"\x08" * 32
    cache.put(make_key(1))
    cache.put(make_key(1, other_chain))

    assert len(cache) == 2
    assert cache.take(other_chain, 1).ratchet_public_key == other_chain
    assert cache.take(CHAIN, 2) is None


def test_oldest_evicted_first():
    """Overflow evicts in insertion order and wipes the evicted key."""
    cache = SkippedKeyCache(3)
    keys = [make_key(n) for n in range(1, 6)]
    for key in keys:
        cache.put(key)

    assert len(cache) == 3
    assert [k.number for k in cache] == [3, 4, 5]
    assert keys[0].key == bytearray(32)
    assert keys[1].key == bytearray(32)
    assert cache.was_evicted(CHAIN, 1)
    assert cache.was_evicted(CHAIN, 2)
    assert not cache.was_evicted(CHAIN, 3)
    assert cache.take(CHAIN, 1) is None


def test_eviction_record_is_bounded():
    cache = SkippedKeyCache(2)
    for n in range(1, 10):
        cache.put(make_key(n))

    assert len(cache.evicted()) == 2
    assert cache.evicted() == [(CHAIN, 6), (CHAIN, 7)]


def test_clear_wipes_keys():
    cache = SkippedKeyCache(5)
    key = make_key(1)
    cache.put(key)

    cache.clear()

    assert len(cache) == 0
    assert key.key == bytearray(32)


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        SkippedKeyCache(0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
