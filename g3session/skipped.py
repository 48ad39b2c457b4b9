"""Bounded cache of message keys for messages that arrive out of order."""

import logging
from collections import OrderedDict
from typing import Iterator, List, Optional, Tuple

from .types import MessageKey, DEFAULT_MAX_SKIPPED_KEYS

logger = logging.getLogger(__name__)

Index = Tuple[bytes, int]


class SkippedKeyCache:
    """
    Insertion-ordered map of (ratchet public key, message number) -> MessageKey.

    When full, the oldest entry is evicted and wiped. Evicting a key means that
    message can never be decrypted; the index is remembered (itself bounded
    to max_size) so the loss surfaces as SkippedKeyEvicted instead of looking
    like a replay.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_SKIPPED_KEYS):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self._keys: "OrderedDict[Index, MessageKey]" = OrderedDict()
        self._evicted: "OrderedDict[Index, None]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, index: Index) -> bool:
        return index in self._keys

    def __iter__(self) -> Iterator[MessageKey]:
        return iter(self._keys.values())

    def put(self, message_key: MessageKey) -> None:
        """Insert a key, evicting the oldest entries if over capacity."""
        index = message_key.index
        self._keys[index] = message_key
        self._keys.move_to_end(index)
        self._evicted.pop(index, None)
        while len(self._keys) > self.max_size:
            old_index, old_key = self._keys.popitem(last=False)
            old_key.wipe()
            self.mark_evicted(old_index)
            logger.warning(
                "Evicted skipped key for message %d on chain %s; it can no longer be decrypted",
                old_index[1],
                old_index[0][:4].hex(),
            )

    def get(self, public_key: bytes, number: int) -> Optional[MessageKey]:
        """Look up without consuming."""
        return self._keys.get((public_key, number))

    def take(self, public_key: bytes, number: int) -> Optional[MessageKey]:
        """Consume and remove a key; None if absent."""
        return self._keys.pop((public_key, number), None)

    def was_evicted(self, public_key: bytes, number: int) -> bool:
        return (public_key, number) in self._evicted

    def evicted(self) -> List[Index]:
        return list(self._evicted)

    def clear(self) -> None:
        """Wipe and drop every cached key."""
        for message_key in self._keys.values():
            message_key.wipe()
        self._keys.clear()
        self._evicted.clear()

    def mark_evicted(self, index: Index) -> None:
        self._evicted[index] = None
        while len(self._evicted) > self.max_size:
            self._evicted.popitem(last=False)
