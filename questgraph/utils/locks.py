"""
Keyed lock table used to serialize writers and entity merges per identifier.
"""

import threading
from contextlib import contextmanager
from typing import Iterable, Iterator

DEFAULT_STRIPES = 256


class KeyedLocks:
    """Fixed pool of lock stripes addressed by key hash.

    Keys sharing a stripe serialize with each other, which is safe but not
    required. Stripes are acquired in ascending order so overlapping holders
    cannot deadlock, and the table never grows with the number of keys.
    """

    def __init__(self, stripes: int = DEFAULT_STRIPES):
        if stripes < 1:
            raise ValueError(f'stripes must be positive, got {stripes}')
        self._stripes = tuple(threading.Lock() for _ in range(stripes))

    def stripe_of(self, key: str) -> int:
        return hash(key) % len(self._stripes)

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[None]:
        """Hold the stripes covering every key in keys for the duration of the block."""
        ordered = [self._stripes[index] for index in sorted({self.stripe_of(key) for key in keys})]
        acquired = []
        try:
            for lock in ordered:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
