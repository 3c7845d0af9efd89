"""In-process keyed locks.

Serializes writers that touch the same logical key (a bill's identity, a
utility's unit allocation) across concurrent requests served by the same
process. Database unique constraints remain the backstop across processes.
"""

import threading
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        # Threads holding or waiting on ``lock``
        self.holders = 0


class KeyedLocks:
    """Registry of one ``threading.Lock`` per string key.

    Entries live only while some thread holds or waits for the key, so the
    registry stays empty between requests.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.holders += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.holders -= 1
            if entry.holders == 0:
                del self._entries[key]

    def _release(self, key: str, entry: _Entry) -> None:
        entry.lock.release()
        self._checkin(key, entry)

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        """Hold every key's lock for the duration of the block.

        Keys are de-duplicated and taken in sorted order so two holders with
        overlapping key sets cannot deadlock.
        """
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                entry = self._checkout(key)
                try:
                    entry.lock.acquire()
                except BaseException:
                    self._checkin(key, entry)
                    raise
                stack.callback(self._release, key, entry)
            yield


# Shared by every session in the process
locks = KeyedLocks()


def allocation_key(utility_type: str) -> str:
    """Lock key guarding unit allocation for one utility."""
    return f"meter-allocation:{utility_type}"


def bill_key(unit_id: str, utility_type: str, period_start: object, period_end: object) -> str:
    """Lock key matching the bill idempotency key."""
    return f"bill:{unit_id}:{utility_type}:{period_start}:{period_end}"
