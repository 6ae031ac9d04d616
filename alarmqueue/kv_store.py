"""Scoped key-value storage used for queue entries, indexes and state."""
import threading
from collections import defaultdict
from typing import Callable, Dict, Iterable, Optional

from alarmqueue.errors import StoreError


UpdateFn = Callable[[Optional[str]], Optional[str]]


class KeyValueStore:
    """
    Durable scope -> key -> string blob storage.

    Blobs are opaque strings (callers JSON-encode them). There are no
    multi-key transactions; `update` is the only atomic primitive and it
    covers a single key.
    """

    def __init__(self):
        self._key_locks: Dict[tuple, threading.Lock] = defaultdict(threading.Lock)
        self._key_locks_guard = threading.Lock()

    def get(self, scope: str, key: str) -> Optional[str]:
        return self.get_many(scope, [key]).get(key)

    def get_many(self, scope: str, keys: Iterable[str]) -> Dict[str, str]:
        raise NotImplementedError

    def set_many(self, scope: str, values: Dict[str, str]) -> None:
        raise NotImplementedError

    def scan(self, scope: str, prefix: str) -> Dict[str, str]:
        """Return every key in scope starting with prefix."""
        raise NotImplementedError

    def update(self, scope: str, key: str, fn: UpdateFn) -> Optional[str]:
        """
        Atomically replace the value of one key with fn(current).

        The default holds an in-process lock per (scope, key) around the
        read and the write. If fn returns None the key is left unchanged.
        """
        with self._lock_for(scope, key):
            current = self.get(scope, key)
            new_value = fn(current)
            if new_value is not None and new_value != current:
                self.set_many(scope, {key: new_value})
            return new_value if new_value is not None else current

    def close(self) -> None:
        pass

    def _lock_for(self, scope: str, key: str) -> threading.Lock:
        with self._key_locks_guard:
            return self._key_locks[(scope, key)]


class InMemoryKeyValueStore(KeyValueStore):
    """Thread-safe dict-backed store. Nothing survives a restart."""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, str]] = defaultdict(dict)
        self._data_lock = threading.RLock()

    def get_many(self, scope, keys):
        with self._data_lock:
            bucket = self._data.get(scope, {})
            return {k: bucket[k] for k in keys if k in bucket}

    def set_many(self, scope, values):
        for key, value in values.items():
            if not isinstance(value, str):
                raise StoreError(f"Value for {key} must be a string blob, got {type(value).__name__}")
        with self._data_lock:
            self._data[scope].update(values)

    def scan(self, scope, prefix):
        with self._data_lock:
            bucket = self._data.get(scope, {})
            return {k: v for k, v in bucket.items() if k.startswith(prefix)}
