"""Backing stores for memoized functions.

A backend maps cache keys to `CacheEntry` objects. The wrapper only relies on `get()`, `set()`,
`has()` and `delete()`; `clear()` is optional, and `clearable` says whether it's available.
"""

from __future__ import annotations

import logging
import threading
import weakref

from abc import ABC, abstractmethod
from collections.abc import MutableMapping
from typing import Any, Generic, Iterator

from memoizer.constants import KeyT, CACHE_MISS, UnclearableCacheError

logger = logging.getLogger(__name__)


class CacheBackend(ABC, Generic[KeyT]):
    """Base class for storage backends.

    Subclasses implement the underscored methods. Each backend has its own reentrant `lock`, which
    the memoizer holds around each lookup and each store, and which `discard()` holds while it
    compares and deletes. The wrapped function itself runs outside the lock, so two threads missing
    on the same key can both compute it.
    """
    CACHE_MISS = CACHE_MISS

    def __init__(self):
        self.lock = threading.RLock()

    @property
    def clearable(self) -> bool:
        """Whether `clear()` is supported by this backend."""
        return True

    def get(self, key: KeyT) -> Any:
        """Returns the value for `key`, or `CACHE_MISS` if not found."""
        return self._get_value(key)

    def set(self, key: KeyT, value: Any) -> None:
        """Stores `value` under `key`, replacing any previous value."""
        assert value is not CACHE_MISS, "Cannot cache CACHE_MISS sentinel"
        self._set_value(key, value)

    def has(self, key: KeyT) -> bool:
        """Check if `key` is in cache.

        By default, we try to actually get the value using `_get_value`, but you can have a more
        optimized version.
        """
        return self._get_value(key) is not CACHE_MISS

    def delete(self, key: KeyT) -> None:
        """Deletes `key` if present (a missing key is not an error)."""
        self._delete_value(key)

    def discard(self, key: KeyT, expected: Any) -> bool:
        """Deletes `key` only if its current value is exactly `expected` (by identity).

        Returns whether we deleted anything. This lets a stale expiry timer or failure handler
        leave a newer value stored under the same key alone.
        """
        with self.lock:
            if self._get_value(key) is not expected:
                return False
            self._delete_value(key)
            return True

    def clear(self) -> None:
        """Clear all entries, or raise `UnclearableCacheError` if not supported."""
        if not self.clearable:
            raise UnclearableCacheError(self)
        with self.lock:
            self._clear()

    def __contains__(self, key: KeyT) -> bool:
        return self.has(key)

    @abstractmethod
    def _get_value(self, key: KeyT) -> Any:
        """Actually get the value from storage."""
        pass

    @abstractmethod
    def _set_value(self, key: KeyT, value: Any) -> None:
        """Actually set the value in storage."""
        pass

    @abstractmethod
    def _delete_value(self, key: KeyT) -> None:
        """Actually delete the value from storage."""
        pass

    def _clear(self) -> None:
        """Clear all entries.

        This version does it by iterating through our keys and deleting each one.
        You can implement a more efficient version in your subclass.
        """
        for key in list(self.iter_keys()):
            self._delete_value(key)

    def iter_keys(self) -> Iterator[KeyT]:
        """Iterate over all keys in the cache."""
        raise NotImplementedError("iter_keys not implemented")


class MemoryBackend(CacheBackend[KeyT]):
    """Backend that stores everything in a dict in memory. This is the default."""
    def __init__(self):
        super().__init__()
        self._cache: dict[KeyT, Any] = {}

    def __len__(self) -> int:
        return len(self._cache)

    def iter_keys(self) -> Iterator[KeyT]:
        """Iterate over all keys in memory cache."""
        yield from self._cache.keys()

    def has(self, key: KeyT) -> bool:
        return key in self._cache

    def _get_value(self, key: KeyT) -> Any:
        return self._cache.get(key, CACHE_MISS)

    def _set_value(self, key: KeyT, value: Any) -> None:
        self._cache[key] = value

    def _delete_value(self, key: KeyT) -> None:
        if key in self._cache:
            del self._cache[key]

    def _clear(self) -> None:
        self._cache.clear()


class MappingBackend(CacheBackend[KeyT]):
    """Backend that adapts a caller-supplied mapping (e.g. a `dict` or `dict` subclass).

    Only item access, `in` and `del` are required of the mapping; it's clearable only if it has a
    `clear()` method. The mapping stays owned by the caller, who can inspect it directly.
    """
    def __init__(self, mapping: Any):
        super().__init__()
        self.mapping = mapping

    @property
    def clearable(self) -> bool:
        return callable(getattr(self.mapping, 'clear', None))

    def __len__(self) -> int:
        return len(self.mapping)

    def iter_keys(self) -> Iterator[KeyT]:
        yield from self.mapping

    def has(self, key: KeyT) -> bool:
        return key in self.mapping

    def _get_value(self, key: KeyT) -> Any:
        try:
            return self.mapping[key]
        except KeyError:
            return CACHE_MISS

    def _set_value(self, key: KeyT, value: Any) -> None:
        self.mapping[key] = value

    def _delete_value(self, key: KeyT) -> None:
        if key in self.mapping:
            del self.mapping[key]

    def _clear(self) -> None:
        self.mapping.clear()


class WeakBackend(CacheBackend[KeyT]):
    """Backend keyed by object identity, which doesn't keep its keys alive.

    Keys are compared with `is` rather than `==` (so unhashable objects work too), and an entry
    disappears by itself once its key object is garbage-collected. Keys must support weak
    references. By design this can't be iterated or cleared.
    """
    def __init__(self):
        super().__init__()
        # id(key) -> (weakref to key, value)
        self._refs: dict[int, tuple[weakref.ref, Any]] = {}

    @property
    def clearable(self) -> bool:
        return False

    def __len__(self) -> int:
        return len(self._refs)

    def _lookup(self, key: KeyT) -> tuple[weakref.ref, Any]|None:
        """Returns the (ref, value) pair for `key`, if it's really this object."""
        item = self._refs.get(id(key))
        if item is None or item[0]() is not key:
            return None
        return item

    def has(self, key: KeyT) -> bool:
        return self._lookup(key) is not None

    def _get_value(self, key: KeyT) -> Any:
        item = self._lookup(key)
        return CACHE_MISS if item is None else item[1]

    def _set_value(self, key: KeyT, value: Any) -> None:
        key_id = id(key)
        refs = self._refs

        def _on_collect(ref: weakref.ref) -> None:
            # only drop the slot if it still belongs to this (now dead) key
            item = refs.get(key_id)
            if item is not None and item[0] is ref:
                del refs[key_id]

        refs[key_id] = (weakref.ref(key, _on_collect), value)

    def _delete_value(self, key: KeyT) -> None:
        if self._lookup(key) is not None:
            del self._refs[id(key)]


def as_backend(cache: Any=None) -> CacheBackend:
    """Returns a backend for the given `cache` option.

    - None: a fresh `MemoryBackend`
    - a `CacheBackend`: used directly
    - anything else (normally a `MutableMapping`): wrapped in a `MappingBackend`
    """
    if cache is None:
        return MemoryBackend()
    if isinstance(cache, CacheBackend):
        return cache
    if not isinstance(cache, MutableMapping):
        logger.debug(f'Adapting non-MutableMapping cache {cache!r} as a mapping')
    return MappingBackend(cache)
