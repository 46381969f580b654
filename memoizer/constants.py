from __future__ import annotations

from typing import TypeVar

# type for cache keys
KeyT = TypeVar('KeyT')

# Sentinel value for cache misses
CACHE_MISS = '<memoizer_cache_miss>'

# key shared by f() and f(None)
NO_ARGS_KEY = '<no_args>'


class MemoizeError(Exception):
    """Base class for errors raised by the memoizer itself (never by the wrapped function)."""


class NotMemoizedError(MemoizeError, TypeError):
    """Raised when trying to clear a function that was not produced by `memoize()`."""
    def __init__(self, fn: object=None):
        super().__init__("Can't clear a function that was not memoized!")
        self.fn = fn


class UnclearableCacheError(MemoizeError, TypeError):
    """Raised when the backing cache of a memoized function doesn't support clearing."""
    def __init__(self, cache: object=None):
        super().__init__("The cache can't be cleared!")
        self.cache = cache
