from .backends import (
    CacheBackend,
    MemoryBackend,
    MappingBackend,
    WeakBackend,
    as_backend,
)
from .constants import (
    CACHE_MISS,
    MemoizeError,
    NotMemoizedError,
    UnclearableCacheError,
)
from .keyers import Keyer, ArgsKeyer, FunctionKeyer, derive_key, make_keyer
from .memoize import (
    MemoizedMethod,
    cache_of,
    clear,
    is_memoized,
    memoize,
    memoized_method,
)
from .strategies import CacheEntry, ExpiryScheduler, TTLPolicy

__all__ = [
    'CacheBackend',
    'MemoryBackend',
    'MappingBackend',
    'WeakBackend',
    'as_backend',
    'CACHE_MISS',
    'MemoizeError',
    'NotMemoizedError',
    'UnclearableCacheError',
    'Keyer',
    'ArgsKeyer',
    'FunctionKeyer',
    'derive_key',
    'make_keyer',
    'MemoizedMethod',
    'cache_of',
    'clear',
    'is_memoized',
    'memoize',
    'memoized_method',
    'CacheEntry',
    'ExpiryScheduler',
    'TTLPolicy',
]
