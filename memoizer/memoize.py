"""The memoizing wrapper, the registry of memoized functions, and the method decorator.

Typical use:

    @memoize(max_age=60)
    def fetch(url):
        ...

    fetch('https://example.com')  # computed
    fetch('https://example.com')  # cached for a minute
    clear(fetch)                  # forget everything

Async functions (and functions returning futures) are supported: the pending task is cached as
soon as it's created, so concurrent callers with the same arguments all await the same work.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
import logging
import types
import weakref

from functools import partial, update_wrapper, wraps
from typing import Any, Callable

from memoizer.backends import CacheBackend, as_backend
from memoizer.constants import CACHE_MISS, KeyT, NotMemoizedError
from memoizer.keyers import Keyer, make_keyer
from memoizer.strategies import CacheEntry, MaxAge, TTLPolicy, get_scheduler

logger = logging.getLogger(__name__)

# memoized function -> its backend. Weak so that we never keep either of them alive.
_registry: weakref.WeakKeyDictionary[Callable, CacheBackend] = weakref.WeakKeyDictionary()


def _is_future(obj: Any) -> bool:
    return asyncio.isfuture(obj) or isinstance(obj, concurrent.futures.Future)


def _has_failed(future: Any) -> bool:
    """Whether `future` has already settled with an exception or a cancellation."""
    return future.done() and (future.cancelled() or future.exception() is not None)


def _is_coroutine_function(fn: Callable) -> bool:
    """Whether calling `fn` returns a coroutine (including callable objects with `async __call__`)."""
    return inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(getattr(fn, '__call__', None))


def _expire(backend_ref: weakref.ref, key: KeyT, entry_ref: weakref.ref) -> None:
    """Timer callback that deletes `key`, but only if it still holds the entry we scheduled for."""
    backend, entry = backend_ref(), entry_ref()
    if backend is None or entry is None:
        return
    if backend.discard(key, entry):
        logger.debug(f'Expired cache key {key!r}')


def _on_settled(backend: CacheBackend, key: KeyT, entry: CacheEntry, future: Any) -> None:
    """Done-callback for cached futures: failed or cancelled futures are removed from the cache."""
    if _has_failed(future):
        if backend.discard(key, entry):
            logger.debug(f'Removed failed computation for cache key {key!r}')


def memoize(fn: Callable|None=None,
            *,
            cache: CacheBackend|Any|None=None,
            cache_key: Keyer|Callable[[tuple], Any]|None=None,
            max_age: MaxAge=None) -> Callable:
    """Returns a memoized version of `fn`.

    Can be called directly (`memoize(fn, max_age=5)`) or used as a decorator, with or without
    arguments (`@memoize`, `@memoize(max_age=5)`).

    Args:
    - fn: The function to memoize
    - cache: Where to store results. Either a `CacheBackend`, or a mapping (like a `dict`) which
      will be adapted. Defaults to a fresh `MemoryBackend`.
    - cache_key: How to turn the arguments of a call into a key. Either a `Keyer`, or a function
      that takes the tuple of arguments and returns the key (e.g. `json.dumps`). Defaults to
      `ArgsKeyer`, which compares primitives by value and everything else by identity.
    - max_age: How long results stay valid, in seconds. Either a number (0 disables caching), or
      a function taking the same arguments as `fn` and returning the number of seconds for that
      call. Defaults to None, meaning results never expire.

    Exceptions raised by `fn` (or by the futures it returns) are passed through unchanged, and the
    failed call is never cached, so the next call with the same arguments runs `fn` again.

    If `fn` is a coroutine function, the result is one too: the first call for a key starts a task
    and caches it, and every caller awaits that same task. A caller being cancelled doesn't cancel
    the shared task. Futures returned by a regular `fn` are cached as-is. Note that for a
    `concurrent.futures.Future`, a thread blocked in `result()` can see a failure a moment before
    the entry is removed, since those done-callbacks run after waiters are woken up.

    Calls from several threads are safe, but two threads missing on the same key at the same time
    will both call `fn` (the last one to finish wins).
    """
    if fn is None:
        return partial(memoize, cache=cache, cache_key=cache_key, max_age=max_age)
    backend = as_backend(cache)
    keyer = make_keyer(cache_key)
    policy = TTLPolicy(max_age)

    def lookup(key: KeyT) -> CacheEntry|None:
        """Returns the live entry for `key`, dropping it if it has expired."""
        with backend.lock:
            entry = backend.get(key)
            if entry is CACHE_MISS:
                return None
            if not entry.expired():
                return entry
            backend.discard(key, entry)
        return None

    def store(key: KeyT, result: Any, args: tuple, kwargs: dict) -> None:
        """Caches `result` under `key` and schedules its expiry, unless it shouldn't be cached."""
        if _is_future(result) and _has_failed(result):
            return
        duration = policy.duration(args, kwargs)
        if not policy.caches(duration):
            return
        anchors = (args, kwargs) if keyer.ANCHORS_ARGS else ()
        entry = policy.make_entry(result, duration, anchors=anchors)
        with backend.lock:
            backend.set(key, entry)
        if duration is not None:
            get_scheduler().schedule(duration, partial(_expire, weakref.ref(backend), key, weakref.ref(entry)))
        if _is_future(result):
            result.add_done_callback(partial(_on_settled, backend, key, entry))

    if _is_coroutine_function(fn):
        @wraps(fn)
        async def memoized(*args, **kwargs):
            # everything up to the await runs synchronously, so concurrent callers see the task
            key = keyer.make_key(fn, args, kwargs)
            entry = lookup(key)
            if entry is not None:
                task = entry.value
            else:
                task = asyncio.ensure_future(fn(*args, **kwargs))
                store(key, task, args, kwargs)
            return await asyncio.shield(task)
    else:
        @wraps(fn)
        def memoized(*args, **kwargs):
            key = keyer.make_key(fn, args, kwargs)
            entry = lookup(key)
            if entry is not None:
                return entry.value
            result = fn(*args, **kwargs)
            if not _is_future(result) and inspect.isawaitable(result):
                # coroutines can only be awaited once, so share a task instead (needs a running loop)
                try:
                    asyncio.get_running_loop()
                except RuntimeError:
                    logger.debug(f'No running event loop, not caching awaitable from {fn!r}')
                    return result
                result = asyncio.ensure_future(result)
            store(key, result, args, kwargs)
            return result

    _registry[memoized] = backend
    return memoized


def is_memoized(fn: Any) -> bool:
    """Whether `fn` was produced by `memoize()`."""
    try:
        return fn in _registry
    except TypeError: # not weak-referenceable, so it can't be ours
        return False


def cache_of(fn: Callable) -> CacheBackend:
    """Returns the backend behind a memoized function, or raises `NotMemoizedError`."""
    if not is_memoized(fn):
        raise NotMemoizedError(fn)
    return _registry[fn]


def clear(fn: Callable) -> None:
    """Clears all cached results of the memoized function `fn`.

    Raises:
    - NotMemoizedError: if `fn` was not produced by `memoize()`
    - UnclearableCacheError: if `fn`'s backend can't be cleared (e.g. a `WeakBackend`)
    """
    backend = cache_of(fn)
    backend.clear()
    logger.debug(f'Cleared cache of {getattr(fn, "__qualname__", fn)}')


class MemoizedMethod:
    """Descriptor that memoizes a method separately for each instance.

    The first time the method is accessed on an instance, we memoize it bound to that instance and
    store the result in the instance's `__dict__` under the method's name, so later accesses bypass
    this descriptor entirely. Sibling instances never share results (unless a shared `cache` was
    passed in the options).
    """
    def __init__(self, fn: Callable, **options: Any):
        self.fn = fn
        self.options = options
        self.attrname: str|None = None
        update_wrapper(self, fn)

    def __set_name__(self, owner: type, name: str) -> None:
        self.attrname = name

    def __get__(self, instance: Any, owner: type|None=None) -> Any:
        if instance is None:
            return self
        name = self.attrname or self.fn.__name__
        try:
            instance_dict = instance.__dict__
        except AttributeError:
            raise TypeError(
                f"No '__dict__' attribute on {type(instance).__name__!r} instance "
                f"to store memoized method {name!r}") from None
        bound = memoize(types.MethodType(self.fn, instance), **self.options)
        instance_dict[name] = bound
        return bound


def memoized_method(fn: Callable|None=None, **options: Any) -> Any:
    """Decorator form of `memoize()` for methods, with per-instance caches.

    Use as `@memoized_method` or `@memoized_method(max_age=10)`; the options are as in `memoize()`.
    """
    if fn is None:
        return partial(MemoizedMethod, **options)
    return MemoizedMethod(fn, **options)
