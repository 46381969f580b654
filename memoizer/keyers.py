"""Keyers convert the arguments of a call into a single cache key."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Generic

from memoizer.constants import KeyT, NO_ARGS_KEY

# types whose keys are derived from their literal value
PRIMITIVE_TYPES = (type(None), bool, int, float, complex, str, bytes)

KEY_DELIMITER = ','


class Keyer(ABC, Generic[KeyT]):
    """Base class for converting function arguments into cache keys.

    If `ANCHORS_ARGS` is True, the keys embed object identities, and the cache entry must hold on
    to the arguments for as long as it lives, so that no other object can reuse those identities
    while the key is in the cache.
    """
    ANCHORS_ARGS = False

    @abstractmethod
    def make_key(self, fn: Callable|None, args: tuple, kwargs: dict) -> KeyT:
        """Convert function arguments into a cache key.

        Args:
            fn: Function being cached, or None
            args: Tuple of positional arguments
            kwargs: Dict of keyword arguments

        Returns:
            A key suitable for the cache backend
        """
        pass


class ArgsKeyer(Keyer[str]):
    """The default keyer, which builds a string out of each argument's position, type and value.

    Each positional argument contributes `index:typename:text` and each keyword argument
    contributes `name=typename:text` (sorted by name), all joined by `KEY_DELIMITER`:

    - Primitives (None, bools, numbers, strings, bytes) use their `repr()` as the text, so equal
      values share a key, while `1`, `'1'` and `True` don't (they differ in type name).
    - Everything else (functions, lists, dicts, instances, ...) uses an identity token, so
      two different objects never collide even if they look identical, and the same object always
      gets the same key.

    Calling with no arguments and calling with a single `None` give the same key.
    This never raises.
    """
    ANCHORS_ARGS = True

    def make_key(self, fn: Callable|None, args: tuple, kwargs: dict) -> str:
        if not kwargs and (not args or (len(args) == 1 and args[0] is None)):
            return NO_ARGS_KEY
        parts = [f'{idx}:{self._describe(arg)}' for idx, arg in enumerate(args)]
        parts.extend(f'{name}={self._describe(kwargs[name])}' for name in sorted(kwargs))
        return KEY_DELIMITER.join(parts)

    def _describe(self, obj: Any) -> str:
        """Returns the `typename:text` part of the key for a single argument."""
        cls = type(obj)
        if cls is int:
            try:
                return f'int:{obj!r}'
            except ValueError: # too many digits for str conversion, so use hex (which has no limit)
                return f'int:{obj:#x}'
        if cls in PRIMITIVE_TYPES:
            return f'{cls.__name__}:{obj!r}'
        return f'{cls.__name__}:@{id(obj):x}'


class FunctionKeyer(Keyer[Any]):
    """Keyer that defers to a user-supplied function.

    The function is called with the tuple of positional arguments (if there were any keyword
    arguments, a dict of them is appended as the last element), and its return value is used as
    the key as-is. E.g., `json.dumps` gives structural equality, while `lambda args: args[0]` keys
    by the first argument itself (suitable for a `WeakBackend`).
    """
    def __init__(self, cache_key: Callable[[tuple], Any]):
        self.cache_key = cache_key

    def make_key(self, fn: Callable|None, args: tuple, kwargs: dict) -> Any:
        if kwargs:
            args = args + (dict(kwargs),)
        return self.cache_key(args)


def make_keyer(cache_key: Keyer|Callable[[tuple], Any]|None=None) -> Keyer:
    """Returns a keyer for the given `cache_key` option.

    - None: the default `ArgsKeyer`
    - a `Keyer` instance: used directly
    - any other callable: wrapped in a `FunctionKeyer`
    """
    if cache_key is None:
        return ArgsKeyer()
    if isinstance(cache_key, Keyer):
        return cache_key
    return FunctionKeyer(cache_key)


def derive_key(args: tuple,
               kwargs: dict|None=None,
               cache_key: Keyer|Callable[[tuple], Any]|None=None,
               fn: Callable|None=None) -> Any:
    """Derives the cache key for a call with the given `args` and `kwargs`."""
    return make_keyer(cache_key).make_key(fn, tuple(args), kwargs or {})
