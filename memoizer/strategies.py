"""Cache entries and time-based expiry."""

from __future__ import annotations

import atexit
import heapq
import itertools
import logging
import threading
import time

from dataclasses import dataclass
from typing import Any, Callable, Union

logger = logging.getLogger(__name__)

# a max-age is either a constant number of seconds, or a function of the call's arguments
MaxAge = Union[float, Callable[..., float], None]


@dataclass(frozen=True, eq=False)
class CacheEntry:
    """One cached result.

    Entries are never mutated once stored; recomputing a key stores a brand new entry, and things
    that want to delete a specific entry (expiry timers, failure handlers) compare by identity.

    - value: the result of the function, or the pending future while it's in flight
    - expires_at: `time.monotonic()` deadline after which this is stale, or None for never
    - anchors: arguments kept alive while this entry exists (for identity-based keys)
    """
    value: Any
    expires_at: float|None = None
    anchors: tuple = ()

    def expired(self, now: float|None=None) -> bool:
        """Whether our deadline has passed (as of `now`, defaulting to the current time)."""
        if self.expires_at is None:
            return False
        if now is None:
            now = time.monotonic()
        return now >= self.expires_at


class TTLPolicy:
    """Time-to-live policy for cached items.

    The `max_age` can be:
    - None: items never expire
    - a number of seconds: items older than this are stale (0 or less means nothing is cached)
    - a function that takes the same arguments as the memoized function and returns the number of
      seconds to use for that particular call. This is evaluated when the result is stored.
    """
    def __init__(self, max_age: MaxAge=None):
        self.max_age = max_age

    def duration(self, args: tuple, kwargs: dict) -> float|None:
        """Returns the max-age in seconds for a call with these arguments, or None for forever."""
        if callable(self.max_age):
            return self.max_age(*args, **kwargs)
        return self.max_age

    @staticmethod
    def caches(duration: float|None) -> bool:
        """Whether a result with the given `duration` should be stored at all."""
        return duration is None or duration > 0

    def make_entry(self, value: Any, duration: float|None, anchors: tuple=()) -> CacheEntry:
        """Creates a new entry for `value` that expires `duration` seconds from now."""
        expires_at = None if duration is None else time.monotonic() + duration
        return CacheEntry(value=value, expires_at=expires_at, anchors=anchors)


class ExpiryScheduler:
    """Runs callbacks after a delay, on a single background thread.

    Timers are kept in a heap ordered by deadline. The worker thread is started lazily on the first
    `schedule()` call and is a daemon, so outstanding timers never keep the process alive. There is
    no cancellation: callbacks are expected to be harmless if what they guard is already gone.
    """
    def __init__(self):
        self._heap: list[tuple[float, int, Callable[[], Any]]] = []
        self._counter = itertools.count()
        self._cond = threading.Condition()
        self._stopped = False
        self.worker: threading.Thread|None = None

    def __len__(self) -> int:
        with self._cond:
            return len(self._heap)

    def schedule(self, delay: float, callback: Callable[[], Any]) -> None:
        """Schedules `callback()` to be run `delay` seconds from now."""
        deadline = time.monotonic() + max(0.0, delay)
        with self._cond:
            if self._stopped:
                logger.debug(f'Scheduler is shut down, dropping timer for {callback}')
                return
            heapq.heappush(self._heap, (deadline, next(self._counter), callback))
            if self.worker is None:
                self.worker = threading.Thread(target=self._worker, name='memoizer-expiry', daemon=True)
                self.worker.start()
                atexit.register(self.shutdown)
            self._cond.notify()

    def _worker(self) -> None:
        """Background thread that fires due timers."""
        while True:
            with self._cond:
                while not self._stopped:
                    if not self._heap:
                        self._cond.wait()
                        continue
                    wait = self._heap[0][0] - time.monotonic()
                    if wait <= 0:
                        break
                    self._cond.wait(wait)
                if self._stopped:
                    return
                _, _, callback = heapq.heappop(self._heap)
            try:
                callback()
            except Exception:
                logger.exception(f'Error in expiry callback {callback}')

    def shutdown(self, timeout: float|None=None) -> None:
        """Stops the worker thread, dropping all outstanding timers."""
        with self._cond:
            self._stopped = True
            self._heap.clear()
            self._cond.notify_all()
        if self.worker is not None and self.worker is not threading.current_thread():
            self.worker.join(timeout)


_scheduler: ExpiryScheduler|None = None
_scheduler_lock = threading.Lock()

def get_scheduler() -> ExpiryScheduler:
    """Returns the process-wide expiry scheduler, creating it if needed."""
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            _scheduler = ExpiryScheduler()
        return _scheduler
