from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Iterator, Optional

from ..errors import DuplicateNameError, ListingError, WatchdogTimeout
from ..logs import log_action

log = logging.getLogger(__name__)

NEW_NAME_TIMEOUT = 3600.0
WATCHDOG_POLLS = 50
DUPLICATE_LIMIT = 10

_CLOSED = object()


class Listing:
    """
    One streaming enumeration of a directory.

    A producer thread (``_produce``) pushes entry names; consumers read them
    from ``names()`` and failures from ``errors()``. Both channels are closed
    exactly once, on completion or on cancellation. A watchdog cancels the
    listing when no new name shows up for ``timeout`` seconds, and a name seen
    more than ``duplicate_limit`` times cancels it as corrupted.
    """

    def __init__(
        self,
        path: str,
        timeout: float = NEW_NAME_TIMEOUT,
        poll_interval: Optional[float] = None,
        duplicate_limit: int = DUPLICATE_LIMIT,
    ):
        self.path = path
        self.timeout = timeout
        self.poll_interval = poll_interval if poll_interval is not None else timeout / WATCHDOG_POLLS
        self.duplicate_limit = duplicate_limit
        self.cancelled = threading.Event()
        self._done = threading.Event()
        self._names: queue.Queue = queue.Queue()
        self._errors: queue.Queue = queue.Queue()
        self._guard = threading.Lock()
        self._closed = False
        self._name_count: dict[str, int] = {}
        self._last_new_name = time.monotonic()

    def start(self) -> "Listing":
        threading.Thread(target=self._run_producer, name=f"list:{self.path}", daemon=True).start()
        threading.Thread(target=self._watchdog, name=f"watchdog:{self.path}", daemon=True).start()
        return self

    def _produce(self) -> None:
        raise NotImplementedError

    def _on_cancel(self) -> None:
        """Hook to interrupt the producer (kill a helper process, ...)."""

    def _run_producer(self) -> None:
        try:
            self._produce()
        except ListingError as e:
            self._emit_error(e)
        except OSError as e:
            self._emit_error(ListingError(f"unable to list '{self.path}': {e}"))
        finally:
            self.close()

    # -------------------------
    # Channels
    # -------------------------

    def _emit_name(self, name: str) -> bool:
        with self._guard:
            if self._closed:
                return False
            count = self._name_count.get(name, 0) + 1
            self._name_count[name] = count
            if count == 1:
                self._names.put(name)
                self._last_new_name = time.monotonic()
                return True

        fatal = count > self.duplicate_limit
        self._emit_error(DuplicateNameError(name, count, fatal))
        if fatal:
            self.cancel()
        return False

    def _emit_error(self, error: Exception) -> bool:
        with self._guard:
            if self._closed:
                return False
            self._errors.put(error)
            return True

    def close(self) -> None:
        with self._guard:
            if self._closed:
                return
            self._closed = True
            self._names.put(_CLOSED)
            self._errors.put(_CLOSED)
        self._done.set()

    @property
    def closed(self) -> bool:
        with self._guard:
            return self._closed

    def cancel(self) -> None:
        self.cancelled.set()
        try:
            self._on_cancel()
        finally:
            self.close()

    @staticmethod
    def _drain(q: queue.Queue) -> Iterator:
        while True:
            item = q.get()
            if item is _CLOSED:
                q.put(_CLOSED)
                return
            yield item

    def names(self) -> Iterator[str]:
        return self._drain(self._names)

    def errors(self) -> Iterator[Exception]:
        return self._drain(self._errors)

    # -------------------------
    # Watchdog
    # -------------------------

    def _watchdog(self) -> None:
        while not self._done.wait(self.poll_interval):
            with self._guard:
                idle = time.monotonic() - self._last_new_name
            if idle <= self.timeout:
                continue
            error = WatchdogTimeout(self.path, self.timeout)
            log_action(log, "WATCHDOG", f"{error}, cancelling", path=self.path, level=logging.WARNING)
            self._emit_error(error)
            self.cancel()
            return


class Lister:
    """Factory of started listings sharing one watchdog configuration."""

    listing_class = Listing

    def __init__(
        self,
        timeout: float = NEW_NAME_TIMEOUT,
        poll_interval: Optional[float] = None,
        duplicate_limit: int = DUPLICATE_LIMIT,
    ):
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.duplicate_limit = duplicate_limit

    def __call__(self, path: str) -> Listing:
        listing = self.listing_class(
            path,
            timeout=self.timeout,
            poll_interval=self.poll_interval,
            duplicate_limit=self.duplicate_limit,
        )
        return listing.start()
