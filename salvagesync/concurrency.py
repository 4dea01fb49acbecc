from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor
from contextlib import contextmanager
from typing import Callable, Iterator

log = logging.getLogger(__name__)


class WeightedSemaphore:
    """Counting semaphore where one acquisition may take several units."""

    def __init__(self, size: int):
        if size < 1:
            raise ValueError(f"semaphore size must be positive, got {size}")
        self.size = size
        self._used = 0
        self._cond = threading.Condition()

    def acquire(self, weight: int = 1) -> None:
        if weight > self.size:
            raise ValueError(f"weight {weight} exceeds semaphore size {self.size}")
        with self._cond:
            while self._used + weight > self.size:
                self._cond.wait()
            self._used += weight

    def release(self, weight: int = 1) -> None:
        with self._cond:
            if weight > self._used:
                raise RuntimeError("released more than held")
            self._used -= weight
            self._cond.notify_all()

    @contextmanager
    def hold(self, weight: int = 1) -> Iterator[None]:
        self.acquire(weight)
        try:
            yield
        finally:
            self.release(weight)

    @property
    def in_use(self) -> int:
        with self._cond:
            return self._used


class TaskGroup:
    """Tracks tasks submitted to an executor, including tasks spawned by tasks.

    ``wait()`` returns once every task ever spawned has finished.
    """

    def __init__(self, executor: Executor):
        self._executor = executor
        self._pending = 0
        self._cond = threading.Condition()

    def spawn(self, fn: Callable[..., None], *args) -> None:
        with self._cond:
            self._pending += 1
        try:
            self._executor.submit(self._run, fn, args)
        except RuntimeError:
            self._finish()
            raise

    def _run(self, fn: Callable[..., None], args: tuple) -> None:
        try:
            fn(*args)
        except Exception:
            log.exception("task %r failed", fn)
        finally:
            self._finish()

    def _finish(self) -> None:
        with self._cond:
            self._pending -= 1
            if self._pending == 0:
                self._cond.notify_all()

    def wait(self, timeout: float | None = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._pending == 0, timeout=timeout)

    @property
    def pending(self) -> int:
        with self._cond:
            return self._pending
