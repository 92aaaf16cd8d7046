"""Shared, rate-limited queue for calls to external services."""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, wait
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

from docweave.domain.documents.errors import RequestTimeoutError
from docweave.domain.documents.value_objects import QueueConfig

T = TypeVar("T")


class RequestQueue:
    """Bounded gate that spaces out request starts.

    At most ``concurrency`` calls run at once. Consecutive starts are at least
    ``min_delay * multiplier`` seconds apart. A failed call doubles the
    multiplier (capped at ``max_backoff``) and a successful one halves it
    again, never below 1.

    ``timeout`` covers the call itself, not the time spent waiting for a slot.
    A call that outlives it raises :class:`RequestTimeoutError` in the caller
    and gives its slot back; the abandoned call finishes on its own thread.

    Errors flagged ``retryable`` (rate limiting, network and server errors) are
    attempted again up to ``max_retries`` times, each retry paced by the
    doubled multiplier. Timeouts are not retried.
    """

    def __init__(
        self,
        *,
        concurrency: int = 1,
        min_delay: float = 1.0,
        max_backoff: float = 10.0,
        max_retries: int = 0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._concurrency = max(1, int(concurrency))
        self._min_delay = max(0.0, float(min_delay))
        self._max_backoff = max(1.0, float(max_backoff))
        self._max_retries = max(0, int(max_retries))
        self._clock = clock
        self._sleep = sleep
        self._slots = threading.BoundedSemaphore(self._concurrency)
        self._lock = threading.Lock()
        self._closed = False
        self._last_start: Optional[float] = None
        self._multiplier = 1.0
        self._stats = {"submitted": 0, "completed": 0, "failed": 0, "timedOut": 0, "retried": 0}

    @classmethod
    def from_config(cls, config: QueueConfig) -> "RequestQueue":
        return cls(
            concurrency=config.concurrency,
            min_delay=config.min_delay_seconds,
            max_backoff=config.max_backoff,
            max_retries=config.max_retries,
        )

    @property
    def multiplier(self) -> float:
        with self._lock:
            return self._multiplier

    def submit(self, fn: Callable[..., T], *args: Any, timeout: Optional[float] = None, **kwargs: Any) -> T:
        """Run ``fn`` through the queue and wait for its result."""

        with self._lock:
            if self._closed:
                raise RuntimeError("request queue is closed")
            self._stats["submitted"] += 1
        retries = 0
        while True:
            try:
                return self._attempt(fn, args, kwargs, timeout)
            except Exception as exc:
                if not getattr(exc, "retryable", False) or retries >= self._max_retries:
                    raise
                retries += 1
                with self._lock:
                    self._stats["retried"] += 1

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "concurrency": self._concurrency,
                "minDelay": self._min_delay,
                "multiplier": self._multiplier,
                "maxBackoff": self._max_backoff,
                "maxRetries": self._max_retries,
                **self._stats,
            }

    def close(self) -> None:
        with self._lock:
            self._closed = True

    def __enter__(self) -> "RequestQueue":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _attempt(self, fn: Callable[..., T], args: tuple, kwargs: Dict[str, Any], timeout: Optional[float]) -> T:
        with self._slot():
            self._wait_turn()
            future = _start(fn, args, kwargs)
            done, _ = wait([future], timeout=timeout)
            if not done:
                with self._lock:
                    self._stats["timedOut"] += 1
                    self._backoff()
                name = getattr(fn, "__qualname__", repr(fn))
                raise RequestTimeoutError(f"{name} did not finish within {timeout:.2f}s")
        try:
            result = future.result()
        except Exception:
            with self._lock:
                self._stats["failed"] += 1
                self._backoff()
            raise
        with self._lock:
            self._stats["completed"] += 1
            self._multiplier = max(1.0, self._multiplier / 2)
        return result

    @contextmanager
    def _slot(self) -> Iterator[None]:
        self._slots.acquire()
        try:
            yield
        finally:
            self._slots.release()

    def _wait_turn(self) -> None:
        with self._lock:
            now = self._clock()
            start = now
            if self._last_start is not None:
                start = max(now, self._last_start + self._min_delay * self._multiplier)
            self._last_start = start
        delay = start - now
        if delay > 0:
            self._sleep(delay)

    def _backoff(self) -> None:
        self._multiplier = min(self._max_backoff, self._multiplier * 2)


def _start(fn: Callable[..., T], args: tuple, kwargs: Dict[str, Any]) -> "Future[T]":
    future: "Future[T]" = Future()
    future.set_running_or_notify_cancel()

    def _call() -> None:
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)

    threading.Thread(target=_call, name="docweave-request", daemon=True).start()
    return future


__all__ = ["RequestQueue"]
