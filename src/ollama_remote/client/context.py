"""Cancellation and deadline context shared by client operations."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from .exceptions import DeadlineExceededError, RequestCancelledError

logger = logging.getLogger(__name__)


class RequestContext:
    """Cancellation signal with an optional monotonic deadline.

    ``cancel()`` may be called from any thread (e.g. a signal handler or a UI
    thread). Deadlines are evaluated lazily; no timer thread is started.
    """

    def __init__(self, *, deadline: float | None = None) -> None:
        self._deadline = deadline
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._next_token = 0

    @classmethod
    def background(cls) -> RequestContext:
        """Context that is never done unless cancelled explicitly."""
        return cls()

    @classmethod
    def with_timeout(cls, seconds: float) -> RequestContext:
        if seconds < 0:
            raise ValueError("timeout must be non-negative")
        return cls(deadline=time.monotonic() + seconds)

    @property
    def deadline(self) -> float | None:
        return self._deadline

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def done(self) -> bool:
        return self.cancelled or self.expired

    def remaining(self) -> float | None:
        """Seconds left before the deadline, ``None`` when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def error(self, action: str = "request") -> RequestCancelledError | None:
        if self.cancelled:
            return RequestCancelledError(action=action, detail="context cancelled")
        if self.expired:
            return DeadlineExceededError(action=action, detail="context deadline exceeded")
        return None

    def raise_if_done(self, action: str = "request") -> None:
        exc = self.error(action)
        if exc is not None:
            raise exc

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:  # noqa: BLE001
                logger.debug("cancel callback %r raised", callback, exc_info=True)

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if the context finished first."""
        timeout = max(0.0, seconds)
        remaining = self.remaining()
        if remaining is not None and remaining <= timeout:
            # The deadline fires before the sleep would end.
            self._cancelled.wait(remaining)
            return True
        return self._cancelled.wait(timeout)

    @contextmanager
    def on_cancel(self, callback: Callable[[], None]) -> Iterator[None]:
        """Run ``callback`` if the context is cancelled while the block executes."""
        with self._lock:
            already_cancelled = self._cancelled.is_set()
            token = self._next_token
            self._next_token += 1
            if not already_cancelled:
                self._callbacks[token] = callback
        if already_cancelled:
            callback()
        try:
            yield
        finally:
            with self._lock:
                self._callbacks.pop(token, None)
