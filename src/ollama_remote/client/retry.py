"""Retry policy, transient-error classification, and backoff computation."""

from __future__ import annotations

import errno
import random
import socket
from collections.abc import Iterator
from dataclasses import dataclass

import httpx

from .exceptions import (
    DecodeError,
    InvalidRequestError,
    RequestCancelledError,
    RequestTimeoutError,
    find_api_error,
)

RETRYABLE_STATUS_CODES = frozenset({500, 502, 503, 504})
JITTER_FRACTION = 0.25

_RETRYABLE_ERRNOS = frozenset({errno.ECONNRESET, errno.ECONNREFUSED, errno.ETIMEDOUT, errno.EPIPE})
_TRANSIENT_MESSAGES = (
    "connection reset",
    "connection refused",
    "broken pipe",
    "timed out",
    "i/o timeout",
    "no such host",
    "name or service not known",
    "temporary failure in name resolution",
    "nodename nor servname provided",
    "getaddrinfo failed",
)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Immutable retry tuning. Durations are in seconds."""

    max_retries: int = 0
    initial_backoff: float = 0.1
    max_backoff: float = 5.0
    multiplier: float = 2.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            raise ValueError("backoff durations must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


DEFAULT_RETRY_POLICY = RetryPolicy(
    max_retries=3,
    initial_backoff=0.1,
    max_backoff=5.0,
    multiplier=2.0,
    jitter=True,
)
NO_RETRY = RetryPolicy(max_retries=0)


def is_retryable(error: BaseException | None) -> bool:
    """Return True when ``error`` is a transient failure worth another attempt."""
    if error is None:
        return False

    chain = list(_iter_causes(error))

    # Caller-initiated aborts short-circuit everything else.
    if any(isinstance(item, RequestCancelledError) for item in chain):
        return False

    if isinstance(error, (InvalidRequestError, DecodeError)):
        return False

    api_error = find_api_error(error)
    if api_error is not None:
        return api_error.status_code in RETRYABLE_STATUS_CODES

    for item in chain:
        if isinstance(item, (RequestTimeoutError, httpx.TimeoutException, TimeoutError)):
            return True
        if isinstance(item, (ConnectionResetError, ConnectionRefusedError, BrokenPipeError)):
            return True
        if isinstance(item, socket.gaierror):
            return True
        if isinstance(item, OSError) and item.errno in _RETRYABLE_ERRNOS:
            return True

    # Portable fallback for platforms or libraries that only surface text.
    for item in chain:
        text = str(item).lower()
        if any(marker in text for marker in _TRANSIENT_MESSAGES):
            return True
    return False


def next_delay(attempt: int, policy: RetryPolicy, *, rng: random.Random | None = None) -> float:
    """Seconds to wait before the retry that follows attempt ``attempt``."""
    if attempt <= 0:
        delay = policy.initial_backoff
    else:
        delay = policy.initial_backoff * (policy.multiplier**attempt)
    delay = min(delay, policy.max_backoff)

    if policy.jitter:
        spread = delay * JITTER_FRACTION
        draw = (rng or random).uniform(-spread, spread)
        delay += draw
    return max(0.0, delay)


def _iter_causes(error: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__
