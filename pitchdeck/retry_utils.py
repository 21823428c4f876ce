"""Retry with exponential backoff, error classification and call spacing."""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TypeVar

import requests

from .errors import (
    RETRYABLE_KINDS,
    AgentError,
    CostLimitError,
    ErrorKind,
    ProviderError,
    RetryExhaustedError,
)

logger = logging.getLogger("pitchdeck")

T = TypeVar("T")

# Known fragments of provider and socket error messages. Only consulted for
# exceptions that did not come through the provider clients.
_MESSAGE_KINDS = (
    ("rate limit", ErrorKind.RATE_LIMIT),
    ("rate_limit", ErrorKind.RATE_LIMIT),
    ("too many requests", ErrorKind.RATE_LIMIT),
    ("timed out", ErrorKind.TIMEOUT),
    ("timeout", ErrorKind.TIMEOUT),
    ("etimedout", ErrorKind.TIMEOUT),
    ("overloaded", ErrorKind.OVERLOADED),
    ("temporarily unavailable", ErrorKind.UNAVAILABLE),
    ("service unavailable", ErrorKind.UNAVAILABLE),
    ("service_unavailable", ErrorKind.UNAVAILABLE),
    ("econnreset", ErrorKind.CONNECTION_RESET),
    ("connection reset", ErrorKind.CONNECTION_RESET),
    ("enotfound", ErrorKind.DNS_FAILURE),
    ("name resolution", ErrorKind.DNS_FAILURE),
    ("name or service not known", ErrorKind.DNS_FAILURE),
    ("not supported", ErrorKind.UNSUPPORTED),
    ("server_error", ErrorKind.SERVER_ERROR),
    ("503", ErrorKind.UNAVAILABLE),
    ("502", ErrorKind.SERVER_ERROR),
    ("500", ErrorKind.SERVER_ERROR),
)


def kind_from_message(message: str) -> ErrorKind:
    low = (message or "").lower()
    for needle, kind in _MESSAGE_KINDS:
        if needle in low:
            return kind
    return ErrorKind.UNKNOWN


def kind_from_status(status: Optional[int], message: str = "") -> ErrorKind:
    """Map an HTTP status (and body text) to an ``ErrorKind``."""
    low = (message or "").lower()
    if status == 429:
        return ErrorKind.RATE_LIMIT
    if status in (408, 504):
        return ErrorKind.TIMEOUT
    if status == 529 or "overloaded" in low:
        return ErrorKind.OVERLOADED
    if status == 503:
        return ErrorKind.UNAVAILABLE
    if status is not None and status >= 500:
        return ErrorKind.SERVER_ERROR
    if status in (401, 403):
        return ErrorKind.AUTH
    if status == 404:
        return ErrorKind.NOT_FOUND
    if "not supported" in low:
        return ErrorKind.UNSUPPORTED
    return ErrorKind.BAD_REQUEST


def classify_exception(exc: BaseException) -> ErrorKind:
    if isinstance(exc, ProviderError):
        return exc.kind
    if isinstance(exc, requests.exceptions.Timeout):
        return ErrorKind.TIMEOUT
    if isinstance(exc, requests.exceptions.ConnectionError):
        kind = kind_from_message(str(exc))
        if kind in (ErrorKind.DNS_FAILURE, ErrorKind.TIMEOUT):
            return kind
        return ErrorKind.CONNECTION_RESET
    if isinstance(exc, (TimeoutError, ConnectionResetError)):
        return ErrorKind.TIMEOUT if isinstance(exc, TimeoutError) else ErrorKind.CONNECTION_RESET
    return kind_from_message(str(exc))


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, CostLimitError):
        return False
    return classify_exception(exc) in RETRYABLE_KINDS


@dataclass
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0
    max_delay: Optional[float] = None
    jitter: float = 0.0

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay to wait after failed attempt ``attempt`` (1-based)."""
        delay = self.base_delay * (2 ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        if self.jitter:
            r = rng.random() if rng is not None else random.random()
            delay *= 1 + self.jitter * (2 * r - 1)
        return max(0.0, delay)


IMAGE_RETRY_POLICY = RetryPolicy(attempts=5, base_delay=3.0, max_delay=60.0, jitter=0.2)


class RetryExecutor:
    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.rng = rng
        self.delays: List[float] = []

    def run(self, fn: Callable[[], T], context: Optional[Dict[str, Any]] = None) -> T:
        """Call ``fn`` until it succeeds, a non-retryable error occurs, or attempts run out."""
        context = dict(context or {})
        attempts = max(1, int(self.policy.attempts))
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except CostLimitError:
                raise
            except Exception as exc:
                last_error = exc
                if not is_retryable(exc):
                    raise AgentError(
                        f"Non-retryable error: {exc}",
                        original=exc,
                        context={**context, "attempt": attempt},
                    ) from exc
                if attempt == attempts:
                    break
                delay = self.policy.delay_for(attempt, self.rng)
                logger.warning(
                    "Attempt %s/%s failed (%s). Retrying in %.1fs...",
                    attempt,
                    attempts,
                    classify_exception(exc).value,
                    delay,
                )
                self.delays.append(delay)
                self.sleep(delay)

        raise RetryExhaustedError(attempts, last_error, context={**context, "attempts": attempts})


class CallSpacer:
    """Enforce a minimum interval between consecutive calls."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = float(min_interval)
        self.clock = clock
        self.sleep = sleep
        self._last: Optional[float] = None

    def wait(self) -> float:
        waited = 0.0
        if self._last is not None:
            elapsed = self.clock() - self._last
            if elapsed < self.min_interval:
                waited = self.min_interval - elapsed
                logger.debug("Rate limiting: waiting %.1fs", waited)
                self.sleep(waited)
        self._last = self.clock()
        return waited
