"""
Retry Policy — bounded retries with backoff and provider hints

One value object, reused by every caller that talks to a flaky provider:

    policy = RetryPolicy(max_retries=3, base_delay=1.0)
    vectors = await policy.run(lambda: call_provider(batch), label="batch=0",
                               deadline=time.monotonic() + 30)

Retry policy:
  - Non-retryable: authentication, permission and bad-request errors,
                   re-raised immediately
  - Retryable:     everything else (rate limits, 5xx, 409/422, timeouts,
                   connection errors, malformed responses)
  - Delay:         provider hint (retry-after-ms / retry-after) if present,
                   else base_delay × 2^(attempt-1), capped at max_delay
  - Deadline:      a wait that would overrun the deadline is not taken;
                   the last error is re-raised instead
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Retry classification
# ---------------------------------------------------------------------------

_NON_RETRYABLE_EXCEPTION_TYPES = (
    # openai
    "AuthenticationError",
    "PermissionDeniedError",
    "BadRequestError",
    # legacy openai / generic
    "InvalidRequestError",
)


def is_retryable_error(exc: BaseException) -> bool:
    """False only for errors that a repeated call cannot fix (auth, permission, bad request)."""
    name = type(exc).__name__
    return not any(name.endswith(r) for r in _NON_RETRYABLE_EXCEPTION_TYPES)


def retry_after_hint(exc: BaseException) -> float | None:
    """
    Seconds the provider asked us to wait, read from the error's HTTP response.

    retry-after-ms takes precedence; retry-after may be seconds or an HTTP date.
    """
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None

    millis = headers.get("retry-after-ms")
    if millis:
        try:
            return max(0.0, float(millis) / 1000)
        except ValueError:
            pass

    value = headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    max_retries:  int   = 3
    base_delay:   float = 1.0
    max_delay:    float = 30.0
    is_retryable: Callable[[BaseException], bool]         = is_retryable_error
    retry_after:  Callable[[BaseException], float | None] = retry_after_hint

    def backoff(self, attempt: int) -> float:
        """Exponential delay before retry number `attempt` (1-based)."""
        return min(self.base_delay * (2 ** max(0, attempt - 1)), self.max_delay)

    def delay_for(self, exc: BaseException, attempt: int) -> float:
        hint = self.retry_after(exc)
        if hint is not None:
            return min(hint, self.max_delay)
        return self.backoff(attempt)

    async def run(
        self,
        fn:       Callable[[], Awaitable[T]],
        label:    str = "",
        deadline: float | None = None,   # time.monotonic() value
    ) -> T:
        """
        Await fn() until it succeeds or the policy gives up.

        Raises:
            The last exception raised by fn().
        """
        attempt = 0
        while True:
            try:
                return await fn()
            except Exception as exc:
                if not self.is_retryable(exc):
                    logger.error("Non-retryable error | %s error=%s", label, exc)
                    raise
                if attempt >= self.max_retries:
                    logger.error(
                        "Retries exhausted | %s attempts=%d error=%s",
                        label, attempt + 1, exc,
                    )
                    raise

                attempt += 1
                delay = self.delay_for(exc, attempt)
                if deadline is not None and time.monotonic() + delay > deadline:
                    logger.error(
                        "Retry skipped, deadline too close | %s delay=%.1fs error=%s",
                        label, delay, exc,
                    )
                    raise

                logger.warning(
                    "Retry | %s attempt=%d delay=%.1fs error=%s %s",
                    label, attempt, delay, type(exc).__name__, exc,
                )
                await asyncio.sleep(delay)
