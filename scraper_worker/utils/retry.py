"""
Retry executor with bounded exponential backoff.

One implementation for every fallible remote call of the worker (page
fetches, asset downloads, content-store puts, manifest writes). The executor
keeps no state between calls: attempt counters live on the stack of each
invocation.

Usage:
    from scraper_worker.utils.retry import RetryPolicy, retry_call

    policy = RetryPolicy(max_attempts=3, base_delay=1.0)
    html = retry_call(fetch_page, url, policy=policy, operation="fetch_page")
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple, Type


logger = logging.getLogger("scraper_worker.retry")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters.

    The wait after failed attempt ``n`` (0-based) is
    ``min(base_delay * 2**n, max_delay)``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 32.0
    retry_on: Tuple[Type[BaseException], ...] = field(default=(Exception,))

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2**attempt), self.max_delay)


def retry_call(
    fn: Callable[..., Any],
    *args,
    policy: Optional[RetryPolicy] = None,
    operation: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
) -> Any:
    """
    Call ``fn(*args, **kwargs)`` and retry it on failure.

    Exceptions outside ``policy.retry_on`` propagate immediately. After the
    last attempt the last error propagates unchanged; the return value is
    passed through untouched.

    Args:
        fn: The fallible operation.
        policy: Backoff parameters (defaults to RetryPolicy()).
        operation: Name used in log records (defaults to fn.__name__).
        sleep: Sleep function, injectable for tests.

    Returns:
        Whatever ``fn`` returns.
    """
    policy = policy or RetryPolicy()
    name = operation or getattr(fn, "__name__", "operation")
    attempts = max(1, policy.max_attempts)

    for attempt in range(attempts):
        try:
            return fn(*args, **kwargs)
        except policy.retry_on as e:
            if attempt == attempts - 1:
                logger.error(
                    f"{name} failed after {attempts} attempts: {type(e).__name__}: {e}",
                    extra={"operation": name, "attempt": attempt + 1, "max_attempts": attempts},
                )
                raise

            wait = policy.delay_for(attempt)
            logger.warning(
                f"{name} attempt {attempt + 1}/{attempts} failed: "
                f"{type(e).__name__}: {e} - retrying in {wait:.1f}s",
                extra={
                    "operation": name,
                    "attempt": attempt + 1,
                    "max_attempts": attempts,
                    "error_type": type(e).__name__,
                    "delay": wait,
                },
            )
            sleep(wait)
