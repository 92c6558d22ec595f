"""Bounded retry helper used around every cluster API call."""

import logging
import time
from typing import Callable, Optional

from podmover.errors import RetryError


logger = logging.getLogger(__name__)

# Sleeps and timeouts at or below this many seconds are ignored
NEGLIGIBLE_SECONDS = 0.001


def retry_during(
    attempts: int,
    timeout: float,
    sleep: float,
    func: Callable[[], None],
    sleeper: Optional[Callable[[float], None]] = None,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Call ``func`` until it succeeds, attempts run out or time runs out.

    Args:
        attempts: Maximum number of calls (values below 1 mean one call).
        timeout: Give up once this many seconds have elapsed since the first
            call. Ignored if negligible.
        sleep: Seconds to wait between attempts. Skipped if negligible.
        func: The operation; it signals failure by raising.
        sleeper: Sleep function, injectable for tests (default time.sleep).
        clock: Monotonic clock, injectable for tests.

    Raises:
        RetryError: Carrying the last error, the attempt count and the
            elapsed time.
    """
    attempts = max(1, attempts)
    t0 = clock()
    last_error: Optional[Exception] = None

    for i in range(attempts):
        try:
            func()
        except Exception as e:
            last_error = e
        else:
            logger.debug("[retry-%d/%d] success", i + 1, attempts)
            return

        logger.debug("[retry-%d/%d] %s", i + 1, attempts, last_error)
        if i >= attempts - 1:
            break

        if timeout > NEGLIGIBLE_SECONDS:
            delta = clock() - t0
            if delta > timeout:
                message = (
                    f"after {i + 1} attempts (during {delta:.1f}s) "
                    f"last error: {last_error}"
                )
                logger.error(message)
                raise RetryError(message, last_error, i + 1, delta) from last_error

        if sleep > NEGLIGIBLE_SECONDS:
            (sleeper or time.sleep)(sleep)

    elapsed = clock() - t0
    message = f"after {attempts} attempts last error: {last_error}"
    logger.error(message)
    raise RetryError(message, last_error, attempts, elapsed) from last_error
