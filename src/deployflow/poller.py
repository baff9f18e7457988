"""Convergence polling for eventually-consistent resources.

A single retry-with-timeout primitive replaces per-script sleep loops:

    await poller.poll_until(check, timeout=150, interval=15)

Semantics:
1. `check` is invoked immediately, then every `interval` seconds
2. Returning True ends the poll successfully
3. A CheckError of kind FATAL aborts immediately, without retry
4. Any other exception is retryable (transient provider hiccups must not
   abort a long convergence wait)
5. Once `timeout` has elapsed since the first invocation the poll fails
   with PollTimedOutError, reporting the attempts made

Sleeps never overshoot the deadline, so a poll returns within
timeout + interval of invocation (plus the duration of one check).
Backoff is fixed; callers wanting exponential backoff wrap `check`.

SECURITY: A timeout is mandatory. There is no unbounded wait.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .provider import CheckError

logger = logging.getLogger(__name__)

# A hung check is abandoned after the remaining poll time, but never sooner
# than this, so a check issued right at the deadline still gets to finish.
MIN_CHECK_TIMEOUT_SECONDS = 1.0

CheckFn = Callable[[], "bool | Awaitable[bool]"]


class PollError(Exception):
    """Base class for polling failures."""

    def __init__(self, message: str, *, subject: str, attempts: int, elapsed_seconds: float) -> None:
        super().__init__(message)
        self.subject = subject
        self.attempts = attempts
        self.elapsed_seconds = elapsed_seconds


class PollTimedOutError(PollError):
    """Raised when the check did not succeed before the deadline."""

    pass


class PollFatalError(PollError):
    """Raised when the check reported a fatal error."""

    pass


class PollCancelledError(PollError):
    """Raised when the cancellation signal was observed between attempts."""

    pass


@dataclass(frozen=True)
class ConvergenceCheck:
    """A readiness predicate bound to a resource and a poll policy.

    The predicate must be a pure read.
    """

    key: str
    predicate: CheckFn
    timeout_seconds: float
    interval_seconds: float


@dataclass(frozen=True)
class PollOutcome:
    """Result of a successful poll."""

    attempts: int
    elapsed_seconds: float


class ConvergencePoller:
    """Polls a check until it succeeds, fails fatally, or times out.

    Args:
        clock: Monotonic clock, injectable for deterministic tests.
        sleep: Coroutine used between attempts. Must yield control.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep

    async def poll_until(
        self,
        check: CheckFn,
        timeout: float,
        interval: float,
        *,
        cancel_event: asyncio.Event | None = None,
        subject: str = "",
    ) -> PollOutcome:
        """Poll `check` until it returns True.

        Args:
            check: Plain callable (run in the default executor) or coroutine
                function returning a bool.
            timeout: Seconds after the first invocation before giving up.
            interval: Seconds between attempts.
            cancel_event: Checked before every attempt.
            subject: Label for logs and errors (usually a resource key).

        Returns:
            PollOutcome with attempts made and elapsed time.

        Raises:
            ValueError: If timeout is not positive or interval is negative.
            PollTimedOutError: If the deadline passed without success.
            PollFatalError: If the check raised a fatal CheckError.
            PollCancelledError: If cancellation was signalled.
        """
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if interval < 0:
            raise ValueError("interval cannot be negative")

        start = self._clock()
        deadline = start + timeout
        attempts = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise PollCancelledError(
                    f"Polling cancelled for '{subject}' after {attempts} attempts",
                    subject=subject,
                    attempts=attempts,
                    elapsed_seconds=self._clock() - start,
                )

            attempts += 1
            check_timeout = max(deadline - self._clock(), MIN_CHECK_TIMEOUT_SECONDS)
            try:
                converged = await self._invoke(check, check_timeout)
            except CheckError as e:
                if e.fatal:
                    logger.error(
                        "Convergence check failed fatally",
                        extra={"subject": subject, "attempt": attempts, "error": str(e)},
                    )
                    raise PollFatalError(
                        f"Convergence check for '{subject}' failed: {e}",
                        subject=subject,
                        attempts=attempts,
                        elapsed_seconds=self._clock() - start,
                    ) from e
                logger.debug(
                    "Convergence check error, retrying",
                    extra={"subject": subject, "attempt": attempts, "error": str(e)},
                )
                converged = False
            except TimeoutError:
                logger.warning(
                    "Convergence check did not return in time",
                    extra={"subject": subject, "attempt": attempts, "timeout": check_timeout},
                )
                converged = False
            except Exception as e:
                # Unclassified errors are retryable
                logger.warning(
                    "Convergence check raised, retrying",
                    extra={
                        "subject": subject,
                        "attempt": attempts,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                converged = False

            elapsed = self._clock() - start
            if converged:
                logger.info(
                    "Resource converged",
                    extra={"subject": subject, "attempts": attempts, "elapsed_seconds": elapsed},
                )
                return PollOutcome(attempts=attempts, elapsed_seconds=elapsed)

            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.error(
                    "Convergence timed out",
                    extra={"subject": subject, "attempts": attempts, "timeout": timeout},
                )
                raise PollTimedOutError(
                    f"'{subject}' did not converge within {timeout}s ({attempts} attempts)",
                    subject=subject,
                    attempts=attempts,
                    elapsed_seconds=elapsed,
                )

            await self._sleep(min(interval, remaining))

    async def run(
        self,
        check: ConvergenceCheck,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> PollOutcome:
        """Poll a bound ConvergenceCheck."""
        return await self.poll_until(
            check.predicate,
            check.timeout_seconds,
            check.interval_seconds,
            cancel_event=cancel_event,
            subject=check.key,
        )

    async def _invoke(self, check: CheckFn, timeout: float) -> bool:
        if inspect.iscoroutinefunction(check):
            result: Any = await asyncio.wait_for(check(), timeout=timeout)
        else:
            loop = asyncio.get_running_loop()
            result = await asyncio.wait_for(loop.run_in_executor(None, check), timeout=timeout)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=timeout)
        return bool(result)


async def poll_until(
    check: CheckFn,
    timeout: float,
    interval: float,
    *,
    cancel_event: asyncio.Event | None = None,
    subject: str = "",
) -> PollOutcome:
    """Poll with a default real-time ConvergencePoller."""
    return await ConvergencePoller().poll_until(
        check, timeout, interval, cancel_event=cancel_event, subject=subject
    )
