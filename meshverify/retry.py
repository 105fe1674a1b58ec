"""RetryPoller: wait for a predicate to hold, using tenacity for the attempt loop.

A poll is a small state machine::

    RUNNING -> SUCCESS | TIMED_OUT | CANCELLED

Time and cancellation are injected (``clock`` and ``CancelToken``) so the
loop can be driven without real sleeping. The poller never logs; callers
decide how to report the terminal state.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    retry_if_result,
    wait_exponential,
    wait_fixed,
)

from meshverify.models import (
    DEFAULT_POLICY,
    Backoff,
    PollStatus,
    RetryPolicy,
    VerificationError,
)


class PollTimeout(VerificationError):
    """Raised when a predicate did not hold within the policy's time budget."""

    def __init__(self, elapsed: float, attempts: int, last_error: Optional[BaseException]):
        self.elapsed = elapsed
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"timed out after {elapsed:.2f}s ({attempts} attempts): {last_error}"
        )


class PollCancelled(VerificationError):
    """Raised when the caller cancelled a poll before it finished."""

    def __init__(self, attempts: int = 0):
        self.attempts = attempts
        super().__init__(f"polling cancelled after {attempts} attempts")


class PredicateNeverTrue(VerificationError):
    """Cause reported on timeout when the predicate never raised an error."""

    def __init__(self):
        super().__init__("predicate never became true")


class _Cancelled(Exception):
    pass


class CancelToken:
    """Caller-owned abort signal; cancelling wakes any sleeping poll."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        return self._event.wait(seconds)


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, cancel: CancelToken) -> None:
        cancel.wait(seconds)


@dataclass
class PollResult:
    status: PollStatus
    attempts: int
    elapsed: float
    last_error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status is PollStatus.SUCCESS

    def raise_for_status(self) -> None:
        """Raise PollTimeout or PollCancelled for a non-successful poll."""
        if self.status is PollStatus.TIMED_OUT:
            raise PollTimeout(self.elapsed, self.attempts, self.last_error) from self.last_error
        if self.status is PollStatus.CANCELLED:
            raise PollCancelled(self.attempts)


def backoff_strategy(policy: RetryPolicy):
    """Translate a RetryPolicy into a tenacity wait strategy."""
    if policy.backoff is Backoff.EXPONENTIAL:
        return wait_exponential(
            multiplier=policy.interval,
            exp_base=policy.multiplier,
            max=policy.max_interval,
        )
    return wait_fixed(policy.interval)


class RetryPoller:
    """Repeatedly evaluates a predicate until success, timeout, or cancellation.

    Example:
        poller = RetryPoller()
        result = poller.wait_for(lambda: route_ready(), RetryPolicy(timeout=10))
        result.raise_for_status()
    """

    def __init__(
        self,
        clock=None,
        is_retryable: Optional[Callable[[BaseException], bool]] = None,
    ):
        """Initialize the poller.

        Args:
            clock: Object with ``monotonic()`` and ``sleep(seconds, cancel)``.
                Defaults to the system clock.
            is_retryable: Decides whether an exception raised by the
                predicate is transient. Non-retryable exceptions propagate
                out of ``wait_for`` immediately. Defaults to retrying all.
        """
        self._clock = clock or SystemClock()
        self._is_retryable = is_retryable or (lambda exc: True)

    @property
    def clock(self):
        return self._clock

    def wait_for(
        self,
        predicate: Callable[[], bool],
        policy: Optional[RetryPolicy] = None,
        cancel: Optional[CancelToken] = None,
    ) -> PollResult:
        """Poll ``predicate`` under ``policy``.

        A truthy return is success. A falsy return or a retryable
        exception is a failed attempt, retried after the backoff delay
        until ``policy.timeout`` seconds have passed since this call
        started.

        Args:
            predicate: Zero-argument callable evaluated once per attempt.
            policy: Timeout and backoff settings. Defaults to DEFAULT_POLICY.
            cancel: Optional token; cancelling it stops the poll and
                interrupts a pending sleep.

        Returns:
            A PollResult whose status is SUCCESS, TIMED_OUT or CANCELLED.
            A timed-out result carries the most recent predicate error, or
            PredicateNeverTrue when no attempt raised.
        """
        policy = policy or DEFAULT_POLICY
        cancel = cancel or CancelToken()
        clock = self._clock
        wait = backoff_strategy(policy)
        started = clock.monotonic()
        deadline = started + policy.timeout
        attempts = 0
        last_error: Optional[BaseException] = None

        def attempt() -> bool:
            nonlocal attempts, last_error
            if cancel.cancelled:
                raise _Cancelled()
            attempts += 1
            try:
                return bool(predicate())
            except Exception as exc:
                last_error = exc
                raise

        def should_stop(retry_state: RetryCallState) -> bool:
            return cancel.cancelled or clock.monotonic() >= deadline

        def next_delay(retry_state: RetryCallState) -> float:
            # never sleep past the deadline
            return max(0.0, min(wait(retry_state), deadline - clock.monotonic()))

        def retryable(exc: BaseException) -> bool:
            if isinstance(exc, _Cancelled) or not isinstance(exc, Exception):
                return False
            return self._is_retryable(exc)

        retrying = Retrying(
            stop=should_stop,
            wait=next_delay,
            sleep=lambda seconds: clock.sleep(seconds, cancel),
            retry=retry_if_result(lambda ok: not ok) | retry_if_exception(retryable),
            reraise=False,
        )

        def finish(status: PollStatus, error: Optional[BaseException] = None) -> PollResult:
            return PollResult(
                status=status,
                attempts=attempts,
                elapsed=clock.monotonic() - started,
                last_error=error,
            )

        try:
            retrying(attempt)
        except _Cancelled:
            return finish(PollStatus.CANCELLED)
        except RetryError:
            if cancel.cancelled:
                return finish(PollStatus.CANCELLED)
            return finish(PollStatus.TIMED_OUT, last_error or PredicateNeverTrue())
        return finish(PollStatus.SUCCESS)
