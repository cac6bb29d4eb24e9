"""Generic wait-until-predicate-holds primitive.

Every resource type waits on the control plane in the same way: evaluate a
predicate, sleep a fixed interval, evaluate again, until the predicate is
satisfied, raises, the timeout budget is spent, or the caller cancels.

The predicate returns a (done, observed_state) tuple. Raising from the
predicate fails the wait immediately; there are no retries inside the loop.

Sleeps are coarse and fixed-interval (no backoff, no jitter). They are the
only suspension point of an orchestrated operation.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

from .config import PollConfig
from .errors import PollCancelled, PollTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Predicate = Callable[[], tuple[bool, T]]


class Cancellation:
    """External cancellation signal for waits.

    Combines an explicit cancel() with an optional absolute deadline on the
    monotonic clock. Either one aborts a wait between sleeps and surfaces as
    PollCancelled, never as a timeout. Safe to share between threads.
    """

    def __init__(
        self,
        deadline: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._event = threading.Event()
        self._deadline = deadline
        self._clock = clock

    @classmethod
    def with_timeout(
        cls, seconds: float, clock: Callable[[], float] = time.monotonic
    ) -> Cancellation:
        """Token that cancels itself `seconds` from now."""
        return cls(deadline=clock() + seconds, clock=clock)

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and self._clock() >= self._deadline

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`, waking early on cancel. Returns True if cancelled."""
        if self._deadline is not None:
            seconds = min(seconds, max(0.0, self._deadline - self._clock()))
        self._event.wait(seconds)
        return self.is_cancelled()


class Poller:
    """Wait until a predicate holds, bounded by a PollConfig.

    Guarantees:
    - The first evaluation happens immediately (no initial sleep).
    - Evaluations are at least `interval` apart.
    - Worst case duration is timeout plus one interval: the evaluation in
      flight when the deadline passes is allowed to complete.

    clock and sleep are injectable so callers (and tests) can drive time.
    A custom sleep returns nothing; cancellation is still checked after it.
    """

    def __init__(
        self,
        config: PollConfig,
        *,
        cancellation: Cancellation | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] | None = None,
    ) -> None:
        self._config = config
        self._cancellation = cancellation
        self._clock = clock
        self._sleep = sleep

    @property
    def config(self) -> PollConfig:
        return self._config

    def wait(self, predicate: Predicate[T], description: str = "") -> T:
        """Evaluate `predicate` until done.

        Args:
            predicate: Callable returning (done, observed_state).
            description: Human-readable subject for logs and errors.

        Returns:
            The observed state from the evaluation that reported done.

        Raises:
            PollTimeoutError: Timeout reached, carries the last observed state.
            PollCancelled: External cancellation, carries the last observed state.
            Exception: Anything raised by the predicate, unchanged.
        """
        interval = self._config.interval
        timeout = self._config.timeout
        start = self._clock()
        attempts = 0
        last_state: Any = None

        while True:
            if self._is_cancelled():
                raise PollCancelled(description, attempts=attempts, last_state=last_state)

            attempts += 1
            done, last_state = predicate()
            if done:
                logger.debug(
                    "Wait condition satisfied",
                    extra={
                        "subject": description,
                        "attempts": attempts,
                        "elapsed_seconds": self._clock() - start,
                    },
                )
                return last_state

            elapsed = self._clock() - start
            if elapsed >= timeout:
                logger.warning(
                    "Wait timed out, remote outcome unknown",
                    extra={
                        "subject": description,
                        "attempts": attempts,
                        "timeout_seconds": timeout,
                    },
                )
                raise PollTimeoutError(
                    description,
                    timeout=timeout,
                    elapsed=elapsed,
                    attempts=attempts,
                    last_state=last_state,
                )

            logger.debug(
                "Wait condition not satisfied yet",
                extra={
                    "subject": description,
                    "attempt": attempts,
                    "sleep_seconds": interval,
                    "until_timeout_seconds": timeout - elapsed,
                },
            )
            if self._pause(interval):
                raise PollCancelled(description, attempts=attempts, last_state=last_state)

    def _is_cancelled(self) -> bool:
        return self._cancellation is not None and self._cancellation.is_cancelled()

    def _pause(self, seconds: float) -> bool:
        """Sleep between evaluations. Returns True if cancelled meanwhile."""
        if self._sleep is not None:
            self._sleep(seconds)
            return self._is_cancelled()
        if self._cancellation is not None:
            return self._cancellation.wait(seconds)
        time.sleep(seconds)
        return False
