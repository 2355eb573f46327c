"""
Polling and Deadlines

Readiness polling with a bounded attempt budget, a cancellable run
deadline shared by all workers, and the single soft retry allowed for
every external call.
"""

import threading
import time
from typing import Callable, Optional, TypeVar

import structlog

from .errors import AcquisitionCancelled, TimeoutError
from .models import ProbeResult, Ready, ServiceTarget

T = TypeVar("T")

logger = structlog.get_logger(__name__)


class Deadline:
    """Wall-clock budget for a whole run.

    Workers sleep through :meth:`sleep` so that cancelling the deadline wakes
    every polling loop at once.
    """

    def __init__(self, budget: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = clock() + budget if budget else None
        self._cancelled = threading.Event()
        self.budget = budget

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        if self._cancelled.is_set():
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return False if the deadline cut it short."""
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            self._cancelled.wait(remaining)
            return False
        return not self._cancelled.wait(seconds)


class Poller:
    """Runs a probe until the target's readiness predicate accepts it.

    ``clock`` and ``sleep`` are injectable so the loop can be driven by a
    fake clock in tests.
    """

    def __init__(self, target: ServiceTarget, deadline: Optional[Deadline] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Optional[Callable[[float], bool]] = None):
        self.target = target
        self.deadline = deadline
        self.clock = clock
        self._sleep = sleep
        self.logger = logger.bind(service=target.name)

    def _wait(self, seconds: float) -> None:
        if self._sleep is not None:
            completed = self._sleep(seconds)
        elif self.deadline is not None:
            completed = self.deadline.sleep(seconds)
        else:
            time.sleep(seconds)
            completed = True
        if completed is False or (self.deadline is not None and self.deadline.expired()):
            raise AcquisitionCancelled(service=self.target.name)

    def next_interval(self, current: float) -> float:
        return min(current * self.target.backoff, self.target.max_interval)

    def run(self, probe: Callable[[], ProbeResult]) -> Ready:
        """
        Probe until ready or until the attempt budget is exhausted.

        Args:
            probe: Callable performing one probe

        Returns:
            Ready with the number of attempts made and elapsed seconds

        Raises:
            TimeoutError: After exactly ``max_attempts`` failed probes
            AcquisitionCancelled: If the run deadline expires first
        """
        target = self.target
        started = self.clock()
        interval = target.interval
        last: Optional[ProbeResult] = None

        for attempt in range(1, target.max_attempts + 1):
            if self.deadline is not None and self.deadline.expired():
                raise AcquisitionCancelled(service=target.name)

            last = probe()
            if target.is_ready(last):
                elapsed = self.clock() - started
                self.logger.info("Service is ready", attempts=attempt,
                                 elapsed=round(elapsed, 1))
                return Ready(attempts=attempt, elapsed=elapsed)

            self.logger.info("Service not ready yet",
                             attempt=attempt,
                             max_attempts=target.max_attempts,
                             status_code=last.status_code,
                             error=last.error)

            if attempt < target.max_attempts:
                self._wait(interval)
                interval = self.next_interval(interval)

        elapsed = self.clock() - started
        raise TimeoutError(
            f"{target.name} did not become ready after {target.max_attempts} attempts",
            service=target.name,
            attempts=target.max_attempts,
            elapsed=elapsed,
            last_error=last.error if last else None
        )


def retry_once(operation: Callable[[], T], should_retry: Callable[[Exception], bool],
               delay: float = 2.0, sleep: Callable[[float], object] = time.sleep,
               description: str = "operation") -> T:
    """
    Run ``operation``, retrying it exactly once if it raises a retryable error.

    Args:
        operation: Zero-argument callable
        should_retry: Predicate deciding whether an exception is retryable
        delay: Seconds to wait before the retry
        sleep: Sleep function; a False return means the wait was cancelled
        description: Name used in log messages

    Returns:
        The operation's result

    Raises:
        AcquisitionCancelled: If the wait before the retry is cancelled
    """
    try:
        return operation()
    except Exception as e:
        if not should_retry(e):
            raise
        logger.warning("Retrying after failure", operation=description,
                       delay=delay, error=str(e))
        if sleep(delay) is False:
            raise AcquisitionCancelled()
        return operation()
