"""
Readiness Poller.

Resources report "created" before they accept connections. The poller
replaces fixed sleeps with a probe loop:
- Returns as soon as the probe answers READY
- Backs off linearly (multiplier 1.0) or exponentially up to a cap
- Treats a transient probe exception as a not-ready answer
- Raises ReadinessTimeoutError once max_wait has elapsed, never earlier
- Raises Cancelled as soon as the shared cancel event is set, even mid-sleep
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from provchestra.errors import (
    Cancelled,
    ConfigurationError,
    ReadinessTimeoutError,
    ResourceUnavailableError,
    is_transient,
)

logger = logging.getLogger(__name__)


class ProbeResult(str, Enum):
    """Answer of a single readiness probe."""
    READY = "ready"
    NOT_READY = "not_ready"
    ERROR = "error"


Probe = Callable[[], Union[ProbeResult, bool]]


@dataclass(frozen=True)
class ReadinessResult:
    """Successful wait: how many probes it took and how long."""
    resource: str
    probes: int
    elapsed_seconds: float


class ReadinessPoller:
    """
    Poll a probe until the resource is ready.

    Args:
        max_wait_seconds: Total time budget for one wait()
        poll_interval_seconds: Delay after the first not-ready answer
        backoff_multiplier: Delay growth per poll (1.0 = linear/fixed)
        max_interval_seconds: Upper bound for a single delay
        clock: Monotonic time source
        sleep: Sleep function; when None, sleeps on the cancel event so
            that cancellation interrupts the delay
    """

    def __init__(
        self,
        max_wait_seconds: float = 600.0,
        poll_interval_seconds: float = 10.0,
        backoff_multiplier: float = 1.0,
        max_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        if max_wait_seconds <= 0:
            raise ConfigurationError("max_wait_seconds must be > 0")
        if poll_interval_seconds <= 0:
            raise ConfigurationError("poll_interval_seconds must be > 0")
        if backoff_multiplier < 1.0:
            raise ConfigurationError("backoff_multiplier must be >= 1.0")
        self.max_wait_seconds = max_wait_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.backoff_multiplier = backoff_multiplier
        self.max_interval_seconds = max(max_interval_seconds, poll_interval_seconds)
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "ReadinessPoller":
        """Build a poller from config.ReadinessSettings."""
        return cls(
            max_wait_seconds=settings.max_wait_seconds,
            poll_interval_seconds=settings.poll_interval_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            max_interval_seconds=settings.max_interval_seconds,
            **kwargs,
        )

    def wait(
        self,
        resource: str,
        probe: Probe,
        cancel: Optional[threading.Event] = None,
    ) -> ReadinessResult:
        """
        Block until probe() reports READY.

        Args:
            resource: Name used in logs and errors
            probe: Callable returning a ProbeResult (or bool). Transient
                exceptions count as NOT_READY; any other exception propagates
            cancel: Optional event; when set the wait aborts with Cancelled

        Returns:
            ReadinessResult

        Raises:
            ReadinessTimeoutError: max_wait elapsed without READY
            ResourceUnavailableError: The probe answered ERROR
            Cancelled: The cancel event was set
        """
        start = self._clock()
        probes = 0
        delay = self.poll_interval_seconds

        while True:
            if cancel is not None and cancel.is_set():
                raise Cancelled(resource)

            probes += 1
            try:
                answer = _normalize(probe())
            except Exception as e:
                if not is_transient(e):
                    raise
                logger.warning(f"{resource} probe {probes} failed transiently: {type(e).__name__}: {e}")
                answer = ProbeResult.NOT_READY
            elapsed = self._clock() - start

            if answer == ProbeResult.READY:
                logger.info(f"{resource} ready after {probes} probe(s), {elapsed:.1f}s")
                return ReadinessResult(resource, probes, elapsed)
            if answer == ProbeResult.ERROR:
                raise ResourceUnavailableError(resource, f"probe reported an error after {probes} probe(s)")

            if elapsed >= self.max_wait_seconds:
                raise ReadinessTimeoutError(resource, elapsed, probes)

            pause = min(delay, self.max_wait_seconds - elapsed)
            logger.debug(f"{resource} not ready (probe {probes}); next probe in {pause:.1f}s")
            self._pause(pause, resource, cancel)
            delay = min(delay * self.backoff_multiplier, self.max_interval_seconds)

    def _pause(self, seconds: float, resource: str, cancel: Optional[threading.Event]) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        elif cancel is not None:
            if cancel.wait(seconds):
                raise Cancelled(resource)
        else:
            time.sleep(seconds)


def _normalize(answer: Union[ProbeResult, bool]) -> ProbeResult:
    if isinstance(answer, ProbeResult):
        return answer
    if isinstance(answer, bool):
        return ProbeResult.READY if answer else ProbeResult.NOT_READY
    return ProbeResult(answer)
