"""
Circuit breakers for calls to external services.

A breaker wraps one family of operations (balance reads, payments, transfers, verification).
While closed, calls pass through and consecutive failures are counted. Reaching the failure
threshold opens the breaker, and every call then fails fast with ``CircuitOpenError`` without
touching the network. Once the recovery timeout has passed the breaker is half-open: a limited
number of trial calls are let through, the first success closes it again and a failure reopens it.

Breakers are owned by a ``BreakerRegistry`` that the application builds at startup, so tests can
register deterministic instances with their own clock.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from tween.tep.app.metrics import MetricsClient, NoOpMetricsClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

BALANCE_BREAKER = "wallet_balance"
TRANSFER_BREAKER = "wallet_transfers"
VERIFICATION_BREAKER = "wallet_verification"
LEDGER_BREAKERS = (BALANCE_BREAKER, TRANSFER_BREAKER, VERIFICATION_BREAKER)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """A call was rejected without being attempted because its breaker is open."""

    def __init__(self, name: str, retry_after: float) -> None:
        super().__init__(
            f"error-breaker-1000 Circuit {name} is open, retry in {retry_after:.0f}s"
        )
        self.name = name
        self.retry_after = retry_after


def _always_failure(_: BaseException) -> bool:
    return True


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 1,
        counts_as_failure: Callable[[BaseException], bool] = _always_failure,
        clock: Callable[[], float] = time.monotonic,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self.counts_as_failure = counts_as_failure
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self._clock = clock
        self._lock = asyncio.Lock()

        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._half_open_in_flight = 0

        self._total_calls = 0
        self._total_failures = 0
        self._total_rejections = 0

    @property
    def state(self) -> BreakerState:
        if self._state is BreakerState.OPEN and self._cooled_down():
            return BreakerState.HALF_OPEN
        return self._state

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        trial = await self._admit()
        succeeded: Optional[bool] = None
        try:
            result = await func(*args, **kwargs)
            succeeded = True
            return result
        except Exception as e:
            succeeded = not self.counts_as_failure(e)
            raise
        finally:
            # A cancelled call is neither a success nor a failure; it only gives back its trial slot.
            await self._settle(trial, succeeded)

    async def metrics(self) -> Dict[str, Any]:
        async with self._lock:
            self._refresh_state()
            return {
                "name": self.name,
                "state": self._state.value,
                "consecutive_failures": self._consecutive_failures,
                "failure_threshold": self.failure_threshold,
                "recovery_timeout": self.recovery_timeout,
                "total_calls": self._total_calls,
                "total_failures": self._total_failures,
                "total_rejections": self._total_rejections,
                "retry_after": self._retry_after() if self._state is BreakerState.OPEN else 0,
            }

    async def _admit(self) -> bool:
        async with self._lock:
            self._refresh_state()
            if self._state is BreakerState.OPEN:
                raise self._rejection()
            if self._state is BreakerState.HALF_OPEN:
                if self._half_open_in_flight >= self.half_open_max_calls:
                    raise self._rejection()
                self._half_open_in_flight += 1
                self._total_calls += 1
                return True
            self._total_calls += 1
            return False

    async def _settle(self, trial: bool, succeeded: Optional[bool]) -> None:
        async with self._lock:
            if trial:
                self._half_open_in_flight -= 1
            if succeeded is None:
                return
            if succeeded:
                self._consecutive_failures = 0
                if self._state is BreakerState.HALF_OPEN:
                    self._transition(BreakerState.CLOSED)
                return

            self._total_failures += 1
            self._consecutive_failures += 1
            if self._state is BreakerState.HALF_OPEN or (
                self._state is BreakerState.CLOSED
                and self._consecutive_failures >= self.failure_threshold
            ):
                self._transition(BreakerState.OPEN)

    def _rejection(self) -> CircuitOpenError:
        self._total_rejections += 1
        self.metrics_client.increment("tep.breaker.rejected", 1, tag_dict={"breaker": self.name})
        return CircuitOpenError(self.name, self._retry_after())

    def _cooled_down(self) -> bool:
        return self._opened_at is not None and self._clock() - self._opened_at >= self.recovery_timeout

    def _retry_after(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))

    def _refresh_state(self) -> None:
        if self._state is BreakerState.OPEN and self._cooled_down():
            self._transition(BreakerState.HALF_OPEN)

    def _transition(self, state: BreakerState) -> None:
        previous = self._state
        self._state = state
        if state is BreakerState.OPEN:
            self._opened_at = self._clock()
        elif state is BreakerState.CLOSED:
            self._opened_at = None
            self._consecutive_failures = 0

        log = logger.warning if state is BreakerState.OPEN else logger.info
        log("Circuit %s %s -> %s", self.name, previous.value, state.value)
        self.metrics_client.increment(
            "tep.breaker.transition",
            1,
            tag_dict={"breaker": self.name, "from": previous.value, "to": state.value},
        )


class BreakerRegistry:
    """
    One breaker per operation name, created on first use with the registry's defaults.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 1,
        counts_as_failure: Callable[[BaseException], bool] = _always_failure,
        clock: Callable[[], float] = time.monotonic,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self.counts_as_failure = counts_as_failure
        self.clock = clock
        self.metrics_client = metrics_client
        self._breakers: Dict[str, CircuitBreaker] = {}

    def register(self, breaker: CircuitBreaker) -> CircuitBreaker:
        self._breakers[breaker.name] = breaker
        return breaker

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = self.register(
                CircuitBreaker(
                    name,
                    failure_threshold=self.failure_threshold,
                    recovery_timeout=self.recovery_timeout,
                    half_open_max_calls=self.half_open_max_calls,
                    counts_as_failure=self.counts_as_failure,
                    clock=self.clock,
                    metrics_client=self.metrics_client,
                )
            )
        return breaker

    def names(self) -> List[str]:
        return sorted(self._breakers)

    async def metrics(self) -> Dict[str, Dict[str, Any]]:
        return {name: await self._breakers[name].metrics() for name in self.names()}
