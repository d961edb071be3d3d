from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Callable, List, Optional, TypeVar

from .api import Deadline, DeadlineExceeded, HomeState, TadoAPI, TadoAPIError, User, Weather, Zone, ZoneStates

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    max_consecutive_failures: int = 5
    timeout_seconds: float = 30.0


DEFAULT_CIRCUIT_BREAKER_CONFIG = CircuitBreakerConfig()


class CircuitState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(TadoAPIError):
    """Raised instead of calling upstream while the breaker blocks traffic."""

    def __init__(self, state: CircuitState, retry_after: float) -> None:
        if state is CircuitState.HALF_OPEN:
            msg = "circuit breaker is half-open: testing API recovery"
        else:
            msg = f"circuit breaker is open: API is temporarily unavailable (will retry after {retry_after:.1f}s)"
        super().__init__(msg, "circuit_breaker")
        self.state = state
        self.retry_after = retry_after


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    Closed lets every call through and counts consecutive failures. Reaching
    the threshold opens the breaker; calls then fail fast with
    :class:`CircuitOpenError` until the cool-down elapses. The next call after
    that is a single half-open probe: success closes the breaker, failure
    re-opens it and restarts the cool-down.

    All state lives behind one lock, so a single instance may be shared by
    concurrent scrapes.
    """

    def __init__(self, config: CircuitBreakerConfig = DEFAULT_CIRCUIT_BREAKER_CONFIG, clock: Callable[[], float] = time.monotonic) -> None:
        if config.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be at least 1")
        if config.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.config = config
        self._clock = clock
        self._lock = Lock()

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._last_transition = datetime.now()

        self._last_error: Optional[BaseException] = None
        self._last_error_time: Optional[datetime] = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._failures

    @property
    def last_error(self) -> Optional[BaseException]:
        with self._lock:
            return self._last_error

    @property
    def last_error_time(self) -> Optional[datetime]:
        with self._lock:
            return self._last_error_time

    @property
    def last_transition_time(self) -> datetime:
        with self._lock:
            return self._last_transition

    def _transition(self, to: CircuitState) -> None:
        prev = self._state
        if prev is to:
            return
        self._state = to
        self._last_transition = datetime.now()
        if to is CircuitState.OPEN:
            logger.warning(
                "circuit_breaker state=%s->%s failures=%d cooldown=%.1fs",
                prev.value,
                to.value,
                self._failures,
                self.config.timeout_seconds,
            )
        else:
            logger.info("circuit_breaker state=%s->%s", prev.value, to.value)

    def _maybe_half_open(self) -> None:
        if self._state is CircuitState.OPEN and self._clock() - self._opened_at >= self.config.timeout_seconds:
            self._probe_in_flight = False
            self._transition(CircuitState.HALF_OPEN)

    def _before_call(self) -> None:
        with self._lock:
            self._maybe_half_open()
            if self._state is CircuitState.OPEN:
                retry_after = max(0.0, self.config.timeout_seconds - (self._clock() - self._opened_at))
                err = CircuitOpenError(CircuitState.OPEN, retry_after)
            elif self._state is CircuitState.HALF_OPEN and self._probe_in_flight:
                err = CircuitOpenError(CircuitState.HALF_OPEN, 0.0)
            else:
                if self._state is CircuitState.HALF_OPEN:
                    self._probe_in_flight = True
                return
            self._last_error = err
            self._last_error_time = datetime.now()
        raise err

    def _on_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._probe_in_flight = False
            self._transition(CircuitState.CLOSED)

    def _on_failure(self, err: BaseException) -> None:
        with self._lock:
            self._last_error = err
            self._last_error_time = datetime.now()
            self._failures += 1
            if self._state is CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._opened_at = self._clock()
                self._transition(CircuitState.OPEN)
            elif self._state is CircuitState.CLOSED and self._failures >= self.config.max_consecutive_failures:
                self._opened_at = self._clock()
                self._transition(CircuitState.OPEN)

    def _on_abandoned(self) -> None:
        with self._lock:
            self._probe_in_flight = False

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        self._before_call()
        try:
            result = fn(*args, **kwargs)
        except DeadlineExceeded:
            # the scrape ran out of time; upstream health is unknown
            self._on_abandoned()
            raise
        except TadoAPIError as e:
            self._on_failure(e)
            raise
        except Exception as e:
            wrapped = TadoAPIError(f"unexpected upstream failure: {e}", getattr(fn, "__name__", ""))
            self._on_failure(wrapped)
            raise wrapped from e
        self._on_success()
        return result


class CircuitBreakerAPI(TadoAPI):
    """A :class:`TadoAPI` whose five operations share one :class:`CircuitBreaker`."""

    def __init__(self, api: TadoAPI, breaker: Optional[CircuitBreaker] = None, config: CircuitBreakerConfig = DEFAULT_CIRCUIT_BREAKER_CONFIG) -> None:
        self.api = api
        self.breaker = breaker if breaker is not None else CircuitBreaker(config)

    @property
    def state(self) -> CircuitState:
        return self.breaker.state

    @property
    def last_error(self) -> Optional[BaseException]:
        return self.breaker.last_error

    @property
    def last_error_time(self) -> Optional[datetime]:
        return self.breaker.last_error_time

    def get_me(self, deadline: Deadline) -> User:
        return self.breaker.call(self.api.get_me, deadline)

    def get_home_state(self, deadline: Deadline, home_id: int) -> HomeState:
        return self.breaker.call(self.api.get_home_state, deadline, home_id)

    def get_zones(self, deadline: Deadline, home_id: int) -> List[Zone]:
        return self.breaker.call(self.api.get_zones, deadline, home_id)

    def get_zone_states(self, deadline: Deadline, home_id: int) -> ZoneStates:
        return self.breaker.call(self.api.get_zone_states, deadline, home_id)

    def get_weather(self, deadline: Deadline, home_id: int) -> Weather:
        return self.breaker.call(self.api.get_weather, deadline, home_id)
