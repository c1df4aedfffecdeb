"""
Gateway Base Types for Upstream Validation Services.

Shared error types for HTTP gateways and the circuit breaker that guards
every call to an external service (terminology, profile and reference
servers). A breaker opens after a run of consecutive failures, rejects calls
immediately while open, and after its cooldown lets exactly one trial call
through; the trial call's outcome closes or re-opens it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar
import logging
import time

from healthval.core.enums import CircuitState
from healthval.services.events import EngineEvent, EventEmitter
from healthval.utils.errors import CircuitBreakerOpen

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GatewayError(Exception):
    """Base exception for gateway errors."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.original_error = original_error


class ProviderUnavailableError(GatewayError):
    """Raised when a provider is not available."""

    pass


class ProviderTimeoutError(GatewayError):
    """Raised when a provider request times out."""

    pass


class ProviderRateLimitError(GatewayError):
    """Raised when a provider rate limit is exceeded (HTTP 429)."""

    pass


@dataclass
class CircuitBreakerConfig:
    """Configuration for a circuit breaker."""

    failure_threshold: int = 5
    cooldown_seconds: float = 60.0


@dataclass
class CircuitBreakerStatus:
    """Snapshot of a breaker for health reporting."""

    name: str
    state: CircuitState
    consecutive_failures: int
    total_calls: int
    total_failures: int
    rejected_calls: int
    last_error: Optional[str] = None
    last_failure_at: Optional[datetime] = None
    retry_after_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "rejected_calls": self.rejected_calls,
            "last_error": self.last_error,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "retry_after_seconds": round(self.retry_after_seconds, 3),
        }


@dataclass
class CircuitBreaker:
    """Per-service circuit breaker."""

    name: str
    config: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    clock: Callable[[], float] = time.monotonic
    on_state_change: Optional[Callable[[str, CircuitState, CircuitState], None]] = None

    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    trial_in_flight: bool = False
    total_calls: int = 0
    total_failures: int = 0
    rejected_calls: int = 0
    last_error: Optional[str] = None
    last_failure_at: Optional[datetime] = None

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self.state:
            return
        old_state = self.state
        self.state = new_state
        logger.info(f"Circuit '{self.name}' {old_state.value} -> {new_state.value}")
        if self.on_state_change is not None:
            self.on_state_change(self.name, old_state, new_state)

    def retry_after(self) -> float:
        """Seconds until an open breaker admits a trial call."""
        if self.state != CircuitState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.opened_at + self.config.cooldown_seconds - self.clock())

    def allow_request(self) -> bool:
        """
        Decide whether a call may proceed, moving OPEN to HALF_OPEN once the
        cooldown has elapsed. Only one trial call is admitted while half-open.
        """
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if self.retry_after() > 0:
                return False
            self._transition(CircuitState.HALF_OPEN)

        # HALF_OPEN
        if self.trial_in_flight:
            return False
        self.trial_in_flight = True
        return True

    def record_success(self) -> None:
        """Record a successful request."""
        self.consecutive_failures = 0
        self.trial_in_flight = False
        self.opened_at = None
        self._transition(CircuitState.CLOSED)

    def record_failure(self, error: str) -> None:
        """Record a failed request."""
        self.consecutive_failures += 1
        self.total_failures += 1
        self.last_error = error
        self.last_failure_at = datetime.now(timezone.utc)

        if self.state == CircuitState.HALF_OPEN:
            self.trial_in_flight = False
            self.opened_at = self.clock()
            self._transition(CircuitState.OPEN)
        elif self.consecutive_failures >= self.config.failure_threshold:
            self.opened_at = self.clock()
            self._transition(CircuitState.OPEN)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker."""
        if not self.allow_request():
            self.rejected_calls += 1
            raise CircuitBreakerOpen(self.name, self.retry_after())

        self.total_calls += 1
        try:
            result = await operation()
        except BaseException as e:
            # Cancellation is not a service failure, but it must release the trial slot.
            if isinstance(e, Exception):
                self.record_failure(str(e) or type(e).__name__)
            else:
                self.trial_in_flight = False
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        """Force the breaker closed."""
        self.consecutive_failures = 0
        self.trial_in_flight = False
        self.opened_at = None
        self._transition(CircuitState.CLOSED)

    def get_status(self) -> CircuitBreakerStatus:
        return CircuitBreakerStatus(
            name=self.name,
            state=self.state,
            consecutive_failures=self.consecutive_failures,
            total_calls=self.total_calls,
            total_failures=self.total_failures,
            rejected_calls=self.rejected_calls,
            last_error=self.last_error,
            last_failure_at=self.last_failure_at,
            retry_after_seconds=self.retry_after(),
        )


class CircuitBreakerRegistry:
    """Circuit breakers keyed by service name, created on first use."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        events: Optional[EventEmitter] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self._events = events
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def _notify(self, name: str, old: CircuitState, new: CircuitState) -> None:
        if self._events is not None:
            self._events.emit(
                EngineEvent.CIRCUIT_STATE_CHANGED,
                {"service": name, "from": old.value, "to": new.value},
            )

    def get(self, name: str) -> CircuitBreaker:
        """Get or create the breaker for a service."""
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(
                name=name,
                config=self.config,
                clock=self._clock,
                on_state_change=self._notify,
            )
        return self._breakers[name]

    async def call(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.get(name).call(operation)

    def reset(self, name: Optional[str] = None) -> None:
        """Reset one breaker, or all of them."""
        targets = [self._breakers[name]] if name in self._breakers else []
        if name is None:
            targets = list(self._breakers.values())
        for breaker in targets:
            breaker.reset()

    def get_all_status(self) -> dict[str, CircuitBreakerStatus]:
        """Get status for all breakers."""
        return {name: b.get_status() for name, b in self._breakers.items()}
