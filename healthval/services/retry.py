"""
Retry Helper.

Runs an async operation with exponential backoff, classifying failures so
that only transient problems (network, timeout, throttling) are retried.
Validation, parse and authorization failures surface on the first attempt.
"""

import asyncio
import logging
import random
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from healthval.core.config import EngineSettings, get_engine_settings
from healthval.gateways.base import (
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from healthval.schemas.validation import RetryAttemptRecord
from healthval.utils.errors import (
    AdmissionLimitExceeded,
    CircuitBreakerOpen,
    PipelineTimeout,
    RetryExhausted,
    ValidationPipelineError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TIMEOUT_PATTERN = re.compile(r"timeout|timed out", re.IGNORECASE)
_NETWORK_PATTERN = re.compile(
    r"network|econnrefused|econnreset|enotfound|enetunreach|connection (?:refused|reset)"
    r"|socket hang up",
    re.IGNORECASE,
)
_THROTTLE_PATTERN = re.compile(
    r"throttl|rate limit|too many requests|\b429\b|\b502\b|\b503\b|\b504\b"
    r"|service unavailable|maximum concurrent",
    re.IGNORECASE,
)
_NON_RETRYABLE_PATTERN = re.compile(
    r"invalid|validation|parse|syntax|unauthori[sz]ed|forbidden|authorization"
    r"|authentication|permission|\b400\b|\b401\b|\b403\b|\b404\b",
    re.IGNORECASE,
)


def _message(error: BaseException | str) -> str:
    return error if isinstance(error, str) else str(error)


def is_timeout_error(error: BaseException | str) -> bool:
    """True for timeouts (not for refused or reset connections)."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ProviderTimeoutError, PipelineTimeout)):
        return True
    return bool(_TIMEOUT_PATTERN.search(_message(error)))


def is_network_error(error: BaseException | str) -> bool:
    """True for connection-level failures (not for timeouts)."""
    if isinstance(error, (ConnectionError, ProviderUnavailableError)):
        return True
    return bool(_NETWORK_PATTERN.search(_message(error)))


def is_throttle_error(error: BaseException | str) -> bool:
    if isinstance(error, (ProviderRateLimitError, AdmissionLimitExceeded, CircuitBreakerOpen)):
        return True
    return bool(_THROTTLE_PATTERN.search(_message(error)))


def is_non_retryable_error(error: BaseException | str) -> bool:
    return bool(_NON_RETRYABLE_PATTERN.search(_message(error)))


def is_retryable_error(error: BaseException | str) -> bool:
    """
    Transient failures are retryable; anything that names a validation,
    parse or authorization problem is not, even if it also looks transient.
    """
    if not isinstance(error, str) and isinstance(
        error, (AdmissionLimitExceeded, CircuitBreakerOpen, ProviderRateLimitError)
    ):
        return True
    # The engine wraps internal failures; judge the underlying error.
    if isinstance(error, ValidationPipelineError) and error.original_error is not None:
        return is_retryable_error(error.original_error)
    if is_non_retryable_error(error):
        return False
    return is_timeout_error(error) or is_network_error(error) or is_throttle_error(error)


def retry_reason(error: BaseException | str) -> str:
    """Short label describing why an error was (or was not) retried."""
    if is_timeout_error(error):
        return "timeout"
    if is_network_error(error):
        return "network"
    if is_throttle_error(error):
        return "throttled"
    return "non_retryable"


@dataclass
class RetryConfig:
    """Backoff policy for ``with_retry``."""

    max_attempts: int = 3
    initial_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 10000
    jitter: bool = False
    is_retryable: Callable[[BaseException], bool] = is_retryable_error

    @classmethod
    def from_settings(cls, settings: Optional[EngineSettings] = None) -> "RetryConfig":
        s = settings or get_engine_settings()
        return cls(
            max_attempts=s.RETRY_MAX_ATTEMPTS,
            initial_delay_ms=s.RETRY_INITIAL_DELAY_MS,
            backoff_multiplier=s.RETRY_BACKOFF_MULTIPLIER,
            max_delay_ms=s.RETRY_MAX_DELAY_MS,
        )


def compute_backoff_delay(attempt: int, config: RetryConfig) -> float:
    """
    Delay in milliseconds before the retry that follows ``attempt``.

    ``initial * multiplier ** (attempt - 1)``, capped at ``max_delay_ms``.
    """
    delay = config.initial_delay_ms * (config.backoff_multiplier ** max(0, attempt - 1))
    delay = min(delay, config.max_delay_ms)
    if config.jitter:
        delay = delay * (0.5 + random.random() / 2)
    return delay


@dataclass
class RetryOutcome(Generic[T]):
    """Value produced by ``with_retry`` plus its attempt trace."""

    result: T
    attempts: int
    total_time_ms: float
    attempt_log: list[RetryAttemptRecord] = field(default_factory=list)

    @property
    def had_retries(self) -> bool:
        return self.attempts > 1

    @property
    def last_error_message(self) -> Optional[str]:
        for record in reversed(self.attempt_log):
            if record.error_message:
                return record.error_message
        return None


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetryOutcome[T]:
    """
    Run ``operation`` until it succeeds or the policy gives up.

    Non-retryable errors are re-raised unchanged on the attempt that hit them.
    Exhausting every attempt raises ``RetryExhausted`` carrying the trace.
    """
    config = config or RetryConfig()
    attempt_log: list[RetryAttemptRecord] = []
    start = time.perf_counter()
    last_error: Optional[BaseException] = None

    for attempt in range(1, config.max_attempts + 1):
        attempted_at = datetime.now(timezone.utc)
        attempt_start = time.perf_counter()
        try:
            result = await operation()
        except Exception as e:
            last_error = e
            attempt_log.append(
                RetryAttemptRecord(
                    attempt_number=attempt,
                    attempted_at=attempted_at,
                    success=False,
                    duration_ms=(time.perf_counter() - attempt_start) * 1000,
                    error_message=str(e) or type(e).__name__,
                )
            )
            if not config.is_retryable(e):
                logger.warning(f"Attempt {attempt}/{config.max_attempts} failed with non-retryable error: {e}")
                raise

            if attempt < config.max_attempts:
                delay_ms = compute_backoff_delay(attempt, config)
                logger.warning(
                    f"Attempt {attempt}/{config.max_attempts} failed: {e}. "
                    f"Retrying in {delay_ms:.0f}ms..."
                )
                await sleep(delay_ms / 1000)
            continue

        attempt_log.append(
            RetryAttemptRecord(
                attempt_number=attempt,
                attempted_at=attempted_at,
                success=True,
                duration_ms=(time.perf_counter() - attempt_start) * 1000,
            )
        )
        return RetryOutcome(
            result=result,
            attempts=attempt,
            total_time_ms=(time.perf_counter() - start) * 1000,
            attempt_log=attempt_log,
        )

    logger.error(f"All {config.max_attempts} attempts failed. Last error: {last_error}")
    raise RetryExhausted(config.max_attempts, last_error, attempt_log)
