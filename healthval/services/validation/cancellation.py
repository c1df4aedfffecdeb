"""
Cancellation and Retry Service.

Keeps two ledgers of operator actions against running validation work:

- Cancellation requests are delegated to the owning collaborator (queue,
  progress tracker, pipeline or the shared bulk stop flag)
- Retry requests re-run a failed operation through a handler registered for
  its type, with exponential backoff between attempts

Ledger state machines:
    Cancellation: PENDING -> IN_PROGRESS -> COMPLETED | FAILED
    Retry:        PENDING -> SCHEDULED | FAILED
                  SCHEDULED -> IN_PROGRESS | FAILED
                  IN_PROGRESS -> COMPLETED | EXHAUSTED | SCHEDULED | FAILED

Operational failures are recorded on the ledger entry and announced as
events; nothing here raises for them.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field

from healthval.core.config import EngineSettings, get_engine_settings
from healthval.core.enums import CancellationStatus, CancellationType, RetryStatus, RetryType
from healthval.services.collaborators import BulkValidationState, ProgressService, QueueService
from healthval.services.events import EngineEvent, EventEmitter
from healthval.services.retry import is_non_retryable_error
from healthval.services.validation.pipeline import ValidationPipeline
from healthval.utils.errors import RetryHandlerMissing
from healthval.utils.logging import get_logger

logger = get_logger(__name__)

RetryHandler = Callable[["RetryRequest"], Union[Awaitable[Any], Any]]

BULK_TARGET = "bulk_validation"
ALL_TARGET = "all"
CANCELLED_BY_USER = "Retry cancelled by user"

CANCELLATION_TRANSITIONS: dict[CancellationStatus, set[CancellationStatus]] = {
    CancellationStatus.PENDING: {CancellationStatus.IN_PROGRESS, CancellationStatus.FAILED},
    CancellationStatus.IN_PROGRESS: {CancellationStatus.COMPLETED, CancellationStatus.FAILED},
}

RETRY_TRANSITIONS: dict[RetryStatus, set[RetryStatus]] = {
    RetryStatus.PENDING: {RetryStatus.SCHEDULED, RetryStatus.FAILED},
    RetryStatus.SCHEDULED: {RetryStatus.IN_PROGRESS, RetryStatus.FAILED},
    RetryStatus.IN_PROGRESS: {
        RetryStatus.COMPLETED,
        RetryStatus.EXHAUSTED,
        RetryStatus.SCHEDULED,
        RetryStatus.FAILED,
    },
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvalidTransition(RuntimeError):
    """Raised when a ledger entry is moved along an edge the table forbids."""


# =============================================================================
# Models
# =============================================================================


class RetryPolicy(BaseModel):
    """Backoff policy for one retry type."""

    max_retry_attempts: int = Field(3, ge=1)
    retry_delay_ms: int = Field(5000, ge=0)
    exponential_backoff: bool = True
    backoff_multiplier: float = Field(2.0, ge=1.0)
    max_retry_delay_ms: int = Field(60000, ge=0)
    retryable_errors: list[str] = Field(
        default_factory=lambda: ["timeout", "network", "connection", "unavailable", "rate limit"]
    )
    non_retryable_errors: list[str] = Field(
        default_factory=lambda: ["validation error", "unauthorized", "forbidden", "not found"]
    )

    @classmethod
    def from_settings(cls, settings: Optional[EngineSettings] = None) -> "RetryPolicy":
        s = settings or get_engine_settings()
        return cls(
            max_retry_attempts=s.CANCELLATION_RETRY_MAX_ATTEMPTS,
            retry_delay_ms=s.CANCELLATION_RETRY_DELAY_MS,
            backoff_multiplier=s.CANCELLATION_RETRY_BACKOFF_MULTIPLIER,
            max_retry_delay_ms=s.CANCELLATION_RETRY_MAX_DELAY_MS,
        )

    def is_retryable(self, error: BaseException) -> bool:
        message = str(error).lower()
        if any(pattern.lower() in message for pattern in self.non_retryable_errors):
            return False
        if any(pattern.lower() in message for pattern in self.retryable_errors):
            return True
        return not is_non_retryable_error(error)

    def first_delay_ms(self) -> int:
        return min(self.retry_delay_ms, self.max_retry_delay_ms)

    def next_delay_ms(self, current_ms: int) -> int:
        if not self.exponential_backoff:
            return current_ms
        return int(min(current_ms * self.backoff_multiplier, self.max_retry_delay_ms))


@dataclass
class StatusChange:
    status: str
    at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "at": self.at.isoformat()}


@dataclass
class CancellationRequest:
    """Ledger entry for one cancellation."""

    type: CancellationType
    target_id: str
    reason: Optional[str] = None
    requested_by: Optional[str] = None
    id: str = field(default_factory=lambda: uuid4().hex)
    requested_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    status: CancellationStatus = CancellationStatus.PENDING
    error: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    status_history: list[StatusChange] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in (CancellationStatus.COMPLETED, CancellationStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "target_id": self.target_id,
            "reason": self.reason,
            "requested_by": self.requested_by,
            "requested_at": self.requested_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "status": self.status.value,
            "error": self.error,
            "details": self.details,
            "status_history": [c.to_dict() for c in self.status_history],
        }


@dataclass
class RetryRequest:
    """Ledger entry for one retry of a failed operation."""

    type: RetryType
    target_id: str
    policy: RetryPolicy
    reason: Optional[str] = None
    requested_by: Optional[str] = None
    id: str = field(default_factory=lambda: uuid4().hex)
    requested_at: datetime = field(default_factory=_utcnow)
    original_attempts: int = 0
    attempts: int = 0
    retry_delay_ms: int = 0
    status: RetryStatus = RetryStatus.PENDING
    next_retry_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Any = None
    delay_history: list[int] = field(default_factory=list)
    status_history: list[StatusChange] = field(default_factory=list)

    @property
    def max_retry_attempts(self) -> int:
        return self.policy.max_retry_attempts

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "target_id": self.target_id,
            "reason": self.reason,
            "requested_by": self.requested_by,
            "requested_at": self.requested_at.isoformat(),
            "original_attempts": self.original_attempts,
            "max_retry_attempts": self.max_retry_attempts,
            "attempts": self.attempts,
            "retry_delay_ms": self.retry_delay_ms,
            "status": self.status.value,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "delay_history": list(self.delay_history),
            "status_history": [c.to_dict() for c in self.status_history],
        }


@dataclass
class CancellationRetryStats:
    total_cancellations: int = 0
    active_cancellations: int = 0
    completed_cancellations: int = 0
    failed_cancellations: int = 0
    total_retries: int = 0
    active_retries: int = 0
    completed_retries: int = 0
    exhausted_retries: int = 0
    failed_retries: int = 0

    @property
    def retry_success_rate(self) -> float:
        finished = self.completed_retries + self.exhausted_retries + self.failed_retries
        return round(self.completed_retries / finished, 4) if finished else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_cancellations": self.total_cancellations,
            "active_cancellations": self.active_cancellations,
            "completed_cancellations": self.completed_cancellations,
            "failed_cancellations": self.failed_cancellations,
            "total_retries": self.total_retries,
            "active_retries": self.active_retries,
            "completed_retries": self.completed_retries,
            "exhausted_retries": self.exhausted_retries,
            "failed_retries": self.failed_retries,
            "retry_success_rate": self.retry_success_rate,
        }


@dataclass
class EmergencyStopReport:
    reason: str
    cancelled: int
    failed: int
    retries_cancelled: int
    requests: list[CancellationRequest] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "cancelled": self.cancelled,
            "failed": self.failed,
            "retries_cancelled": self.retries_cancelled,
            "request_ids": [r.id for r in self.requests],
        }


# =============================================================================
# Service
# =============================================================================


class CancellationRetryService:
    """Cancellation and retry ledgers for validation operations."""

    def __init__(
        self,
        queue_service: Optional[QueueService] = None,
        progress_service: Optional[ProgressService] = None,
        pipeline: Optional[ValidationPipeline] = None,
        bulk_state: Optional[BulkValidationState] = None,
        events: Optional[EventEmitter] = None,
        default_policies: Optional[dict[RetryType, RetryPolicy]] = None,
        retry_handlers: Optional[dict[RetryType, RetryHandler]] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        settings: Optional[EngineSettings] = None,
    ):
        self._settings = settings or get_engine_settings()
        self.queue_service = queue_service
        self.progress_service = progress_service
        self.pipeline = pipeline
        self.bulk_state = bulk_state or (pipeline.bulk_state if pipeline else BulkValidationState())
        self.events = events or (pipeline.events if pipeline else EventEmitter())

        base_policy = RetryPolicy.from_settings(self._settings)
        self._policies: dict[RetryType, RetryPolicy] = {
            retry_type: base_policy.model_copy(deep=True) for retry_type in RetryType
        }
        self._policies.update(default_policies or {})
        self._handlers: dict[RetryType, RetryHandler] = dict(retry_handlers or {})

        self._cancellations: dict[str, CancellationRequest] = {}
        self._retries: dict[str, RetryRequest] = {}
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._cleanup_task: Optional[asyncio.Task[None]] = None
        self._clock = clock
        self._sleep = sleep

    # =========================================================================
    # Ledger helpers
    # =========================================================================

    def _transition(
        self,
        entry: Union[CancellationRequest, RetryRequest],
        status: Union[CancellationStatus, RetryStatus],
    ) -> None:
        table: dict[Any, set[Any]] = (
            CANCELLATION_TRANSITIONS if isinstance(entry, CancellationRequest) else RETRY_TRANSITIONS
        )
        if status not in table.get(entry.status, set()):
            raise InvalidTransition(
                f"{type(entry).__name__} {entry.id}: {entry.status.value} -> {status.value} not allowed"
            )
        entry.status = status  # type: ignore[assignment]
        entry.status_history.append(StatusChange(status=status.value, at=self._clock()))

    # =========================================================================
    # Cancellation
    # =========================================================================

    async def cancel_operation(
        self,
        cancellation_type: CancellationType,
        target_id: str,
        reason: Optional[str] = None,
        requested_by: Optional[str] = None,
    ) -> CancellationRequest:
        """
        Cancel one operation and record the outcome.

        Returns the ledger entry, COMPLETED or FAILED.
        """
        request = CancellationRequest(
            type=cancellation_type,
            target_id=target_id,
            reason=reason,
            requested_by=requested_by,
            requested_at=self._clock(),
        )
        request.status_history.append(StatusChange(status=request.status.value, at=request.requested_at))
        self._cancellations[request.id] = request
        self.events.emit(EngineEvent.CANCELLATION_REQUESTED, request.to_dict())

        self._transition(request, CancellationStatus.IN_PROGRESS)
        try:
            error = self._perform_cancellation(request)
        except Exception as e:
            logger.error(f"Cancellation {request.id} of {target_id} raised: {e}")
            error = str(e) or type(e).__name__

        request.completed_at = self._clock()
        if error is None:
            self._transition(request, CancellationStatus.COMPLETED)
            logger.info(f"Cancelled {cancellation_type.value} {target_id} ({request.id})")
            self.events.emit(EngineEvent.CANCELLATION_COMPLETED, request.to_dict())
        else:
            request.error = error
            self._transition(request, CancellationStatus.FAILED)
            logger.warning(f"Cancellation of {cancellation_type.value} {target_id} failed: {error}")
            self.events.emit(EngineEvent.CANCELLATION_FAILED, request.to_dict())
        return request

    def _perform_cancellation(self, request: CancellationRequest) -> Optional[str]:
        """Delegate to the owning collaborator. Returns an error message or None."""
        kind = request.type
        target = request.target_id
        reason = request.reason or "cancelled"

        if kind == CancellationType.QUEUE_ITEM:
            if self.queue_service is None:
                return "No queue service configured"
            if not self.queue_service.cancel_validation(target):
                return f"Queue item {target} not found or not active"
            return None

        if kind == CancellationType.QUEUE_BATCH:
            if self.queue_service is None:
                return "No queue service configured"
            request.details["items_cancelled"] = self.queue_service.cancel_batch(target)
            return None

        if kind == CancellationType.INDIVIDUAL_RESOURCE:
            if self.progress_service is None:
                return "No progress service configured"
            if not self.progress_service.cancel_resource_progress(target):
                return f"No active validation for resource {target}"
            return None

        if kind == CancellationType.PIPELINE:
            if self.pipeline is None:
                return "No validation pipeline configured"
            if not self.pipeline.cancel_pipeline(target):
                return f"Pipeline {target} not found"
            return None

        if kind == CancellationType.BULK_VALIDATION:
            self.bulk_state.request_stop(reason)
            return None

        if kind == CancellationType.ALL_OPERATIONS:
            self.bulk_state.request_stop(reason)
            cancelled = []
            if self.pipeline is not None:
                for pipeline_id in self.pipeline.list_active_pipelines():
                    if self.pipeline.cancel_pipeline(pipeline_id):
                        cancelled.append(pipeline_id)
            request.details["pipelines_cancelled"] = cancelled
            return None

        return f"Unsupported cancellation type: {kind}"

    def _active_targets(self, cancellation_type: CancellationType) -> list[str]:
        if cancellation_type == CancellationType.QUEUE_ITEM:
            return self.queue_service.list_active_items() if self.queue_service else []
        if cancellation_type == CancellationType.QUEUE_BATCH:
            return self.queue_service.list_active_batches() if self.queue_service else []
        if cancellation_type == CancellationType.INDIVIDUAL_RESOURCE:
            return self.progress_service.list_active_resources() if self.progress_service else []
        if cancellation_type == CancellationType.PIPELINE:
            return self.pipeline.list_active_pipelines() if self.pipeline else []
        if cancellation_type == CancellationType.BULK_VALIDATION:
            return [BULK_TARGET] if self.bulk_state.is_running else []
        return [ALL_TARGET]

    async def cancel_all_operations(
        self,
        cancellation_type: CancellationType,
        reason: Optional[str] = None,
        requested_by: Optional[str] = None,
    ) -> list[CancellationRequest]:
        """Cancel every active operation of a type."""
        targets = self._active_targets(cancellation_type)
        requests = []
        for target_id in targets:
            requests.append(
                await self.cancel_operation(cancellation_type, target_id, reason, requested_by)
            )
        logger.info(f"Cancel-all {cancellation_type.value}: {len(requests)} operations")
        return requests

    async def emergency_stop(
        self, reason: str = "Emergency stop", requested_by: Optional[str] = None
    ) -> EmergencyStopReport:
        """Cancel everything: every operation type, pending retries and bulk loops."""
        logger.warning(f"Emergency stop requested by {requested_by or 'unknown'}: {reason}")
        requests: list[CancellationRequest] = []
        for cancellation_type in CancellationType:
            if cancellation_type == CancellationType.ALL_OPERATIONS:
                continue
            requests.extend(
                await self.cancel_all_operations(cancellation_type, reason, requested_by)
            )
        self.bulk_state.request_stop(reason)

        retries_cancelled = 0
        for retry_id in [r.id for r in self.get_active_retries()]:
            if self.cancel_retry(retry_id):
                retries_cancelled += 1

        report = EmergencyStopReport(
            reason=reason,
            cancelled=sum(1 for r in requests if r.status == CancellationStatus.COMPLETED),
            failed=sum(1 for r in requests if r.status == CancellationStatus.FAILED),
            retries_cancelled=retries_cancelled,
            requests=requests,
        )
        self.events.emit(EngineEvent.EMERGENCY_STOP_COMPLETED, report.to_dict())
        return report

    # =========================================================================
    # Retry
    # =========================================================================

    def register_retry_handler(self, retry_type: RetryType, handler: RetryHandler) -> None:
        self._handlers[retry_type] = handler

    def get_retry_policy(self, retry_type: RetryType) -> RetryPolicy:
        return self._policies[retry_type]

    def update_retry_policy(self, retry_type: RetryType, **overrides: Any) -> RetryPolicy:
        """Merge overrides into the default policy of a type."""
        merged = RetryPolicy.model_validate(
            {**self._policies[retry_type].model_dump(), **overrides}
        )
        self._policies[retry_type] = merged
        logger.info(f"Retry policy for {retry_type.value} updated: {overrides}")
        self.events.emit(
            EngineEvent.RETRY_POLICY_UPDATED,
            {"type": retry_type.value, "policy": merged.model_dump()},
        )
        return merged

    async def retry_operation(
        self,
        retry_type: RetryType,
        target_id: str,
        reason: Optional[str] = None,
        requested_by: Optional[str] = None,
        policy: Optional[dict[str, Any]] = None,
    ) -> RetryRequest:
        """
        Record a retry request and schedule its first attempt after the
        policy's base delay.
        """
        merged = RetryPolicy.model_validate(
            {**self._policies[retry_type].model_dump(), **(policy or {})}
        )
        original_attempts = sum(
            r.attempts
            for r in self._retries.values()
            if r.type == retry_type and r.target_id == target_id
        )
        request = RetryRequest(
            type=retry_type,
            target_id=target_id,
            policy=merged,
            reason=reason,
            requested_by=requested_by,
            requested_at=self._clock(),
            original_attempts=original_attempts,
        )
        request.status_history.append(StatusChange(status=request.status.value, at=request.requested_at))
        self._retries[request.id] = request
        logger.info(f"Retry requested for {retry_type.value} {target_id} ({request.id})")
        self.events.emit(EngineEvent.RETRY_REQUESTED, request.to_dict())

        self._schedule(request, merged.first_delay_ms())
        return request

    async def retry_all_failed_operations(
        self,
        retry_type: RetryType,
        reason: Optional[str] = None,
        requested_by: Optional[str] = None,
        policy: Optional[dict[str, Any]] = None,
    ) -> list[RetryRequest]:
        """Retry every failed cancellation target and exhausted retry target of a type."""
        active = {
            r.target_id
            for r in self._retries.values()
            if r.type == retry_type and not r.status.is_terminal
        }
        targets: list[str] = []
        for cancellation in self._cancellations.values():
            if (
                cancellation.type.value == retry_type.value
                and cancellation.status == CancellationStatus.FAILED
                and cancellation.target_id not in active
                and cancellation.target_id not in targets
            ):
                targets.append(cancellation.target_id)
        for retry in self._retries.values():
            if (
                retry.type == retry_type
                and retry.status == RetryStatus.EXHAUSTED
                and retry.target_id not in active
                and retry.target_id not in targets
            ):
                targets.append(retry.target_id)

        requests = []
        for target_id in targets:
            requests.append(
                await self.retry_operation(retry_type, target_id, reason, requested_by, policy)
            )
        return requests

    def _schedule(self, request: RetryRequest, delay_ms: int) -> None:
        self._transition(request, RetryStatus.SCHEDULED)
        request.retry_delay_ms = delay_ms
        request.delay_history.append(delay_ms)
        request.next_retry_at = self._clock() + timedelta(milliseconds=delay_ms)
        self._timers[request.id] = asyncio.create_task(self._run_after(request, delay_ms))
        self.events.emit(
            EngineEvent.RETRY_SCHEDULED,
            {
                "id": request.id,
                "type": request.type.value,
                "target_id": request.target_id,
                "attempt": request.attempts + 1,
                "delay_ms": delay_ms,
                "next_retry_at": request.next_retry_at.isoformat(),
            },
        )

    async def _run_after(self, request: RetryRequest, delay_ms: int) -> None:
        try:
            await self._sleep(delay_ms / 1000)
            await self.execute_retry(request)
        finally:
            if self._timers.get(request.id) is asyncio.current_task():
                self._timers.pop(request.id, None)

    async def execute_retry(self, request: RetryRequest) -> None:
        """Run one attempt of a scheduled retry and decide what happens next."""
        if request.status != RetryStatus.SCHEDULED:
            return

        self._transition(request, RetryStatus.IN_PROGRESS)
        request.attempts += 1
        request.next_retry_at = None

        handler = self._handlers.get(request.type)
        if handler is None:
            error = RetryHandlerMissing(request.type.value)
            request.error = str(error)
            request.completed_at = self._clock()
            self._transition(request, RetryStatus.FAILED)
            logger.error(f"Retry {request.id} failed: {error}")
            return

        try:
            outcome = handler(request)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as e:
            if request.status.is_terminal:
                return
            request.error = str(e) or type(e).__name__
            if request.policy.is_retryable(e) and request.attempts < request.max_retry_attempts:
                delay_ms = request.policy.next_delay_ms(request.retry_delay_ms)
                logger.warning(
                    f"Retry {request.id} attempt {request.attempts}/{request.max_retry_attempts} "
                    f"failed: {e}; next attempt in {delay_ms}ms"
                )
                self._schedule(request, delay_ms)
                return

            request.completed_at = self._clock()
            self._transition(request, RetryStatus.EXHAUSTED)
            logger.error(
                f"Retry {request.id} exhausted after {request.attempts} attempts: {request.error}"
            )
            self.events.emit(EngineEvent.RETRY_EXHAUSTED, request.to_dict())
            return

        if request.status.is_terminal:
            return
        request.result = outcome
        request.error = None
        request.completed_at = self._clock()
        self._transition(request, RetryStatus.COMPLETED)
        logger.info(f"Retry {request.id} completed on attempt {request.attempts}")
        self.events.emit(EngineEvent.RETRY_COMPLETED, request.to_dict())

    def cancel_retry(self, retry_id: str) -> bool:
        """Stop a retry that has not finished. False for unknown or finished retries."""
        request = self._retries.get(retry_id)
        if request is None or request.status.is_terminal:
            return False

        request.error = CANCELLED_BY_USER
        request.completed_at = self._clock()
        request.next_retry_at = None
        self._transition(request, RetryStatus.FAILED)

        timer = self._timers.pop(retry_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

        logger.info(f"Retry {retry_id} cancelled")
        self.events.emit(EngineEvent.RETRY_CANCELLED, request.to_dict())
        return True

    # =========================================================================
    # Queries / maintenance
    # =========================================================================

    def get_cancellation(self, cancellation_id: str) -> Optional[CancellationRequest]:
        return self._cancellations.get(cancellation_id)

    def get_retry(self, retry_id: str) -> Optional[RetryRequest]:
        return self._retries.get(retry_id)

    def get_active_cancellations(self) -> list[CancellationRequest]:
        return [c for c in self._cancellations.values() if not c.is_terminal]

    def get_active_retries(self) -> list[RetryRequest]:
        return [r for r in self._retries.values() if not r.status.is_terminal]

    def get_stats(self) -> CancellationRetryStats:
        cancellations = list(self._cancellations.values())
        retries = list(self._retries.values())
        return CancellationRetryStats(
            total_cancellations=len(cancellations),
            active_cancellations=sum(1 for c in cancellations if not c.is_terminal),
            completed_cancellations=sum(
                1 for c in cancellations if c.status == CancellationStatus.COMPLETED
            ),
            failed_cancellations=sum(
                1 for c in cancellations if c.status == CancellationStatus.FAILED
            ),
            total_retries=len(retries),
            active_retries=sum(1 for r in retries if not r.status.is_terminal),
            completed_retries=sum(1 for r in retries if r.status == RetryStatus.COMPLETED),
            exhausted_retries=sum(1 for r in retries if r.status == RetryStatus.EXHAUSTED),
            failed_retries=sum(1 for r in retries if r.status == RetryStatus.FAILED),
        )

    def clear_old_requests(self, older_than_hours: Optional[float] = None) -> int:
        """Drop finished ledger entries completed before the retention window."""
        hours = older_than_hours if older_than_hours is not None else self._settings.LEDGER_RETENTION_HOURS
        cutoff = self._clock() - timedelta(hours=hours)

        stale_cancellations = [
            c.id
            for c in self._cancellations.values()
            if c.is_terminal and c.completed_at is not None and c.completed_at < cutoff
        ]
        stale_retries = [
            r.id
            for r in self._retries.values()
            if r.status.is_terminal and r.completed_at is not None and r.completed_at < cutoff
        ]
        for cancellation_id in stale_cancellations:
            del self._cancellations[cancellation_id]
        for retry_id in stale_retries:
            del self._retries[retry_id]

        removed = len(stale_cancellations) + len(stale_retries)
        if removed:
            logger.info(f"Cleaned up {removed} ledger entries older than {hours}h")
            self.events.emit(
                EngineEvent.REQUESTS_CLEANED_UP,
                {
                    "cancellations": len(stale_cancellations),
                    "retries": len(stale_retries),
                    "older_than_hours": hours,
                },
            )
        return removed

    def start(self) -> None:
        """Start the periodic ledger cleanup."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        interval = self._settings.LEDGER_CLEANUP_INTERVAL_SECONDS
        while True:
            await self._sleep(interval)
            try:
                self.clear_old_requests()
            except Exception as e:
                logger.error(f"Ledger cleanup failed: {e}")

    async def close(self) -> None:
        """Cancel the cleanup loop and every pending retry timer."""
        tasks = list(self._timers.values())
        if self._cleanup_task is not None:
            tasks.append(self._cleanup_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        self._cleanup_task = None
