"""
Validation Engine.

Validates one record across six aspects and aggregates the findings:
- Structural runs first and always
- Profile, terminology, reference, business-rule and metadata run
  concurrently (or one after another when parallelism is off)
- Results are cached by record content and settings snapshot
- Admission is capped; callers past the cap are rejected immediately

Upstream lookups made by aspects go through per-service circuit breakers and
dedicated caches owned by the engine.
"""

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field

from healthval.core.config import EngineSettings, get_engine_settings
from healthval.core.enums import ALL_ASPECTS, IssueSeverity, ValidationAspect
from healthval.gateways.base import CircuitBreakerConfig, CircuitBreakerRegistry
from healthval.schemas.settings import ValidationSettings
from healthval.schemas.validation import (
    AspectResult,
    RetryInfo,
    ValidationIssue,
    ValidationRequest,
    ValidationResult,
    ValidationTiming,
)
from healthval.services.cache import EngineCaches, make_cache_key
from healthval.services.collaborators import (
    ProfileResolver,
    ReferenceResolver,
    SettingsService,
    TerminologyResolver,
    ValidatorPool,
    get_pool_health,
    load_settings,
)
from healthval.services.events import EngineEvent, EventEmitter
from healthval.services.retry import RetryConfig, with_retry
from healthval.services.validation.aspects.base import (
    AspectContext,
    AspectValidator,
    aspect_validator,
)
from healthval.services.validation.aspects.business_rules import validate_business_rules
from healthval.services.validation.aspects.metadata import validate_metadata
from healthval.services.validation.aspects.profile import validate_profile
from healthval.services.validation.aspects.reference import validate_references
from healthval.services.validation.aspects.structural import validate_structural
from healthval.services.validation.aspects.terminology import validate_terminology
from healthval.services.validation.external import ExternalServices
from healthval.services.validation.scoring import (
    build_aspect_result,
    build_summary,
    disabled_aspect_result,
)
from healthval.utils.errors import (
    AdmissionLimitExceeded,
    PipelineTimeout,
    ValidationPipelineError,
    ValidationSystemError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Per-aspect time budgets; upstream-bound aspects get more room
ASPECT_TIMEOUTS_MS: dict[ValidationAspect, int] = {
    ValidationAspect.STRUCTURAL: 5000,
    ValidationAspect.PROFILE: 45000,
    ValidationAspect.TERMINOLOGY: 60000,
    ValidationAspect.REFERENCE: 30000,
    ValidationAspect.BUSINESS_RULE: 30000,
    ValidationAspect.METADATA: 5000,
}


class ValidationEngineConfig(BaseModel):
    """Engine behaviour switches."""

    enable_parallel_validation: bool = True
    max_concurrent_validations: int = Field(10, ge=1)
    default_timeout_ms: int = Field(90000, ge=1)
    aspect_timeouts_ms: dict[ValidationAspect, int] = Field(
        default_factory=lambda: dict(ASPECT_TIMEOUTS_MS)
    )
    include_debug_info: bool = False
    enable_result_caching: bool = True

    def aspect_timeout_ms(self, aspect: ValidationAspect, override: Optional[int] = None) -> int:
        """Budget for one aspect: the settings override, else the engine table."""
        if override is not None:
            return override
        return self.aspect_timeouts_ms.get(aspect, ASPECT_TIMEOUTS_MS[aspect])

    @classmethod
    def from_settings(cls, settings: Optional[EngineSettings] = None) -> "ValidationEngineConfig":
        s = settings or get_engine_settings()
        return cls(
            enable_parallel_validation=s.ENGINE_PARALLEL_VALIDATION,
            max_concurrent_validations=s.ENGINE_MAX_CONCURRENT_VALIDATIONS,
            default_timeout_ms=s.ENGINE_DEFAULT_TIMEOUT_MS,
            include_debug_info=s.ENGINE_INCLUDE_DEBUG_INFO,
            enable_result_caching=s.ENGINE_RESULT_CACHING,
        )


def default_aspect_validators() -> dict[ValidationAspect, AspectValidator]:
    """The built-in validator for each aspect."""
    return {
        ValidationAspect.STRUCTURAL: validate_structural,
        ValidationAspect.PROFILE: validate_profile,
        ValidationAspect.TERMINOLOGY: validate_terminology,
        ValidationAspect.REFERENCE: validate_references,
        ValidationAspect.BUSINESS_RULE: validate_business_rules,
        ValidationAspect.METADATA: validate_metadata,
    }


@dataclass
class EngineHealthStatus:
    """Point-in-time view of engine load and history."""

    active_validations: int
    max_concurrent_validations: int
    peak_active_validations: int
    total_validations: int
    total_errors: int
    cache_hits: int
    last_completed_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_duration_ms: Optional[float] = None
    circuit_breakers: dict[str, Any] = field(default_factory=dict)
    caches: dict[str, Any] = field(default_factory=dict)
    validator_pool: Optional[dict[str, Any]] = None

    @property
    def is_healthy(self) -> bool:
        return all(b["state"] != "open" for b in self.circuit_breakers.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_healthy": self.is_healthy,
            "active_validations": self.active_validations,
            "max_concurrent_validations": self.max_concurrent_validations,
            "peak_active_validations": self.peak_active_validations,
            "total_validations": self.total_validations,
            "total_errors": self.total_errors,
            "cache_hits": self.cache_hits,
            "last_completed_at": self.last_completed_at.isoformat() if self.last_completed_at else None,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
            "last_error": self.last_error,
            "last_duration_ms": self.last_duration_ms,
            "circuit_breakers": self.circuit_breakers,
            "caches": self.caches,
            "validator_pool": self.validator_pool,
        }


class ValidationEngine:
    """
    Multi-aspect validation engine.

    Collaborators are injected; anything omitted gets an in-process default
    (no settings service means default settings, no resolvers means local
    checks only).
    """

    def __init__(
        self,
        settings_service: Optional[SettingsService] = None,
        config: Optional[ValidationEngineConfig] = None,
        events: Optional[EventEmitter] = None,
        validators: Optional[dict[ValidationAspect, AspectValidator]] = None,
        caches: Optional[EngineCaches] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        terminology_resolver: Optional[TerminologyResolver] = None,
        profile_resolver: Optional[ProfileResolver] = None,
        reference_resolver: Optional[ReferenceResolver] = None,
        validator_pool: Optional[ValidatorPool] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        settings = get_engine_settings()
        self.config = config or ValidationEngineConfig.from_settings(settings)
        self.events = events or EventEmitter()
        self.caches = caches or EngineCaches.from_settings(settings)
        self.breakers = breakers or CircuitBreakerRegistry(
            CircuitBreakerConfig(
                failure_threshold=settings.CIRCUIT_BREAKER_THRESHOLD,
                cooldown_seconds=settings.CIRCUIT_BREAKER_COOLDOWN_SECONDS,
            ),
            events=self.events,
        )
        self.retry_config = retry_config or RetryConfig.from_settings(settings)
        self._settings_service = settings_service
        self._validator_pool = validator_pool
        self._external = ExternalServices(
            self.breakers,
            self.caches,
            terminology=terminology_resolver,
            profiles=profile_resolver,
            references=reference_resolver,
        )

        registered = default_aspect_validators()
        registered.update(validators or {})
        self._validators = {
            aspect: aspect_validator(aspect)(fn) for aspect, fn in registered.items()
        }

        # Active operations: op id -> (request id, start time)
        self._active: dict[str, tuple[str, float]] = {}
        self._peak_active = 0
        self._total_validations = 0
        self._total_errors = 0
        self._cache_hits = 0
        self._last_completed_at: Optional[datetime] = None
        self._last_error_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._last_duration_ms: Optional[float] = None

        self._subscriptions: list[int] = []
        settings_events = getattr(settings_service, "events", None)
        if isinstance(settings_events, EventEmitter):
            self._settings_events: Optional[EventEmitter] = settings_events
            for event in (EngineEvent.SETTINGS_CHANGED, EngineEvent.SETTINGS_ACTIVATED):
                self._subscriptions.append(settings_events.on(event, self._on_settings_changed))
        else:
            self._settings_events = None

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def peak_active(self) -> int:
        return self._peak_active

    @property
    def max_concurrent(self) -> int:
        return self.config.max_concurrent_validations

    @property
    def settings_service(self) -> Optional[SettingsService]:
        return self._settings_service

    # =========================================================================
    # Validation
    # =========================================================================

    def _admit(self, request: ValidationRequest) -> str:
        # No await between the check and the registration.
        limit = self.config.max_concurrent_validations
        if len(self._active) >= limit:
            raise AdmissionLimitExceeded(limit, len(self._active))
        op_id = uuid4().hex
        self._active[op_id] = (request.request_id, time.perf_counter())
        self._peak_active = max(self._peak_active, len(self._active))
        return op_id

    async def validate_resource(self, request: ValidationRequest) -> ValidationResult:
        """
        Validate one record.

        Raises:
            AdmissionLimitExceeded: the engine is at its concurrency cap
            PipelineTimeout: the record exceeded ``default_timeout_ms``
            ValidationPipelineError: validation failed for an internal reason
        """
        start_time = time.perf_counter()
        try:
            op_id = self._admit(request)
        except AdmissionLimitExceeded as e:
            self._record_error(request, e, start_time)
            raise

        timeout_ms = self.config.default_timeout_ms
        try:
            result = await asyncio.wait_for(
                self._perform_validation(request, start_time), timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            error = PipelineTimeout(timeout_ms, request.resource_id)
            logger.warning(
                f"Validation of {request.resource_type}/{request.resource_id} "
                f"exceeded {timeout_ms}ms"
            )
            self._record_error(request, error, start_time)
            raise error
        except ValidationSystemError as e:
            self._record_error(request, e, start_time)
            raise
        except Exception as e:
            logger.error(f"Validation failed for {request.resource_type}/{request.resource_id}: {e}", exc_info=True)
            self._record_error(request, e, start_time)
            raise ValidationPipelineError(f"Validation failed: {e}", original_error=e) from e
        finally:
            self._active.pop(op_id, None)

        return result

    async def _perform_validation(
        self, request: ValidationRequest, start_time: float
    ) -> ValidationResult:
        load = await load_settings(self._settings_service)
        settings = load.settings
        settings_hash = settings.snapshot_hash()

        use_cache = (
            self.config.enable_result_caching
            and settings.cache_settings.enabled
            and not load.degraded
        )
        cache_key = make_cache_key(
            "result",
            request.resource,
            request.resource_type,
            request.profile_url,
            settings_hash,
        )
        if use_cache:
            cached = await self.caches.results.get(cache_key)
            if cached is not None:
                self._cache_hits += 1
                self._record_completion(request, cached, start_time, cached=True)
                return cached

        ctx = AspectContext(request=request, settings=settings, external=self._external)

        # Structural first
        aspect_results: dict[ValidationAspect, AspectResult] = {
            ValidationAspect.STRUCTURAL: await self._run_aspect(
                ValidationAspect.STRUCTURAL, request, settings, ctx
            )
        }

        remaining = [a for a in ALL_ASPECTS if a != ValidationAspect.STRUCTURAL]
        if self.config.enable_parallel_validation:
            outcomes = await asyncio.gather(
                *(self._run_aspect(a, request, settings, ctx) for a in remaining)
            )
            aspect_results.update(zip(remaining, outcomes))
        else:
            for aspect in remaining:
                aspect_results[aspect] = await self._run_aspect(aspect, request, settings, ctx)

        result = self._aggregate(request, aspect_results, settings_hash, load.degraded, start_time)

        if use_cache:
            await self.caches.results.set(
                cache_key, result, ttl_seconds=settings.cache_settings.ttl_ms / 1000
            )

        self._record_completion(request, result, start_time, cached=False)
        return result

    async def _run_aspect(
        self,
        aspect: ValidationAspect,
        request: ValidationRequest,
        settings: ValidationSettings,
        ctx: AspectContext,
    ) -> AspectResult:
        aspect_config = settings.aspect_config(aspect)
        if not aspect_config.enabled:
            return disabled_aspect_result(aspect)

        timeout_ms = self.config.aspect_timeout_ms(aspect, aspect_config.timeout_ms)
        start = time.perf_counter()
        try:
            issues = await asyncio.wait_for(
                self._validators[aspect](request.resource, aspect_config, ctx),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"{aspect.value} validation of {request.resource_type}/{request.resource_id} "
                f"timed out after {timeout_ms}ms"
            )
            issues = [
                ValidationIssue(
                    severity=IssueSeverity.ERROR,
                    code=f"{aspect.name}_TIMEOUT",
                    message=f"{aspect.value} validation timed out after {timeout_ms}ms",
                    aspect=aspect,
                    context={"timeout_ms": timeout_ms},
                )
            ]
        duration_ms = (time.perf_counter() - start) * 1000

        if self.config.include_debug_info:
            logger.debug(
                f"{aspect.value} produced {len(issues)} issues for "
                f"{request.resource_type}/{request.resource_id} in {duration_ms:.1f}ms"
            )

        self.events.emit(
            EngineEvent.ASPECT_COMPLETED,
            {
                "request_id": request.request_id,
                "resource_type": request.resource_type,
                "resource_id": request.resource_id,
                "aspect": aspect.value,
                "issue_count": len(issues),
                "duration_ms": duration_ms,
            },
        )
        return build_aspect_result(aspect, issues, enabled=True, duration_ms=duration_ms)

    def _aggregate(
        self,
        request: ValidationRequest,
        aspect_results: dict[ValidationAspect, AspectResult],
        settings_hash: str,
        degraded: bool,
        start_time: float,
    ) -> ValidationResult:
        ordered = {aspect: aspect_results[aspect] for aspect in ALL_ASPECTS}
        issues: list[ValidationIssue] = []
        for aspect_result in ordered.values():
            issues.extend(aspect_result.issues)

        summary = build_summary(issues, ordered)
        return ValidationResult(
            is_valid=summary.passed,
            resource_type=request.resource_type or "",
            resource_id=request.resource_id,
            profile_url=request.profile_url,
            issues=issues,
            aspects=ordered,
            score=summary.score,
            summary=summary,
            timing=ValidationTiming(
                total_ms=(time.perf_counter() - start_time) * 1000,
                aspect_ms={a: r.duration_ms for a, r in ordered.items()},
            ),
            settings_hash=settings_hash,
            used_default_settings=degraded,
            request_id=request.request_id,
            context=request.context.model_dump(),
        )

    def _record_completion(
        self,
        request: ValidationRequest,
        result: ValidationResult,
        start_time: float,
        cached: bool,
    ) -> None:
        duration_ms = (time.perf_counter() - start_time) * 1000
        self._total_validations += 1
        self._last_completed_at = datetime.now(timezone.utc)
        self._last_duration_ms = duration_ms
        self.events.emit(
            EngineEvent.VALIDATION_COMPLETED,
            {
                "request_id": request.request_id,
                "resource_type": request.resource_type,
                "resource_id": request.resource_id,
                "is_valid": result.is_valid,
                "score": result.score,
                "cached": cached,
                "duration_ms": duration_ms,
                "result": result,
            },
        )

    def _record_error(
        self, request: ValidationRequest, error: BaseException, start_time: float
    ) -> None:
        duration_ms = (time.perf_counter() - start_time) * 1000
        self._total_errors += 1
        self._last_error_at = datetime.now(timezone.utc)
        self._last_error = str(error)
        self.events.emit(
            EngineEvent.VALIDATION_ERROR,
            {
                "request_id": request.request_id,
                "resource_type": request.resource_type,
                "resource_id": request.resource_id,
                "error": str(error),
                "error_type": type(error).__name__,
                "duration_ms": duration_ms,
            },
        )

    async def validate_resources(
        self, requests: list[ValidationRequest]
    ) -> list[ValidationResult]:
        """Validate many records in chunks of at most the admission cap, in order."""
        results: list[ValidationResult] = []
        if not self.config.enable_parallel_validation:
            for request in requests:
                results.append(await self.validate_resource(request))
            return results

        chunk_size = self.config.max_concurrent_validations
        for i in range(0, len(requests), chunk_size):
            chunk = requests[i : i + chunk_size]
            results.extend(await asyncio.gather(*(self.validate_resource(r) for r in chunk)))
        return results

    async def validate_against_profile(
        self, request: ValidationRequest, profile_url: str
    ) -> ValidationResult:
        """Validate with ``profile_url`` added to the record's declared profiles."""
        return await self.validate_resource(request.model_copy(update={"profile_url": profile_url}))

    async def validate_resource_with_retry(
        self,
        request: ValidationRequest,
        retry_config: Optional[RetryConfig] = None,
    ) -> ValidationResult:
        """
        Validate, retrying transient failures with exponential backoff.

        The returned result is a copy carrying ``retry_info``; cached results
        are never modified.

        Raises:
            RetryExhausted: every attempt failed with a retryable error
        """
        config = retry_config or self.retry_config
        outcome = await with_retry(lambda: self.validate_resource(request), config)

        previous = outcome.attempt_log[:-1]
        retry_info = RetryInfo(
            attempt_count=outcome.attempts,
            max_attempts=config.max_attempts,
            is_retry=outcome.had_retries,
            previous_attempts=previous,
            total_retry_duration_ms=outcome.total_time_ms,
            can_retry=outcome.attempts < config.max_attempts,
            retry_reason=previous[-1].error_message if previous else None,
        )
        if outcome.had_retries:
            logger.info(
                f"Validation of {request.resource_type}/{request.resource_id} "
                f"succeeded after {outcome.attempts} attempts"
            )
        return dataclasses.replace(outcome.result, retry_info=retry_info)

    async def call_external(self, service: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an upstream call through the service's circuit breaker."""
        return await self.breakers.call(service, operation)

    # =========================================================================
    # Settings / lifecycle
    # =========================================================================

    async def _on_settings_changed(self, payload: dict[str, Any]) -> None:
        cleared = await self.caches.clear_all()
        logger.info(f"Settings changed, dropped {cleared} cached validation entries")

    async def clear_caches(self) -> int:
        return await self.caches.clear_all()

    def get_health_status(self) -> EngineHealthStatus:
        pool = get_pool_health(self._validator_pool).to_dict() if self._validator_pool else None
        return EngineHealthStatus(
            active_validations=len(self._active),
            max_concurrent_validations=self.config.max_concurrent_validations,
            peak_active_validations=self._peak_active,
            total_validations=self._total_validations,
            total_errors=self._total_errors,
            cache_hits=self._cache_hits,
            last_completed_at=self._last_completed_at,
            last_error_at=self._last_error_at,
            last_error=self._last_error,
            last_duration_ms=self._last_duration_ms,
            circuit_breakers={
                name: status.to_dict() for name, status in self.breakers.get_all_status().items()
            },
            caches={name: stats.model_dump() for name, stats in self.caches.get_stats().items()},
            validator_pool=pool,
        )

    def close(self) -> None:
        """Stop listening for settings changes."""
        if self._settings_events is not None:
            for token in self._subscriptions:
                self._settings_events.off(token)
        self._subscriptions.clear()
