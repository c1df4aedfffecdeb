"""
Validation Pipeline.

Batch orchestration on top of the engine:
- Records are processed in chunks no larger than the engine admission cap
- Each record is bounded by a per-record timeout; timeouts and engine
  failures become synthesized failing results instead of aborting the batch
- Results are cached per pipeline and optionally persisted to a results store
- Progress is published after every record; cancellation is checked between
  chunks
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from healthval.core.config import EngineSettings, get_engine_settings
from healthval.core.enums import (
    ALL_ASPECTS,
    IssueSeverity,
    PipelineStatus,
    ValidationAspect,
)
from healthval.schemas.settings import ValidationSettings
from healthval.schemas.validation import (
    ValidationIssue,
    ValidationRequest,
    ValidationResult,
    ValidationTiming,
)
from healthval.services.cache import CacheConfig, CacheStats, LRUCache, make_cache_key
from healthval.services.collaborators import BulkValidationState, load_settings
from healthval.services.events import EngineEvent, EventEmitter
from healthval.services.results_store import ResultsStore
from healthval.services.validation.engine import ValidationEngine
from healthval.services.validation.scoring import build_aspect_result, build_summary
from healthval.utils.errors import PipelineTimeout, ValidationPipelineError

logger = logging.getLogger(__name__)

COMMON_ISSUE_LIMIT = 10


class PipelineConfig(BaseModel):
    """Pipeline behaviour switches."""

    enable_parallel_processing: bool = True
    max_concurrent_validations: int = Field(10, ge=1)
    default_timeout_ms: int = Field(300000, ge=1)
    enable_progress_tracking: bool = True
    enable_result_caching: bool = True
    cache_ttl_ms: int = Field(300000, gt=0)
    cache_max_size: int = Field(1000, ge=1)

    @classmethod
    def from_settings(cls, settings: Optional[EngineSettings] = None) -> "PipelineConfig":
        s = settings or get_engine_settings()
        return cls(
            max_concurrent_validations=s.PIPELINE_MAX_CONCURRENT,
            default_timeout_ms=s.PIPELINE_TIMEOUT_MS,
            cache_ttl_ms=s.PIPELINE_CACHE_TTL_MS,
            cache_max_size=s.PIPELINE_CACHE_MAX_SIZE,
        )


class PipelineContext(BaseModel):
    """Caller-supplied identity for one pipeline run."""

    pipeline_id: str = Field(default_factory=lambda: uuid4().hex)
    requested_by: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


@dataclass
class PipelineProgress:
    """Live counters for a running pipeline."""

    pipeline_id: str
    total: int
    processed: int = 0
    valid: int = 0
    errors: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    throughput: float = 0.0
    is_complete: bool = False
    status: PipelineStatus = PipelineStatus.RUNNING

    @property
    def percent(self) -> float:
        return round(self.processed / self.total * 100, 2) if self.total else 100.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "total": self.total,
            "processed": self.processed,
            "valid": self.valid,
            "errors": self.errors,
            "percent": self.percent,
            "throughput": round(self.throughput, 3),
            "is_complete": self.is_complete,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
        }


@dataclass
class CommonIssue:
    code: str
    message: str
    count: int


@dataclass
class PipelineSummary:
    """Aggregate over every record of a run."""

    total_resources: int = 0
    successful_validations: int = 0
    failed_validations: int = 0
    resources_with_errors: int = 0
    resources_with_warnings: int = 0
    overall_score: float = 100.0
    issues_by_aspect: dict[ValidationAspect, int] = field(default_factory=dict)
    common_issues: list[CommonIssue] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_resources": self.total_resources,
            "successful_validations": self.successful_validations,
            "failed_validations": self.failed_validations,
            "resources_with_errors": self.resources_with_errors,
            "resources_with_warnings": self.resources_with_warnings,
            "overall_score": self.overall_score,
            "issues_by_aspect": {a.value: n for a, n in self.issues_by_aspect.items()},
            "common_issues": [
                {"code": c.code, "message": c.message, "count": c.count}
                for c in self.common_issues
            ],
        }


@dataclass
class PipelinePerformance:
    total_time_ms: float = 0.0
    average_time_ms: float = 0.0
    min_time_ms: float = 0.0
    max_time_ms: float = 0.0
    throughput: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_time_ms": round(self.total_time_ms, 3),
            "average_time_ms": round(self.average_time_ms, 3),
            "min_time_ms": round(self.min_time_ms, 3),
            "max_time_ms": round(self.max_time_ms, 3),
            "throughput": round(self.throughput, 3),
        }


@dataclass
class PipelineResult:
    """Outcome of one pipeline run."""

    pipeline_id: str
    status: PipelineStatus
    results: list[ValidationResult]
    summary: PipelineSummary
    performance: PipelinePerformance
    started_at: datetime
    completed_at: datetime
    skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "status": self.status.value,
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary.to_dict(),
            "performance": self.performance.to_dict(),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "skipped": self.skipped,
        }


@dataclass
class _PipelineRun:
    context: PipelineContext
    config: PipelineConfig
    progress: PipelineProgress
    started: float = field(default_factory=time.perf_counter)
    durations_ms: list[float] = field(default_factory=list)
    cancelled: bool = False
    stop_generation: int = 0


def summarize_results(results: list[ValidationResult]) -> PipelineSummary:
    """Build the run summary; the score is the mean record score (100 when empty)."""
    issues_by_aspect = {aspect: 0 for aspect in ALL_ASPECTS}
    frequencies: dict[tuple[str, str], int] = {}
    for result in results:
        for issue in result.issues:
            issues_by_aspect[issue.aspect] = issues_by_aspect.get(issue.aspect, 0) + 1
            key = (issue.code, issue.message)
            frequencies[key] = frequencies.get(key, 0) + 1

    common = sorted(frequencies.items(), key=lambda item: item[1], reverse=True)
    successful = sum(1 for r in results if r.is_valid)
    return PipelineSummary(
        total_resources=len(results),
        successful_validations=successful,
        failed_validations=len(results) - successful,
        resources_with_errors=sum(1 for r in results if r.summary.error_count > 0),
        resources_with_warnings=sum(1 for r in results if r.summary.warning_count > 0),
        overall_score=(
            round(sum(r.score for r in results) / len(results), 2) if results else 100.0
        ),
        issues_by_aspect=issues_by_aspect,
        common_issues=[
            CommonIssue(code=code, message=message, count=count)
            for (code, message), count in common[:COMMON_ISSUE_LIMIT]
        ],
    )


def failure_result(
    request: ValidationRequest,
    code: str,
    message: str,
    duration_ms: float,
    diagnostics: Optional[str] = None,
) -> ValidationResult:
    """A failing result standing in for a record the engine could not finish."""
    issue = ValidationIssue(
        severity=IssueSeverity.ERROR,
        code=code,
        message=message,
        aspect=ValidationAspect.STRUCTURAL,
        diagnostics=diagnostics,
    )
    aspects = {
        aspect: build_aspect_result(
            aspect, [issue] if aspect == ValidationAspect.STRUCTURAL else []
        )
        for aspect in ALL_ASPECTS
    }
    summary = build_summary([issue], aspects)
    return ValidationResult(
        is_valid=False,
        resource_type=request.resource_type or "",
        resource_id=request.resource_id,
        profile_url=request.profile_url,
        issues=[issue],
        aspects=aspects,
        score=summary.score,
        summary=summary,
        timing=ValidationTiming(total_ms=duration_ms, aspect_ms={a: 0.0 for a in ALL_ASPECTS}),
        request_id=request.request_id,
        context=request.context.model_dump(),
    )


class ValidationPipeline:
    """Runs batches of records through a validation engine."""

    def __init__(
        self,
        engine: ValidationEngine,
        config: Optional[PipelineConfig] = None,
        events: Optional[EventEmitter] = None,
        results_store: Optional[ResultsStore] = None,
        bulk_state: Optional[BulkValidationState] = None,
    ):
        self.engine = engine
        self.config = config or PipelineConfig.from_settings()
        self.events = events or engine.events
        self.bulk_state = bulk_state or BulkValidationState()
        self._results_store = results_store
        self._cache = self._build_cache(self.config)
        self._active: dict[str, _PipelineRun] = {}

        self._subscriptions: list[int] = []
        service = engine.settings_service
        settings_events = getattr(service, "events", None)
        if isinstance(settings_events, EventEmitter):
            self._settings_events: Optional[EventEmitter] = settings_events
            for event in (EngineEvent.SETTINGS_CHANGED, EngineEvent.SETTINGS_ACTIVATED):
                self._subscriptions.append(settings_events.on(event, self._on_settings_changed))
        else:
            self._settings_events = None

    @staticmethod
    def _build_cache(config: PipelineConfig) -> LRUCache:
        return LRUCache(
            CacheConfig(
                name="pipeline",
                max_size=config.cache_max_size,
                default_ttl_seconds=config.cache_ttl_ms / 1000,
            )
        )

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute_pipeline(
        self,
        requests: list[ValidationRequest],
        config: Optional[dict[str, Any]] = None,
        context: Optional[PipelineContext] = None,
    ) -> PipelineResult:
        """
        Validate a batch of records.

        Args:
            requests: Records in the order results should be returned
            config: Overrides merged over the pipeline config for this run
            context: Pipeline identity; a fresh id is generated when omitted

        Returns:
            PipelineResult with one result per processed record. A cancelled
            run returns the records finished before the cancellation.
        """
        run_config = self.resolve_config(config)
        context = context or PipelineContext()
        run = _PipelineRun(
            context=context,
            config=run_config,
            progress=PipelineProgress(pipeline_id=context.pipeline_id, total=len(requests)),
            stop_generation=self.bulk_state.start(),
        )
        self._active[context.pipeline_id] = run
        try:
            return await self._execute(requests, run)
        finally:
            self.bulk_state.finish()

    def resolve_config(self, overrides: Optional[dict[str, Any]] = None) -> PipelineConfig:
        """
        Merge per-run overrides over the pipeline config.

        Raises:
            pydantic.ValidationError: an override is outside the config bounds
        """
        return PipelineConfig.model_validate({**self.config.model_dump(), **(overrides or {})})

    async def _execute(self, requests: list[ValidationRequest], run: _PipelineRun) -> PipelineResult:
        run_config = run.config
        context = run.context
        started_at = datetime.now(timezone.utc)

        logger.info(f"Pipeline {context.pipeline_id} started with {len(requests)} records")
        self.events.emit(
            EngineEvent.PIPELINE_STARTED,
            {
                "pipeline_id": context.pipeline_id,
                "total": len(requests),
                "requested_by": context.requested_by,
            },
        )

        results: list[ValidationResult] = []
        try:
            load = await load_settings(self.engine.settings_service)
            settings_hash = load.settings.snapshot_hash()

            chunk_size = (
                min(run_config.max_concurrent_validations, self.engine.max_concurrent)
                if run_config.enable_parallel_processing
                else 1
            )
            for i in range(0, len(requests), chunk_size):
                if self._should_stop(run):
                    break
                chunk = requests[i : i + chunk_size]
                if len(chunk) == 1:
                    results.append(await self._process_record(chunk[0], run, settings_hash))
                else:
                    results.extend(
                        await asyncio.gather(
                            *(self._process_record(r, run, settings_hash) for r in chunk)
                        )
                    )
        except Exception as e:
            run.progress.status = PipelineStatus.FAILED
            self._active.pop(context.pipeline_id, None)
            logger.error(f"Pipeline {context.pipeline_id} failed: {e}", exc_info=True)
            self.events.emit(
                EngineEvent.PIPELINE_FAILED,
                {"pipeline_id": context.pipeline_id, "error": str(e)},
            )
            raise ValidationPipelineError(f"Pipeline failed: {e}", original_error=e) from e

        cancelled = self._should_stop(run) and len(results) < len(requests)
        status = PipelineStatus.CANCELLED if cancelled else PipelineStatus.COMPLETED
        self._active.pop(context.pipeline_id, None)

        run.progress.status = status
        run.progress.is_complete = True
        result = PipelineResult(
            pipeline_id=context.pipeline_id,
            status=status,
            results=results,
            summary=summarize_results(results),
            performance=self._performance(run),
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            skipped=len(requests) - len(results),
        )

        if cancelled:
            logger.info(
                f"Pipeline {context.pipeline_id} cancelled after {len(results)} of "
                f"{len(requests)} records"
            )
        else:
            logger.info(
                f"Pipeline {context.pipeline_id} completed: "
                f"{result.summary.successful_validations}/{len(results)} valid"
            )
            self.events.emit(
                EngineEvent.PIPELINE_COMPLETED,
                {
                    "pipeline_id": context.pipeline_id,
                    "summary": result.summary.to_dict(),
                    "performance": result.performance.to_dict(),
                },
            )
        return result

    def _should_stop(self, run: _PipelineRun) -> bool:
        return run.cancelled or self.bulk_state.stop_requested_since(run.stop_generation)

    async def _process_record(
        self, request: ValidationRequest, run: _PipelineRun, settings_hash: str
    ) -> ValidationResult:
        config = run.config
        start = time.perf_counter()
        cache_key = make_cache_key(
            "pipeline",
            request.resource,
            request.resource_type,
            request.profile_url,
            settings_hash,
        )

        cached = await self._cache.get(cache_key) if config.enable_result_caching else None
        if cached is not None:
            result = cached
        else:
            try:
                result = await asyncio.wait_for(
                    self.engine.validate_resource(request),
                    timeout=config.default_timeout_ms / 1000,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Record {request.resource_type}/{request.resource_id} timed out "
                    f"after {config.default_timeout_ms}ms"
                )
                result = failure_result(
                    request,
                    "PIPELINE_TIMEOUT",
                    f"Validation timed out after {config.default_timeout_ms}ms",
                    (time.perf_counter() - start) * 1000,
                )
            except PipelineTimeout as e:
                result = failure_result(
                    request,
                    "PIPELINE_TIMEOUT",
                    e.detail,
                    (time.perf_counter() - start) * 1000,
                )
            except Exception as e:
                logger.warning(
                    f"Record {request.resource_type}/{request.resource_id} failed: {e}"
                )
                result = failure_result(
                    request,
                    "PIPELINE_ERROR",
                    f"Validation failed: {e}",
                    (time.perf_counter() - start) * 1000,
                    diagnostics=type(e).__name__,
                )
            else:
                if config.enable_result_caching:
                    await self._cache.set(
                        cache_key, result, ttl_seconds=config.cache_ttl_ms / 1000
                    )
                await self._store(result)

        duration_ms = (time.perf_counter() - start) * 1000
        run.durations_ms.append(duration_ms)
        self._record_progress(run, request, result, duration_ms)
        return result

    async def _store(self, result: ValidationResult) -> None:
        if self._results_store is None:
            return
        try:
            await self._results_store.save(result)
        except Exception as e:
            logger.error(
                f"Failed to persist result for {result.resource_type}/{result.resource_id}: {e}",
                exc_info=True,
            )

    def _record_progress(
        self,
        run: _PipelineRun,
        request: ValidationRequest,
        result: ValidationResult,
        duration_ms: float,
    ) -> None:
        progress = run.progress
        progress.processed += 1
        if result.is_valid:
            progress.valid += 1
        else:
            progress.errors += 1
        elapsed = time.perf_counter() - run.started
        progress.throughput = progress.processed / elapsed if elapsed > 0 else 0.0
        progress.is_complete = progress.processed >= progress.total

        pipeline_id = run.context.pipeline_id
        self.events.emit(
            EngineEvent.RESOURCE_PROCESSED,
            {
                "pipeline_id": pipeline_id,
                "resource_type": request.resource_type,
                "resource_id": request.resource_id,
                "is_valid": result.is_valid,
                "score": result.score,
                "duration_ms": duration_ms,
            },
        )
        if run.config.enable_progress_tracking:
            self.events.emit(EngineEvent.PIPELINE_PROGRESS, progress.to_dict())

    @staticmethod
    def _performance(run: _PipelineRun) -> PipelinePerformance:
        total_ms = (time.perf_counter() - run.started) * 1000
        durations = run.durations_ms
        if not durations:
            return PipelinePerformance(total_time_ms=total_ms)
        return PipelinePerformance(
            total_time_ms=total_ms,
            average_time_ms=sum(durations) / len(durations),
            min_time_ms=min(durations),
            max_time_ms=max(durations),
            throughput=len(durations) / (total_ms / 1000) if total_ms > 0 else 0.0,
        )

    # =========================================================================
    # Control
    # =========================================================================

    def cancel_pipeline(self, pipeline_id: str) -> bool:
        """
        Mark a running pipeline cancelled. Records already in flight finish;
        the run stops before its next chunk.
        """
        run = self._active.pop(pipeline_id, None)
        if run is None:
            return False
        run.cancelled = True
        run.progress.status = PipelineStatus.CANCELLED
        logger.info(f"Pipeline {pipeline_id} cancelled")
        self.events.emit(
            EngineEvent.PIPELINE_CANCELLED,
            {"pipeline_id": pipeline_id, "processed": run.progress.processed},
        )
        return True

    def get_pipeline_status(self, pipeline_id: str) -> PipelineStatus:
        return PipelineStatus.RUNNING if pipeline_id in self._active else PipelineStatus.NOT_FOUND

    def get_pipeline_progress(self, pipeline_id: str) -> Optional[PipelineProgress]:
        run = self._active.get(pipeline_id)
        return run.progress if run else None

    def list_active_pipelines(self) -> list[str]:
        return list(self._active)

    async def clear_cache(self) -> int:
        cleared = await self._cache.clear()
        self.events.emit(EngineEvent.CACHE_CLEARED, {"cleared": cleared})
        return cleared

    def get_cache_stats(self) -> CacheStats:
        return self._cache.get_stats()

    async def _on_settings_changed(self, payload: dict[str, Any]) -> None:
        settings = payload.get("settings")
        if not isinstance(settings, ValidationSettings):
            return
        self.apply_settings(settings)
        await self.clear_cache()

    def apply_settings(self, settings: ValidationSettings) -> None:
        """Adopt concurrency, cache and timeout values from a settings snapshot."""
        updates: dict[str, Any] = {
            "enable_result_caching": settings.cache_settings.enabled,
            "cache_ttl_ms": settings.cache_settings.ttl_ms,
            "cache_max_size": settings.cache_settings.max_size,
        }
        if settings.max_concurrent_validations is not None:
            updates["max_concurrent_validations"] = settings.max_concurrent_validations
        if settings.timeout_settings.default_timeout_ms is not None:
            updates["default_timeout_ms"] = settings.timeout_settings.default_timeout_ms

        previous_size = self.config.cache_max_size
        self.config = self.config.model_copy(update=updates)
        if self.config.cache_max_size != previous_size:
            self._cache = self._build_cache(self.config)

        logger.info(
            f"Pipeline settings applied: max_concurrent={self.config.max_concurrent_validations}, "
            f"timeout={self.config.default_timeout_ms}ms, caching={self.config.enable_result_caching}"
        )
        self.events.emit(EngineEvent.SETTINGS_APPLIED, {"config": self.config.model_dump()})

    def close(self) -> None:
        """Stop listening for settings changes and forget active runs."""
        if self._settings_events is not None:
            for token in self._subscriptions:
                self._settings_events.off(token)
        self._subscriptions.clear()
        for run in self._active.values():
            run.cancelled = True
        self._active.clear()
