"""
Validation Request and Result Schemas.

Requests are pydantic models so records are checked at the boundary before
they reach the engine. Results are plain dataclasses: they are produced
internally, cached and compared by identity, and serialized with ``to_dict``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from healthval.core.enums import IssueSeverity, ValidationAspect


# ============================================================================
# Request Schemas
# ============================================================================


class ValidationContext(BaseModel):
    """Who asked for a validation and on whose behalf."""

    request_id: str = Field(default_factory=lambda: uuid4().hex)
    requested_by: Optional[str] = None
    fhir_server_url: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ValidationRequest(BaseModel):
    """A single record submitted for validation."""

    resource: dict[str, Any] = Field(..., description="The record to validate")
    resource_type: Optional[str] = Field(
        None, description="Record type tag; defaults to resource['resourceType']"
    )
    resource_id: Optional[str] = None
    profile_url: Optional[str] = None
    context: ValidationContext = Field(default_factory=ValidationContext)

    @model_validator(mode="after")
    def fill_identity(self) -> "ValidationRequest":
        if not self.resource_type:
            declared = self.resource.get("resourceType")
            if not isinstance(declared, str) or not declared:
                raise ValueError(
                    "resource_type is required when the record has no resourceType"
                )
            self.resource_type = declared
        if self.resource_id is None:
            record_id = self.resource.get("id")
            if isinstance(record_id, str) and record_id:
                self.resource_id = record_id
        return self

    @property
    def request_id(self) -> str:
        return self.context.request_id


# ============================================================================
# Result Types
# ============================================================================


@dataclass
class ValidationIssue:
    """A single finding about a record."""

    severity: IssueSeverity
    code: str
    message: str
    aspect: ValidationAspect
    location: list[str] = field(default_factory=list)
    human_readable: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)
    rule_id: Optional[str] = None
    diagnostics: Optional[str] = None

    def __post_init__(self) -> None:
        if self.human_readable is None:
            self.human_readable = self.message

    @property
    def path(self) -> str:
        return ".".join(self.location)

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
            "human_readable": self.human_readable,
            "location": list(self.location),
            "aspect": self.aspect.value,
            "context": self.context,
            "rule_id": self.rule_id,
            "diagnostics": self.diagnostics,
        }


@dataclass
class AspectResult:
    """Outcome of one aspect for one record."""

    aspect: ValidationAspect
    enabled: bool
    passed: bool
    score: int
    issues: list[ValidationIssue] = field(default_factory=list)
    error_count: int = 0
    warning_count: int = 0
    information_count: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "aspect": self.aspect.value,
            "enabled": self.enabled,
            "passed": self.passed,
            "score": self.score,
            "issues": [i.to_dict() for i in self.issues],
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "information_count": self.information_count,
            "duration_ms": round(self.duration_ms, 3),
        }


@dataclass
class ValidationSummary:
    """Issue totals over every aspect."""

    total_issues: int
    error_count: int
    warning_count: int
    information_count: int
    score: int
    passed: bool
    issues_by_aspect: dict[ValidationAspect, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_issues": self.total_issues,
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "information_count": self.information_count,
            "score": self.score,
            "passed": self.passed,
            "issues_by_aspect": {a.value: n for a, n in self.issues_by_aspect.items()},
        }


@dataclass
class ValidationTiming:
    """Wall-clock time spent on a validation."""

    total_ms: float = 0.0
    aspect_ms: dict[ValidationAspect, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_ms": round(self.total_ms, 3),
            "aspect_ms": {a.value: round(ms, 3) for a, ms in self.aspect_ms.items()},
        }


@dataclass
class RetryAttemptRecord:
    """One attempt made by the retry helper."""

    attempt_number: int
    attempted_at: datetime
    success: bool
    duration_ms: float
    error_message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_number": self.attempt_number,
            "attempted_at": self.attempted_at.isoformat(),
            "success": self.success,
            "duration_ms": round(self.duration_ms, 3),
            "error_message": self.error_message,
        }


@dataclass
class RetryInfo:
    """Retry trace attached to a result produced through the retry helper."""

    attempt_count: int
    max_attempts: int
    is_retry: bool
    previous_attempts: list[RetryAttemptRecord] = field(default_factory=list)
    total_retry_duration_ms: float = 0.0
    can_retry: bool = False
    retry_reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "is_retry": self.is_retry,
            "previous_attempts": [a.to_dict() for a in self.previous_attempts],
            "total_retry_duration_ms": round(self.total_retry_duration_ms, 3),
            "can_retry": self.can_retry,
            "retry_reason": self.retry_reason,
        }


@dataclass
class ValidationResult:
    """Aggregated outcome of validating one record."""

    is_valid: bool
    resource_type: str
    resource_id: Optional[str]
    issues: list[ValidationIssue]
    aspects: dict[ValidationAspect, AspectResult]
    score: int
    summary: ValidationSummary
    timing: ValidationTiming
    profile_url: Optional[str] = None
    settings_hash: Optional[str] = None
    used_default_settings: bool = False
    request_id: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)
    validated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    retry_info: Optional[RetryInfo] = None

    def issues_for(self, aspect: ValidationAspect) -> list[ValidationIssue]:
        return self.aspects[aspect].issues

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API response."""
        return {
            "is_valid": self.is_valid,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "profile_url": self.profile_url,
            "score": self.score,
            "issues": [i.to_dict() for i in self.issues],
            "aspects": {a.value: r.to_dict() for a, r in self.aspects.items()},
            "summary": self.summary.to_dict(),
            "timing": self.timing.to_dict(),
            "settings_hash": self.settings_hash,
            "used_default_settings": self.used_default_settings,
            "request_id": self.request_id,
            "context": self.context,
            "validated_at": self.validated_at.isoformat(),
            "retry_info": self.retry_info.to_dict() if self.retry_info else None,
        }
