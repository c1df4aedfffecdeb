"""
Core Enumerations for the Record Validation System.
Aspects, severities and lifecycle states shared by the engine, the batch
pipeline and the cancellation/retry service.
"""

from enum import Enum


# =============================================================================
# Validation Enums
# =============================================================================


class ValidationAspect(str, Enum):
    """Independent correctness dimensions a record is checked against."""

    STRUCTURAL = "structural"  # Shape and required fields
    PROFILE = "profile"  # Declared conformance profiles
    TERMINOLOGY = "terminology"  # Codes and code systems
    REFERENCE = "reference"  # Links to other records
    BUSINESS_RULE = "businessRule"  # Cross-field invariants and custom rules
    METADATA = "metadata"  # meta.* bookkeeping fields


# Structural runs first, the rest may run concurrently.
ALL_ASPECTS: tuple[ValidationAspect, ...] = (
    ValidationAspect.STRUCTURAL,
    ValidationAspect.PROFILE,
    ValidationAspect.TERMINOLOGY,
    ValidationAspect.REFERENCE,
    ValidationAspect.BUSINESS_RULE,
    ValidationAspect.METADATA,
)


class IssueSeverity(str, Enum):
    """Severity of a validation finding."""

    FATAL = "fatal"
    ERROR = "error"
    WARNING = "warning"
    INFORMATION = "information"

    @property
    def counts_as_error(self) -> bool:
        """Fatal and error findings both invalidate a record."""
        return self in (IssueSeverity.FATAL, IssueSeverity.ERROR)


# =============================================================================
# Pipeline Enums
# =============================================================================


class PipelineStatus(str, Enum):
    """Lifecycle of a batch pipeline run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"


# =============================================================================
# Cancellation / Retry Enums
# =============================================================================


class CancellationType(str, Enum):
    """Kinds of operation that can be cancelled."""

    BULK_VALIDATION = "bulk_validation"
    QUEUE_ITEM = "queue_item"
    QUEUE_BATCH = "queue_batch"
    INDIVIDUAL_RESOURCE = "individual_resource"
    PIPELINE = "pipeline"
    ALL_OPERATIONS = "all_operations"


class RetryType(str, Enum):
    """Kinds of operation that can be retried."""

    BULK_VALIDATION = "bulk_validation"
    QUEUE_ITEM = "queue_item"
    INDIVIDUAL_RESOURCE = "individual_resource"
    PIPELINE = "pipeline"


class CancellationStatus(str, Enum):
    """Cancellation request lifecycle."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class RetryStatus(str, Enum):
    """Retry request lifecycle."""

    PENDING = "pending"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        return self in (
            RetryStatus.COMPLETED,
            RetryStatus.FAILED,
            RetryStatus.EXHAUSTED,
        )


# =============================================================================
# Infrastructure Enums
# =============================================================================


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Calls flow normally
    OPEN = "open"  # Calls rejected until cooldown elapses
    HALF_OPEN = "half_open"  # A single trial call is allowed


class ReferenceKind(str, Enum):
    """Classification of a reference string."""

    INTERNAL = "internal"  # Type/id
    EXTERNAL = "external"  # Absolute http(s) URL
    FRAGMENT = "fragment"  # #contained-id
    URN = "urn"  # urn:uuid / urn:oid
    INVALID = "invalid"
