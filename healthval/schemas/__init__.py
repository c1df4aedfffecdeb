"""
Request, result and settings schemas.
"""

from healthval.schemas.settings import (
    AspectConfig,
    CacheSettings,
    CustomRule,
    RuleType,
    TimeoutSettings,
    ValidationSettings,
    default_validation_settings,
)
from healthval.schemas.validation import (
    AspectResult,
    RetryAttemptRecord,
    RetryInfo,
    ValidationContext,
    ValidationIssue,
    ValidationRequest,
    ValidationResult,
    ValidationSummary,
    ValidationTiming,
)

__all__ = [
    "AspectConfig",
    "CacheSettings",
    "CustomRule",
    "RuleType",
    "TimeoutSettings",
    "ValidationSettings",
    "default_validation_settings",
    "AspectResult",
    "RetryAttemptRecord",
    "RetryInfo",
    "ValidationContext",
    "ValidationIssue",
    "ValidationRequest",
    "ValidationResult",
    "ValidationSummary",
    "ValidationTiming",
]
