"""
Score and summary aggregation.

Every scope (one aspect, or the whole record) is scored the same way:
``clamp(100 - 15 * errors - 5 * warnings - 1 * information, 0, 100)``.
Fatal findings weigh and count as errors. A scope passes when it has no
errors.
"""

from dataclasses import dataclass
from typing import Iterable

from healthval.core.enums import ALL_ASPECTS, IssueSeverity, ValidationAspect
from healthval.schemas.validation import AspectResult, ValidationIssue, ValidationSummary

ERROR_WEIGHT = 15
WARNING_WEIGHT = 5
INFORMATION_WEIGHT = 1


@dataclass
class IssueCounts:
    errors: int = 0
    warnings: int = 0
    information: int = 0

    @property
    def total(self) -> int:
        return self.errors + self.warnings + self.information


def count_issues(issues: Iterable[ValidationIssue]) -> IssueCounts:
    counts = IssueCounts()
    for issue in issues:
        if issue.severity.counts_as_error:
            counts.errors += 1
        elif issue.severity == IssueSeverity.WARNING:
            counts.warnings += 1
        else:
            counts.information += 1
    return counts


def calculate_score(issues: Iterable[ValidationIssue]) -> int:
    counts = count_issues(issues)
    raw = (
        100
        - ERROR_WEIGHT * counts.errors
        - WARNING_WEIGHT * counts.warnings
        - INFORMATION_WEIGHT * counts.information
    )
    return max(0, min(100, raw))


def build_aspect_result(
    aspect: ValidationAspect,
    issues: list[ValidationIssue],
    enabled: bool = True,
    duration_ms: float = 0.0,
) -> AspectResult:
    counts = count_issues(issues)
    return AspectResult(
        aspect=aspect,
        enabled=enabled,
        passed=counts.errors == 0,
        score=calculate_score(issues),
        issues=issues,
        error_count=counts.errors,
        warning_count=counts.warnings,
        information_count=counts.information,
        duration_ms=duration_ms,
    )


def disabled_aspect_result(aspect: ValidationAspect) -> AspectResult:
    return build_aspect_result(aspect, [], enabled=False)


def build_summary(
    issues: list[ValidationIssue], aspects: dict[ValidationAspect, AspectResult]
) -> ValidationSummary:
    counts = count_issues(issues)
    return ValidationSummary(
        total_issues=counts.total,
        error_count=counts.errors,
        warning_count=counts.warnings,
        information_count=counts.information,
        score=calculate_score(issues),
        passed=counts.errors == 0,
        issues_by_aspect={a: len(aspects[a].issues) if a in aspects else 0 for a in ALL_ASPECTS},
    )
