"""
Unit tests for issue scoring and summaries.
"""

import pytest

from healthval.core.enums import ALL_ASPECTS, IssueSeverity, ValidationAspect
from healthval.schemas.validation import ValidationIssue
from healthval.services.validation.scoring import (
    build_aspect_result,
    build_summary,
    calculate_score,
    count_issues,
    disabled_aspect_result,
)


def _issue(severity: IssueSeverity, aspect: ValidationAspect = ValidationAspect.STRUCTURAL):
    return ValidationIssue(severity=severity, code="X", message="x", aspect=aspect)


class TestCalculateScore:
    """Tests for the weighted score."""

    def test_no_issues_scores_100(self):
        assert calculate_score([]) == 100

    def test_weights(self):
        """Errors cost 15, warnings 5, information 1."""
        issues = [
            _issue(IssueSeverity.ERROR),
            _issue(IssueSeverity.WARNING),
            _issue(IssueSeverity.WARNING),
            _issue(IssueSeverity.INFORMATION),
        ]
        assert calculate_score(issues) == 100 - 15 - 10 - 1

    def test_fatal_counts_as_error(self):
        assert calculate_score([_issue(IssueSeverity.FATAL)]) == 85
        assert count_issues([_issue(IssueSeverity.FATAL)]).errors == 1

    def test_clamped_at_zero(self):
        assert calculate_score([_issue(IssueSeverity.ERROR)] * 10) == 0


class TestAspectResult:
    """Tests for per-aspect results."""

    def test_warning_only_passes(self):
        result = build_aspect_result(
            ValidationAspect.TERMINOLOGY, [_issue(IssueSeverity.WARNING, ValidationAspect.TERMINOLOGY)]
        )
        assert result.passed is True
        assert result.score == 95
        assert result.warning_count == 1

    def test_error_fails(self):
        result = build_aspect_result(ValidationAspect.STRUCTURAL, [_issue(IssueSeverity.ERROR)])
        assert result.passed is False
        assert result.error_count == 1
        assert result.score == 85

    def test_disabled_aspect(self):
        result = disabled_aspect_result(ValidationAspect.PROFILE)
        assert result.enabled is False
        assert result.passed is True
        assert result.score == 100
        assert result.issues == []


class TestSummary:
    """Tests for record summaries."""

    def test_issues_by_aspect_has_every_aspect(self):
        issues = [_issue(IssueSeverity.WARNING, ValidationAspect.METADATA)]
        aspects = {a: build_aspect_result(a, [i for i in issues if i.aspect == a]) for a in ALL_ASPECTS}
        summary = build_summary(issues, aspects)
        assert set(summary.issues_by_aspect) == set(ALL_ASPECTS)
        assert summary.issues_by_aspect[ValidationAspect.METADATA] == 1
        assert summary.passed is True
        assert summary.score == 95

    @pytest.mark.parametrize(
        "severity,passed",
        [
            (IssueSeverity.FATAL, False),
            (IssueSeverity.ERROR, False),
            (IssueSeverity.WARNING, True),
            (IssueSeverity.INFORMATION, True),
        ],
    )
    def test_passed_iff_no_errors(self, severity, passed):
        summary = build_summary([_issue(severity)], {})
        assert summary.passed is passed
