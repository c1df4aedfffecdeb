"""
Unit tests for result persistence and message grouping.
"""

import pytest

from healthval.core.enums import ALL_ASPECTS, IssueSeverity, ValidationAspect
from healthval.schemas.validation import ValidationIssue, ValidationResult, ValidationTiming
from healthval.services.results_store import (
    MAX_PATH_LENGTH,
    InMemoryResultsStore,
    compute_message_signature,
    issue_signature,
    normalize_canonical_path,
    normalize_message_text,
)
from healthval.services.validation.scoring import (
    build_aspect_result,
    build_summary,
    calculate_score,
)


def make_result(resource_id: str, issues: list[ValidationIssue]) -> ValidationResult:
    aspects = {
        a: build_aspect_result(a, [i for i in issues if i.aspect == a]) for a in ALL_ASPECTS
    }
    summary = build_summary(issues, aspects)
    return ValidationResult(
        is_valid=summary.passed,
        resource_type="Patient",
        resource_id=resource_id,
        issues=issues,
        aspects=aspects,
        score=calculate_score(issues),
        summary=summary,
        timing=ValidationTiming(),
    )


def missing_name(index: int = 0) -> ValidationIssue:
    return ValidationIssue(
        severity=IssueSeverity.ERROR,
        code="MISSING_REQUIRED_FIELD",
        message="Patient is missing required field  'name'",
        aspect=ValidationAspect.STRUCTURAL,
        location=["name", str(index)],
    )


class TestNormalization:
    """Tests for signature components."""

    @pytest.mark.parametrize(
        "location,expected",
        [
            (["name", "0", "family"], "name.family"),
            ("name[2].Family", "name.family"),
            ([], ""),
            (["contained", "1", "code", "coding", "0"], "contained.code.coding"),
        ],
    )
    def test_canonical_path(self, location, expected):
        assert normalize_canonical_path(location).value == expected

    def test_long_path_is_truncated(self):
        normalized = normalize_canonical_path(["x" * 300])
        assert normalized.truncated is True
        assert len(normalized.value) == MAX_PATH_LENGTH

    def test_message_text(self):
        assert normalize_message_text("  Missing\n\tField  ").value == "missing field"
        assert normalize_message_text(None).value == ""

    def test_signature_ignores_case_and_padding(self):
        a = compute_message_signature("structural", "error", "X", "name", None, "text")
        b = compute_message_signature(" Structural", "ERROR ", "x", "NAME", "", "Text")
        assert a == b
        assert len(a) == 64

    def test_issue_signature_ignores_array_index(self):
        assert issue_signature(missing_name(0)) == issue_signature(missing_name(3))


class TestInMemoryResultsStore:
    """Tests for InMemoryResultsStore."""

    @pytest.mark.asyncio
    async def test_save_and_get(self):
        store = InMemoryResultsStore()
        result = make_result("p1", [])
        await store.save(result)
        assert store.get_result("Patient", "p1") is result
        assert store.get_result("Patient", "p2") is None

    @pytest.mark.asyncio
    async def test_groups_same_message_across_records(self):
        store = InMemoryResultsStore()
        await store.save(make_result("p1", [missing_name(0)]))
        await store.save(make_result("p2", [missing_name(1)]))

        groups = store.get_message_groups()
        assert len(groups) == 1
        group = groups[0]
        assert group.count == 2
        assert group.canonical_path == "name"
        assert group.text == "patient is missing required field 'name'"
        assert group.to_dict()["resource_count"] == 2

    @pytest.mark.asyncio
    async def test_groups_sorted_by_count_and_filtered(self):
        store = InMemoryResultsStore()
        warning = ValidationIssue(
            severity=IssueSeverity.WARNING,
            code="CODING_MISSING_SYSTEM",
            message="Coding has no system",
            aspect=ValidationAspect.TERMINOLOGY,
            location=["maritalStatus", "coding", "0"],
        )
        await store.save(make_result("p1", [missing_name(), warning]))
        await store.save(make_result("p2", [warning]))

        groups = store.get_message_groups()
        assert [g.code for g in groups] == ["CODING_MISSING_SYSTEM", "MISSING_REQUIRED_FIELD"]
        assert [g.code for g in store.get_message_groups("structural")] == [
            "MISSING_REQUIRED_FIELD"
        ]

    @pytest.mark.asyncio
    async def test_clear(self):
        store = InMemoryResultsStore()
        await store.save(make_result("p1", [missing_name()]))
        store.clear()
        assert store.get_message_groups() == []
        assert store.get_result("Patient", "p1") is None
