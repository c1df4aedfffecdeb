"""
Unit tests for the six aspect validators.
"""

from typing import Any, Optional
from unittest.mock import AsyncMock

import pytest

from healthval.core.enums import IssueSeverity, ValidationAspect
from healthval.gateways.base import CircuitBreakerConfig, CircuitBreakerRegistry
from healthval.schemas.settings import (
    AspectConfig,
    CustomRule,
    RuleType,
    ValidationSettings,
    default_validation_settings,
)
from healthval.schemas.validation import ValidationRequest
from healthval.services.cache import EngineCaches
from healthval.services.validation.aspects.base import (
    AspectContext,
    aspect_validator,
    get_values_by_path,
    parse_fhir_datetime,
)
from healthval.services.validation.aspects.business_rules import (
    evaluate_rule,
    validate_business_rules,
)
from healthval.services.validation.aspects.metadata import validate_metadata
from healthval.services.validation.aspects.profile import validate_profile
from healthval.services.validation.aspects.reference import (
    classify_reference,
    validate_references,
)
from healthval.services.validation.aspects.structural import validate_structural
from healthval.services.validation.aspects.terminology import validate_terminology
from healthval.services.validation.external import ExternalServices
from healthval.services.validation.scoring import build_aspect_result
from healthval.core.enums import ReferenceKind

ERROR = AspectConfig(severity=IssueSeverity.ERROR)
WARNING = AspectConfig(severity=IssueSeverity.WARNING)


def make_context(
    resource: dict[str, Any],
    settings: Optional[ValidationSettings] = None,
    profile_url: Optional[str] = None,
    **resolvers: Any,
) -> AspectContext:
    external = ExternalServices(
        CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=5)),
        EngineCaches.from_settings(),
        **resolvers,
    )
    return AspectContext(
        request=ValidationRequest(resource=resource, profile_url=profile_url),
        settings=settings or default_validation_settings(),
        external=external,
    )


def codes(issues) -> list[str]:
    return [i.code for i in issues]


# ============== Helpers ==============


class TestPathHelpers:
    """Tests for record traversal helpers."""

    def test_get_values_fans_out_over_lists(self):
        record = {"name": [{"given": ["A", "B"]}, {"given": ["C"]}]}
        assert get_values_by_path(record, "name.given") == ["A", "B", "C"]

    def test_numeric_segment_indexes(self):
        record = {"name": [{"family": "X"}, {"family": "Y"}]}
        assert get_values_by_path(record, "name.1.family") == ["Y"]

    def test_missing_path(self):
        assert get_values_by_path({"a": 1}, "b.c") == []

    @pytest.mark.parametrize(
        "value,expected_year",
        [("2024", 2024), ("2024-05", 2024), ("2024-05-01", 2024), ("2024-05-01T10:00:00Z", 2024)],
    )
    def test_parse_fhir_datetime(self, value, expected_year):
        parsed = parse_fhir_datetime(value)
        assert parsed is not None
        assert parsed.year == expected_year
        assert parsed.tzinfo is not None

    def test_parse_invalid_datetime(self):
        assert parse_fhir_datetime("yesterday") is None
        assert parse_fhir_datetime(None) is None


class TestAspectGuard:
    """Tests for the aspect_validator decorator."""

    @pytest.mark.asyncio
    async def test_exception_becomes_single_issue(self, patient_resource):
        @aspect_validator(ValidationAspect.BUSINESS_RULE)
        async def broken(resource, config, ctx):
            raise RuntimeError("kaboom")

        issues = await broken(patient_resource, ERROR, make_context(patient_resource))
        assert len(issues) == 1
        assert issues[0].code == "BUSINESS_RULE_VALIDATION_ERROR"
        assert issues[0].severity == IssueSeverity.ERROR
        assert issues[0].aspect == ValidationAspect.BUSINESS_RULE

    def test_decorator_is_idempotent(self):
        guarded = aspect_validator(ValidationAspect.STRUCTURAL)(validate_structural)
        assert guarded is validate_structural


# ============== Structural ==============


class TestStructural:
    """Tests for the structural aspect."""

    @pytest.mark.asyncio
    async def test_complete_patient_has_no_issues(self, patient_resource):
        issues = await validate_structural(patient_resource, ERROR, make_context(patient_resource))
        assert issues == []

    @pytest.mark.asyncio
    async def test_missing_name_scores_85(self, patient_resource):
        """A Patient without a name yields one structural error."""
        del patient_resource["name"]
        issues = await validate_structural(patient_resource, ERROR, make_context(patient_resource))
        assert codes(issues) == ["MISSING_REQUIRED_FIELD"]
        assert issues[0].location == ["name"]

        result = build_aspect_result(ValidationAspect.STRUCTURAL, issues)
        assert result.passed is False
        assert result.score == 85

    @pytest.mark.asyncio
    async def test_missing_id(self, patient_resource):
        del patient_resource["id"]
        issues = await validate_structural(patient_resource, ERROR, make_context(patient_resource))
        assert "MISSING_RESOURCE_ID" in codes(issues)

    @pytest.mark.asyncio
    async def test_bundle_may_omit_id(self):
        bundle = {"resourceType": "Bundle", "type": "collection"}
        issues = await validate_structural(bundle, ERROR, make_context(bundle))
        assert issues == []

    @pytest.mark.asyncio
    async def test_invalid_id_format(self, patient_resource):
        patient_resource["id"] = "has spaces!"
        issues = await validate_structural(patient_resource, ERROR, make_context(patient_resource))
        assert "INVALID_ID_FORMAT" in codes(issues)

    @pytest.mark.asyncio
    async def test_type_mismatch(self, patient_resource):
        ctx = AspectContext(
            request=ValidationRequest(resource=patient_resource, resource_type="Observation"),
            settings=default_validation_settings(),
            external=make_context(patient_resource).external,
        )
        issues = await validate_structural(patient_resource, ERROR, ctx)
        assert "RESOURCE_TYPE_MISMATCH" in codes(issues)

    @pytest.mark.asyncio
    async def test_wrong_field_shapes(self, patient_resource):
        patient_resource["name"] = {"family": "Doe"}
        patient_resource["meta"] = "not-an-object"
        issues = await validate_structural(patient_resource, ERROR, make_context(patient_resource))
        assert codes(issues).count("INVALID_FIELD_TYPE") == 2

    @pytest.mark.asyncio
    async def test_extension_without_url(self, patient_resource):
        patient_resource["extension"] = [{"valueString": "x"}]
        issues = await validate_structural(patient_resource, ERROR, make_context(patient_resource))
        assert codes(issues) == ["EXTENSION_MISSING_URL"]
        assert issues[0].location == ["extension", "0"]

    @pytest.mark.asyncio
    async def test_severity_follows_config(self, patient_resource):
        del patient_resource["name"]
        issues = await validate_structural(patient_resource, WARNING, make_context(patient_resource))
        assert issues[0].severity == IssueSeverity.WARNING


# ============== Profile ==============


class TestProfile:
    """Tests for the profile aspect."""

    @pytest.mark.asyncio
    async def test_no_servers(self, patient_resource):
        settings = ValidationSettings()
        issues = await validate_profile(patient_resource, WARNING, make_context(patient_resource, settings))
        assert codes(issues) == ["NO_PROFILE_SERVERS"]

    @pytest.mark.asyncio
    async def test_invalid_profile_url(self, patient_resource):
        patient_resource["meta"] = {"profile": ["not a url"]}
        issues = await validate_profile(patient_resource, WARNING, make_context(patient_resource))
        assert codes(issues) == ["PROFILE_URL_INVALID"]
        assert issues[0].location == ["meta", "profile", "0"]

    @pytest.mark.asyncio
    async def test_unresolved_profile(self, patient_resource):
        resolver = AsyncMock()
        resolver.resolve_profile.return_value = None
        url = "http://example.org/StructureDefinition/my-patient"
        ctx = make_context(patient_resource, profile_url=url, profiles=resolver)
        issues = await validate_profile(patient_resource, WARNING, ctx)
        assert codes(issues) == ["PROFILE_NOT_RESOLVED"]
        resolver.resolve_profile.assert_awaited_once_with(url)

    @pytest.mark.asyncio
    async def test_profile_type_mismatch(self, patient_resource):
        resolver = AsyncMock()
        resolver.resolve_profile.return_value = {"resourceType": "StructureDefinition", "type": "Observation"}
        patient_resource["meta"] = {"profile": ["http://example.org/StructureDefinition/vitals"]}
        ctx = make_context(patient_resource, profiles=resolver)
        issues = await validate_profile(patient_resource, WARNING, ctx)
        assert codes(issues) == ["PROFILE_TYPE_MISMATCH"]

    @pytest.mark.asyncio
    async def test_resolver_failure_is_information(self, patient_resource):
        resolver = AsyncMock()
        resolver.resolve_profile.side_effect = ConnectionError("down")
        patient_resource["meta"] = {"profile": ["http://example.org/StructureDefinition/p"]}
        ctx = make_context(patient_resource, profiles=resolver)
        issues = await validate_profile(patient_resource, WARNING, ctx)
        assert codes(issues) == ["PROFILE_RESOLUTION_UNAVAILABLE"]
        assert issues[0].severity == IssueSeverity.INFORMATION


# ============== Terminology ==============


class TestTerminology:
    """Tests for the terminology aspect."""

    @pytest.mark.asyncio
    async def test_no_servers(self, patient_resource):
        issues = await validate_terminology(
            patient_resource, WARNING, make_context(patient_resource, ValidationSettings())
        )
        assert codes(issues) == ["NO_TERMINOLOGY_SERVERS"]

    @pytest.mark.asyncio
    async def test_coding_without_system(self, patient_resource):
        patient_resource["maritalStatus"] = {"coding": [{"code": "M"}]}
        issues = await validate_terminology(patient_resource, WARNING, make_context(patient_resource))
        assert codes(issues) == ["CODING_MISSING_SYSTEM"]
        assert issues[0].location == ["maritalStatus", "coding", "0"]
        assert issues[0].severity == IssueSeverity.WARNING

    @pytest.mark.asyncio
    async def test_local_coding_checks(self, observation_resource):
        observation_resource["code"] = {
            "coding": [
                {"system": "not a uri", "code": "1"},
                {"system": "http://loinc.org"},
            ]
        }
        observation_resource["category"] = [{"coding": []}]
        issues = await validate_terminology(
            observation_resource, WARNING, make_context(observation_resource)
        )
        assert sorted(codes(issues)) == [
            "CODABLE_CONCEPT_INCOMPLETE",
            "CODING_MISSING_CODE",
            "INVALID_CODE_SYSTEM_URL",
        ]

    @pytest.mark.asyncio
    async def test_invalid_value_set(self):
        record = {"resourceType": "Questionnaire", "id": "q", "item": [{"answerValueSet": "x", "valueSet": "bad"}]}
        issues = await validate_terminology(record, WARNING, make_context(record))
        assert codes(issues) == ["INVALID_VALUE_SET_URL"]

    @pytest.mark.asyncio
    async def test_unknown_code(self, observation_resource):
        resolver = AsyncMock()
        resolver.validate_code.return_value = False
        ctx = make_context(observation_resource, terminology=resolver)
        issues = await validate_terminology(observation_resource, WARNING, ctx)
        assert codes(issues) == ["CODE_NOT_IN_SYSTEM"]
        resolver.validate_code.assert_awaited_once_with("http://loinc.org", "8867-4")

    @pytest.mark.asyncio
    async def test_lookups_are_cached(self, observation_resource):
        resolver = AsyncMock()
        resolver.validate_code.return_value = True
        ctx = make_context(observation_resource, terminology=resolver)
        await validate_terminology(observation_resource, WARNING, ctx)
        await validate_terminology(observation_resource, WARNING, ctx)
        assert resolver.validate_code.await_count == 1

    @pytest.mark.asyncio
    async def test_open_breaker_downgrades_to_information(self, observation_resource):
        resolver = AsyncMock()
        resolver.validate_code.side_effect = ConnectionError("refused")
        ctx = make_context(observation_resource, terminology=resolver)
        ctx.external.breakers.config.failure_threshold = 1
        first = await validate_terminology(observation_resource, WARNING, ctx)
        assert codes(first) == ["TERMINOLOGY_SERVICE_UNAVAILABLE"]

        second = await validate_terminology(observation_resource, WARNING, ctx)
        assert codes(second) == ["TERMINOLOGY_SERVICE_UNAVAILABLE"]
        assert second[0].severity == IssueSeverity.INFORMATION
        assert resolver.validate_code.await_count == 1


# ============== Reference ==============


class TestReference:
    """Tests for the reference aspect."""

    @pytest.mark.parametrize(
        "value,kind",
        [
            ("Patient/123", ReferenceKind.INTERNAL),
            ("Patient/123/_history/2", ReferenceKind.INTERNAL),
            ("https://fhir.example.org/Patient/1", ReferenceKind.EXTERNAL),
            ("#med1", ReferenceKind.FRAGMENT),
            ("urn:uuid:9d6a5e0c-3c66-4f25-8d9c-0a3b6f1e2d4c", ReferenceKind.URN),
            ("urn:oid:1.2.3", ReferenceKind.URN),
            ("not a reference", ReferenceKind.INVALID),
            ("", ReferenceKind.INVALID),
        ],
    )
    def test_classify_reference(self, value, kind):
        assert classify_reference(value).kind == kind

    @pytest.mark.asyncio
    async def test_valid_reference(self, observation_resource):
        issues = await validate_references(observation_resource, ERROR, make_context(observation_resource))
        assert issues == []

    @pytest.mark.asyncio
    async def test_invalid_format_and_unknown_type(self, observation_resource):
        observation_resource["subject"] = {"reference": "patient 1"}
        observation_resource["performer"] = [{"reference": "Doctor/7"}]
        issues = await validate_references(observation_resource, ERROR, make_context(observation_resource))
        assert sorted(codes(issues)) == ["INVALID_REFERENCE_FORMAT", "INVALID_REFERENCE_RESOURCE_TYPE"]

    @pytest.mark.asyncio
    async def test_broken_fragment(self, observation_resource):
        observation_resource["specimen"] = {"reference": "#spec1"}
        issues = await validate_references(observation_resource, ERROR, make_context(observation_resource))
        assert codes(issues) == ["BROKEN_REFERENCE"]

    @pytest.mark.asyncio
    async def test_contained_cycle(self, observation_resource):
        observation_resource["contained"] = [
            {"resourceType": "Specimen", "id": "a", "parent": [{"reference": "#b"}]},
            {"resourceType": "Specimen", "id": "b", "parent": [{"reference": "#a"}]},
        ]
        observation_resource["specimen"] = {"reference": "#a"}
        issues = await validate_references(observation_resource, ERROR, make_context(observation_resource))
        assert codes(issues) == ["CIRCULAR_REFERENCE"]

    @pytest.mark.asyncio
    async def test_self_reference_is_warning(self, patient_resource):
        patient_resource["link"] = [{"other": {"reference": "Patient/patient-1"}, "type": "seealso"}]
        issues = await validate_references(patient_resource, ERROR, make_context(patient_resource))
        assert codes(issues) == ["SELF_REFERENCE"]
        assert issues[0].severity == IssueSeverity.WARNING

    @pytest.mark.asyncio
    async def test_missing_target(self, observation_resource):
        resolver = AsyncMock()
        resolver.reference_exists.return_value = False
        ctx = make_context(observation_resource, references=resolver)
        issues = await validate_references(observation_resource, ERROR, ctx)
        assert codes(issues) == ["REFERENCE_NOT_FOUND"]
        resolver.reference_exists.assert_awaited_once_with("Patient/patient-1")


# ============== Business rules ==============


class TestBusinessRules:
    """Tests for the business-rule aspect."""

    @pytest.mark.asyncio
    async def test_birth_date_in_future(self, patient_resource):
        patient_resource["birthDate"] = "2999-01-01"
        issues = await validate_business_rules(patient_resource, ERROR, make_context(patient_resource))
        assert codes(issues) == ["PATIENT_BIRTH_DATE_FUTURE"]

    @pytest.mark.asyncio
    async def test_death_before_birth_and_conflict(self, patient_resource):
        patient_resource["deceasedDateTime"] = "1970-01-01"
        patient_resource["deceasedBoolean"] = True
        issues = await validate_business_rules(patient_resource, ERROR, make_context(patient_resource))
        assert sorted(codes(issues)) == ["PATIENT_DEATH_BEFORE_BIRTH", "PATIENT_DECEASED_CONFLICT"]

    @pytest.mark.asyncio
    async def test_observation_rules(self, observation_resource):
        del observation_resource["effectiveDateTime"]
        observation_resource["dataAbsentReason"] = {"text": "unknown"}
        issues = await validate_business_rules(
            observation_resource, ERROR, make_context(observation_resource)
        )
        assert sorted(codes(issues)) == [
            "OBSERVATION_MISSING_EFFECTIVE_TIME",
            "OBSERVATION_VALUE_CONFLICT",
        ]

    @pytest.mark.asyncio
    async def test_entered_in_error_needs_no_effective_time(self, observation_resource):
        del observation_resource["effectiveDateTime"]
        observation_resource["status"] = "entered-in-error"
        issues = await validate_business_rules(
            observation_resource, ERROR, make_context(observation_resource)
        )
        assert issues == []

    @pytest.mark.asyncio
    async def test_period_start_after_end(self, observation_resource):
        del observation_resource["effectiveDateTime"]
        observation_resource["effectivePeriod"] = {"start": "2024-02-01", "end": "2024-01-01"}
        issues = await validate_business_rules(
            observation_resource, ERROR, make_context(observation_resource)
        )
        assert codes(issues) == ["PERIOD_START_AFTER_END"]
        assert issues[0].location == ["effectivePeriod"]

    @pytest.mark.asyncio
    async def test_custom_rules(self, patient_resource):
        settings = default_validation_settings()
        settings.custom_rules = [
            CustomRule(id="r1", name="Has telecom", rule_type=RuleType.REQUIRED, path="telecom"),
            CustomRule(
                id="r2",
                name="Family upper case",
                rule_type=RuleType.PATTERN,
                path="name.family",
                pattern="[A-Z]+",
                severity=IssueSeverity.WARNING,
            ),
            CustomRule(
                id="r3",
                name="Only for observations",
                rule_type=RuleType.REQUIRED,
                path="status",
                resource_types=["Observation"],
            ),
        ]
        issues = await validate_business_rules(
            patient_resource, ERROR, make_context(patient_resource, settings)
        )
        by_rule = {i.rule_id: i for i in issues}
        assert set(by_rule) == {"r1", "r2"}
        assert by_rule["r1"].code == "RULE_REQUIRED_FAILED"
        assert by_rule["r1"].severity == IssueSeverity.ERROR
        assert by_rule["r2"].code == "RULE_PATTERN_FAILED"
        assert by_rule["r2"].severity == IssueSeverity.WARNING

    @pytest.mark.asyncio
    async def test_failing_custom_function_is_reported(self, patient_resource):
        def explode(resource):
            raise KeyError("missing")

        settings = default_validation_settings()
        settings.custom_rules = [
            CustomRule(id="boom", name="Explodes", rule_type=RuleType.CUSTOM, function=explode)
        ]
        issues = await validate_business_rules(
            patient_resource, ERROR, make_context(patient_resource, settings)
        )
        assert codes(issues) == ["BUSINESS_RULE_EVALUATION_ERROR"]
        assert issues[0].rule_id == "boom"

    @pytest.mark.asyncio
    async def test_results_are_cached(self, patient_resource):
        calls = []

        def check(resource):
            calls.append(1)
            return True

        settings = default_validation_settings()
        settings.custom_rules = [
            CustomRule(id="c", name="Counted", rule_type=RuleType.CUSTOM, function=check)
        ]
        ctx = make_context(patient_resource, settings)
        await validate_business_rules(patient_resource, ERROR, ctx)
        await validate_business_rules(patient_resource, ERROR, ctx)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_swapped_lambda_is_not_served_from_cache(self, patient_resource):
        passes = lambda resource: True  # noqa: E731
        fails = lambda resource: False  # noqa: E731
        settings = default_validation_settings()
        ctx = make_context(patient_resource, settings)

        settings.custom_rules = [
            CustomRule(id="c", name="Custom", rule_type=RuleType.CUSTOM, function=passes)
        ]
        assert await validate_business_rules(patient_resource, ERROR, ctx) == []

        settings.custom_rules = [
            CustomRule(id="c", name="Custom", rule_type=RuleType.CUSTOM, function=fails)
        ]
        issues = await validate_business_rules(patient_resource, ERROR, ctx)
        assert codes(issues) == ["RULE_CUSTOM_FAILED"]


class TestEvaluateRule:
    """Tests for single custom-rule evaluation."""

    @pytest.mark.asyncio
    async def test_cardinality(self, patient_resource):
        rule = CustomRule(
            id="c", name="One name", rule_type=RuleType.CARDINALITY, path="name", max_count=1
        )
        assert await evaluate_rule(rule, patient_resource) is None
        patient_resource["name"].append({"family": "Smith"})
        assert await evaluate_rule(rule, patient_resource) == "RULE_CARDINALITY_FAILED"

    @pytest.mark.asyncio
    async def test_terminology(self, observation_resource):
        rule = CustomRule(
            id="t",
            name="LOINC heart rate",
            rule_type=RuleType.TERMINOLOGY,
            path="code",
            system="http://loinc.org",
            allowed_codes=["8867-4"],
        )
        assert await evaluate_rule(rule, observation_resource) is None
        observation_resource["code"]["coding"][0]["code"] = "0000-0"
        assert await evaluate_rule(rule, observation_resource) == "RULE_TERMINOLOGY_FAILED"

    @pytest.mark.asyncio
    async def test_invariant(self, patient_resource):
        rule = CustomRule(
            id="i",
            name="Deceased implies date",
            rule_type=RuleType.INVARIANT,
            expression="deceasedBoolean = true implies exists(deceasedDateTime)",
        )
        assert await evaluate_rule(rule, patient_resource) is None
        patient_resource["deceasedBoolean"] = True
        assert await evaluate_rule(rule, patient_resource) == "RULE_INVARIANT_FAILED"

    @pytest.mark.asyncio
    async def test_async_custom_function(self, patient_resource):
        async def has_gender(resource):
            return "gender" in resource

        rule = CustomRule(id="g", name="Gender", rule_type=RuleType.CUSTOM, function=has_gender)
        assert await evaluate_rule(rule, patient_resource) is None
        del patient_resource["gender"]
        assert await evaluate_rule(rule, patient_resource) == "RULE_CUSTOM_FAILED"


# ============== Metadata ==============


class TestMetadata:
    """Tests for the metadata aspect."""

    @pytest.mark.asyncio
    async def test_no_meta(self, patient_resource):
        assert await validate_metadata(patient_resource, WARNING, make_context(patient_resource)) == []

    @pytest.mark.asyncio
    async def test_valid_meta(self, patient_resource):
        patient_resource["meta"] = {
            "versionId": "3",
            "lastUpdated": "2024-01-15T08:30:00.000Z",
            "profile": ["http://hl7.org/fhir/StructureDefinition/Patient"],
            "tag": [{"system": "http://example.org/tags", "code": "vip"}],
        }
        assert await validate_metadata(patient_resource, WARNING, make_context(patient_resource)) == []

    @pytest.mark.asyncio
    async def test_invalid_meta(self, patient_resource):
        patient_resource["meta"] = {
            "versionId": "not valid!",
            "lastUpdated": "2024-01-15",
            "profile": "http://example.org/p",
            "security": [{"system": "http://example.org"}],
        }
        issues = await validate_metadata(patient_resource, WARNING, make_context(patient_resource))
        assert sorted(codes(issues)) == [
            "INVALID_LAST_UPDATED",
            "INVALID_META_PROFILE",
            "INVALID_META_TAG",
            "INVALID_VERSION_ID",
        ]

    @pytest.mark.asyncio
    async def test_last_updated_in_future(self, patient_resource):
        patient_resource["meta"] = {"lastUpdated": "2999-01-01T00:00:00Z"}
        issues = await validate_metadata(patient_resource, WARNING, make_context(patient_resource))
        assert codes(issues) == ["LAST_UPDATED_IN_FUTURE"]
