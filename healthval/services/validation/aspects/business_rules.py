"""
Business-rule aspect: built-in clinical invariants plus operator-defined
custom rules.

Evaluations are cached per (record, active rule set, day) in the engine's
business-rule cache; the day is part of the key because "not in the future"
checks depend on it.
"""

import inspect
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

from healthval.core.enums import IssueSeverity, ValidationAspect
from healthval.schemas.settings import AspectConfig, CustomRule, RuleType
from healthval.schemas.validation import ValidationIssue
from healthval.services.cache import make_cache_key
from healthval.services.validation.aspects.base import (
    AspectContext,
    aspect_validator,
    get_values_by_path,
    is_present,
    parse_fhir_datetime,
    walk,
)
from healthval.services.validation.invariants import compile_invariant

logger = logging.getLogger(__name__)

ASPECT = ValidationAspect.BUSINESS_RULE

_MISSING = object()

EFFECTIVE_FIELDS = ("effectiveDateTime", "effectivePeriod", "effectiveInstant", "effectiveTiming")


# =============================================================================
# Built-in rules
# =============================================================================


def _check_patient(
    resource: dict[str, Any], severity: IssueSeverity, now: datetime
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    birth = parse_fhir_datetime(resource.get("birthDate"))

    if birth is not None and birth > now:
        issues.append(
            ValidationIssue(
                severity=severity,
                code="PATIENT_BIRTH_DATE_FUTURE",
                message="Patient birth date is in the future",
                aspect=ASPECT,
                location=["birthDate"],
            )
        )

    death = parse_fhir_datetime(resource.get("deceasedDateTime"))
    if birth is not None and death is not None and death < birth:
        issues.append(
            ValidationIssue(
                severity=severity,
                code="PATIENT_DEATH_BEFORE_BIRTH",
                message="Patient date of death is before the birth date",
                aspect=ASPECT,
                location=["deceasedDateTime"],
            )
        )

    if "deceasedBoolean" in resource and "deceasedDateTime" in resource:
        issues.append(
            ValidationIssue(
                severity=severity,
                code="PATIENT_DECEASED_CONFLICT",
                message="deceasedBoolean and deceasedDateTime are mutually exclusive",
                aspect=ASPECT,
                location=["deceased[x]"],
            )
        )
    return issues


def _check_observation(
    resource: dict[str, Any], severity: IssueSeverity, now: datetime
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []

    if resource.get("status") != "entered-in-error" and not any(
        is_present(resource.get(f)) for f in EFFECTIVE_FIELDS
    ):
        issues.append(
            ValidationIssue(
                severity=severity,
                code="OBSERVATION_MISSING_EFFECTIVE_TIME",
                message="Observation has no effective time",
                aspect=ASPECT,
                location=["effective[x]"],
            )
        )

    has_value = any(k.startswith("value") and is_present(v) for k, v in resource.items())
    if has_value and is_present(resource.get("dataAbsentReason")):
        issues.append(
            ValidationIssue(
                severity=severity,
                code="OBSERVATION_VALUE_CONFLICT",
                message="Observation cannot have both a value and a dataAbsentReason",
                aspect=ASPECT,
                location=["dataAbsentReason"],
            )
        )
    return issues


def _check_periods(resource: dict[str, Any], severity: IssueSeverity) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for path, node in walk(resource):
        if "start" not in node or "end" not in node:
            continue
        start = parse_fhir_datetime(node.get("start"))
        end = parse_fhir_datetime(node.get("end"))
        if start is not None and end is not None and start > end:
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="PERIOD_START_AFTER_END",
                    message="Period start is after its end",
                    aspect=ASPECT,
                    location=path,
                    context={"start": node.get("start"), "end": node.get("end")},
                )
            )
    return issues


BUILT_IN_CHECKS = {
    "Patient": _check_patient,
    "Observation": _check_observation,
}


# =============================================================================
# Custom rules
# =============================================================================


def _collect_codings(values: list[Any]) -> list[tuple[Optional[str], Optional[str]]]:
    codings: list[tuple[Optional[str], Optional[str]]] = []
    for value in values:
        if isinstance(value, str):
            codings.append((None, value))
        elif isinstance(value, dict) and isinstance(value.get("coding"), list):
            codings.extend(
                (c.get("system"), c.get("code")) for c in value["coding"] if isinstance(c, dict)
            )
        elif isinstance(value, dict):
            codings.append((value.get("system"), value.get("code")))
    return codings


async def evaluate_rule(rule: CustomRule, resource: dict[str, Any]) -> Optional[str]:
    """
    Evaluate one custom rule. Returns the failure code, or None when the
    rule holds. Exceptions propagate to the caller.
    """
    if rule.rule_type == RuleType.REQUIRED:
        values = get_values_by_path(resource, rule.path or "")
        return None if any(is_present(v) for v in values) else "RULE_REQUIRED_FAILED"

    if rule.rule_type == RuleType.PATTERN:
        pattern = re.compile(rule.pattern or "")
        for value in get_values_by_path(resource, rule.path or ""):
            if not pattern.fullmatch(str(value)):
                return "RULE_PATTERN_FAILED"
        return None

    if rule.rule_type == RuleType.CARDINALITY:
        count = len(get_values_by_path(resource, rule.path or ""))
        if rule.min_count is not None and count < rule.min_count:
            return "RULE_CARDINALITY_FAILED"
        if rule.max_count is not None and count > rule.max_count:
            return "RULE_CARDINALITY_FAILED"
        return None

    if rule.rule_type == RuleType.TERMINOLOGY:
        values = get_values_by_path(resource, rule.path or "")
        if not values:
            return None
        for system, code in _collect_codings(values):
            if rule.system and system != rule.system:
                continue
            if rule.allowed_codes and code not in rule.allowed_codes:
                continue
            return None
        return "RULE_TERMINOLOGY_FAILED"

    if rule.rule_type == RuleType.INVARIANT:
        predicate = compile_invariant(rule.expression or "")
        return None if predicate(resource) else "RULE_INVARIANT_FAILED"

    if rule.rule_type == RuleType.CUSTOM and rule.function is not None:
        outcome = rule.function(resource)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return None if outcome else "RULE_CUSTOM_FAILED"

    raise ValueError(f"Unsupported rule type: {rule.rule_type}")


async def _run_custom_rules(
    rules: list[CustomRule], resource: dict[str, Any], default_severity: IssueSeverity
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for rule in rules:
        location = rule.path.split(".") if rule.path else []
        try:
            failure = await evaluate_rule(rule, resource)
        except Exception as e:
            logger.warning(f"Business rule {rule.id} could not be evaluated: {e}")
            issues.append(
                ValidationIssue(
                    severity=IssueSeverity.ERROR,
                    code="BUSINESS_RULE_EVALUATION_ERROR",
                    message=f"Rule '{rule.name}' could not be evaluated: {e}",
                    aspect=ASPECT,
                    location=location,
                    rule_id=rule.id,
                    diagnostics=type(e).__name__,
                )
            )
            continue

        if failure is not None:
            issues.append(
                ValidationIssue(
                    severity=rule.severity or default_severity,
                    code=failure,
                    message=rule.message or f"Rule '{rule.name}' failed",
                    aspect=ASPECT,
                    location=location,
                    rule_id=rule.id,
                    context={"rule_type": rule.rule_type.value},
                )
            )
    return issues


@aspect_validator(ASPECT)
async def validate_business_rules(
    resource: dict[str, Any], config: AspectConfig, ctx: AspectContext
) -> list[ValidationIssue]:
    severity = config.severity
    now = datetime.now(timezone.utc)
    rules = ctx.settings.active_rules(ctx.resource_type)

    cache = ctx.external.caches.business_rules
    key = make_cache_key(
        "business_rules",
        resource,
        ctx.resource_type,
        severity.value,
        [rule.fingerprint() for rule in rules],
        now.date().isoformat(),
    )
    cached = await cache.get(key, _MISSING)
    if cached is not _MISSING:
        return list(cached)

    issues: list[ValidationIssue] = []
    check = BUILT_IN_CHECKS.get(ctx.resource_type)
    if check is not None:
        issues.extend(check(resource, severity, now))
    issues.extend(_check_periods(resource, severity))
    issues.extend(await _run_custom_rules(rules, resource, severity))

    await cache.set(key, list(issues))
    return issues
