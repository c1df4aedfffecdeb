"""
Terminology aspect: codeable concepts, codings and value-set references.

Local checks always run. When a terminology resolver is configured each
(system, code) pair is also looked up through the engine's cache and the
``terminology`` circuit breaker.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any

from healthval.core.enums import IssueSeverity, ValidationAspect
from healthval.schemas.settings import AspectConfig
from healthval.schemas.validation import ValidationIssue
from healthval.services.validation.aspects.base import (
    AspectContext,
    aspect_validator,
    walk,
)
from healthval.utils.errors import CircuitBreakerOpen

logger = logging.getLogger(__name__)

ASPECT = ValidationAspect.TERMINOLOGY

CODE_SYSTEM_PATTERN = re.compile(r"^(https?://\S+|urn:(oid|uuid):\S+)$")
VALUE_SET_PATTERN = re.compile(r"^https?://\S+$")
VALUE_SET_KEYS = ("valueSet", "valueSetUri")


@dataclass
class CodingRef:
    system: str
    code: str
    location: list[str]


@aspect_validator(ASPECT)
async def validate_terminology(
    resource: dict[str, Any], config: AspectConfig, ctx: AspectContext
) -> list[ValidationIssue]:
    severity = config.severity

    if not ctx.settings.terminology_servers:
        return [
            ValidationIssue(
                severity=severity,
                code="NO_TERMINOLOGY_SERVERS",
                message="Terminology validation is enabled but no terminology servers are configured",
                aspect=ASPECT,
            )
        ]

    issues: list[ValidationIssue] = []
    codings: list[CodingRef] = []

    for path, node in walk(resource):
        if "coding" in node:
            coding_list = node.get("coding")
            if (not isinstance(coding_list, list) or not coding_list) and not node.get("text"):
                issues.append(
                    ValidationIssue(
                        severity=severity,
                        code="CODABLE_CONCEPT_INCOMPLETE",
                        message="CodeableConcept must have at least one coding or a text",
                        aspect=ASPECT,
                        location=path,
                    )
                )

        if len(path) >= 2 and path[-2] == "coding" and path[-1].isdigit():
            codings.extend(_check_coding(node, path, severity, issues))

        for key in VALUE_SET_KEYS:
            value = node.get(key)
            if isinstance(value, str) and not VALUE_SET_PATTERN.match(value):
                issues.append(
                    ValidationIssue(
                        severity=severity,
                        code="INVALID_VALUE_SET_URL",
                        message=f"Value set reference '{value}' is not a valid URL",
                        aspect=ASPECT,
                        location=path + [key],
                    )
                )

    if ctx.external.has_terminology:
        issues.extend(await _lookup_codes(codings, severity, ctx))

    return issues


def _check_coding(
    node: dict[str, Any],
    path: list[str],
    severity: IssueSeverity,
    issues: list[ValidationIssue],
) -> list[CodingRef]:
    system = node.get("system")
    code = node.get("code")

    if not system:
        issues.append(
            ValidationIssue(
                severity=severity,
                code="CODING_MISSING_SYSTEM",
                message="Coding has no system",
                aspect=ASPECT,
                location=path,
                context={"code": code},
            )
        )
    elif not isinstance(system, str) or not CODE_SYSTEM_PATTERN.match(system):
        issues.append(
            ValidationIssue(
                severity=severity,
                code="INVALID_CODE_SYSTEM_URL",
                message=f"Code system '{system}' is not a valid URI",
                aspect=ASPECT,
                location=path + ["system"],
            )
        )
        system = None

    if not code:
        issues.append(
            ValidationIssue(
                severity=severity,
                code="CODING_MISSING_CODE",
                message="Coding has no code",
                aspect=ASPECT,
                location=path,
                context={"system": system},
            )
        )

    if system and isinstance(code, str) and code:
        return [CodingRef(system=system, code=code, location=path)]
    return []


async def _lookup_codes(
    codings: list[CodingRef], severity: IssueSeverity, ctx: AspectContext
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for coding in codings:
        try:
            known = await ctx.external.validate_code(coding.system, coding.code)
        except CircuitBreakerOpen as e:
            # Skip the remaining lookups; the breaker will reject them too.
            issues.append(
                ValidationIssue(
                    severity=IssueSeverity.INFORMATION,
                    code="TERMINOLOGY_SERVICE_UNAVAILABLE",
                    message=f"Terminology server unavailable, codes not verified: {e}",
                    aspect=ASPECT,
                    location=coding.location,
                )
            )
            break
        except Exception as e:
            logger.warning(f"Terminology lookup failed for {coding.system}|{coding.code}: {e}")
            issues.append(
                ValidationIssue(
                    severity=IssueSeverity.INFORMATION,
                    code="TERMINOLOGY_SERVICE_UNAVAILABLE",
                    message=f"Code '{coding.code}' could not be verified: {e}",
                    aspect=ASPECT,
                    location=coding.location,
                )
            )
            continue

        if known is False:
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="CODE_NOT_IN_SYSTEM",
                    message=f"Code '{coding.code}' is not defined in {coding.system}",
                    aspect=ASPECT,
                    location=coding.location,
                    context={"system": coding.system, "code": coding.code},
                )
            )
    return issues
