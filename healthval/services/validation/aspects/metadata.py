"""
Metadata aspect: ``meta`` bookkeeping fields.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any

from healthval.core.enums import ValidationAspect
from healthval.schemas.settings import AspectConfig
from healthval.schemas.validation import ValidationIssue
from healthval.services.validation.aspects.base import (
    FHIR_INSTANT,
    AspectContext,
    aspect_validator,
    parse_fhir_datetime,
)

ASPECT = ValidationAspect.METADATA

VERSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9\-.]{1,64}$")

# Clock skew tolerated before lastUpdated counts as "in the future"
FUTURE_TOLERANCE = timedelta(minutes=5)


@aspect_validator(ASPECT)
async def validate_metadata(
    resource: dict[str, Any], config: AspectConfig, ctx: AspectContext
) -> list[ValidationIssue]:
    severity = config.severity
    meta = resource.get("meta")
    if not isinstance(meta, dict):
        return []

    issues: list[ValidationIssue] = []

    if "lastUpdated" in meta:
        last_updated = meta["lastUpdated"]
        parsed = (
            parse_fhir_datetime(last_updated)
            if isinstance(last_updated, str) and FHIR_INSTANT.match(last_updated)
            else None
        )
        if parsed is None:
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="INVALID_LAST_UPDATED",
                    message=f"meta.lastUpdated '{last_updated}' is not a valid instant",
                    aspect=ASPECT,
                    location=["meta", "lastUpdated"],
                )
            )
        elif parsed > datetime.now(timezone.utc) + FUTURE_TOLERANCE:
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="LAST_UPDATED_IN_FUTURE",
                    message="meta.lastUpdated is in the future",
                    aspect=ASPECT,
                    location=["meta", "lastUpdated"],
                )
            )

    if "versionId" in meta:
        version_id = meta["versionId"]
        if not isinstance(version_id, str) or not VERSION_ID_PATTERN.match(version_id):
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="INVALID_VERSION_ID",
                    message=f"meta.versionId '{version_id}' is not a valid id",
                    aspect=ASPECT,
                    location=["meta", "versionId"],
                )
            )

    if "profile" in meta and not isinstance(meta["profile"], list):
        issues.append(
            ValidationIssue(
                severity=severity,
                code="INVALID_META_PROFILE",
                message="meta.profile must be an array of canonical URLs",
                aspect=ASPECT,
                location=["meta", "profile"],
            )
        )

    for field_name in ("security", "tag"):
        entries = meta.get(field_name)
        if entries is None:
            continue
        if not isinstance(entries, list):
            entries = [entries]
        for index, coding in enumerate(entries):
            if not isinstance(coding, dict) or not coding.get("code"):
                issues.append(
                    ValidationIssue(
                        severity=severity,
                        code="INVALID_META_TAG",
                        message=f"meta.{field_name} entries must be codings with a code",
                        aspect=ASPECT,
                        location=["meta", field_name, str(index)],
                    )
                )

    return issues
