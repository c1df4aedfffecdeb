"""
Structural aspect: record type, identity, required fields and basic shape.
"""

import re
from typing import Any

from healthval.core.enums import ValidationAspect
from healthval.schemas.settings import AspectConfig
from healthval.schemas.validation import ValidationIssue
from healthval.services.validation.aspects.base import (
    AspectContext,
    aspect_validator,
    is_present,
    walk,
)

ASPECT = ValidationAspect.STRUCTURAL

ID_PATTERN = re.compile(r"^[A-Za-z0-9\-.]{1,64}$")

# Record types that may legitimately omit an id
ID_OPTIONAL_TYPES = {"Bundle"}

REQUIRED_FIELDS: dict[str, list[str]] = {
    "Patient": ["identifier", "name"],
    "Observation": ["status", "code"],
    "Encounter": ["status", "class"],
    "Condition": ["subject"],
    "Procedure": ["status", "subject"],
    "MedicationRequest": ["status", "intent", "subject"],
    "DiagnosticReport": ["status", "code"],
    "AllergyIntolerance": ["patient"],
    "Immunization": ["status", "vaccineCode", "patient"],
}

# Top-level elements whose cardinality is always 0..*
LIST_FIELDS = {
    "identifier",
    "name",
    "telecom",
    "address",
    "contact",
    "contained",
    "extension",
    "modifierExtension",
    "category",
    "performer",
    "note",
}

OBJECT_FIELDS = {"meta", "text", "subject", "encounter"}


@aspect_validator(ASPECT)
async def validate_structural(
    resource: dict[str, Any], config: AspectConfig, ctx: AspectContext
) -> list[ValidationIssue]:
    severity = config.severity
    issues: list[ValidationIssue] = []

    declared_type = resource.get("resourceType")
    if not isinstance(declared_type, str) or not declared_type:
        issues.append(
            ValidationIssue(
                severity=severity,
                code="MISSING_RESOURCE_TYPE",
                message="Resource must declare a resourceType",
                aspect=ASPECT,
                location=["resourceType"],
            )
        )
        declared_type = None
    elif ctx.resource_type and declared_type != ctx.resource_type:
        issues.append(
            ValidationIssue(
                severity=severity,
                code="RESOURCE_TYPE_MISMATCH",
                message=(
                    f"Resource declares type '{declared_type}' but was submitted "
                    f"as '{ctx.resource_type}'"
                ),
                aspect=ASPECT,
                location=["resourceType"],
                context={"declared": declared_type, "expected": ctx.resource_type},
            )
        )

    resource_type = declared_type or ctx.resource_type

    record_id = resource.get("id")
    if record_id is None or record_id == "":
        if resource_type not in ID_OPTIONAL_TYPES:
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="MISSING_RESOURCE_ID",
                    message=f"{resource_type or 'Resource'} must have an id",
                    aspect=ASPECT,
                    location=["id"],
                )
            )
    elif not isinstance(record_id, str) or not ID_PATTERN.match(record_id):
        issues.append(
            ValidationIssue(
                severity=severity,
                code="INVALID_ID_FORMAT",
                message=f"Resource id '{record_id}' is not a valid id",
                aspect=ASPECT,
                location=["id"],
            )
        )

    for field_name in REQUIRED_FIELDS.get(resource_type or "", []):
        if not is_present(resource.get(field_name)):
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="MISSING_REQUIRED_FIELD",
                    message=f"{resource_type} is missing required field '{field_name}'",
                    aspect=ASPECT,
                    location=[field_name],
                    context={"field": field_name},
                )
            )

    for field_name, value in resource.items():
        if field_name in LIST_FIELDS and not isinstance(value, list):
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="INVALID_FIELD_TYPE",
                    message=f"Field '{field_name}' must be an array",
                    aspect=ASPECT,
                    location=[field_name],
                    context={"expected": "array", "actual": type(value).__name__},
                )
            )
        elif field_name in OBJECT_FIELDS and not isinstance(value, dict):
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="INVALID_FIELD_TYPE",
                    message=f"Field '{field_name}' must be an object",
                    aspect=ASPECT,
                    location=[field_name],
                    context={"expected": "object", "actual": type(value).__name__},
                )
            )

    for path, node in walk(resource):
        if (
            len(path) >= 2
            and path[-2] in ("extension", "modifierExtension")
            and path[-1].isdigit()
            and not isinstance(node.get("url"), str)
        ):
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="EXTENSION_MISSING_URL",
                    message="Extension must have a url",
                    aspect=ASPECT,
                    location=path,
                )
            )

    return issues
