"""
Profile aspect: declared conformance profiles.
"""

import logging
import re
from typing import Any

from healthval.core.enums import IssueSeverity, ValidationAspect
from healthval.schemas.settings import AspectConfig
from healthval.schemas.validation import ValidationIssue
from healthval.services.validation.aspects.base import AspectContext, aspect_validator

logger = logging.getLogger(__name__)

ASPECT = ValidationAspect.PROFILE

PROFILE_URL_PATTERN = re.compile(r"^https?://\S+$")


def declared_profiles(resource: dict[str, Any]) -> list[tuple[Any, list[str]]]:
    """``meta.profile`` entries with their locations."""
    meta = resource.get("meta")
    if not isinstance(meta, dict) or not isinstance(meta.get("profile"), list):
        return []
    return [
        (url, ["meta", "profile", str(index)])
        for index, url in enumerate(meta["profile"])
    ]


@aspect_validator(ASPECT)
async def validate_profile(
    resource: dict[str, Any], config: AspectConfig, ctx: AspectContext
) -> list[ValidationIssue]:
    severity = config.severity
    issues: list[ValidationIssue] = []

    profiles = declared_profiles(resource)
    requested = ctx.request.profile_url
    if requested and requested not in [url for url, _ in profiles]:
        profiles.append((requested, []))

    servers = ctx.settings.profile_resolution_servers
    if not servers:
        issues.append(
            ValidationIssue(
                severity=severity,
                code="NO_PROFILE_SERVERS",
                message="Profile validation is enabled but no profile resolution servers are configured",
                aspect=ASPECT,
            )
        )

    valid_urls: list[tuple[str, list[str]]] = []
    for url, location in profiles:
        if not isinstance(url, str) or not PROFILE_URL_PATTERN.match(url):
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="PROFILE_URL_INVALID",
                    message=f"Profile reference '{url}' is not a valid URL",
                    aspect=ASPECT,
                    location=location,
                )
            )
            continue
        valid_urls.append((url, location))

    if not servers or not ctx.external.has_profiles:
        return issues

    for url, location in valid_urls:
        try:
            definition = await ctx.external.resolve_profile(url)
        except Exception as e:
            logger.warning(f"Profile resolution failed for {url}: {e}")
            issues.append(
                ValidationIssue(
                    severity=IssueSeverity.INFORMATION,
                    code="PROFILE_RESOLUTION_UNAVAILABLE",
                    message=f"Profile '{url}' could not be resolved: {e}",
                    aspect=ASPECT,
                    location=location,
                )
            )
            continue

        if definition is None:
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="PROFILE_NOT_RESOLVED",
                    message=f"Profile '{url}' was not found on the resolution servers",
                    aspect=ASPECT,
                    location=location,
                )
            )
        elif definition.get("type") and definition["type"] != ctx.resource_type:
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="PROFILE_TYPE_MISMATCH",
                    message=(
                        f"Profile '{url}' constrains {definition['type']}, "
                        f"not {ctx.resource_type}"
                    ),
                    aspect=ASPECT,
                    location=location,
                )
            )

    return issues
