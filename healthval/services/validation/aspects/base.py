"""
Aspect validator plumbing.

An aspect validator is an async callable
``(resource, aspect_config, context) -> list[ValidationIssue]``. The
``aspect_validator`` decorator turns any exception it raises into a single
``<ASPECT>_VALIDATION_ERROR`` issue, so validators never raise.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Awaitable, Callable, Iterator, Optional

from healthval.core.enums import IssueSeverity, ValidationAspect
from healthval.schemas.settings import AspectConfig, ValidationSettings
from healthval.schemas.validation import ValidationIssue, ValidationRequest
from healthval.services.validation.external import ExternalServices

logger = logging.getLogger(__name__)

_INDEX = re.compile(r"^\d+$")


@dataclass
class AspectContext:
    """Everything an aspect validator may consult besides the record."""

    request: ValidationRequest
    settings: ValidationSettings
    external: ExternalServices

    @property
    def resource_type(self) -> str:
        return self.request.resource_type or ""


AspectValidator = Callable[
    [dict[str, Any], AspectConfig, AspectContext], Awaitable[list[ValidationIssue]]
]


def error_code_prefix(aspect: ValidationAspect) -> str:
    return aspect.name  # BUSINESS_RULE for businessRule


def aspect_validator(aspect: ValidationAspect) -> Callable[[AspectValidator], AspectValidator]:
    """Guard a validator so internal failures become one error issue."""

    def decorator(func: AspectValidator) -> AspectValidator:
        if getattr(func, "__aspect_guarded__", False):
            return func

        @wraps(func)
        async def wrapper(
            resource: dict[str, Any], config: AspectConfig, ctx: AspectContext
        ) -> list[ValidationIssue]:
            try:
                return list(await func(resource, config, ctx))
            except Exception as e:
                logger.error(f"{aspect.value} validation failed: {e}", exc_info=True)
                return [
                    ValidationIssue(
                        severity=IssueSeverity.ERROR,
                        code=f"{error_code_prefix(aspect)}_VALIDATION_ERROR",
                        message=f"{aspect.value} validation failed: {e}",
                        aspect=aspect,
                        diagnostics=type(e).__name__,
                    )
                ]

        wrapper.__aspect_guarded__ = True  # type: ignore[attr-defined]
        wrapper.aspect = aspect  # type: ignore[attr-defined]
        return wrapper

    return decorator


# =============================================================================
# Record traversal helpers
# =============================================================================


def walk(node: Any, path: Optional[list[str]] = None) -> Iterator[tuple[list[str], dict[str, Any]]]:
    """Yield ``(path, mapping)`` for every mapping nested in ``node``."""
    path = path or []
    if isinstance(node, dict):
        yield path, node
        for key, value in node.items():
            yield from walk(value, path + [str(key)])
    elif isinstance(node, list):
        for index, item in enumerate(node):
            yield from walk(item, path + [str(index)])


def get_values_by_path(resource: Any, path: str) -> list[Any]:
    """
    Resolve a dotted path. Numeric segments index lists; other segments
    applied to a list fan out over its elements. Missing values are dropped.
    """
    current: list[Any] = [resource]
    for segment in [s for s in path.split(".") if s]:
        next_values: list[Any] = []
        for value in current:
            if isinstance(value, list):
                if _INDEX.match(segment):
                    index = int(segment)
                    if index < len(value):
                        next_values.append(value[index])
                else:
                    for item in value:
                        if isinstance(item, dict) and segment in item:
                            next_values.append(item[segment])
            elif isinstance(value, dict) and segment in value:
                next_values.append(value[segment])
        current = next_values

    flattened: list[Any] = []
    for value in current:
        if isinstance(value, list):
            flattened.extend(value)
        elif value is not None:
            flattened.append(value)
    return flattened


def is_present(value: Any) -> bool:
    """FHIR-style presence: not None, not empty string, list or object."""
    if value is None:
        return False
    if isinstance(value, (str, list, dict)) and len(value) == 0:
        return False
    return True


# =============================================================================
# FHIR date handling
# =============================================================================

_FHIR_DATE = re.compile(r"^(\d{4})(-(\d{2})(-(\d{2}))?)?$")
FHIR_INSTANT = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{1,9})?(Z|[+-]\d{2}:\d{2})$"
)


def parse_fhir_datetime(value: Any) -> Optional[datetime]:
    """
    Parse a FHIR date, dateTime or instant into an aware datetime.

    Partial dates (``2024``, ``2024-05``) map to the start of the period.
    Values without a zone are taken as UTC. Returns None when unparseable.
    """
    if not isinstance(value, str) or not value:
        return None

    match = _FHIR_DATE.match(value)
    if match:
        try:
            return datetime(
                int(match.group(1)),
                int(match.group(3) or 1),
                int(match.group(5) or 1),
                tzinfo=timezone.utc,
            )
        except ValueError:
            return None

    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    # fromisoformat accepts at most microseconds
    text = re.sub(r"(\.\d{6})\d+", r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
