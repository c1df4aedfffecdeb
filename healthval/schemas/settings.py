"""
Validation Settings Schemas.

The rule set a validation runs against: which aspects are enabled and at
which severity they report, upstream servers, custom business rules and
batch limits. A snapshot of these settings is part of every cache key.
"""

import hashlib
import json
import re
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from healthval.core.enums import IssueSeverity, ValidationAspect


class RuleType(str, Enum):
    """Kinds of custom business rule."""

    REQUIRED = "required"
    PATTERN = "pattern"
    CUSTOM = "custom"
    CARDINALITY = "cardinality"
    TERMINOLOGY = "terminology"
    INVARIANT = "invariant"


# Rule types that address a single field path
_PATH_RULES = {
    RuleType.REQUIRED,
    RuleType.PATTERN,
    RuleType.CARDINALITY,
    RuleType.TERMINOLOGY,
}


class AspectConfig(BaseModel):
    """Per-aspect switch, reporting severity and optional time budget."""

    enabled: bool = True
    severity: IssueSeverity = IssueSeverity.ERROR
    timeout_ms: Optional[int] = Field(
        None, gt=0, description="Aspect time budget; the engine default applies when unset"
    )


class TimeoutSettings(BaseModel):
    """Timeouts applied to batch validation."""

    default_timeout_ms: Optional[int] = Field(
        None, gt=0, description="Per-record timeout; falls back to pipeline config"
    )


class CacheSettings(BaseModel):
    """Result caching behaviour requested by the active settings."""

    enabled: bool = True
    ttl_ms: int = Field(300000, gt=0)
    max_size: int = Field(1000, ge=1)


class CustomRule(BaseModel):
    """
    Operator-defined business rule.

    ``path`` uses dot notation over the record (``name.0.family``); a list
    segment that is not an index fans out over every element.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    rule_type: RuleType
    path: Optional[str] = None
    pattern: Optional[str] = None
    expression: Optional[str] = None
    min_count: Optional[int] = Field(None, ge=0)
    max_count: Optional[int] = Field(None, ge=0)
    system: Optional[str] = None
    allowed_codes: list[str] = Field(default_factory=list)
    function: Optional[Callable[..., Any]] = Field(default=None, exclude=True)
    resource_types: list[str] = Field(default_factory=list)
    severity: Optional[IssueSeverity] = None
    message: Optional[str] = None
    enabled: bool = True

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"Invalid pattern: {e}") from e
        return v

    @model_validator(mode="after")
    def check_rule_fields(self) -> "CustomRule":
        if self.rule_type in _PATH_RULES and not self.path:
            raise ValueError(f"{self.rule_type.value} rules require a path")
        if self.rule_type == RuleType.PATTERN and not self.pattern:
            raise ValueError("pattern rules require a pattern")
        if self.rule_type == RuleType.INVARIANT and not self.expression:
            raise ValueError("invariant rules require an expression")
        if self.rule_type == RuleType.CUSTOM and self.function is None:
            raise ValueError("custom rules require a function")
        if self.rule_type == RuleType.TERMINOLOGY and not (
            self.system or self.allowed_codes
        ):
            raise ValueError("terminology rules require a system or allowed codes")
        if (
            self.min_count is not None
            and self.max_count is not None
            and self.min_count > self.max_count
        ):
            raise ValueError("min_count cannot exceed max_count")
        return self

    def applies_to(self, resource_type: Optional[str]) -> bool:
        return not self.resource_types or resource_type in self.resource_types

    def fingerprint(self) -> dict[str, Any]:
        """
        Serializable identity of the rule.

        A custom function is identified by its qualified name plus the object
        id, since every lambda shares the name ``<lambda>``.
        """
        data = self.model_dump(mode="json")
        if self.function is not None:
            data["function"] = (
                f"{getattr(self.function, '__module__', '')}."
                f"{getattr(self.function, '__qualname__', repr(self.function))}"
                f"@{id(self.function):x}"
            )
        return data


class ValidationSettings(BaseModel):
    """Active rule set for validations."""

    structural: AspectConfig = Field(default_factory=AspectConfig)
    profile: AspectConfig = Field(
        default_factory=lambda: AspectConfig(severity=IssueSeverity.WARNING)
    )
    terminology: AspectConfig = Field(
        default_factory=lambda: AspectConfig(severity=IssueSeverity.WARNING)
    )
    reference: AspectConfig = Field(default_factory=AspectConfig)
    business_rule: AspectConfig = Field(default_factory=AspectConfig)
    metadata: AspectConfig = Field(
        default_factory=lambda: AspectConfig(severity=IssueSeverity.WARNING)
    )

    terminology_servers: list[str] = Field(default_factory=list)
    profile_resolution_servers: list[str] = Field(default_factory=list)
    custom_rules: list[CustomRule] = Field(default_factory=list)

    max_concurrent_validations: Optional[int] = Field(None, ge=1)
    timeout_settings: TimeoutSettings = Field(default_factory=TimeoutSettings)
    cache_settings: CacheSettings = Field(default_factory=CacheSettings)

    def aspect_config(self, aspect: ValidationAspect) -> AspectConfig:
        """Get the configuration block for an aspect."""
        return {
            ValidationAspect.STRUCTURAL: self.structural,
            ValidationAspect.PROFILE: self.profile,
            ValidationAspect.TERMINOLOGY: self.terminology,
            ValidationAspect.REFERENCE: self.reference,
            ValidationAspect.BUSINESS_RULE: self.business_rule,
            ValidationAspect.METADATA: self.metadata,
        }[aspect]

    def active_rules(self, resource_type: Optional[str]) -> list[CustomRule]:
        return [
            rule
            for rule in self.custom_rules
            if rule.enabled and rule.applies_to(resource_type)
        ]

    def snapshot_hash(self) -> str:
        """Deterministic hash of every setting that can change a result."""
        data = self.model_dump(mode="json", exclude={"custom_rules"})
        data["custom_rules"] = [rule.fingerprint() for rule in self.custom_rules]
        encoded = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(encoded.encode()).hexdigest()


def default_validation_settings() -> ValidationSettings:
    """
    Settings used when the settings provider cannot be reached.

    All six aspects enabled, public terminology and package servers listed,
    no custom rules.
    """
    return ValidationSettings(
        terminology_servers=["https://tx.fhir.org/r4"],
        profile_resolution_servers=["https://packages.fhir.org"],
    )
