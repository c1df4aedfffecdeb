"""
Validation Results Store.

Persists validation results and groups their messages by signature so the
same finding across many records is stored once with a count. A signature is
the SHA-256 of ``aspect|severity|code|canonicalPath|ruleId|normalizedText``
with every component lower-cased and trimmed.
"""

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, runtime_checkable

from healthval.schemas.validation import ValidationIssue, ValidationResult
from healthval.utils.logging import get_logger

logger = get_logger(__name__)

MAX_PATH_LENGTH = 256
MAX_TEXT_LENGTH = 512

_INDEX_SEGMENT = re.compile(r"^\d+$")
_BRACKET_INDEX = re.compile(r"\[\d+\]")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class NormalizedValue:
    value: str
    truncated: bool = False


def normalize_canonical_path(location: list[str] | str) -> NormalizedValue:
    """
    Dotted path without array indices, lower-cased.

    ``["name", "0", "family"]`` and ``"name[2].family"`` both become
    ``name.family``.
    """
    if isinstance(location, str):
        segments = location.split(".")
    else:
        segments = [str(s) for s in location]
    cleaned = []
    for segment in segments:
        segment = _BRACKET_INDEX.sub("", segment).strip()
        if not segment or _INDEX_SEGMENT.match(segment):
            continue
        cleaned.append(segment.lower())
    path = ".".join(cleaned)
    if len(path) > MAX_PATH_LENGTH:
        return NormalizedValue(path[:MAX_PATH_LENGTH], truncated=True)
    return NormalizedValue(path)


def normalize_message_text(text: Optional[str]) -> NormalizedValue:
    """Lower-cased text with runs of whitespace collapsed."""
    normalized = _WHITESPACE.sub(" ", (text or "")).strip().lower()
    if len(normalized) > MAX_TEXT_LENGTH:
        return NormalizedValue(normalized[:MAX_TEXT_LENGTH], truncated=True)
    return NormalizedValue(normalized)


def compute_message_signature(
    aspect: str,
    severity: str,
    code: Optional[str],
    canonical_path: str,
    rule_id: Optional[str],
    normalized_text: str,
) -> str:
    parts = [aspect, severity, code or "", canonical_path, rule_id or "", normalized_text]
    joined = "|".join(p.strip().lower() for p in parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def issue_signature(issue: ValidationIssue) -> str:
    return compute_message_signature(
        issue.aspect.value,
        issue.severity.value,
        issue.code,
        normalize_canonical_path(issue.location).value,
        issue.rule_id,
        normalize_message_text(issue.message).value,
    )


@dataclass
class MessageGroup:
    """All occurrences of one message signature."""

    signature: str
    aspect: str
    severity: str
    code: str
    canonical_path: str
    text: str
    rule_id: Optional[str] = None
    path_truncated: bool = False
    text_truncated: bool = False
    count: int = 0
    resource_keys: set[str] = field(default_factory=set)
    first_seen_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_seen_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "aspect": self.aspect,
            "severity": self.severity,
            "code": self.code,
            "canonical_path": self.canonical_path,
            "text": self.text,
            "rule_id": self.rule_id,
            "path_truncated": self.path_truncated,
            "text_truncated": self.text_truncated,
            "count": self.count,
            "resource_count": len(self.resource_keys),
            "first_seen_at": self.first_seen_at.isoformat(),
            "last_seen_at": self.last_seen_at.isoformat(),
        }


@runtime_checkable
class ResultsStore(Protocol):
    async def save(self, result: ValidationResult) -> None: ...


class InMemoryResultsStore:
    """Keeps the latest result per record plus signature-grouped messages."""

    def __init__(self) -> None:
        self._results: dict[str, ValidationResult] = {}
        self._groups: dict[str, MessageGroup] = {}

    @staticmethod
    def _resource_key(result: ValidationResult) -> str:
        return f"{result.resource_type}/{result.resource_id or result.request_id}"

    async def save(self, result: ValidationResult) -> None:
        key = self._resource_key(result)
        self._results[key] = result
        now = datetime.now(timezone.utc)

        for issue in result.issues:
            path = normalize_canonical_path(issue.location)
            text = normalize_message_text(issue.message)
            signature = compute_message_signature(
                issue.aspect.value,
                issue.severity.value,
                issue.code,
                path.value,
                issue.rule_id,
                text.value,
            )
            group = self._groups.get(signature)
            if group is None:
                group = MessageGroup(
                    signature=signature,
                    aspect=issue.aspect.value,
                    severity=issue.severity.value,
                    code=issue.code,
                    canonical_path=path.value,
                    text=text.value,
                    rule_id=issue.rule_id,
                    path_truncated=path.truncated,
                    text_truncated=text.truncated,
                )
                self._groups[signature] = group
            group.count += 1
            group.resource_keys.add(key)
            group.last_seen_at = now

        logger.debug(f"Stored result for {key} with {len(result.issues)} issues")

    def get_result(self, resource_type: str, resource_id: str) -> Optional[ValidationResult]:
        return self._results.get(f"{resource_type}/{resource_id}")

    def get_message_groups(self, aspect: Optional[str] = None) -> list[MessageGroup]:
        """Message groups, most frequent first."""
        groups = [g for g in self._groups.values() if aspect is None or g.aspect == aspect]
        return sorted(groups, key=lambda g: g.count, reverse=True)

    def clear(self) -> None:
        self._results.clear()
        self._groups.clear()
