"""
External lookups for aspect validators.

Wraps the optional terminology, profile and reference resolvers with the
engine's caches and circuit breakers. A missing resolver answers ``None``.
Breaker rejections (``CircuitBreakerOpen``) and gateway errors propagate so
the calling aspect can downgrade them to an issue.
"""

import logging
from typing import Any, Optional

from healthval.gateways.base import CircuitBreakerRegistry
from healthval.services.cache import EngineCaches, make_cache_key
from healthval.services.collaborators import (
    ProfileResolver,
    ReferenceResolver,
    TerminologyResolver,
)

logger = logging.getLogger(__name__)

_MISSING = object()

TERMINOLOGY_SERVICE = "terminology"
PROFILE_SERVICE = "profile"
REFERENCE_SERVICE = "reference"


class ExternalServices:
    """Cached, breaker-guarded access to upstream resolvers."""

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        caches: EngineCaches,
        terminology: Optional[TerminologyResolver] = None,
        profiles: Optional[ProfileResolver] = None,
        references: Optional[ReferenceResolver] = None,
    ):
        self.breakers = breakers
        self.caches = caches
        self._terminology = terminology
        self._profiles = profiles
        self._references = references

    @property
    def has_terminology(self) -> bool:
        return self._terminology is not None

    @property
    def has_profiles(self) -> bool:
        return self._profiles is not None

    @property
    def has_references(self) -> bool:
        return self._references is not None

    async def validate_code(self, system: str, code: str) -> Optional[bool]:
        if self._terminology is None:
            return None
        key = make_cache_key("code", system, code)
        cached = await self.caches.terminology.get(key, _MISSING)
        if cached is not _MISSING:
            return cached

        resolver = self._terminology
        result = await self.breakers.call(
            TERMINOLOGY_SERVICE, lambda: resolver.validate_code(system, code)
        )
        await self.caches.terminology.set(key, result)
        return result

    async def resolve_profile(self, url: str) -> Optional[dict[str, Any]]:
        if self._profiles is None:
            return None
        key = make_cache_key("profile", url)
        cached = await self.caches.profiles.get(key, _MISSING)
        if cached is not _MISSING:
            return cached

        resolver = self._profiles
        result = await self.breakers.call(PROFILE_SERVICE, lambda: resolver.resolve_profile(url))
        await self.caches.profiles.set(key, result)
        return result

    async def reference_exists(self, reference: str) -> Optional[bool]:
        if self._references is None:
            return None
        key = make_cache_key("reference", reference)
        cached = await self.caches.references.get(key, _MISSING)
        if cached is not _MISSING:
            return cached

        resolver = self._references
        result = await self.breakers.call(
            REFERENCE_SERVICE, lambda: resolver.reference_exists(reference)
        )
        await self.caches.references.set(key, result)
        return result
