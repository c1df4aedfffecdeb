"""
FHIR Server Gateway.

HTTP client for the upstream servers the aspect validators consult:
- Terminology: ``CodeSystem/$validate-code``
- Profiles: ``StructureDefinition?url=``
- References: ``GET {type}/{id}``

Failures are raised as gateway errors so the caller's circuit breaker counts
them; "not found" answers are returned as values, not errors.
"""

import logging
from typing import Any, Optional

import httpx

from healthval.core.config import EngineSettings, get_engine_settings
from healthval.gateways.base import (
    GatewayError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"


class FhirHttpGateway:
    """
    Resolver backed by FHIR REST endpoints.

    Implements the terminology, profile and reference resolver protocols.
    Any of the three base URLs may be omitted; the matching lookup then
    answers ``None`` (unknown).
    """

    def __init__(
        self,
        terminology_url: Optional[str] = None,
        profile_url: Optional[str] = None,
        fhir_base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_engine_settings()
        self.terminology_url = terminology_url.rstrip("/") if terminology_url else None
        self.profile_url = profile_url.rstrip("/") if profile_url else None
        self.fhir_base_url = fhir_base_url.rstrip("/") if fhir_base_url else None
        self._timeout = timeout_seconds or settings.FHIR_GATEWAY_TIMEOUT_SECONDS
        self._http_client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Optional[EngineSettings] = None) -> Optional["FhirHttpGateway"]:
        """Gateway for the configured ``FHIR_*`` servers, or None when none is set."""
        s = settings or get_engine_settings()
        if not (s.FHIR_TERMINOLOGY_URL or s.FHIR_PROFILE_URL or s.FHIR_GATEWAY_BASE_URL):
            return None
        return cls(
            terminology_url=s.FHIR_TERMINOLOGY_URL,
            profile_url=s.FHIR_PROFILE_URL,
            fhir_base_url=s.FHIR_GATEWAY_BASE_URL,
            timeout_seconds=s.FHIR_GATEWAY_TIMEOUT_SECONDS,
        )

    @property
    def gateway_name(self) -> str:
        return "fhir"

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"Accept": FHIR_JSON},
            )
        return self._http_client

    async def _get(self, url: str, params: Optional[dict[str, str]] = None) -> httpx.Response:
        try:
            response = await self._client().get(url, params=params)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                f"FHIR request timed out: {url}", provider=self.gateway_name, original_error=e
            )
        except httpx.ConnectError as e:
            raise ProviderUnavailableError(
                f"FHIR server unreachable: {url}", provider=self.gateway_name, original_error=e
            )
        except httpx.TransportError as e:
            raise ProviderUnavailableError(
                f"FHIR transport failure ({type(e).__name__}): {url}",
                provider=self.gateway_name,
                original_error=e,
            )

        if response.status_code == 429:
            raise ProviderRateLimitError(
                f"FHIR server rate limit hit (429): {url}", provider=self.gateway_name
            )
        if response.status_code >= 500:
            raise ProviderUnavailableError(
                f"FHIR server error {response.status_code}: {url}", provider=self.gateway_name
            )
        return response

    async def validate_code(self, system: str, code: str) -> Optional[bool]:
        """Ask the terminology server whether ``code`` exists in ``system``."""
        if not self.terminology_url:
            return None

        response = await self._get(
            f"{self.terminology_url}/CodeSystem/$validate-code",
            params={"url": system, "code": code},
        )
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise GatewayError(
                f"Terminology lookup failed: {response.status_code}",
                provider=self.gateway_name,
            )

        data = response.json()
        for parameter in data.get("parameter", []):
            if parameter.get("name") == "result":
                return bool(parameter.get("valueBoolean"))
        logger.debug(f"No result parameter in $validate-code answer for {system}|{code}")
        return None

    async def resolve_profile(self, url: str) -> Optional[dict[str, Any]]:
        """Fetch the StructureDefinition with canonical ``url``."""
        if not self.profile_url:
            return None

        canonical = url.split("|", 1)[0]
        response = await self._get(
            f"{self.profile_url}/StructureDefinition",
            params={"url": canonical},
        )
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise GatewayError(
                f"Profile lookup failed: {response.status_code}",
                provider=self.gateway_name,
            )

        data = response.json()
        if data.get("resourceType") == "StructureDefinition":
            return data
        for entry in data.get("entry", []):
            resource = entry.get("resource", {})
            if resource.get("resourceType") == "StructureDefinition":
                return resource
        return None

    async def reference_exists(self, reference: str) -> Optional[bool]:
        """Check that ``Type/id`` can be read from the FHIR server."""
        if not self.fhir_base_url:
            return None

        response = await self._get(f"{self.fhir_base_url}/{reference}")
        if response.status_code == 200:
            return True
        if response.status_code in (404, 410):
            return False
        raise GatewayError(
            f"Reference lookup failed: {response.status_code}",
            provider=self.gateway_name,
        )

    async def close(self) -> None:
        """Clean up gateway resources."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None
        logger.info(f"{self.gateway_name} gateway closed")
