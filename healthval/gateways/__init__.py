"""
Gateways to upstream services.

Circuit breaking and error types live in ``base``; ``fhir_gateway`` talks to
FHIR terminology, profile and data servers over HTTP.
"""

from healthval.gateways.base import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitBreakerStatus,
    GatewayError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from healthval.gateways.fhir_gateway import FhirHttpGateway

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitBreakerStatus",
    "GatewayError",
    "ProviderRateLimitError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "FhirHttpGateway",
]
