"""
Pytest Configuration and Fixtures.
Shared test fixtures for all test modules.
"""

import copy
from typing import Any

import pytest

from healthval.core.config import reset_engine_settings
from healthval.schemas.settings import ValidationSettings, default_validation_settings
from healthval.schemas.validation import ValidationRequest
from healthval.services.collaborators import InMemorySettingsService
from healthval.services.events import EventEmitter
from healthval.services.validation.engine import ValidationEngine, ValidationEngineConfig


PATIENT: dict[str, Any] = {
    "resourceType": "Patient",
    "id": "patient-1",
    "identifier": [{"system": "http://hospital.example.org/mrn", "value": "12345"}],
    "name": [{"family": "Doe", "given": ["Jane"]}],
    "gender": "female",
    "birthDate": "1980-04-12",
}

OBSERVATION: dict[str, Any] = {
    "resourceType": "Observation",
    "id": "obs-1",
    "status": "final",
    "code": {"coding": [{"system": "http://loinc.org", "code": "8867-4"}]},
    "subject": {"reference": "Patient/patient-1"},
    "effectiveDateTime": "2024-03-01T10:00:00Z",
    "valueQuantity": {"value": 72, "unit": "beats/minute"},
}


@pytest.fixture(autouse=True)
def fresh_engine_settings():
    """Each test sees process settings built from its own environment."""
    reset_engine_settings()
    yield
    reset_engine_settings()


@pytest.fixture
def patient_resource() -> dict[str, Any]:
    """A structurally complete Patient."""
    return copy.deepcopy(PATIENT)


@pytest.fixture
def observation_resource() -> dict[str, Any]:
    """A complete vital-sign Observation."""
    return copy.deepcopy(OBSERVATION)


@pytest.fixture
def validation_settings() -> ValidationSettings:
    return default_validation_settings()


@pytest.fixture
def events() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def settings_service(validation_settings, events) -> InMemorySettingsService:
    return InMemorySettingsService(validation_settings, events=events)


@pytest.fixture
def engine(settings_service, events) -> ValidationEngine:
    """Engine with default aspects, no upstream resolvers and cap 10."""
    return ValidationEngine(
        settings_service=settings_service,
        config=ValidationEngineConfig(max_concurrent_validations=10),
        events=events,
    )


@pytest.fixture
def make_request():
    """Build a ValidationRequest from a record."""

    def _make(resource: dict[str, Any], **kwargs: Any) -> ValidationRequest:
        return ValidationRequest(resource=resource, **kwargs)

    return _make


# Configure pytest markers
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
