"""
Service wiring.

Builds one engine, pipeline and cancellation service sharing an event hub,
settings source and bulk stop flag. Nothing is global: callers that need
several independent graphs call the builder several times.
"""

from dataclasses import dataclass
from typing import Optional

from healthval.core.config import EngineSettings, get_engine_settings
from healthval.gateways.fhir_gateway import FhirHttpGateway
from healthval.services.collaborators import (
    BulkValidationState,
    InMemoryProgressService,
    InMemoryQueueService,
    InMemorySettingsService,
    ProgressService,
    QueueService,
    SettingsService,
)
from healthval.services.events import EventEmitter
from healthval.services.results_store import ResultsStore
from healthval.services.validation.cancellation import CancellationRetryService
from healthval.services.validation.engine import ValidationEngine, ValidationEngineConfig
from healthval.services.validation.pipeline import PipelineConfig, ValidationPipeline
from healthval.utils.logging import configure_logging as setup_logging_from_settings


@dataclass
class ValidationServices:
    events: EventEmitter
    settings_service: SettingsService
    engine: ValidationEngine
    pipeline: ValidationPipeline
    cancellation: CancellationRetryService
    bulk_state: BulkValidationState
    gateway: Optional[FhirHttpGateway] = None

    async def close(self) -> None:
        await self.cancellation.close()
        self.pipeline.close()
        self.engine.close()
        if self.gateway is not None:
            await self.gateway.close()


def build_validation_services(
    settings_service: Optional[SettingsService] = None,
    queue_service: Optional[QueueService] = None,
    progress_service: Optional[ProgressService] = None,
    results_store: Optional[ResultsStore] = None,
    gateway: Optional[FhirHttpGateway] = None,
    settings: Optional[EngineSettings] = None,
    configure_logging: bool = False,
) -> ValidationServices:
    """
    Wire the validation services.

    Omitted collaborators get in-memory implementations. ``gateway``, when
    given, answers terminology, profile and reference lookups; without one
    a gateway is built from the ``FHIR_*`` settings if any server is set.
    ``configure_logging`` installs the ``LOG_*`` logging setup first.
    """
    s = settings or get_engine_settings()
    if configure_logging:
        setup_logging_from_settings(s)
    if gateway is None:
        gateway = FhirHttpGateway.from_settings(s)
    if settings_service is None:
        settings_service = InMemorySettingsService(events=EventEmitter())
    events = settings_service.events
    bulk_state = BulkValidationState()

    engine = ValidationEngine(
        settings_service=settings_service,
        config=ValidationEngineConfig.from_settings(s),
        events=events,
        terminology_resolver=gateway,
        profile_resolver=gateway,
        reference_resolver=gateway,
    )
    pipeline = ValidationPipeline(
        engine,
        config=PipelineConfig.from_settings(s),
        events=events,
        results_store=results_store,
        bulk_state=bulk_state,
    )
    cancellation = CancellationRetryService(
        queue_service=queue_service or InMemoryQueueService(),
        progress_service=progress_service or InMemoryProgressService(),
        pipeline=pipeline,
        bulk_state=bulk_state,
        events=events,
        settings=s,
    )
    return ValidationServices(
        events=events,
        settings_service=settings_service,
        engine=engine,
        pipeline=pipeline,
        cancellation=cancellation,
        bulk_state=bulk_state,
        gateway=gateway,
    )
