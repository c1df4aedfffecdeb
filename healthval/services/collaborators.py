"""
Collaborator Interfaces.

Protocols for the services the validation subsystem talks to but does not
own (settings store, validation queue, progress tracker, native validator
pool, upstream resolvers), with in-memory implementations used for local
runs and tests.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, runtime_checkable

from healthval.schemas.settings import ValidationSettings, default_validation_settings
from healthval.services.events import EngineEvent, EventEmitter

logger = logging.getLogger(__name__)


# =============================================================================
# Settings
# =============================================================================


@runtime_checkable
class SettingsService(Protocol):
    """Source of the active validation settings."""

    events: EventEmitter

    async def get_active_settings(self) -> ValidationSettings: ...


@dataclass
class SettingsLoad:
    """Outcome of reading settings: the value used and where it came from."""

    settings: ValidationSettings
    degraded: bool = False
    error: Optional[str] = None


async def load_settings(service: Optional[SettingsService]) -> SettingsLoad:
    """
    Read active settings, falling back to the defaults when the provider
    fails. The fallback is reported through ``degraded`` and a warning log.
    """
    if service is None:
        return SettingsLoad(settings=default_validation_settings())
    try:
        settings = await service.get_active_settings()
    except Exception as e:
        logger.warning(f"Settings unavailable, validating with default settings (degraded mode): {e}")
        return SettingsLoad(
            settings=default_validation_settings(),
            degraded=True,
            error=str(e),
        )
    if settings is None:
        logger.warning("Settings provider returned no settings, using defaults (degraded mode)")
        return SettingsLoad(
            settings=default_validation_settings(),
            degraded=True,
            error="no active settings",
        )
    return SettingsLoad(settings=settings)


class InMemorySettingsService:
    """Holds settings in memory and announces changes."""

    def __init__(
        self,
        settings: Optional[ValidationSettings] = None,
        events: Optional[EventEmitter] = None,
    ):
        self._settings = settings or default_validation_settings()
        self.events = events or EventEmitter()

    async def get_active_settings(self) -> ValidationSettings:
        return self._settings

    def update_settings(self, settings: ValidationSettings) -> None:
        self._settings = settings
        self.events.emit(EngineEvent.SETTINGS_CHANGED, {"settings": settings})

    def activate(self, settings: ValidationSettings) -> None:
        self._settings = settings
        self.events.emit(EngineEvent.SETTINGS_ACTIVATED, {"settings": settings})


# =============================================================================
# Queue / Progress
# =============================================================================


@runtime_checkable
class QueueService(Protocol):
    """Validation work queue."""

    def cancel_validation(self, item_id: str) -> bool: ...

    def cancel_batch(self, batch_id: str) -> int: ...

    def list_active_items(self) -> list[str]: ...

    def list_active_batches(self) -> list[str]: ...


@runtime_checkable
class ProgressService(Protocol):
    """Tracks per-record validation progress."""

    def cancel_resource_progress(self, resource_id: str) -> bool: ...

    def list_active_resources(self) -> list[str]: ...


@dataclass
class QueueItem:
    item_id: str
    batch_id: Optional[str] = None
    status: str = "queued"
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InMemoryQueueService:
    """Queue with cancellable items grouped into batches."""

    _ACTIVE = {"queued", "processing"}

    def __init__(self) -> None:
        self._items: dict[str, QueueItem] = {}

    def enqueue(self, item_id: str, batch_id: Optional[str] = None) -> QueueItem:
        item = QueueItem(item_id=item_id, batch_id=batch_id)
        self._items[item_id] = item
        return item

    def mark_processing(self, item_id: str) -> None:
        self._items[item_id].status = "processing"

    def mark_done(self, item_id: str) -> None:
        self._items[item_id].status = "completed"

    def get_item(self, item_id: str) -> Optional[QueueItem]:
        return self._items.get(item_id)

    def cancel_validation(self, item_id: str) -> bool:
        item = self._items.get(item_id)
        if item is None or item.status not in self._ACTIVE:
            return False
        item.status = "cancelled"
        return True

    def cancel_batch(self, batch_id: str) -> int:
        cancelled = 0
        for item in self._items.values():
            if item.batch_id == batch_id and item.status in self._ACTIVE:
                item.status = "cancelled"
                cancelled += 1
        return cancelled

    def list_active_items(self) -> list[str]:
        return [i.item_id for i in self._items.values() if i.status in self._ACTIVE]

    def list_active_batches(self) -> list[str]:
        batches: list[str] = []
        for item in self._items.values():
            if item.batch_id and item.status in self._ACTIVE and item.batch_id not in batches:
                batches.append(item.batch_id)
        return batches


class InMemoryProgressService:
    """Progress tracker keyed by record id."""

    def __init__(self) -> None:
        self._progress: dict[str, dict[str, Any]] = {}

    def start(self, resource_id: str) -> None:
        self._progress[resource_id] = {"status": "running", "percent": 0}

    def update(self, resource_id: str, percent: int) -> None:
        self._progress[resource_id]["percent"] = percent

    def get(self, resource_id: str) -> Optional[dict[str, Any]]:
        return self._progress.get(resource_id)

    def cancel_resource_progress(self, resource_id: str) -> bool:
        entry = self._progress.get(resource_id)
        if entry is None or entry["status"] != "running":
            return False
        entry["status"] = "cancelled"
        return True

    def list_active_resources(self) -> list[str]:
        return [rid for rid, p in self._progress.items() if p["status"] == "running"]


# =============================================================================
# Bulk Validation Stop Flag
# =============================================================================


@dataclass
class BulkValidationState:
    """
    Shared cooperative stop flag checked by long-running loops.

    Each stop request bumps ``stop_generation``. A run remembers the
    generation it started under and stops only for requests made after
    that, so an old stop never cancels a later run.
    """

    is_running: bool = False
    should_stop: bool = False
    stop_reason: Optional[str] = None
    stopped_at: Optional[datetime] = None
    stop_generation: int = 0
    active_runs: int = 0

    def start(self) -> int:
        """Register a run and return the stop generation it answers to."""
        self.active_runs += 1
        self.is_running = True
        self.should_stop = False
        self.stop_reason = None
        self.stopped_at = None
        return self.stop_generation

    def request_stop(self, reason: str) -> None:
        self.should_stop = True
        self.stop_generation += 1
        self.stop_reason = reason
        self.stopped_at = datetime.now(timezone.utc)
        logger.info(f"Bulk validation stop requested: {reason}")

    def stop_requested_since(self, generation: int) -> bool:
        return self.stop_generation != generation

    def finish(self) -> None:
        self.active_runs = max(0, self.active_runs - 1)
        self.is_running = self.active_runs > 0

    def reset(self) -> None:
        self.is_running = False
        self.should_stop = False
        self.stop_reason = None
        self.stopped_at = None
        self.active_runs = 0


# =============================================================================
# Validator Pool
# =============================================================================


@dataclass
class PoolStats:
    """Counters published by the native validator process pool."""

    total_processes: int
    idle_processes: int
    busy_processes: int = 0
    queued_requests: int = 0


@runtime_checkable
class ValidatorPool(Protocol):
    def get_stats(self) -> PoolStats: ...

    def get_min_pool_size(self) -> int: ...


@dataclass
class PoolHealth:
    """Readiness derived from pool stats."""

    ready: bool
    warmed_up: bool
    pool_size: int
    idle: int
    min_pool_size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "ready": self.ready,
            "warmed_up": self.warmed_up,
            "pool_size": self.pool_size,
            "idle": self.idle,
            "min_pool_size": self.min_pool_size,
        }


def get_pool_health(pool: ValidatorPool) -> PoolHealth:
    """ready means an idle process exists; warmed_up means the minimum size is reached."""
    stats = pool.get_stats()
    minimum = pool.get_min_pool_size()
    return PoolHealth(
        ready=stats.idle_processes > 0,
        warmed_up=stats.total_processes >= minimum,
        pool_size=stats.total_processes,
        idle=stats.idle_processes,
        min_pool_size=minimum,
    )


# =============================================================================
# Upstream Resolvers
# =============================================================================


@runtime_checkable
class TerminologyResolver(Protocol):
    async def validate_code(self, system: str, code: str) -> Optional[bool]: ...


@runtime_checkable
class ProfileResolver(Protocol):
    async def resolve_profile(self, url: str) -> Optional[dict[str, Any]]: ...


@runtime_checkable
class ReferenceResolver(Protocol):
    async def reference_exists(self, reference: str) -> Optional[bool]: ...
