"""
In-process Event Emitter.

Observer used by the engine, the pipeline, the cancellation/retry service and
the settings provider. Delivery is synchronous and in registration order for
plain handlers; coroutine handlers are scheduled as tasks on the running loop
and can be awaited with ``drain()``. A failing handler is logged and never
breaks the producer.
"""

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], Any]


class EngineEvent(str, Enum):
    """Events published by the validation services."""

    # Engine
    ASPECT_COMPLETED = "aspectCompleted"
    VALIDATION_COMPLETED = "validationCompleted"
    VALIDATION_ERROR = "validationError"
    CIRCUIT_STATE_CHANGED = "circuitStateChanged"

    # Pipeline
    PIPELINE_STARTED = "pipelineStarted"
    PIPELINE_PROGRESS = "pipelineProgress"
    PIPELINE_COMPLETED = "pipelineCompleted"
    PIPELINE_FAILED = "pipelineFailed"
    PIPELINE_CANCELLED = "pipelineCancelled"
    RESOURCE_PROCESSED = "resourceProcessed"
    SETTINGS_APPLIED = "settingsApplied"
    CACHE_CLEARED = "cacheCleared"

    # Settings provider
    SETTINGS_CHANGED = "settingsChanged"
    SETTINGS_ACTIVATED = "settingsActivated"

    # Cancellation / retry
    CANCELLATION_REQUESTED = "cancellationRequested"
    CANCELLATION_COMPLETED = "cancellationCompleted"
    CANCELLATION_FAILED = "cancellationFailed"
    EMERGENCY_STOP_COMPLETED = "emergencyStopCompleted"
    RETRY_REQUESTED = "retryRequested"
    RETRY_SCHEDULED = "retryScheduled"
    RETRY_COMPLETED = "retryCompleted"
    RETRY_EXHAUSTED = "retryExhausted"
    RETRY_CANCELLED = "retryCancelled"
    RETRY_POLICY_UPDATED = "retryPolicyUpdated"
    REQUESTS_CLEANED_UP = "requestsCleanedUp"


@dataclass
class EmittedEvent:
    """Record of a delivered event (kept in a bounded history)."""

    name: str
    payload: dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventEmitter:
    """Ordered publish/subscribe hub."""

    def __init__(self, history_size: int = 256):
        self._handlers: dict[str, list[tuple[int, EventHandler]]] = {}
        self._next_token = 1
        self._pending_tasks: set[asyncio.Task[Any]] = set()
        self._history: deque[EmittedEvent] = deque(maxlen=history_size)

    @staticmethod
    def _key(event: str | Enum) -> str:
        return event.value if isinstance(event, Enum) else str(event)

    def on(self, event: str | Enum, handler: EventHandler) -> int:
        """Subscribe a handler. Returns a token for ``off``."""
        if not callable(handler):
            raise ValueError("handler must be callable")
        token = self._next_token
        self._next_token += 1
        self._handlers.setdefault(self._key(event), []).append((token, handler))
        return token

    def off(self, token: int) -> bool:
        """Unsubscribe a handler by token. Returns True when it existed."""
        for name, handlers in self._handlers.items():
            for index, (existing, _) in enumerate(handlers):
                if existing == token:
                    del handlers[index]
                    return True
        return False

    def listener_count(self, event: str | Enum) -> int:
        return len(self._handlers.get(self._key(event), []))

    def emit(self, event: str | Enum, payload: Optional[dict[str, Any]] = None) -> int:
        """
        Deliver an event to every subscriber.

        Returns the number of handlers invoked.
        """
        name = self._key(event)
        data = payload if payload is not None else {}
        self._history.append(EmittedEvent(name=name, payload=data))

        handlers = list(self._handlers.get(name, []))
        for _, handler in handlers:
            try:
                outcome = handler(data)
                if inspect.isawaitable(outcome):
                    self._schedule(name, outcome)
            except Exception as e:
                logger.error(f"Event handler for '{name}' failed: {e}", exc_info=True)
        return len(handlers)

    def _schedule(self, name: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"Async handler for '{name}' dropped: no running event loop")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(awaitable)
        self._pending_tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._pending_tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Async event handler for '{name}' failed: {t.exception()}")

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for coroutine handlers scheduled by earlier emits."""
        while self._pending_tasks:
            await asyncio.gather(*list(self._pending_tasks), return_exceptions=True)

    def history(self, event: Optional[str | Enum] = None) -> list[EmittedEvent]:
        """Recently emitted events, oldest first."""
        if event is None:
            return list(self._history)
        name = self._key(event)
        return [e for e in self._history if e.name == name]

    def clear(self) -> None:
        """Remove every subscriber."""
        self._handlers.clear()
