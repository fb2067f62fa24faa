# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Fire-and-forget telemetry for optimization runs.

Listeners receive a TelemetryEvent and return nothing. A listener that
raises is logged and ignored; a coroutine listener is scheduled on the
running loop and never awaited by the optimizer.
"""
import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class TelemetryEventType(str, Enum):
    """Types of optimizer events."""
    GENERATION = "generation"
    EVALUATION = "evaluation"
    MUTATION = "mutation"
    COMPLETE = "complete"


class TelemetryEvent(BaseModel):
    """A single telemetry event: numeric measurements plus context."""
    type: TelemetryEventType
    measurements: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)


# Type alias for listeners
TelemetryCallback = Callable[[TelemetryEvent], Any]


class TelemetryBus:
    """Observer registry the optimizer publishes to."""

    def __init__(self, listeners: Optional[List[TelemetryCallback]] = None):
        self._listeners: List[TelemetryCallback] = list(listeners or [])
        self._pending: Set["asyncio.Future[Any]"] = set()

    def __len__(self) -> int:
        return len(self._listeners)

    def subscribe(self, callback: TelemetryCallback) -> TelemetryCallback:
        """Register a listener. Returns it, so this works as a decorator."""
        self._listeners.append(callback)
        return callback

    def unsubscribe(self, callback: TelemetryCallback) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def emit(
        self,
        event_type: TelemetryEventType,
        measurements: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TelemetryEvent:
        event = TelemetryEvent(
            type=event_type,
            measurements=measurements or {},
            metadata=metadata or {},
        )
        self.fire(event)
        return event

    def fire(self, event: TelemetryEvent) -> None:
        """Deliver an event to every listener without letting one break the run."""
        for listener in list(self._listeners):
            try:
                result = listener(event)
            except Exception as e:
                logger.debug("Telemetry listener error: %s", e)
                continue
            if inspect.isawaitable(result):
                self._schedule(result)

    def _schedule(self, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop to host an async listener
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        future = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(future)
        future.add_done_callback(self._on_done)

    def _on_done(self, future: "asyncio.Future[Any]") -> None:
        self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.debug("Async telemetry listener error: %s", future.exception())
