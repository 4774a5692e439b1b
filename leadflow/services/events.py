from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

JOB_COMPLETED = "job.completed"
ENRICHMENT_COMPLETED = "enrichment.completed"
MATCHMAKING_COMPLETED = "matchmaking.completed"

COMPLETION_EVENTS = {
    "scrape": JOB_COMPLETED,
    "enrich": ENRICHMENT_COMPLETED,
    "matchmake": MATCHMAKING_COMPLETED,
}

EventHandler = Callable[[str, dict[str, Any]], Awaitable[None]]


class EventBus:
    """Fans domain events out to webhook subscribers and in-process handlers."""

    def __init__(self, dispatcher: Any | None = None) -> None:
        self.dispatcher = dispatcher
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    async def publish(self, event_type: str, payload: dict[str, Any]) -> int:
        queued = 0
        if self.dispatcher is not None:
            try:
                queued = await self.dispatcher.emit(event_type, payload)
            except Exception:
                # Webhook fan-out and in-process handlers fail independently.
                logger.exception("webhook fan-out failed event_type=%s", event_type)

        for handler in self._handlers.get(event_type, []):
            try:
                await handler(event_type, payload)
            except Exception:
                logger.exception("event handler failed event_type=%s handler=%s", event_type, handler)
        return queued
