"""
Progress event channel.

Engine components publish progress messages here instead of calling UI
callbacks. Subscribers receive events on their own asyncio queue.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class ProgressEvent:
    """A single progress message."""

    stage: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventChannel:
    """Fan-out channel of ProgressEvents."""

    def __init__(self):
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        """Register a subscriber and return its queue."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, stage: str, message: str, **details: Any) -> ProgressEvent:
        """Publish an event to every subscriber."""
        event = ProgressEvent(stage=stage, message=message, details=details)
        logger.debug("progress_event", stage=stage, message=message, **details)
        for queue in self._subscribers:
            queue.put_nowait(event)
        return event


def drain(queue: asyncio.Queue) -> List[ProgressEvent]:
    """Collect every event currently buffered on a subscriber queue."""
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events
