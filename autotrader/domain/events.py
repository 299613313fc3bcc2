"""
Lifecycle event stream.

Ledger transitions are published as LifecycleEvent records. Subscribers
each get a bounded asyncio.Queue; publishing never blocks, and a full
queue drops the event for that subscriber only.
"""
import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from autotrader.domain.models import utcnow
from autotrader.monitoring.logger import get_logger

logger = get_logger(__name__)


class LifecycleEventType(str, Enum):
    OPENED = "opened"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass(frozen=True)
class LifecycleEvent:
    event_type: LifecycleEventType
    position_id: str
    asset_id: str
    strategy_id: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.event_type.value,
            "position_id": self.position_id,
            "asset_id": self.asset_id,
            "strategy_id": self.strategy_id,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class EventBus:
    """Fan-out of lifecycle events to any number of queue subscribers."""

    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._subscribers: List[asyncio.Queue] = []
        self._lock = threading.Lock()
        self.dropped_total = 0
        self.published_total = 0

    def subscribe(self, queue_size: Optional[int] = None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size or self.queue_size)
        with self._lock:
            self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: LifecycleEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
            self.published_total += 1
        for queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped_total += 1
                logger.warning(
                    "Event dropped for slow subscriber",
                    event_type=event.event_type.value,
                    position_id=event.position_id,
                )
