"""
Per-run event topics.

Every PlanRun and NodeExecution transition becomes an Event on its run's topic.
Delivery is at-least-once: each topic keeps a replay buffer so late subscribers
see earlier events, and every event carries an id so consumers can drop
duplicates with EventDeduplicator. A subscription ends after the run's
terminal event. Topics can be mirrored to Redis streams on a best-effort basis.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Set

from utils.redis_wrapper import RedisHandle

from .config import get_settings
from .models import NodeExecution, PlanRun, new_id, utcnow

logger = logging.getLogger(__name__)


@dataclass
class Event:
    event_type: str
    run_id: str
    payload: Dict[str, Any]
    sequence: int
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)
    terminal: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "run_id": self.run_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "terminal": self.terminal,
            "payload": self.payload,
        }


class _Topic:
    def __init__(self, replay_limit: int):
        self.buffer: Deque[Event] = deque(maxlen=replay_limit)
        self.subscribers: Set[asyncio.Queue] = set()
        self.sequence = 0
        self.closed = False


class Subscription:
    """Async iterator over one run's events; stops after the terminal run event."""

    def __init__(self, publisher: "EventPublisher", run_id: str, queue: asyncio.Queue):
        self._publisher = publisher
        self.run_id = run_id
        self._queue = queue
        self._done = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        if self._done:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            self.close()
            raise StopAsyncIteration
        return event

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None once the subscription has ended."""
        try:
            return await asyncio.wait_for(self.__anext__(), timeout)
        except StopAsyncIteration:
            return None

    async def collect(self, timeout: Optional[float] = None) -> List[Event]:
        events = []
        while True:
            event = await self.get(timeout)
            if event is None:
                return events
            events.append(event)

    def close(self) -> None:
        if not self._done:
            self._done = True
            self._publisher._unsubscribe(self.run_id, self._queue)


class EventPublisher:
    def __init__(self, redis_handle: Optional[RedisHandle] = None, *, replay_limit: Optional[int] = None):
        cfg = get_settings()
        self._redis = redis_handle if cfg.REDIS_EVENTS_ENABLED else None
        self._replay_limit = int(replay_limit or cfg.EVENT_REPLAY_LIMIT)
        self._topics: Dict[str, _Topic] = {}

    def _topic(self, run_id: str) -> _Topic:
        topic = self._topics.get(run_id)
        if topic is None:
            topic = self._topics[run_id] = _Topic(self._replay_limit)
        return topic

    async def publish(self, run_id: str, event_type: str, payload: Dict[str, Any], *, terminal: bool = False) -> Optional[Event]:
        topic = self._topic(run_id)
        if topic.closed:
            logger.warning("dropping %s for run %s: topic already closed", event_type, run_id)
            return None
        topic.sequence += 1
        event = Event(event_type=event_type, run_id=run_id, payload=payload, sequence=topic.sequence, terminal=terminal)
        topic.buffer.append(event)
        for queue in list(topic.subscribers):
            queue.put_nowait(event)
        if terminal:
            topic.closed = True
            for queue in list(topic.subscribers):
                queue.put_nowait(None)
        await self._mirror(event)
        return event

    async def publish_run(self, run: PlanRun) -> Event:
        return await self.publish(run.id, f"run.{run.status.value}", run.to_dict(), terminal=run.is_terminal)

    async def publish_node(self, execution: NodeExecution) -> Event:
        return await self.publish(execution.run_id, f"node.{execution.status.value}", execution.to_dict())

    def subscribe(self, run_id: str, *, replay: bool = True) -> Subscription:
        topic = self._topic(run_id)
        queue: asyncio.Queue = asyncio.Queue()
        if replay:
            for event in topic.buffer:
                queue.put_nowait(event)
        if topic.closed:
            queue.put_nowait(None)
        else:
            topic.subscribers.add(queue)
        return Subscription(self, run_id, queue)

    def _unsubscribe(self, run_id: str, queue: asyncio.Queue) -> None:
        topic = self._topics.get(run_id)
        if topic is not None:
            topic.subscribers.discard(queue)

    def history(self, run_id: str) -> List[Event]:
        topic = self._topics.get(run_id)
        return list(topic.buffer) if topic else []

    def drop(self, run_id: str) -> None:
        topic = self._topics.pop(run_id, None)
        if topic is not None:
            for queue in topic.subscribers:
                queue.put_nowait(None)

    async def _mirror(self, event: Event) -> None:
        if self._redis is None:
            return
        key = get_settings().REDIS_EVENTS_PREFIX + event.run_id
        fields = {"id": event.id, "type": event.event_type, "seq": str(event.sequence), "data": json.dumps(event.payload, default=str)}
        try:
            await self._redis.op(lambda r, k, f: r.xadd(k, f), key, fields)
        except Exception:
            logger.warning("failed to mirror event %s to redis stream %s", event.id, key, exc_info=True)


class EventDeduplicator:
    """Remembers recently seen event ids so redelivered events can be ignored."""

    def __init__(self, capacity: int = 10000):
        self.capacity = capacity
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def is_duplicate(self, event: Event) -> bool:
        if event.id in self._seen:
            self._seen.move_to_end(event.id)
            return True
        self._seen[event.id] = None
        if len(self._seen) > self.capacity:
            self._seen.popitem(last=False)
        return False

    def filter(self, events) -> List[Event]:
        return [e for e in events if not self.is_duplicate(e)]
