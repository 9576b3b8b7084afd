from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

EVENT_TURN_START = "turn_start"
EVENT_THINKING = "thinking"
EVENT_CHUNK = "chunk"
EVENT_THOUGHT = "thought"
EVENT_MESSAGE = "message"
EVENT_USAGE = "usage"
EVENT_OPERATIONS_START = "operations_start"
EVENT_OPERATIONS_RESULTS = "operations_results"
EVENT_DONE = "done"
EVENT_ERROR = "error"
EVENT_RUN_COMPLETE = "run_complete"

DEFAULT_CHANNEL_SIZE = 64


@dataclass(frozen=True)
class TurnEvent:
    type: str
    turn: int = 0
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type, "turn": self.turn}
        payload.update(self.data)
        payload["ts"] = self.created_at.isoformat()
        return payload


class ChannelClosed(Exception):
    pass


_CLOSE = object()


class EventChannel:
    """Bounded single-producer, single-consumer queue of turn events.

    ``send`` blocks while the queue is full, so a slow consumer throttles the
    producer instead of letting events pile up.
    """

    def __init__(self, maxsize: int = DEFAULT_CHANNEL_SIZE) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max(1, int(maxsize)))
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: TurnEvent) -> None:
        if self._closed:
            raise ChannelClosed("event channel is closed")
        await self._queue.put(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            # receive() reports the end once the backlog is drained.
            pass

    async def receive(self) -> Optional[TurnEvent]:
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSE:
            return None
        return item

    async def __aiter__(self) -> AsyncIterator[TurnEvent]:
        while True:
            event = await self.receive()
            if event is None:
                return
            yield event
