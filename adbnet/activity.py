from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import datetime, timezone

_QUEUE_SIZE = 256


class ActivityFeed:
    """Fans activity events out to every live ``/ws/logs`` subscriber."""

    def __init__(self) -> None:
        self._subscribers: set[asyncio.Queue[dict[str, str]]] = set()
        self._lock = asyncio.Lock()

    async def subscribe(self) -> AsyncIterator[dict[str, str]]:
        queue: asyncio.Queue[dict[str, str]] = asyncio.Queue(maxsize=_QUEUE_SIZE)
        async with self._lock:
            self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            async with self._lock:
                self._subscribers.discard(queue)

    async def publish(self, source: str, message: str, level: str = "info") -> None:
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": source,
            "level": level,
            "message": message,
        }
        async with self._lock:
            subscribers = list(self._subscribers)
        for queue in subscribers:
            if queue.full():
                # Slow subscriber: drop its oldest event.
                queue.get_nowait()
            queue.put_nowait(event)
