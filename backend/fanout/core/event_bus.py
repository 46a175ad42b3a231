from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, AsyncIterator, Dict


class EventBus:
    """Simple pub/sub bus built on asyncio queues for operator-facing events.

    ``publish`` never blocks so it can be called from the synchronous dispatch
    path; a subscriber whose queue is full misses the event.
    """

    def __init__(self) -> None:
        self._topics: Dict[str, list[asyncio.Queue[Any]]] = defaultdict(list)

    def publish(self, topic: str, payload: Any) -> int:
        delivered = 0
        for queue in list(self._topics.get(topic, [])):
            if not queue.full():
                queue.put_nowait(payload)
                delivered += 1
        return delivered

    async def subscribe(self, topic: str, max_queue: int = 32) -> AsyncIterator[Any]:
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_queue)
        self._topics[topic].append(queue)
        try:
            while True:
                item = await queue.get()
                yield item
        finally:
            self._topics[topic].remove(queue)
            if not self._topics[topic]:
                del self._topics[topic]
