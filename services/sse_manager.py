from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any


class SSEManager:
    """Fans session events out to live stream subscribers.

    A ``None`` message on a queue means the session is over and the stream
    should close.
    """

    def __init__(self) -> None:
        self.subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, session_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self.subscribers[session_id].add(queue)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        self.subscribers[session_id].discard(queue)
        if not self.subscribers[session_id]:
            self.subscribers.pop(session_id, None)

    async def emit(self, session_id: str, event_type: str, data: dict[str, Any]) -> None:
        if session_id not in self.subscribers:
            return
        message = {"event": event_type, "data": data}
        for queue in list(self.subscribers[session_id]):
            await queue.put(message)

    async def close(self, session_id: str) -> None:
        for queue in list(self.subscribers.get(session_id, ())):
            await queue.put(None)
