import asyncio
import logging
from typing import Dict, List, Optional

from .db import Database, utc_now

logger = logging.getLogger("uvicorn.error")

# High-frequency events are fanned out but never written to the events table.
EPHEMERAL_EVENTS = {"message_updated", "status"}


class EventBus:
    """In-memory fan-out for SSE plus persisted lifecycle events."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.global_subscribers: List[asyncio.Queue] = []
        self.lock = asyncio.Lock()

    async def emit(self, conversation_id: str, event_type: str, payload: dict) -> dict:
        safe_payload = dict(payload or {})
        safe_payload.setdefault("conversation_id", conversation_id)
        if self.db is not None and event_type not in EPHEMERAL_EVENTS:
            stored = await self.db.add_event(conversation_id, event_type, safe_payload)
        else:
            stored = {
                "conversation_id": conversation_id,
                "seq": None,
                "event_type": event_type,
                "payload": safe_payload,
                "created_at": utc_now(),
            }
        async with self.lock:
            queues = list(self.subscribers.get(conversation_id, []))
            global_queues = list(self.global_subscribers)
        for q in queues:
            await q.put(stored)
        for q in global_queues:
            await q.put(stored)
        return stored

    def emit_nowait(self, conversation_id: str, event_type: str, payload: dict) -> None:
        """Schedule an emit from synchronous code such as store listeners."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Dropped %s event for %s: no running loop", event_type, conversation_id)
            return
        loop.create_task(self.emit(conversation_id, event_type, payload))

    async def subscribe(self, conversation_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.setdefault(conversation_id, []).append(queue)
        return queue

    async def subscribe_global(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.global_subscribers.append(queue)
        return queue

    async def unsubscribe(self, conversation_id: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(conversation_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(conversation_id, None)

    async def unsubscribe_global(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            if queue in self.global_subscribers:
                self.global_subscribers.remove(queue)
