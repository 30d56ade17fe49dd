import asyncio
import json
from typing import Dict, List

from chatstream.db import Database, utc_now

CONVERSATIONS_STREAM = "conversations"
# Streaming snapshots go to live subscribers only; stored message rows cover replay.
LIVE_ONLY_EVENTS = frozenset({"message_delta"})


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


class EventBus:
    """Fan-out of conversation events to SSE subscribers.

    Events are stored with a per-stream ``seq`` so a reconnecting client can replay
    from where it left off. Live-only events take a ``seq`` from the same counter
    but are never written, which keeps the events table free of streaming
    snapshots while subscribers still see one increasing sequence.
    """

    def __init__(self, db: Database):
        self.db = db
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.global_subscribers: List[asyncio.Queue] = []
        self.lock = asyncio.Lock()
        self.emit_lock = asyncio.Lock()
        self.last_seq: Dict[str, int] = {}

    async def _next_seq(self, stream_id: str) -> int:
        if stream_id in self.last_seq:
            seq = self.last_seq[stream_id] + 1
        else:
            seq = await self.db.next_event_seq(stream_id)
        self.last_seq[stream_id] = seq
        return seq

    async def emit(self, conversation_id: str, event_type: str, payload: dict, persist: bool = True) -> dict:
        body = dict(payload or {})
        body.setdefault("conversation_id", conversation_id)
        async with self.emit_lock:
            seq = await self._next_seq(conversation_id)
            if persist:
                event = await self.db.add_event(conversation_id, event_type, body, seq=seq)
            else:
                event = {
                    "stream_id": conversation_id,
                    "seq": seq,
                    "event_type": event_type,
                    "payload": body,
                    "created_at": utc_now(),
                }
        await self._fan_out(conversation_id, event)
        return event

    async def _fan_out(self, conversation_id: str, event: dict) -> None:
        async with self.lock:
            targets = [*self.subscribers.get(conversation_id, []), *self.global_subscribers]
        for queue in targets:
            queue.put_nowait(event)

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
            remaining = [q for q in self.subscribers.get(conversation_id, []) if q is not queue]
            if remaining:
                self.subscribers[conversation_id] = remaining
            else:
                self.subscribers.pop(conversation_id, None)

    async def unsubscribe_global(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            self.global_subscribers = [q for q in self.global_subscribers if q is not queue]
