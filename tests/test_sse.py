import asyncio
import json

import pytest
from asgi_lifespan import LifespanManager

from chatstream.events import EventBus
from chatstream.main import stream_conversation_events, stream_global_events


def decode(chunk) -> dict:
    line = chunk.decode("utf-8") if isinstance(chunk, (bytes, bytearray)) else chunk
    return json.loads(line.replace("data:", "").strip())


@pytest.mark.asyncio
async def test_conversation_sse_stream_replays_then_follows(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        db = app.state.db
        bus = app.state.bus
        convo = await db.create_conversation(title="Chat")
        await bus.emit(convo["id"], "turn_started", {"turn_id": "t1"})
        await bus.emit(convo["id"], "message_delta", {"message_id": "m1", "content": "hi"})

        response = await stream_conversation_events(convo["id"], after_seq=1, db=db, bus=bus)
        first = decode(await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1))
        assert first["event_type"] == "message_delta"
        assert first["seq"] == 2

        async def emit_event():
            await asyncio.sleep(0.01)
            await bus.emit(convo["id"], "turn_completed", {"turn_id": "t1"})

        task = asyncio.create_task(emit_event())
        live = decode(await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1))
        assert live["event_type"] == "turn_completed"
        assert live["seq"] == 3
        assert live["payload"]["conversation_id"] == convo["id"]
        await task
        await response.body_iterator.aclose()


@pytest.mark.asyncio
async def test_global_sse_stream_receives_new_event(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        bus = app.state.bus
        response = await stream_global_events(bus=bus)

        async def emit_event():
            await asyncio.sleep(0.01)
            await bus.emit("conversations", "conversation_created", {"conversation_id": "c1"})

        task = asyncio.create_task(emit_event())
        payload = decode(await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1))
        assert payload["event_type"] == "conversation_created"
        await task
        await response.body_iterator.aclose()


@pytest.mark.asyncio
async def test_concurrent_emits_get_unique_seqs(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        bus = EventBus(app.state.db)
        stored = await asyncio.gather(*[bus.emit("c1", "tick", {"n": i}) for i in range(10)])
        assert sorted(ev["seq"] for ev in stored) == list(range(1, 11))


@pytest.mark.asyncio
async def test_live_only_events_share_seq_but_are_not_stored(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        bus = app.state.bus
        queue = await bus.subscribe("c1")
        await bus.emit("c1", "turn_started", {"turn_id": "t1"})
        await bus.emit("c1", "message_delta", {"message_id": "m1", "content": "par"}, persist=False)
        await bus.emit("c1", "message_delta", {"message_id": "m1", "content": "partial"}, persist=False)
        await bus.emit("c1", "turn_completed", {"turn_id": "t1"})

        live = [queue.get_nowait() for _ in range(4)]
        assert [ev["seq"] for ev in live] == [1, 2, 3, 4]
        assert live[2]["payload"]["content"] == "partial"
        stored = await app.state.db.list_events("c1")
        assert [(ev["seq"], ev["event_type"]) for ev in stored] == [(1, "turn_started"), (4, "turn_completed")]
        await bus.unsubscribe("c1", queue)
