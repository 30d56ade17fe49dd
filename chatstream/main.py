import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response, StreamingResponse

from chatstream.config import CONFIG_PATH, AppSettings, load_settings, save_settings
from chatstream.db import Database
from chatstream.events import CONVERSATIONS_STREAM, EventBus, sse_format
from chatstream.images import ImageClient
from chatstream.llm import ChatModelClient
from chatstream.orchestrator import ChatServices, make_reconciler, open_turn, run_turn
from chatstream.rehydrator import Rehydrator
from chatstream.schemas import (
    ChatMessage,
    ConversationCreateRequest,
    ConversationUpdateRequest,
    SendMessageRequest,
    SettingsUpdate,
)
from chatstream.tavily import TavilyClient

logger = logging.getLogger("uvicorn.error")


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_llm_client(request: Request) -> ChatModelClient:
    return request.app.state.llm_client


def get_tavily_client(request: Request) -> TavilyClient:
    return request.app.state.tavily_client


def get_image_client(request: Request) -> ImageClient:
    return request.app.state.image_client


def get_turn_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.turn_tasks


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def get_services(request: Request) -> ChatServices:
    state = request.app.state
    return ChatServices(
        settings=state.settings,
        db=state.db,
        bus=state.bus,
        llm=state.llm_client,
        search_client=state.tavily_client,
        image_client=state.image_client,
        title_llm=state.title_client,
    )


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    payload: SettingsUpdate,
    request: Request,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    llm_client: ChatModelClient = Depends(get_llm_client),
    image_client: ImageClient = Depends(get_image_client),
    tavily_client: TavilyClient = Depends(get_tavily_client),
    config_path: Path = Depends(get_config_path),
):
    changes = payload.model_dump(exclude_none=True)
    new_settings = AppSettings(**{**settings.model_dump(), **changes})
    save_settings(new_settings, config_path=config_path)
    await db.save_config(new_settings.model_dump())
    request.app.state.settings = new_settings

    llm_client.base_url = new_settings.chat_endpoint.base_url.rstrip("/")
    llm_client.model = new_settings.chat_endpoint.model_id
    llm_client.api_key = new_settings.llm_api_key
    llm_client.temperature = new_settings.temperature
    llm_client.max_output_tokens = new_settings.max_output_tokens
    title_client = request.app.state.title_client
    title_client.base_url = new_settings.title_endpoint.base_url.rstrip("/")
    title_client.model = new_settings.title_endpoint.model_id
    title_client.api_key = new_settings.llm_api_key
    image_client.base_url = new_settings.image_endpoint.base_url.rstrip("/")
    image_client.model = new_settings.image_endpoint.model_id
    image_client.api_key = new_settings.llm_api_key
    tavily_client.api_key = new_settings.tavily_api_key
    tavily_client.search_depth = new_settings.search_depth
    tavily_client.max_results = new_settings.max_results
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.post("/api/chat")
async def send_message(
    payload: SendMessageRequest,
    request: Request,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    services: ChatServices = Depends(get_services),
    turn_tasks: Dict[str, asyncio.Task] = Depends(get_turn_tasks),
):
    text = payload.message.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Message is required.")

    if payload.conversation_id:
        conversation = await db.get_conversation(payload.conversation_id)
        if not conversation:
            raise HTTPException(status_code=404, detail="Conversation not found.")
    else:
        conversation = await db.create_conversation(model=payload.model)
        await bus.emit(
            CONVERSATIONS_STREAM,
            "conversation_created",
            {"conversation_id": conversation["id"], "conversation": conversation},
        )

    prepared = await open_turn(services, conversation, text, model=payload.model)
    turn_id = prepared.turn_id
    cancellations = request.app.state.turn_cancellations
    cancellations[turn_id] = prepared.cancellation
    request.app.state.turn_history[turn_id] = prepared.conversation_id

    async def run_and_cleanup() -> None:
        try:
            await run_turn(prepared, services)
        except Exception:
            logger.exception("Turn %s crashed", turn_id)
        finally:
            turn_tasks.pop(turn_id, None)
            cancellations.pop(turn_id, None)

    task = asyncio.create_task(run_and_cleanup())
    turn_tasks[turn_id] = task
    return {
        "turn_id": turn_id,
        "conversation_id": prepared.conversation_id,
        "user_message_id": prepared.user_message.id,
        "assistant_message_id": prepared.assistant_message.id,
    }


@router.post("/api/chat/{turn_id}/stop")
async def stop_turn(turn_id: str, request: Request):
    cancellation = request.app.state.turn_cancellations.get(turn_id)
    if cancellation is None:
        if turn_id in request.app.state.turn_history:
            raise HTTPException(status_code=409, detail="Turn is not active")
        raise HTTPException(status_code=404, detail="Turn not found")
    cancellation.cancel("stopped by user")
    return {"ok": True, "status": "stopping"}


@router.get("/api/conversations")
async def list_conversations(db: Database = Depends(get_db)):
    conversations = await db.list_conversations()
    return {"conversations": conversations}


@router.post("/api/conversations")
async def create_conversation(
    payload: Optional[ConversationCreateRequest] = None,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    payload = payload or ConversationCreateRequest()
    convo = await db.create_conversation(title=payload.title, model=payload.model)
    await bus.emit(CONVERSATIONS_STREAM, "conversation_created", {"conversation_id": convo["id"], "conversation": convo})
    return {"conversation": convo}


@router.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, db: Database = Depends(get_db)):
    convo = await db.get_conversation(conversation_id)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"conversation": convo}


@router.get("/api/conversations/{conversation_id}/messages")
async def get_conversation_messages(
    conversation_id: str,
    limit: int = 500,
    rehydrate: bool = True,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    services: ChatServices = Depends(get_services),
):
    convo = await db.get_conversation(conversation_id)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    rows = await db.list_messages(conversation_id=conversation_id, limit=limit)
    messages = [ChatMessage(**row) for row in rows]
    restored = 0
    if rehydrate:
        rehydrator = Rehydrator(
            services.search_client,
            image_client=services.image_client,
            include_images=settings.rehydrate_images,
        )
        restored = await rehydrator.rehydrate(messages, lambda message: make_reconciler(message, services))
    return {"messages": [m.model_dump() for m in messages], "rehydrated": restored}


@router.patch("/api/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    payload: ConversationUpdateRequest,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    convo = await db.update_conversation(conversation_id, payload.model_dump(exclude_none=True))
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    await bus.emit(CONVERSATIONS_STREAM, "conversation_updated", {"conversation_id": convo["id"], "conversation": convo})
    return {"conversation": convo}


@router.delete("/api/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    convo = await db.get_conversation(conversation_id)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    await db.delete_conversation(conversation_id)
    await bus.emit(CONVERSATIONS_STREAM, "conversation_deleted", {"conversation_id": conversation_id})
    return {"ok": True}


@router.get("/api/pages/{page_id}")
async def get_page(page_id: str, db: Database = Depends(get_db)):
    page = await db.get_page(page_id)
    if not page:
        raise HTTPException(status_code=404, detail="Page not found")
    return {"page": page}


@router.get("/api/files/{file_id}")
async def download_file(file_id: str, db: Database = Depends(get_db)):
    stored = await db.get_file(file_id)
    if not stored:
        raise HTTPException(status_code=404, detail="File not found")
    name = (stored["name"] or "file.txt").replace('"', "")
    return Response(
        content=(stored["content"] or "").encode("utf-8"),
        media_type=stored["mime"] or "text/plain",
        headers={"Content-Disposition": f'attachment; filename="{name}"'},
    )


@router.get("/events")
async def stream_global_events(bus: EventBus = Depends(get_event_bus)):
    async def event_generator():
        queue = await bus.subscribe_global()
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe_global(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/api/conversations/{conversation_id}/events")
async def stream_conversation_events(
    conversation_id: str,
    after_seq: int = 0,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    convo = await db.get_conversation(conversation_id)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")

    # Replay stored events, then follow live ones without repeating a seq.
    async def event_generator():
        queue = await bus.subscribe(conversation_id)
        last_seq = after_seq
        try:
            past = await db.list_events(conversation_id, after_seq=after_seq)
            for ev in past:
                last_seq = max(last_seq, ev["seq"])
                yield sse_format(ev)
            while True:
                ev = await queue.get()
                if ev["seq"] <= last_seq:
                    continue
                last_seq = ev["seq"]
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(conversation_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    llm_client: Optional[ChatModelClient] = None,
    tavily_client: Optional[TavilyClient] = None,
    image_client: Optional[ImageClient] = None,
    title_client: Optional[ChatModelClient] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(app.state.settings.model_dump())
        try:
            yield
        finally:
            for task in list(app.state.turn_tasks.values()):
                task.cancel()
            await app.state.llm_client.close()
            await app.state.title_client.close()
            await app.state.image_client.close()
            await app.state.tavily_client.close()

    app = FastAPI(title="chatstream", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.llm_client = llm_client or ChatModelClient(
        settings.chat_endpoint.base_url,
        settings.chat_endpoint.model_id,
        api_key=settings.llm_api_key,
        temperature=settings.temperature,
        max_output_tokens=settings.max_output_tokens,
    )
    app.state.title_client = title_client or ChatModelClient(
        settings.title_endpoint.base_url,
        settings.title_endpoint.model_id,
        api_key=settings.llm_api_key,
    )
    app.state.image_client = image_client or ImageClient(
        settings.image_endpoint.base_url,
        settings.image_endpoint.model_id,
        api_key=settings.llm_api_key,
        size=settings.image_size,
    )
    app.state.tavily_client = tavily_client or TavilyClient(
        settings.tavily_api_key,
        search_depth=settings.search_depth,
        max_results=settings.max_results,
    )
    app.state.bus = EventBus(app.state.db)
    app.state.turn_tasks = {}
    app.state.turn_cancellations = {}
    app.state.turn_history = {}
    app.state.config_path = config_path or CONFIG_PATH

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("CHATSTREAM_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "chatstream.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
