import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from chatstream.config import AppSettings
from chatstream.db import Database, utc_now
from chatstream.directives import DirectiveDetector, DirectiveMatch
from chatstream.events import LIVE_ONLY_EVENTS, EventBus
from chatstream.executors import (
    CodeExecutionExecutor,
    FunctionCallExecutor,
    ImageExecutor,
    PageCreator,
    SearchExecutor,
    SearchOutcome,
    TaskCreator,
    TextFileCreator,
    TurnCancellation,
    TurnContext,
)
from chatstream.finalizer import FinalizationSynthesizer, TitleGenerator
from chatstream.llm import ChatModelClient, Chunk
from chatstream.reconciler import MessageReconciler
from chatstream.schemas import ChatMessage

logger = logging.getLogger("uvicorn.error")

STREAM_ERROR_TEXT = "Sorry, I encountered an error while streaming. Please try again."


def new_turn_id() -> str:
    return uuid.uuid4().hex


def new_message(conversation_id: str, sender: str, content: str = "") -> ChatMessage:
    return ChatMessage(
        id=uuid.uuid4().hex,
        conversation_id=conversation_id,
        sender=sender,
        content=content,
        timestamp=utc_now(),
    )


class TurnStopped(Exception):
    """Raised from the chunk handler to end the primary stream early."""


@dataclass
class ChatServices:
    settings: AppSettings
    db: Database
    bus: EventBus
    llm: ChatModelClient
    search_client: Any
    image_client: Any
    title_llm: Optional[ChatModelClient] = None


@dataclass
class PreparedTurn:
    turn_id: str
    conversation_id: str
    user_message: ChatMessage
    assistant_message: ChatMessage
    history: List[Dict[str, Any]]
    model: Optional[str] = None
    first_turn: bool = False
    cancellation: TurnCancellation = field(default_factory=TurnCancellation)


def make_reconciler(message: ChatMessage, services: ChatServices) -> MessageReconciler:
    conversation_id = message.conversation_id

    async def publish(event_type: str, payload: dict) -> dict:
        return await services.bus.emit(
            conversation_id, event_type, payload, persist=event_type not in LIVE_ONLY_EVENTS
        )

    return MessageReconciler(
        message,
        publish=publish,
        persist=services.db.update_message_in_conversation,
        throttle_ms=services.settings.ui_throttle_ms,
        persist_search_results=services.settings.persist_search_results,
    )


class DirectiveDispatcher:
    """Routes detected directives of one message to their executors."""

    def __init__(self, reconciler: MessageReconciler, turn: TurnContext, services: ChatServices, images: ImageExecutor):
        self.reconciler = reconciler
        self.turn = turn
        self.services = services
        self.detector = DirectiveDetector()
        self.images = images
        self.code = CodeExecutionExecutor(reconciler, services.llm, turn)
        self.pages = PageCreator(services.db)
        self.text_files = TextFileCreator(services.db)
        self.tasks_creator = TaskCreator()
        self.functions = FunctionCallExecutor(self.text_files, images)
        self.search: Optional[SearchExecutor] = None
        self.pending: List[asyncio.Task] = []

    def on_text(self, buffer: str) -> None:
        for match in self.detector.detect(buffer):
            self.dispatch(match)

    def on_payload(self, payload: Dict[str, Any]) -> None:
        self.code.accept(payload)

    def dispatch(self, match: DirectiveMatch) -> None:
        if match.kind == "search":
            if self.search is None:
                self.search = SearchExecutor(self.reconciler, self.services.search_client, self.turn, self.code)
            self.search.enqueue(match.body)
        elif match.kind == "image":
            self._launch(self.images.run(self.reconciler, match.body))
        elif match.kind == "page":
            self._launch(self.pages.run(self.reconciler, match))
        elif match.kind == "text_file":
            self._launch(self.text_files.run(self.reconciler, match))
        elif match.kind == "task":
            self._launch(self.tasks_creator.run(self.reconciler, match))
        elif match.kind == "function_call":
            self._launch(self.functions.run(self.reconciler, match))

    def _launch(self, coro: Any) -> None:
        self.pending.append(asyncio.ensure_future(coro))

    async def finish(self, stream_ok: bool) -> Optional[SearchOutcome]:
        """Wait for every executor launched by this message; returns the search outcome, if any."""
        if self.search is not None:
            self.search.close(stream_ok)
        self.reconciler.finish_code()
        results = await asyncio.gather(*self.pending, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Directive executor failed for message %s: %s", self.reconciler.message_id, result)
        if self.search is None or self.search.task is None:
            return None
        try:
            return await self.search.task
        except Exception as exc:
            logger.warning("Search executor failed for message %s: %s", self.reconciler.message_id, exc)
            return None


class ChunkAccumulator:
    def __init__(self, reconciler: MessageReconciler, dispatcher: DirectiveDispatcher, cancellation: TurnCancellation):
        self.reconciler = reconciler
        self.dispatcher = dispatcher
        self.cancellation = cancellation
        self.full_content = ""
        self.failed = False

    def on_chunk(self, fragment: Chunk) -> None:
        if self.cancellation.cancelled:
            raise TurnStopped(self.cancellation.reason or "stopped")
        payload: Optional[Dict[str, Any]] = None
        if isinstance(fragment, dict):
            text = fragment.get("content") or ""
            if fragment.get("executable_code") or fragment.get("generated_images"):
                payload = fragment
        else:
            text = fragment or ""
        if text:
            self.full_content += text
            self.dispatcher.on_text(self.full_content)
            self.reconciler.on_chunk(self.full_content)
        if payload is not None:
            self.dispatcher.on_payload(payload)

    def fail(self) -> None:
        self.failed = True
        self.reconciler.finish_stream(STREAM_ERROR_TEXT)


async def open_turn(
    services: ChatServices,
    conversation: Dict[str, Any],
    text: str,
    model: Optional[str] = None,
) -> PreparedTurn:
    """Persist the user message and the empty assistant message for a new turn."""
    conversation_id = conversation["id"]
    prior = await services.db.list_messages(conversation_id)
    history = [{"sender": m["sender"], "content": m.get("content") or ""} for m in prior]
    if services.settings.history_limit:
        history = history[-services.settings.history_limit:]
    user_message = new_message(conversation_id, "user", text)
    await services.db.add_message_to_conversation(conversation_id, user_message.model_dump())
    await services.bus.emit(conversation_id, "message_created", {"message": user_message.model_dump()})
    assistant_message = new_message(conversation_id, "assistant")
    await services.db.add_message_to_conversation(conversation_id, assistant_message.model_dump())
    await services.bus.emit(conversation_id, "message_created", {"message": assistant_message.model_dump()})
    return PreparedTurn(
        turn_id=new_turn_id(),
        conversation_id=conversation_id,
        user_message=user_message,
        assistant_message=assistant_message,
        history=history,
        model=model or conversation.get("model") or None,
        first_turn=not prior,
    )


async def _append_assistant_message(services: ChatServices, conversation_id: str, content: str) -> MessageReconciler:
    message = new_message(conversation_id, "assistant", content)
    await services.db.add_message_to_conversation(conversation_id, message.model_dump())
    await services.bus.emit(conversation_id, "message_created", {"message": message.model_dump()})
    return make_reconciler(message, services)


async def _generate_title(services: ChatServices, prepared: PreparedTurn, reply: str) -> None:
    title_llm = services.title_llm or services.llm
    try:
        result = await TitleGenerator(title_llm).generate(prepared.user_message.content, reply)
    except Exception as exc:
        logger.warning("Title generation failed for conversation %s: %s", prepared.conversation_id, exc)
        return
    if not result:
        return
    title, icon = result
    if await services.db.ensure_conversation_title(prepared.conversation_id, title, icon):
        convo = await services.db.get_conversation(prepared.conversation_id)
        await services.bus.emit(prepared.conversation_id, "conversation_updated", {"conversation": convo})


async def run_turn(prepared: PreparedTurn, services: ChatServices) -> Optional[ChatMessage]:
    """Drive one turn: primary stream, directive side-effects, finalization, bookkeeping.

    Returns the message that holds the final answer (the assistant message itself
    unless finalization appended a new one).
    """
    started = time.monotonic()
    conversation_id = prepared.conversation_id
    turn = TurnContext(
        conversation_id=conversation_id,
        user_text=prepared.user_message.content,
        history=prepared.history,
        model=prepared.model,
        cancellation=prepared.cancellation,
    )
    reconciler = make_reconciler(prepared.assistant_message, services)
    images = ImageExecutor(services.image_client)
    dispatcher = DirectiveDispatcher(reconciler, turn, services, images)
    accumulator = ChunkAccumulator(reconciler, dispatcher, turn.cancellation)
    logger.info("Turn %s started in conversation %s", prepared.turn_id, conversation_id)
    await services.bus.emit(
        conversation_id,
        "turn_started",
        {"turn_id": prepared.turn_id, "message_id": reconciler.message_id},
    )

    stream_ok = True
    try:
        await services.llm.stream_message(
            turn.user_text,
            turn.history,
            accumulator.on_chunk,
            model=turn.model,
        )
        reconciler.finish_stream(accumulator.full_content)
    except TurnStopped:
        stream_ok = False
        reconciler.finish_stream(accumulator.full_content)
    except Exception as exc:
        stream_ok = False
        logger.warning("Primary stream failed for turn %s: %s", prepared.turn_id, exc)
        accumulator.fail()

    outcome = await dispatcher.finish(stream_ok)

    final = reconciler
    if stream_ok and outcome is not None and outcome.context:
        finalizer = FinalizationSynthesizer(services.llm, images)

        async def append_message(content: str) -> MessageReconciler:
            return await _append_assistant_message(services, conversation_id, content)

        target = await finalizer.finalize(reconciler, turn, outcome, append_message)
        if target is not None:
            final = target

    reconciler.merge({"response_time": round(time.monotonic() - started, 3)})
    await reconciler.drain()
    if final is not reconciler:
        await final.drain()

    if (
        prepared.first_turn
        and services.settings.generate_titles
        and not accumulator.failed
        and not turn.cancellation.cancelled
    ):
        await _generate_title(services, prepared, final.message.content)

    logger.info("Turn %s finished in %.2fs", prepared.turn_id, time.monotonic() - started)
    await services.bus.emit(
        conversation_id,
        "turn_completed",
        {
            "turn_id": prepared.turn_id,
            "message_id": reconciler.message_id,
            "final_message_id": final.message_id,
            "stopped": turn.cancellation.cancelled,
            "error": accumulator.failed,
        },
    )
    return final.message
