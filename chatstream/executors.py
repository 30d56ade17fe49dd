import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from chatstream.db import Database
from chatstream.directives import (
    DEFAULT_TEXT_FILE_NAME,
    DirectiveMatch,
    page_title,
    parse_function_call,
    parse_task,
    parse_text_file,
)
from chatstream.llm import ChatModelClient
from chatstream.prompts import VISUALIZATION_INSTRUCTION, format_hidden_context
from chatstream.reconciler import MessageReconciler
from chatstream.schemas import DirectiveNotice, SearchImage, SearchResults, SearchSource

logger = logging.getLogger("uvicorn.error")

VISUALIZATION_RE = re.compile(r"\b(plot|graph|chart|visuali[sz]e|bar chart|line chart|scatter)\b", re.IGNORECASE)

TEXT_FILE_OK = "✅ Successfully created and downloaded '{name}'."
TEXT_FILE_FAILED = "❌ Failed to create text file. Please try again."
PAGE_OK = '✅ Successfully created page: "{title}". Click the page pill to open it.'
PAGE_FAILED = "❌ Failed to create page. Please try again."
TASK_OK = "✅ Task created: {type} - {query}"
TASK_FAILED = "❌ Invalid task. Expected the form type:query."
IMAGE_FAILED = "❌ Failed to generate image. Please try again."


def wants_visualization(text: str) -> bool:
    return bool(VISUALIZATION_RE.search(text or ""))


class TurnCancellation:
    """Cooperative stop flag for one turn; checked between steps, never aborts a call in flight."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "stopped") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class SearchOutcome:
    context: Optional[str]
    results: Optional[SearchResults]
    step_count: int


@dataclass
class TurnContext:
    conversation_id: str
    user_text: str
    history: List[Dict[str, Any]]
    model: Optional[str] = None
    cancellation: TurnCancellation = field(default_factory=TurnCancellation)


def aggregate_search_results(reconciler: MessageReconciler) -> Optional[SearchResults]:
    entries = reconciler.message.multi_search
    successful = [(idx, e) for idx, e in enumerate(entries) if e.results is not None and not e.error]
    if not successful:
        return None
    if len(entries) == 1:
        return successful[0][1].results
    answers: List[str] = []
    sources: List[SearchSource] = []
    images: List[SearchImage] = []
    for idx, entry in successful:
        if entry.results.answer:
            answers.append(f"Step {idx + 1}:\n{entry.results.answer}")
        sources.extend(entry.results.sources)
        images.extend(entry.results.images)
    return SearchResults(
        answer="\n\n".join(answers),
        sources=sources,
        images=images,
        query=" | ".join(e.query for e in entries),
    )


class CodeExecutionExecutor:
    def __init__(self, reconciler: MessageReconciler, llm: ChatModelClient, turn: TurnContext):
        self.reconciler = reconciler
        self.llm = llm
        self.turn = turn

    def accept(self, payload: Dict[str, Any]) -> None:
        """Direct trigger: a structured payload from the primary stream."""
        self.reconciler.merge_code_payload(
            code=payload.get("executable_code"),
            images=payload.get("generated_images"),
        )

    def _on_chunk(self, chunk: Any) -> None:
        if isinstance(chunk, dict):
            self.accept(chunk)

    async def run_visualization(self, hidden_context: str) -> bool:
        if self.reconciler.message.state_of("code") != "not_detected":
            return False
        history = [*self.turn.history, {"sender": "user", "content": self.turn.user_text}]
        try:
            await self.llm.stream_message(
                VISUALIZATION_INSTRUCTION,
                history,
                self._on_chunk,
                model=self.turn.model,
                hidden_context=hidden_context,
            )
        except Exception as exc:
            logger.warning("Visualization stream failed for message %s: %s", self.reconciler.message_id, exc)
            if self.reconciler.message.state_of("code") == "running":
                self.reconciler.finish_code(error=True)
            else:
                self.reconciler.fail("code", {"code_executing": False, "code_error": True})
            return False
        self.reconciler.finish_code()
        return True


class SearchExecutor:
    """One per message. Queries are appended as tags are detected and run strictly in order."""

    def __init__(
        self,
        reconciler: MessageReconciler,
        search_client: Any,
        turn: TurnContext,
        code_executor: Optional[CodeExecutionExecutor] = None,
    ):
        self.reconciler = reconciler
        self.search_client = search_client
        self.turn = turn
        self.code_executor = code_executor
        self.queue: asyncio.Queue = asyncio.Queue()
        self.task: Optional[asyncio.Task] = None
        self.stream_ok = True

    def enqueue(self, query: str) -> int:
        index = self.reconciler.add_search_step(query.strip())
        self.queue.put_nowait(index)
        if self.task is None:
            self.task = asyncio.ensure_future(self.run())
        return index

    def close(self, stream_ok: bool = True) -> None:
        """Signal that the primary stream ended; no more queries will arrive."""
        self.stream_ok = stream_ok
        self.queue.put_nowait(None)

    async def run(self) -> SearchOutcome:
        while True:
            index = await self.queue.get()
            if index is None:
                break
            if self.turn.cancellation.cancelled:
                self.reconciler.update_search_step(index, completed=True, error=True)
                continue
            await self._run_step(index)
        return await self._finish()

    async def _run_step(self, index: int) -> None:
        query = self.reconciler.message.multi_search[index].query
        self.reconciler.notify("search_step_started", {"index": index, "query": query})
        try:
            results = await self.search_client.search_web(query)
        except Exception as exc:
            logger.warning("Search step %s failed for %r: %s", index + 1, query, exc)
            self.reconciler.update_search_step(index, completed=True, error=True)
            return
        self.reconciler.update_search_step(index, completed=True, results=results)

    async def _finish(self) -> SearchOutcome:
        step_count = len(self.reconciler.message.multi_search)
        aggregated = aggregate_search_results(self.reconciler)
        if aggregated is None:
            self.reconciler.fail("search", {"search_completed": True, "search_error": True})
            return SearchOutcome(context=None, results=None, step_count=step_count)
        self.reconciler.complete("search", {"search_completed": True, "search_error": False})
        context = format_hidden_context(aggregated)
        if (
            self.stream_ok
            and self.code_executor is not None
            and not self.turn.cancellation.cancelled
            and wants_visualization(self.turn.user_text)
        ):
            await self.code_executor.run_visualization(context)
        return SearchOutcome(context=context, results=aggregated, step_count=step_count)


class ImageExecutor:
    def __init__(self, image_client: Any):
        self.image_client = image_client

    async def run(self, reconciler: MessageReconciler, prompt: str) -> bool:
        cleaned = (prompt or "").strip()
        started = reconciler.begin(
            "image",
            {"image_prompt": cleaned, "image_generation_completed": False, "image_generation_error": False},
        )
        if not started:
            return False
        failed = {"image_generation_completed": True, "image_generation_error": True}
        try:
            result = await self.image_client.generate_image(cleaned)
        except Exception as exc:
            logger.warning("Image generation failed for message %s: %s", reconciler.message_id, exc)
            reconciler.fail("image", failed)
            return False
        images = (result or {}).get("images") or []
        if not images:
            reconciler.fail("image", failed)
            return False
        existing = [img.model_dump() for img in reconciler.message.generated_images or []]
        reconciler.complete(
            "image",
            {"image_generation_completed": True, "generated_images": existing + list(images)},
        )
        return True


class PageCreator:
    def __init__(self, db: Database):
        self.db = db

    async def run(self, reconciler: MessageReconciler, match: DirectiveMatch) -> bool:
        body = match.body.strip()
        if not reconciler.begin("page"):
            return False
        title = page_title(body)
        try:
            if not body:
                raise ValueError("empty page body")
            page = await self.db.create_page(reconciler.conversation_id, reconciler.message_id, title, body)
        except Exception as exc:
            logger.warning("Page creation failed for message %s: %s", reconciler.message_id, exc)
            notice = DirectiveNotice(kind="page", raw=match.raw, text=PAGE_FAILED, ok=False)
            reconciler.fail("page", {"notices": [*reconciler.message.notices, notice]})
            return False
        notice = DirectiveNotice(kind="page", raw=match.raw, text=PAGE_OK.format(title=title))
        reconciler.complete("page", {"page_id": page["id"], "notices": [*reconciler.message.notices, notice]})
        reconciler.notify("page_created", {"page_id": page["id"], "title": title})
        return True


class TextFileCreator:
    def __init__(self, db: Database):
        self.db = db

    async def create(
        self,
        reconciler: MessageReconciler,
        name: str,
        content: str,
        raw: str = "",
        kind: str = "text_file",
    ) -> bool:
        if not reconciler.begin(kind):
            return False
        try:
            if not content:
                raise ValueError("empty file content")
            stored = await self.db.add_file(reconciler.message_id, name, content)
        except Exception as exc:
            logger.warning("Text file creation failed for message %s: %s", reconciler.message_id, exc)
            notice = DirectiveNotice(kind=kind, raw=raw, text=TEXT_FILE_FAILED, ok=False)
            fields = {"notices": [*reconciler.message.notices, notice]}
            if kind == "function_call":
                fields["function_call"] = {"name": "create_text_file", "args": {"name": name}, "ok": False}
            reconciler.fail(kind, fields)
            return False
        notice = DirectiveNotice(kind=kind, raw=raw, text=TEXT_FILE_OK.format(name=name))
        info = {"file_id": stored["id"], "name": name, "size": stored["size"]}
        fields = {"text_file": info, "notices": [*reconciler.message.notices, notice]}
        if kind == "function_call":
            fields["function_call"] = {"name": "create_text_file", "args": {"name": name}, "ok": True}
        reconciler.complete(kind, fields)
        reconciler.notify("file_download", {**info, "url": f"/api/files/{stored['id']}"})
        return True

    async def run(self, reconciler: MessageReconciler, match: DirectiveMatch) -> bool:
        name, content = parse_text_file(match.body, match.attrs)
        return await self.create(reconciler, name, content, raw=match.raw)


class TaskCreator:
    async def run(self, reconciler: MessageReconciler, match: DirectiveMatch) -> bool:
        if not reconciler.begin("task"):
            return False
        parsed = parse_task(match.body)
        if parsed is None:
            notice = DirectiveNotice(kind="task", raw=match.raw, text=TASK_FAILED, ok=False)
            reconciler.fail("task", {"notices": [*reconciler.message.notices, notice]})
            return False
        task_type, query = parsed
        notice = DirectiveNotice(kind="task", raw=match.raw, text=TASK_OK.format(type=task_type, query=query))
        reconciler.complete(
            "task",
            {"task": {"type": task_type, "query": query}, "notices": [*reconciler.message.notices, notice]},
        )
        return True


FunctionHandler = Callable[[MessageReconciler, Dict[str, Any], DirectiveMatch], Awaitable[bool]]


class FunctionCallExecutor:
    """Dispatches ``<FUNCTION_CALL>name(args)</FUNCTION_CALL>`` through a small registry."""

    def __init__(self, text_files: TextFileCreator, images: ImageExecutor):
        self.text_files = text_files
        self.images = images
        self.registry: Dict[str, FunctionHandler] = {
            "create_text_file": self._create_text_file,
            "generate_image": self._generate_image,
        }

    async def _create_text_file(self, reconciler: MessageReconciler, args: Dict[str, Any], match: DirectiveMatch) -> bool:
        name = args.get("name") or args.get("filename") or DEFAULT_TEXT_FILE_NAME
        content = args.get("content") or args.get("_positional") or ""
        return await self.text_files.create(reconciler, name, content, raw=match.raw, kind="function_call")

    async def _generate_image(self, reconciler: MessageReconciler, args: Dict[str, Any], match: DirectiveMatch) -> bool:
        prompt = args.get("prompt") or args.get("_positional") or ""
        if not reconciler.begin("function_call"):
            return False
        ok = await self.images.run(reconciler, prompt)
        fields: Dict[str, Any] = {"function_call": {"name": "generate_image", "args": args, "ok": ok}}
        if ok:
            reconciler.complete("function_call", fields)
        else:
            notice = DirectiveNotice(kind="function_call", raw=match.raw, text=IMAGE_FAILED, ok=False)
            fields["notices"] = [*reconciler.message.notices, notice]
            reconciler.fail("function_call", fields)
        return ok

    async def run(self, reconciler: MessageReconciler, match: DirectiveMatch) -> bool:
        parsed = parse_function_call(match.body)
        handler = self.registry.get(parsed[0]) if parsed else None
        if parsed is None or handler is None:
            name = parsed[0] if parsed else match.body.strip()[:40]
            notice = DirectiveNotice(
                kind="function_call", raw=match.raw, text=f"❌ Unknown function call: {name}", ok=False
            )
            if reconciler.begin("function_call"):
                reconciler.fail(
                    "function_call",
                    {
                        "function_call": {"name": name, "args": {}, "ok": False},
                        "notices": [*reconciler.message.notices, notice],
                    },
                )
            return False
        return await handler(reconciler, parsed[1], match)
