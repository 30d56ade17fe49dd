import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from chatstream.schemas import ChatMessage, GeneratedImage, MultiSearchEntry

logger = logging.getLogger("uvicorn.error")

PublishFn = Callable[[str, dict], Awaitable[Any]]
PersistFn = Callable[[str, str, dict], Awaitable[Any]]


class MessageReconciler:
    """Single writer for one in-flight assistant message.

    Stream chunks update the content immediately and publish a throttled
    ``message_delta`` snapshot. Executor results go through the per-directive
    state machine: ``begin`` moves a kind to running, ``complete``/``fail`` make it
    terminal, and any later write for a terminal kind is dropped. Every merge is
    published as ``message_updated`` and persisted as a partial update.
    """

    def __init__(
        self,
        message: ChatMessage,
        publish: PublishFn,
        persist: PersistFn,
        throttle_ms: int = 16,
        persist_search_results: bool = True,
    ):
        self.message = message
        self._publish = publish
        self._persist = persist
        self.throttle_s = max(throttle_ms, 0) / 1000.0
        self.persist_search_results = persist_search_results
        self._last_applied: Optional[float] = None
        self._pending: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def message_id(self) -> str:
        return self.message.id

    @property
    def conversation_id(self) -> str:
        return self.message.conversation_id

    # Streaming content

    def on_chunk(self, content: str) -> None:
        self.message.content = content
        loop = asyncio.get_running_loop()
        now = loop.time()
        self._cancel_pending()
        if self._last_applied is None or now - self._last_applied >= self.throttle_s:
            self._apply_delta()
            return
        self._pending = loop.call_later(self.throttle_s - (now - self._last_applied), self._apply_delta)

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _apply_delta(self) -> None:
        self._pending = None
        self._last_applied = asyncio.get_running_loop().time()
        self._spawn(
            self._publish(
                "message_delta",
                {"message_id": self.message_id, "content": self.message.content},
            )
        )

    def flush(self) -> None:
        """Publish the pending snapshot right away, if any."""
        if self._pending is not None:
            self._cancel_pending()
            self._apply_delta()

    def finish_stream(self, content: Optional[str] = None) -> None:
        if content is not None:
            self.message.content = content
        self._cancel_pending()
        self._apply_delta()
        self.merge({"content": self.message.content})

    # Field merges

    def merge(self, fields: Dict[str, Any], event_type: str = "message_updated") -> Dict[str, Any]:
        if not fields:
            return {}
        for key, value in fields.items():
            setattr(self.message, key, value)
        dumped = self.message.model_dump(include=set(fields))
        self._spawn(self._publish(event_type, {"message_id": self.message_id, "fields": dumped}))
        self._spawn(self._persist(self.conversation_id, self.message_id, self._persistable(dumped)))
        return dumped

    def _persistable(self, dumped: Dict[str, Any]) -> Dict[str, Any]:
        if self.persist_search_results:
            return dumped
        cleaned = dict(dumped)
        if "search_results" in cleaned:
            cleaned["search_results"] = None
        if "multi_search" in cleaned:
            cleaned["multi_search"] = [{**entry, "results": None} for entry in cleaned["multi_search"]]
        return cleaned

    def _with_state(self, kind: str, state: str, fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        states = dict(self.message.directive_states)
        states[kind] = state
        return {**(fields or {}), "directive_states": states}

    def begin(self, kind: str, fields: Optional[Dict[str, Any]] = None) -> bool:
        if self.message.state_of(kind) != "not_detected":
            return False
        self.merge(self._with_state(kind, "running", fields))
        return True

    def update(self, kind: str, fields: Dict[str, Any]) -> bool:
        if self.message.is_terminal(kind):
            return False
        self.merge(fields)
        return True

    def complete(self, kind: str, fields: Optional[Dict[str, Any]] = None) -> bool:
        if self.message.is_terminal(kind):
            return False
        self.merge(self._with_state(kind, "completed", fields))
        return True

    def fail(self, kind: str, fields: Optional[Dict[str, Any]] = None) -> bool:
        if self.message.is_terminal(kind):
            return False
        self.merge(self._with_state(kind, "errored", fields))
        return True

    # Search steps

    def add_search_step(self, query: str) -> int:
        entries = list(self.message.multi_search)
        entries.append(MultiSearchEntry(query=query))
        fields: Dict[str, Any] = {"multi_search": entries}
        if self.message.search_request is None:
            fields["search_request"] = query
        if self.message.state_of("search") == "not_detected":
            self.begin("search", fields)
        else:
            self.update("search", fields)
        return len(entries) - 1

    def update_search_step(self, index: int, **changes: Any) -> bool:
        entries: List[MultiSearchEntry] = list(self.message.multi_search)
        if index < 0 or index >= len(entries):
            return False
        entry = entries[index]
        if entry.completed:
            return False
        entries[index] = MultiSearchEntry(**{**entry.model_dump(), **changes})
        fields: Dict[str, Any] = {"multi_search": entries}
        if index == 0 and changes.get("results") is not None:
            fields["search_results"] = changes["results"]
        return self.update("search", fields)

    # Code execution

    def merge_code_payload(
        self,
        code: Optional[Dict[str, Any]] = None,
        images: Optional[List[Dict[str, Any]]] = None,
    ) -> bool:
        """Merge a structured code/image payload; at most one code block per turn."""
        if self.message.is_terminal("code"):
            return False
        fields: Dict[str, Any] = {}
        if code and self.message.executable_code is None:
            fields["executable_code"] = code
        has_code = self.message.executable_code is not None or "executable_code" in fields
        if images:
            existing = [img.model_dump() for img in self.message.generated_images or []]
            fields["generated_images"] = existing + [
                img.model_dump() if isinstance(img, GeneratedImage) else img for img in images
            ]
            if has_code:
                fields.update({"code_executing": False, "code_executed": True})
                return self.complete("code", fields)
            self.merge(fields)
            return True
        if not fields:
            return False
        fields["code_executing"] = True
        if self.message.state_of("code") == "not_detected":
            return self.begin("code", fields)
        return self.update("code", fields)

    def finish_code(self, error: bool = False) -> bool:
        if self.message.state_of("code") != "running":
            return False
        if error:
            return self.fail("code", {"code_executing": False, "code_error": True})
        return self.complete("code", {"code_executing": False, "code_executed": True})

    # Misc

    def notify(self, event_type: str, payload: Dict[str, Any]) -> None:
        """Publish an event about this message without changing it."""
        self._spawn(self._publish(event_type, {"message_id": self.message_id, **payload}))

    def set_finalizing(self, value: bool) -> None:
        self.merge({"is_finalizing": value})

    def restore(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Write rehydrated results without touching directive states or flags."""
        return self.merge(fields, event_type="message_restored")

    # Background work

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(self._guard(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, coro: Awaitable[Any]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Message %s update not delivered: %s", self.message_id, exc)

    async def drain(self) -> None:
        self.flush()
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
