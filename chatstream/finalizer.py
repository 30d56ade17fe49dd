import json
import logging
import re
from typing import Any, Awaitable, Callable, Optional, Tuple

from chatstream.directives import scan, visible_text
from chatstream.executors import ImageExecutor, SearchOutcome, TurnContext
from chatstream.llm import ChatModelClient
from chatstream.prompts import (
    DEFAULT_ICON,
    FINALIZE_MULTI_INSTRUCTION,
    FINALIZE_SINGLE_INSTRUCTION,
    HIDDEN_CONTEXT_CLOSE,
    HIDDEN_CONTEXT_OPEN,
    TITLE_ICONS,
    title_system_prompt,
)
from chatstream.reconciler import MessageReconciler
from chatstream.schemas import ChatMessage

logger = logging.getLogger("uvicorn.error")

AppendMessageFn = Callable[[str], Awaitable[MessageReconciler]]

_HIDDEN_BLOCK_RE = re.compile(
    re.escape(HIDDEN_CONTEXT_OPEN) + r".*?(?:" + re.escape(HIDDEN_CONTEXT_CLOSE) + r"|$)",
    re.IGNORECASE | re.DOTALL,
)
MAX_TITLE_LEN = 50


def strip_hidden_context(text: str) -> str:
    cleaned = _HIDDEN_BLOCK_RE.sub("", text or "")
    return cleaned.replace(HIDDEN_CONTEXT_CLOSE, "").strip()


def shows_visible_output(message: ChatMessage) -> bool:
    """True when the message already renders prose, images or code of its own."""
    if visible_text(message.content):
        return True
    return bool(message.generated_images) or message.executable_code is not None


class FinalizationSynthesizer:
    def __init__(self, llm: ChatModelClient, images: Optional[ImageExecutor] = None):
        self.llm = llm
        self.images = images

    async def finalize(
        self,
        reconciler: MessageReconciler,
        turn: TurnContext,
        outcome: SearchOutcome,
        append_message: AppendMessageFn,
    ) -> Optional[MessageReconciler]:
        """Write the user-facing answer once every side-effect of the turn is terminal.

        Returns the reconciler of the message that holds the answer, or None when
        nothing was synthesized.
        """
        if not outcome.context or turn.cancellation.cancelled:
            return None
        instruction = FINALIZE_MULTI_INSTRUCTION if outcome.step_count > 1 else FINALIZE_SINGLE_INSTRUCTION
        history = [*turn.history, {"sender": "user", "content": turn.user_text}]
        reconciler.set_finalizing(True)
        try:
            answer = await self.llm.send_message_with_context(
                instruction,
                history,
                hidden_context=outcome.context,
                model=turn.model,
            )
        except Exception:
            logger.exception("Finalization failed for message %s", reconciler.message_id)
            return None
        finally:
            reconciler.set_finalizing(False)
        answer = strip_hidden_context(answer)
        if not answer:
            return None
        if shows_visible_output(reconciler.message):
            target = await append_message(answer)
        else:
            base = reconciler.message.content.rstrip()
            reconciler.merge({"content": f"{base}\n\n{answer}" if base else answer})
            target = reconciler
        image = next((m for m in scan(answer, kinds=["image"]) if m.complete and m.body.strip()), None)
        if image is not None and self.images is not None:
            await self.images.run(target, image.body)
        return target


def _clean_title(raw: str) -> str:
    title = raw.strip().strip("\"'`").strip()
    title = re.sub(r"\s+", " ", title)
    title = title.rstrip(".!?:;,")
    words = [w[:1].upper() + w[1:] if w[:1].islower() else w for w in title.split(" ")]
    title = " ".join(words)
    if len(title) > MAX_TITLE_LEN:
        title = title[:MAX_TITLE_LEN].rstrip()
    return title


def parse_title_response(content: str) -> Optional[Tuple[str, str]]:
    text = (content or "").strip()
    if not text:
        return None
    data: Any = None
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if match:
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            data = None
    if isinstance(data, dict):
        title = _clean_title(str(data.get("title") or ""))
        icon = str(data.get("icon") or "")
    else:
        title = _clean_title(text.splitlines()[0])
        icon = ""
    if not title:
        return None
    if icon not in TITLE_ICONS:
        icon = DEFAULT_ICON
    return title, icon


class TitleGenerator:
    def __init__(self, llm: ChatModelClient, model: Optional[str] = None):
        self.llm = llm
        self.model = model

    async def generate(self, user_text: str, reply: str) -> Optional[Tuple[str, str]]:
        messages = [
            {"role": "system", "content": title_system_prompt().strip()},
            {
                "role": "user",
                "content": f"User: {user_text[:1000]}\nAssistant: {visible_text(reply)[:1000] or '(no text)'}",
            },
        ]
        data = await self.llm.chat_completion(messages, model=self.model, temperature=0.3, max_tokens=80)
        choices = data.get("choices") or []
        if not choices:
            return None
        content = (choices[0].get("message") or {}).get("content") or ""
        return parse_title_response(content)
