import json
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Union

import httpx

from chatstream.prompts import CHAT_SYSTEM, wrap_hidden_context


ALLOWED_ROLES = {"system", "user", "assistant", "tool"}
DISALLOWED_FIELDS = {
    "tools",
    "tool_choice",
    "response_format",
    "reasoning",
    "seed",
    "logprobs",
    "top_logprobs",
    "parallel_tool_calls",
    "json_schema",
    "audio",
}

Chunk = Union[str, Dict[str, Any]]
ChunkHandler = Callable[[Chunk], None]


class ChatModelError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


def parse_stream_delta(data: Dict[str, Any]) -> Optional[Chunk]:
    """Turn one streamed completion frame into a text chunk or a structured payload.

    Plain text deltas come back as ``str``. Frames that carry executable code or
    generated images come back as a dict with ``content``, ``executable_code`` and
    ``generated_images`` keys (only the ones present).
    """
    choices = data.get("choices") or [{}]
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    code = delta.get("executable_code") or data.get("executable_code")
    images = delta.get("generated_images") or data.get("generated_images")
    if not code and not images:
        return content or None
    payload: Dict[str, Any] = {}
    if content:
        payload["content"] = content
    if code:
        if isinstance(code, str):
            code = {"code": code, "language": "python"}
        payload["executable_code"] = code
    if images:
        payload["generated_images"] = [
            {"src": img} if isinstance(img, str) else img for img in images if img
        ]
    return payload


class ChatModelClient:
    """OpenAI-compatible chat client used for the primary stream, finalization and titles."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        temperature: float = 0.7,
        max_output_tokens: Optional[int] = None,
        system_prompt: str = CHAT_SYSTEM,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.system_prompt = system_prompt
        self.client = httpx.AsyncClient(timeout=120)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if not isinstance(content, str) or not content.strip():
                continue
            sanitized.append({"role": role, "content": content})
        return sanitized

    def _sanitize_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        cleaned = {k: v for k, v in payload.items() if k not in DISALLOWED_FIELDS and v is not None}
        cleaned["messages"] = self._sanitize_messages(cleaned.get("messages"))
        if not cleaned["messages"]:
            raise ValueError("messages must include at least one non-empty entry")
        return cleaned

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    def build_messages(
        self,
        prompt: str,
        history: Optional[List[Dict[str, Any]]] = None,
        hidden_context: Optional[str] = None,
    ) -> List[Dict[str, str]]:
        """History entries may be message dicts (``sender``/``content``) or chat dicts (``role``/``content``)."""
        messages: List[Dict[str, str]] = [{"role": "system", "content": self.system_prompt.strip()}]
        for item in history or []:
            role = item.get("role") or ("user" if item.get("sender") == "user" else "assistant")
            messages.append({"role": role, "content": item.get("content") or ""})
        wrapped = wrap_hidden_context(hidden_context)
        if wrapped:
            messages.append({"role": "system", "content": wrapped})
        messages.append({"role": "user", "content": prompt})
        return messages

    def _payload(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str],
        temperature: Optional[float],
        max_tokens: Optional[int],
        stream: bool,
    ) -> Dict[str, Any]:
        final_max_tokens = max_tokens or self.max_output_tokens
        if self.max_output_tokens and final_max_tokens:
            final_max_tokens = min(final_max_tokens, self.max_output_tokens)
        return self._sanitize_payload(
            {
                "model": model or self.model,
                "messages": messages,
                "temperature": self.temperature if temperature is None else temperature,
                "max_tokens": final_max_tokens,
                "stream": stream,
            }
        )

    async def chat_completion(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        payload = self._payload(messages, model, temperature, max_tokens, stream=False)
        try:
            resp = await self.client.post(url, json=payload, headers=self._headers())
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = self._extract_error_detail(exc.response)
            raise ChatModelError(
                f"chat completion failed ({exc.response.status_code})", exc.response.status_code, detail
            ) from exc
        except httpx.RequestError as exc:
            raise ChatModelError(f"chat completion request failed: {exc}") from exc
        return resp.json()

    async def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncGenerator[Chunk, None]:
        url = f"{self.base_url}/chat/completions"
        payload = self._payload(messages, model, temperature, max_tokens, stream=True)
        try:
            async with self.client.stream("POST", url, json=payload, headers=self._headers()) as response:
                if response.status_code >= 400:
                    await response.aread()
                    detail = self._extract_error_detail(response)
                    raise ChatModelError(
                        f"chat stream failed ({response.status_code})", response.status_code, detail
                    )
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    chunk = line[len("data:"):].strip()
                    if chunk == "[DONE]":
                        break
                    try:
                        data = json.loads(chunk)
                    except json.JSONDecodeError:
                        continue
                    parsed = parse_stream_delta(data)
                    if parsed:
                        yield parsed
        except httpx.RequestError as exc:
            raise ChatModelError(f"chat stream request failed: {exc}") from exc

    async def stream_message(
        self,
        prompt: str,
        history: Optional[List[Dict[str, Any]]],
        on_chunk: ChunkHandler,
        model: Optional[str] = None,
        hidden_context: Optional[str] = None,
    ) -> str:
        """Stream a reply, calling ``on_chunk`` for every fragment in arrival order. Returns the full text."""
        messages = self.build_messages(prompt, history, hidden_context=hidden_context)
        parts: List[str] = []
        async for chunk in self.stream_chat(messages, model=model):
            if isinstance(chunk, str):
                parts.append(chunk)
            elif chunk.get("content"):
                parts.append(chunk["content"])
            on_chunk(chunk)
        return "".join(parts)

    async def send_message_with_context(
        self,
        prompt: str,
        history: Optional[List[Dict[str, Any]]] = None,
        hidden_context: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        messages = self.build_messages(prompt, history, hidden_context=hidden_context)
        data = await self.chat_completion(messages, model=model)
        choices = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        return message.get("content") or ""

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
