import json

import pytest
import respx
from httpx import Response

from chatstream.llm import ChatModelClient, ChatModelError, parse_stream_delta
from chatstream.prompts import HIDDEN_CONTEXT_OPEN

BASE_URL = "http://lm.test/v1"


def sse_body(*frames) -> bytes:
    lines = [f"data: {json.dumps(frame)}\n\n" for frame in frames]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def text_frame(text: str) -> dict:
    return {"choices": [{"delta": {"content": text}}]}


def test_parse_stream_delta_text_and_payloads():
    assert parse_stream_delta(text_frame("hi")) == "hi"
    assert parse_stream_delta({"choices": [{"delta": {}}]}) is None
    payload = parse_stream_delta(
        {"choices": [{"delta": {"content": "x", "executable_code": "print(1)"}}], "generated_images": ["data:a"]}
    )
    assert payload == {
        "content": "x",
        "executable_code": {"code": "print(1)", "language": "python"},
        "generated_images": [{"src": "data:a"}],
    }


def test_build_messages_maps_senders_and_wraps_hidden_context():
    client = ChatModelClient(BASE_URL, "m", system_prompt="sys")
    messages = client.build_messages(
        "question",
        [{"sender": "user", "content": "earlier"}, {"sender": "assistant", "content": "reply"}],
        hidden_context="Query: tides",
    )
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "system", "user"]
    assert HIDDEN_CONTEXT_OPEN in messages[3]["content"]
    assert "Query: tides" in messages[3]["content"]
    assert messages[-1] == {"role": "user", "content": "question"}


@pytest.mark.asyncio
async def test_stream_message_delivers_chunks_in_order():
    client = ChatModelClient(BASE_URL, "test-model", api_key="k")
    captured = {}
    chunks = []
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["auth"] = request.headers.get("Authorization")
                return Response(
                    200,
                    content=sse_body(
                        text_frame("Hello "),
                        text_frame("<IM"),
                        text_frame("G>cat</IMG>"),
                        {"choices": [{"delta": {"generated_images": [{"src": "data:image/png;base64,QQ"}]}}]},
                    ),
                    headers={"Content-Type": "text/event-stream"},
                )

            respx_mock.post(f"{BASE_URL}/chat/completions").mock(side_effect=handler)
            full = await client.stream_message("draw", [], chunks.append)
    finally:
        await client.close()

    assert full == "Hello <IMG>cat</IMG>"
    assert chunks[:3] == ["Hello ", "<IM", "G>cat</IMG>"]
    assert chunks[3] == {"generated_images": [{"src": "data:image/png;base64,QQ"}]}
    assert captured["json"]["stream"] is True
    assert captured["json"]["model"] == "test-model"
    assert captured["auth"] == "Bearer k"


@pytest.mark.asyncio
async def test_stream_error_status_raises():
    client = ChatModelClient(BASE_URL, "test-model")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(f"{BASE_URL}/chat/completions").mock(
                return_value=Response(503, json={"error": "loading"})
            )
            with pytest.raises(ChatModelError) as excinfo:
                await client.stream_message("hi", [], lambda chunk: None)
        assert excinfo.value.status_code == 503
        assert "loading" in excinfo.value.detail
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_send_message_with_context_returns_content():
    client = ChatModelClient(BASE_URL, "test-model", max_output_tokens=256)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"choices": [{"message": {"content": "Done."}}]})

            respx_mock.post(f"{BASE_URL}/chat/completions").mock(side_effect=handler)
            answer = await client.send_message_with_context("finish", [], hidden_context="ctx")
    finally:
        await client.close()
    assert answer == "Done."
    assert captured["json"]["stream"] is False
    assert captured["json"]["max_tokens"] == 256
