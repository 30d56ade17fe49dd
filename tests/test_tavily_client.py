import json

import pytest
import respx
from httpx import Response

from chatstream.tavily import SearchError, TavilyClient


@pytest.mark.asyncio
async def test_tavily_search_payload_and_headers():
    client = TavilyClient("test-key", search_depth="basic", max_results=3)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(200, json={"results": []})

            respx_mock.post("https://api.tavily.com/search").mock(side_effect=handler)
            resp = await client.search("hello")
            assert resp == {"results": []}
            assert captured["json"]["api_key"] == "test-key"
            assert captured["json"]["search_depth"] == "basic"
            assert captured["json"]["max_results"] == 3
            assert captured["json"]["include_answer"] is True
            assert captured["headers"]["X-API-Key"] == "test-key"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_search_web_normalizes_results():
    client = TavilyClient("test-key")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("https://api.tavily.com/search").mock(
                return_value=Response(
                    200,
                    json={
                        "answer": "Lima gets little rain.",
                        "results": [
                            {"title": "Climate", "url": "https://a.example", "content": "dry", "score": 0.9},
                            {"title": "no url"},
                        ],
                        "images": ["https://img.example/1.png", {"url": "https://img.example/2.png", "description": "map"}],
                    },
                )
            )
            results = await client.search_web("  lima rainfall ")
        assert results.query == "lima rainfall"
        assert results.answer == "Lima gets little rain."
        assert [s.url for s in results.sources] == ["https://a.example"]
        assert [i.url for i in results.images] == ["https://img.example/1.png", "https://img.example/2.png"]
        assert results.images[1].alt == "map"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_search_web_raises_on_http_error():
    client = TavilyClient("test-key")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("https://api.tavily.com/search").mock(
                return_value=Response(500, json={"error": "boom"})
            )
            with pytest.raises(SearchError) as excinfo:
                await client.search_web("anything")
        assert excinfo.value.reason == "http_status"
        assert excinfo.value.detail == {"error": "boom"}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_search_web_without_key_or_query():
    client = TavilyClient(None)
    try:
        with pytest.raises(SearchError) as excinfo:
            await client.search_web("tides")
        assert excinfo.value.reason == "missing_api_key"
        with pytest.raises(SearchError) as excinfo:
            await client.search_web("   ")
        assert excinfo.value.reason == "empty_query"
    finally:
        await client.close()
