import json

import pytest
import respx
from httpx import Response

from chatstream.images import ImageClient, ImageGenerationError

BASE_URL = "http://lm.test/v1"


@pytest.mark.asyncio
async def test_generate_image_returns_data_urls():
    client = ImageClient(BASE_URL, "test-image", size="512x512")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(
                    200,
                    json={"data": [{"b64_json": "AAAA"}, {"url": "https://img.example/x.png", "revised_prompt": "a fox"}]},
                )

            respx_mock.post(f"{BASE_URL}/images/generations").mock(side_effect=handler)
            result = await client.generate_image(" fox ")
    finally:
        await client.close()
    assert captured["json"]["prompt"] == "fox"
    assert captured["json"]["size"] == "512x512"
    assert result["images"] == [
        {"src": "data:image/png;base64,AAAA", "alt": "fox"},
        {"src": "https://img.example/x.png", "alt": "a fox"},
    ]


@pytest.mark.asyncio
async def test_generate_image_errors():
    client = ImageClient(BASE_URL, "test-image")
    try:
        with pytest.raises(ImageGenerationError):
            await client.generate_image("  ")
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(f"{BASE_URL}/images/generations").mock(return_value=Response(400, json={"error": "nope"}))
            with pytest.raises(ImageGenerationError) as excinfo:
                await client.generate_image("fox")
        assert excinfo.value.status_code == 400
    finally:
        await client.close()
