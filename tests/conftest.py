from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from chatstream.config import AppSettings, EndpointConfig
from chatstream.main import create_app
from tests.fakes import FakeChatModelClient, FakeImageClient, FakeTavilyClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    base_url = overrides.pop("base_url", "http://lm.test/v1")
    settings = AppSettings(
        llm_base_url=base_url,
        chat_endpoint=EndpointConfig(base_url=base_url, model_id="test-model"),
        title_endpoint=EndpointConfig(base_url=base_url, model_id="test-title-model"),
        image_endpoint=EndpointConfig(base_url=base_url, model_id="test-image"),
        tavily_api_key=None,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        ui_throttle_ms=0,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_llm: FakeChatModelClient | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        fake_images: FakeImageClient | None = None,
        fake_title: FakeChatModelClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        llm_client = fake_llm or FakeChatModelClient()
        tavily_client = fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key)
        image_client = fake_images or FakeImageClient()
        title_client = fake_title or FakeChatModelClient()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            llm_client=llm_client,
            tavily_client=tavily_client,
            image_client=image_client,
            title_client=title_client,
            config_path=cfg_path,
        )
        return app, cfg_path, llm_client, tavily_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, llm_client, tavily_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_llm = llm_client  # type: ignore[attr-defined]
            http_client.fake_tavily = tavily_client  # type: ignore[attr-defined]
            yield http_client
