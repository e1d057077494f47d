from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from chatflow.config import AppSettings
from chatflow.db import Database
from chatflow.main import create_app
from chatflow.store import ConversationStore
from tests.fakes import FakeLanguageModel, FakeTavilyClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        gemini_api_key="test-gemini-key",
        openrouter_api_key="test-openrouter-key",
        tavily_api_key=None,
        gemini_base_url="http://gemini.test/v1",
        openrouter_base_url="http://openrouter.test/v1",
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        stream_persist_interval_s=0.0,
        batch_interval_s=0.01,
        notify_debounce_s=0.0,
        read_retry_delay_s=0.0,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_lm: FakeLanguageModel | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        lm_client = fake_lm or FakeLanguageModel()
        tavily_client = fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, lm_client=lm_client, tavily_client=tavily_client, config_path=cfg_path)
        return app, cfg_path, lm_client, tavily_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, lm_client, tavily_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_lm = lm_client  # type: ignore[attr-defined]
            http_client.fake_tavily = tavily_client  # type: ignore[attr-defined]
            yield http_client


@pytest.fixture
async def store(tmp_path: Path):
    conversation_store = ConversationStore(
        Database(str(tmp_path / "client.db")),
        batch_interval=0.01,
        notify_debounce=0.0,
    )
    await conversation_store.init()
    try:
        yield conversation_store
    finally:
        await conversation_store.close()
