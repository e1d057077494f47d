import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from chatflow.config import load_settings
from chatflow.main import SERVER_CONFIG_KEY


@pytest.mark.asyncio
async def test_get_settings_masks_secret_keys(app_factory):
    app, _, _, _ = app_factory(tavily_api_key="secret-key")
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get("/settings")
            assert res.status_code == 200
            data = res.json()
            assert data["settings"]["tavily_api_key"] == "********"
            assert data["settings"]["gemini_api_key"] == "********"
            assert data["settings"]["remote_sync_token"] is None


@pytest.mark.asyncio
async def test_post_settings_persists_config_and_db(app_factory):
    app, config_path, lm_client, tavily_client = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/settings", json={"tavily_api_key": "new-key", "openrouter_api_key": ""})
            assert res.status_code == 200
            stored = await app.state.db.get_config(SERVER_CONFIG_KEY)
            assert stored["tavily_api_key"] == "********"

    saved = json.loads(config_path.read_text())
    assert saved["tavily_api_key"] == "new-key"
    assert tavily_client.api_key == "new-key"
    assert lm_client.api_keys == {"google": "test-gemini-key"}


@pytest.mark.asyncio
async def test_post_settings_rejects_non_object(client):
    res = await client.post("/settings", json=["nope"])
    assert res.status_code == 400


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"app_url": "http://config"}))
    monkeypatch.setenv("APP_URL", "http://env")
    monkeypatch.delenv("CHATFLOW_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.app_url == "http://config"


def test_env_override_when_chatflow_env_override_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"app_url": "http://config"}))
    monkeypatch.setenv("APP_URL", "http://env")
    monkeypatch.setenv("CHATFLOW_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.app_url == "http://env"


def test_blank_config_key_does_not_hide_env_key(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"gemini_api_key": ""}))
    monkeypatch.setenv("GEMINI_API_KEY", "from-env")
    monkeypatch.delenv("CHATFLOW_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.provider_keys()["google"] == "from-env"
