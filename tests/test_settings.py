import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from toolchat.config import load_settings


@pytest.mark.asyncio
async def test_get_settings_masks_secrets(app_factory):
    app, _, _, _ = app_factory(search_api_key="secret-key")
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get("/settings")
            assert res.status_code == 200
            data = res.json()
            assert data["settings"]["search_api_key"] == "********"
            assert data["settings"]["api_key"] == "********"
            assert data["settings"]["model_name"] == "test-model"


@pytest.mark.asyncio
async def test_post_settings_persists_config_and_db(app_factory):
    app, config_path, _, tavily = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            store = app.state.store
            before = await store.fetchone("SELECT COUNT(*) as cnt FROM configs")
            res = await client.post("/settings", json={"search_api_key": "new-key", "temperature": 0.2})
            assert res.status_code == 200
            assert res.json()["settings"]["search_api_key"] == "********"
            after = await store.fetchone("SELECT COUNT(*) as cnt FROM configs")
            assert after["cnt"] == before["cnt"] + 1
            assert app.state.settings.temperature == 0.2
            assert tavily.api_key == "new-key"

    saved = json.loads(config_path.read_text())
    assert saved["search_api_key"] == "new-key"
    assert saved["temperature"] == 0.2


@pytest.mark.asyncio
async def test_post_settings_keeps_secret_when_mask_sent_back(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/settings", json={"api_key": "********", "model_name": "other"})
            assert res.status_code == 200
            assert app.state.settings.api_key == "test-key"
            assert app.state.settings.model_name == "other"


@pytest.mark.asyncio
async def test_post_settings_rejects_out_of_range_temperature(app_factory):
    app, config_path, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/settings", json={"temperature": 5})
            assert res.status_code == 400
            assert app.state.settings.temperature == 0.7
    assert not config_path.exists()


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"endpoint": "http://config"}))
    monkeypatch.setenv("API_ENDPOINT", "http://env")
    monkeypatch.delenv("TOOLCHAT_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.endpoint == "http://config"


def test_env_override_when_toolchat_env_override_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"endpoint": "http://config"}))
    monkeypatch.setenv("API_ENDPOINT", "http://env")
    monkeypatch.setenv("TOOLCHAT_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.endpoint == "http://env"


def test_env_secret_fills_blank_config_secret(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"search_api_key": ""}))
    monkeypatch.setenv("TAVILY_API_KEY", "from-env")
    monkeypatch.delenv("TOOLCHAT_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.search_api_key == "from-env"
