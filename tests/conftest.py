from datetime import date
from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from toolchat.executors import ToolExecutors
from toolchat.main import create_app
from toolchat.orchestrator import EventBus, Orchestrator
from toolchat.store import ConversationStore
from tests.fakes import FakeReasoningClient, FakeTavilyClient, ScriptedCompletionClient, make_settings


@pytest.fixture
async def store(tmp_path: Path):
    convo_store = ConversationStore(str(tmp_path / "store.db"))
    await convo_store.init()
    return convo_store


@pytest.fixture
def make_orchestrator(tmp_path: Path, store: ConversationStore):
    def _factory(completion=None, executors=None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        completion = completion or ScriptedCompletionClient()
        if executors is None:
            executors = ToolExecutors.default(FakeTavilyClient("tavily-key"), FakeReasoningClient(), settings)
        elif not isinstance(executors, ToolExecutors):
            executors = ToolExecutors(executors)
        return Orchestrator(
            store,
            completion,
            executors,
            settings_provider=lambda: settings,
            bus=EventBus(store),
            clock=lambda: date(2025, 3, 14),
        )

    return _factory


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_completion: ScriptedCompletionClient | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        fake_reasoning: FakeReasoningClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        completion = fake_completion or ScriptedCompletionClient()
        tavily_client = fake_tavily or FakeTavilyClient(api_key=settings.search_api_key)
        reasoning_client = fake_reasoning or FakeReasoningClient()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            completion_client=completion,
            tavily_client=tavily_client,
            reasoning_client=reasoning_client,
            config_path=cfg_path,
        )
        return app, cfg_path, completion, tavily_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, completion, tavily_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_completion = completion  # type: ignore[attr-defined]
            http_client.fake_tavily = tavily_client  # type: ignore[attr-defined]
            yield http_client
