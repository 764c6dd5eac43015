from pathlib import Path
from types import SimpleNamespace

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from turnpilot.config import AppSettings
from turnpilot.main import create_app
from turnpilot.orchestrator import ChatOrchestrator, build_services
from turnpilot.store import ConversationStore
from tests.fakes import FakeLMStudioClient, FakePubChemClient, FakeTavilyClient, FakeUrlReader


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        lm_studio_base_url="http://lm.test/v1",
        llm_api_key="test-key",
        chat_model="test-model",
        utility_model="test-utility",
        tavily_api_key=None,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def orchestrator_factory(tmp_path: Path):
    """ChatOrchestrator over fakes and an in-memory store, with an event recorder."""

    def _factory(
        *,
        fake_lm: FakeLMStudioClient | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        url_reader: FakeUrlReader | None = None,
        pubchem: FakePubChemClient | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        lm_client = fake_lm or FakeLMStudioClient()
        tavily = fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key)
        reader = url_reader or FakeUrlReader()
        chem = pubchem or FakePubChemClient()
        store = ConversationStore()
        events = []
        services = build_services(settings, store, lm_client, tavily, reader, chem)
        orchestrator = ChatOrchestrator(
            store, services, settings, emit=lambda cid, kind, payload: events.append((cid, kind, payload))
        )
        return SimpleNamespace(
            orchestrator=orchestrator,
            store=store,
            services=services,
            settings=settings,
            lm=lm_client,
            tavily=tavily,
            url_reader=reader,
            pubchem=chem,
            events=events,
        )

    return _factory


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_lm: FakeLMStudioClient | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        lm_client = fake_lm or FakeLMStudioClient()
        tavily_client = fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            lm_client=lm_client,
            tavily_client=tavily_client,
            url_reader=FakeUrlReader(),
            pubchem=FakePubChemClient(),
            config_path=cfg_path,
        )
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
