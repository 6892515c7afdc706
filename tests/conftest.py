from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from llamune.config import AppSettings
from llamune.main import create_app
from tests.fakes import FakeOllamaClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        ollama_base_url="http://ollama.test",
        default_model="test-model",
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=3000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(*, fake_llm: FakeOllamaClient | None = None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        llm_client = fake_llm or FakeOllamaClient()
        app = create_app(settings, llm_client=llm_client)
        return app, llm_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, llm_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_llm = llm_client  # type: ignore[attr-defined]
            yield http_client
