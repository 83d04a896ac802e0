import pytest
import httpx
from httpx import AsyncClient, ASGITransport
from typing import AsyncGenerator

from src.core.storage import LocalStorage, get_storage
from src.modules.session.models import SessionState
from src.modules.session.registry import SessionRegistry
from src.pipeline.state_machine import PipelineStateMachine
from tests.helpers import FakeSegmenter, CartoonAPI, build_machine


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(base_path=str(tmp_path / "storage"))


@pytest.fixture
def segmenter() -> FakeSegmenter:
    return FakeSegmenter()


@pytest.fixture
def cartoon_api() -> CartoonAPI:
    return CartoonAPI()


@pytest.fixture
async def http_client(cartoon_api) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(cartoon_api.handler)) as client:
        yield client


@pytest.fixture
def machine(segmenter, storage, http_client) -> PipelineStateMachine:
    return build_machine(SessionState(), segmenter, storage, http_client)


@pytest.fixture
async def client(segmenter, storage, http_client) -> AsyncGenerator[AsyncClient, None]:
    from src.main import app

    # Trigger lifespan events (startup/shutdown), then swap in the fakes
    async with app.router.lifespan_context(app):
        app.state.registry = SessionRegistry(
            lambda state: build_machine(state, segmenter, storage, http_client)
        )
        app.dependency_overrides[get_storage] = lambda: storage
        try:
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
                yield ac
        finally:
            app.dependency_overrides.clear()
