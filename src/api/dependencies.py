"""
FastAPI Dependencies

Provides dependency injection for:
- Session registry (created in the app lifespan, lives on app.state)
- The state machine of the session named in the path
- Pipeline collaborators built at startup (segmenter, HTTP client)
"""

import httpx
from fastapi import Depends, Request

from src.core.logging import set_session_context
from src.core.storage import IStorage
from src.modules.session.models import SessionState
from src.modules.session.registry import SessionRegistry
from src.pipeline.stages import Segmenter
from src.pipeline.state_machine import PipelineStateMachine


def build_registry(
    segmenter: Segmenter,
    storage: IStorage,
    http_client: httpx.AsyncClient,
) -> SessionRegistry:
    """Registry whose sessions share one segmenter, storage and HTTP client."""

    def factory(state: SessionState) -> PipelineStateMachine:
        return PipelineStateMachine(
            state,
            segmenter=segmenter,
            storage=storage,
            http_client=http_client,
        )

    return SessionRegistry(factory)


def get_registry(request: Request) -> SessionRegistry:
    """Returns the registry from app state."""
    return request.app.state.registry


def get_machine(
    session_id: str,
    registry: SessionRegistry = Depends(get_registry)
) -> PipelineStateMachine:
    """Returns the state machine of the session in the path (404 if unknown)."""
    machine = registry.get(session_id)
    set_session_context(session_id)
    return machine
