import asyncio

import pytest

from src.core.exceptions import SessionNotFoundError
from src.modules.session.models import PipelineState
from src.modules.session.registry import SessionRegistry
from tests.helpers import build_machine, make_source


@pytest.fixture
def registry(segmenter, storage, http_client) -> SessionRegistry:
    return SessionRegistry(
        lambda state: build_machine(state, segmenter, storage, http_client),
        max_notifications=3,
    )


def test_create_and_get(registry):
    machine = registry.create()

    assert machine.session_id in registry
    assert registry.get(machine.session_id) is machine
    assert len(registry) == 1
    assert machine.state.notifications.maxlen == 3


def test_create_with_explicit_id(registry):
    machine = registry.create("fixed-id")

    assert machine.session_id == "fixed-id"


def test_unknown_session(registry):
    with pytest.raises(SessionNotFoundError) as exc_info:
        registry.get("missing")

    assert exc_info.value.code == 404


@pytest.mark.asyncio
async def test_spawn_runs_stage_in_background(registry, segmenter):
    segmenter.gate = asyncio.Event()
    machine = registry.create()
    await machine.select_file(make_source())

    task = registry.spawn(machine.session_id, machine.launch_background_removal(), name="bg")
    assert registry.pending(machine.session_id) == {task}

    segmenter.gate.set()
    await registry.wait_idle(machine.session_id)

    assert machine.state.state == PipelineState.BG_READY
    assert registry.pending(machine.session_id) == set()


@pytest.mark.asyncio
async def test_spawned_task_failure_is_contained(registry):
    machine = registry.create()

    async def explode():
        raise RuntimeError("unexpected")

    registry.spawn(machine.session_id, explode(), name="explode")
    await registry.wait_idle(machine.session_id)

    assert registry.pending(machine.session_id) == set()


@pytest.mark.asyncio
async def test_notifications_are_bounded(registry):
    machine = registry.create()

    for _ in range(5):
        await machine.select_file(make_source())

    assert len(machine.state.drain_notifications()) == 3


@pytest.mark.asyncio
async def test_discard_resets_and_forgets(registry):
    machine = registry.create()
    await machine.select_file(make_source())
    await machine.remove_background()

    await registry.discard(machine.session_id)

    assert machine.session_id not in registry
    assert machine.state.background_removed is None
    with pytest.raises(SessionNotFoundError):
        await registry.discard(machine.session_id)


@pytest.mark.asyncio
async def test_shutdown_cancels_background_tasks(registry, segmenter):
    segmenter.gate = asyncio.Event()
    machine = registry.create()
    await machine.select_file(make_source())
    task = registry.spawn(machine.session_id, machine.launch_background_removal())

    await asyncio.sleep(0.01)
    await registry.shutdown()

    assert task.cancelled()
    assert len(registry) == 0
