import asyncio

import pytest

from src.pipeline.progress import ProgressEstimator, next_percent


def test_next_percent_schedule():
    values = []
    percent = 0
    for _ in range(80):
        percent = next_percent(percent)
        values.append(percent)

    # Fast phase: 3, 6, ... 30
    assert values[:10] == list(range(3, 31, 3))
    # Slow phase: +1 per tick up to the cap
    assert values[10:70] == list(range(31, 91))
    # Never exceeds the cap
    assert values[70:] == [90] * 10


def test_next_percent_custom_cap():
    assert next_percent(27, cap=28) == 28
    assert next_percent(28, cap=28) == 28


@pytest.mark.asyncio
async def test_estimator_stays_below_cap_while_pending():
    emitted = []
    estimator = ProgressEstimator(emitted.append, interval=0.001)

    estimator.start()
    await asyncio.sleep(0.3)
    estimator.cancel()

    assert emitted
    assert max(emitted) <= 90
    assert emitted == sorted(emitted)


@pytest.mark.asyncio
async def test_context_manager_forces_100_on_resolution():
    emitted = []

    async with ProgressEstimator(emitted.append, interval=0.001):
        await asyncio.sleep(0.02)

    assert emitted[-1] == 100
    assert all(value <= 90 for value in emitted[:-1])


@pytest.mark.asyncio
async def test_context_manager_forces_100_on_failure():
    emitted = []

    with pytest.raises(RuntimeError):
        async with ProgressEstimator(emitted.append, interval=0.001):
            raise RuntimeError("boom")

    assert emitted == [100]


@pytest.mark.asyncio
async def test_cancel_emits_nothing():
    emitted = []
    estimator = ProgressEstimator(emitted.append, interval=0.05)

    estimator.start()
    estimator.cancel()
    await asyncio.sleep(0.1)

    assert emitted == []
    assert not estimator.running


@pytest.mark.asyncio
async def test_schedule_reset_decays_to_zero():
    emitted = []
    estimator = ProgressEstimator(emitted.append, interval=0.001, decay_seconds=0.01)

    estimator.stop(final=100)
    await estimator.schedule_reset()

    assert emitted == [100, 0]
    assert estimator.percent == 0


@pytest.mark.asyncio
async def test_restart_cancels_pending_decay():
    emitted = []
    estimator = ProgressEstimator(emitted.append, interval=0.5, decay_seconds=0.02)

    estimator.stop(final=100)
    estimator.schedule_reset()
    estimator.start()
    await asyncio.sleep(0.05)
    estimator.cancel()

    assert 0 not in emitted
