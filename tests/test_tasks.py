import asyncio

import pytest

from moodchat.core.tasks import TaskScope


@pytest.mark.asyncio
async def test_periodic_task_survives_failing_ticks():
    scope = TaskScope("ticks")
    ticks = []

    async def tick():
        ticks.append(1)
        if len(ticks) <= 2:
            raise ValueError("malformed row")

    scope.every(0.01, tick, "poll")
    await asyncio.sleep(0.1)

    assert len(ticks) > 2
    assert scope.active_tasks == 1
    scope.close()
    await scope.wait_closed()
    assert scope.active_tasks == 0


@pytest.mark.asyncio
async def test_spawn_after_close_is_rejected():
    scope = TaskScope("closed")
    scope.close()

    with pytest.raises(RuntimeError):
        scope.spawn(asyncio.sleep(0), "late")
