import asyncio
from unittest.mock import AsyncMock

import numpy as np
import pytest

from tilescale.core.exceptions import ConversionError, DecodeError
from tilescale.engine.conversion import ConversionFlow, ConversionList, Stage
from tilescale.engine.resample import upsample
from tilescale.engine.task import TaskStatus
from tilescale.engine.tiling import UpscaleTask


@pytest.mark.asyncio
async def test_flow_runs_all_stages(gradient, png_bytes, identity):
    tensor = gradient(96, 96, channels=1)
    flow = ConversionFlow(png_bytes(tensor), identity, filename="gradient.png")

    await flow.run()

    assert flow.all_finished
    assert not flow.running
    assert flow.can_close
    assert flow.current_stage == Stage.UPSCALE
    assert flow.failed_stage is None

    loaded = flow.load_task.state.result
    assert loaded.size == (96, 96)

    expected = upsample(tensor, 2)
    assert np.array_equal(flow.scale2x_task.state.result.pixels, expected)

    upscaled = flow.upscale_task.state.result
    assert upscaled.size == (192, 192)
    assert np.array_equal(upscaled.pixels, expected)
    assert isinstance(flow.upscale_task, UpscaleTask)
    # Upscale starts from the loaded image, not the 2x one
    assert flow.upscale_task.source is loaded


@pytest.mark.asyncio
async def test_load_failure_stops_the_flow(identity):
    flow = ConversionFlow(b"not an image at all", identity)

    await flow.run()

    assert flow.load_task.status == TaskStatus.FAILURE
    assert isinstance(flow.load_task.state.error, DecodeError)
    assert flow.scale2x_task is None
    assert flow.upscale_task is None
    assert flow.failed_stage == Stage.LOAD
    assert not flow.all_finished
    assert flow.can_close


@pytest.mark.asyncio
async def test_upscale_failure_leaves_earlier_stages_intact(gradient, png_bytes):
    upscaler = AsyncMock(side_effect=ConversionError("model offline"))
    flow = ConversionFlow(png_bytes(gradient(40, 40)), upscaler)

    await flow.run()

    assert flow.load_task.status == TaskStatus.SUCCESS
    assert flow.scale2x_task.status == TaskStatus.SUCCESS
    assert flow.upscale_task.status == TaskStatus.FAILURE
    assert flow.failed_stage == Stage.UPSCALE
    assert not flow.running
    upscaler.assert_awaited_once()


@pytest.mark.asyncio
async def test_stages_start_in_order_and_running_flag_is_published(gradient, png_bytes, identity):
    flow = ConversionFlow(png_bytes(gradient(20, 20)), identity)
    stages = []
    running = []

    def observe(f):
        running.append(f.running)
        if not stages or stages[-1] != f.current_stage:
            stages.append(f.current_stage)

    flow.subscribe(observe)
    await flow.run()

    assert [s for s in stages if s is not None] == [Stage.LOAD, Stage.SCALE2X, Stage.UPSCALE]
    assert running[0] is True
    assert running[-1] is False


@pytest.mark.asyncio
async def test_stage_selection_is_view_state_only(gradient, png_bytes, identity):
    flow = ConversionFlow(png_bytes(gradient(20, 20)), identity)
    assert flow.selected_stage == Stage.LOAD

    flow.select_stage("upscale")
    await flow.run()

    assert flow.selected_stage == Stage.UPSCALE
    assert flow.all_finished


@pytest.mark.asyncio
async def test_finished_flow_does_not_run_again(gradient, png_bytes):
    calls = 0

    async def counting(tile):
        nonlocal calls
        calls += 1
        return tile

    flow = ConversionFlow(png_bytes(gradient(20, 20)), counting)
    await flow.run()
    tasks = [flow.get_task(stage) for stage in Stage]
    first_calls = calls

    flow._data = b"garbage"
    await flow.run()

    assert calls == first_calls
    assert [flow.get_task(stage) for stage in Stage] == tasks
    assert flow.load_task.status == TaskStatus.SUCCESS
    assert flow.all_finished


@pytest.mark.asyncio
async def test_concurrent_runs_execute_the_stages_once(gradient, png_bytes, identity):
    upscaler = AsyncMock(side_effect=identity)
    flow = ConversionFlow(png_bytes(gradient(40, 40)), upscaler)

    await asyncio.gather(flow.run(), flow.run())

    assert flow.all_finished
    assert upscaler.await_count == 4


# =============================================================================
# Conversion List
# =============================================================================

@pytest.mark.asyncio
async def test_list_keeps_newest_first_and_starts_flows(gradient, png_bytes, identity):
    conversions = ConversionList()

    first = conversions.start_conversion(png_bytes(gradient(20, 20)), identity, filename="a.png")
    second = conversions.start_conversion(png_bytes(gradient(20, 20)), identity, filename="b.png")

    assert conversions.conversions == [second, first]
    assert conversions.get(first.id) is first
    assert conversions.get("missing") is None

    await conversions.wait_all()

    assert first.all_finished
    assert second.all_finished


@pytest.mark.asyncio
async def test_running_flow_cannot_be_closed(gradient, png_bytes):
    gate = asyncio.Event()

    async def blocked(tile):
        await gate.wait()
        return tile

    conversions = ConversionList()
    flow = conversions.start_conversion(png_bytes(gradient(20, 20)), blocked)
    await asyncio.sleep(0.01)

    assert flow.running
    assert not flow.can_close
    assert flow.close() is False
    assert flow in conversions.conversions

    gate.set()
    await conversions.wait_all()

    assert flow.close() is True
    assert conversions.conversions == []
    # Closing twice is a no-op
    assert flow.close() is False


def test_closing_unregistered_flow_is_a_noop(identity):
    conversions = ConversionList()
    stranger = ConversionFlow(b"", identity, owner=conversions)

    assert conversions.close_conversion(stranger) is False
    assert ConversionFlow(b"", identity).close() is False
