from unittest.mock import AsyncMock

import numpy as np
import pytest

from tilescale.core.exceptions import ConversionError
from tilescale.engine.image import ImageBuffer
from tilescale.engine.patch import PatchUpscaleTask
from tilescale.engine.task import TaskStatus


@pytest.mark.asyncio
async def test_patch_trims_half_patch_border(gradient, identity):
    source = ImageBuffer.from_tensor(gradient(64, 64, channels=3))
    original = source.crop(16, 16, 32, 32)

    task = PatchUpscaleTask(identity, source, patch_size=32, original=original, position=(1, 2))
    result = await task.result()

    assert result.size == (32, 32)
    assert result == source.crop(16, 16, 32, 32)
    assert task.original is original
    assert task.name == "patch[1,2]"


@pytest.mark.asyncio
async def test_upscaler_error_becomes_conversion_error(gradient):
    source = ImageBuffer.from_tensor(gradient(64, 64))
    upscaler = AsyncMock(side_effect=RuntimeError("CUDA out of memory"))

    task = PatchUpscaleTask(upscaler, source, 32, source.crop(16, 16, 32, 32), position=(0, 3))
    state = await task.run()

    assert state.kind == TaskStatus.FAILURE
    assert isinstance(state.error, ConversionError)
    assert "CUDA out of memory" in state.error.message
    assert state.error.details == {"row": 0, "col": 3}
    upscaler.assert_awaited_once_with(source)


@pytest.mark.asyncio
async def test_conversion_error_passes_through(gradient):
    source = ImageBuffer.from_tensor(gradient(64, 64))
    error = ConversionError("model server rejected tile")
    upscaler = AsyncMock(side_effect=error)

    task = PatchUpscaleTask(upscaler, source, 32, source.crop(16, 16, 32, 32))
    state = await task.run()

    assert state.error is error


@pytest.mark.asyncio
async def test_wrong_sized_output_fails(gradient):
    source = ImageBuffer.from_tensor(gradient(64, 64))
    upscaler = AsyncMock(return_value=ImageBuffer.from_tensor(np.zeros((128, 128, 1), dtype=np.uint8)))

    task = PatchUpscaleTask(upscaler, source, 32, source.crop(16, 16, 32, 32))
    state = await task.run()

    assert state.kind == TaskStatus.FAILURE
    assert isinstance(state.error, ConversionError)
