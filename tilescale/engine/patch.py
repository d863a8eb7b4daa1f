"""
Patch Upscale Task

Runs one oversized tile through the upscaler and trims the border the model
needed for context.
"""

from typing import Awaitable, Callable

from tilescale.core.exceptions import ConversionError
from tilescale.core.metrics import record_tile
from tilescale.engine.image import ImageBuffer
from tilescale.engine.task import Task

Upscaler = Callable[[ImageBuffer], Awaitable[ImageBuffer]]


class PatchUpscaleTask(Task[ImageBuffer]):
    """
    Upscale one tile.

    Args:
        upscaler: async capability, ImageBuffer -> ImageBuffer of the same size
        source: input tile, ``2 * patch_size`` on each axis
        patch_size: edge of the produced tile
        original: ``patch_size`` square tile shown until the result exists
        position: (row, col) of the tile in its grid
    """

    def __init__(
        self,
        upscaler: Upscaler,
        source: ImageBuffer,
        patch_size: int,
        original: ImageBuffer,
        position=(0, 0)
    ):
        super().__init__(name=f"patch[{position[0]},{position[1]}]")
        self.upscaler = upscaler
        self.source = source
        self.patch_size = patch_size
        self.original = original
        self.position = position

    async def execute(self) -> ImageBuffer:
        try:
            upscaled = await self.upscaler(self.source)
        except ConversionError:
            record_tile("failure")
            raise
        except Exception as e:
            record_tile("failure")
            raise ConversionError(
                f"Upscaler failed on tile {self.position}: {e}",
                details={"row": self.position[0], "col": self.position[1]}
            ) from e

        if upscaled.size != self.source.size or upscaled.channels != self.source.channels:
            record_tile("failure")
            raise ConversionError(
                f"Upscaler returned {upscaled!r} for a {self.source!r} tile",
                details={"row": self.position[0], "col": self.position[1]}
            )

        record_tile("success")
        return upscaled.shrink(self.patch_size // 2)
