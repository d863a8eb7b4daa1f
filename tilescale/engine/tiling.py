"""
Tiled Upscaling

Preprocesses the source image (2x nearest upsample, pad to alignment, phase
alignment), splits it into overlapping tiles, runs one PatchUpscaleTask per
tile and reassembles the trimmed results.

Geometry, with p = patch_size:

    preprocessed (w, h)   each axis = SIZE_FACTOR * ceil(x / SIZE_FACTOR) + p
    destination           (w - p, h - p), a grid of p x p cells
    tile (row, col)       2p x 2p input at (col * p, row * p); the upscaled
                          tile keeps its centre p x p, which lands at the
                          same origin in the destination
    result                destination centre-cropped to scale * source size
"""

import asyncio
import math
import time
from typing import Awaitable, Callable, Iterable, Iterator, List, Optional, Tuple

import numpy as np

from tilescale.core.config import settings
from tilescale.core.exceptions import TilingError
from tilescale.core.logging import get_logger
from tilescale.engine.image import ImageBuffer, PAD_MODES
from tilescale.engine.patch import PatchUpscaleTask, Upscaler
from tilescale.engine.resample import align, upsample
from tilescale.engine.task import TaskStatus, Task

logger = get_logger(__name__)


# =============================================================================
# Geometry
# =============================================================================

def padded_size(size: int, patch_size: int, size_factor: int) -> int:
    """Axis length after padding: next multiple of ``size_factor`` plus one patch."""
    return size_factor * math.ceil(size / size_factor) + patch_size


def pad_to_alignment(
    image: ImageBuffer,
    patch_size: int,
    size_factor: int,
    mode: str = "edge"
) -> ImageBuffer:
    """Pad symmetrically; the odd pixel, if any, goes after."""
    new_width = padded_size(image.width, patch_size, size_factor)
    new_height = padded_size(image.height, patch_size, size_factor)
    top = (new_height - image.height) // 2
    left = (new_width - image.width) // 2
    return image.pad(
        top=top,
        bottom=new_height - image.height - top,
        left=left,
        right=new_width - image.width - left,
        mode=mode
    )


def preprocess(
    image: ImageBuffer,
    patch_size: int,
    size_factor: int,
    align_factor: int,
    scale: int = 2,
    pad_mode: str = "edge"
) -> ImageBuffer:
    """Upsample, pad and align the source ahead of tiling."""
    scaled = ImageBuffer.from_tensor(upsample(image.pixels, scale))
    padded = pad_to_alignment(scaled, patch_size, size_factor, pad_mode)
    return ImageBuffer.from_tensor(align(padded.pixels, align_factor))


def grid_shape(width: int, height: int, patch_size: int) -> Tuple[int, int]:
    """(rows, cols) of the tile grid for a preprocessed image."""
    if (width - patch_size) % patch_size or (height - patch_size) % patch_size:
        raise TilingError(
            f"A {width}x{height} image does not split into {patch_size}px tiles",
            details={"width": width, "height": height, "patch_size": patch_size}
        )
    return (height - patch_size) // patch_size, (width - patch_size) // patch_size


def validate_tiling(patch_size: int, size_factor: int, align_factor: int, pad_mode: str):
    if patch_size <= 0 or patch_size % 2:
        raise TilingError(f"patch_size must be a positive even number, got {patch_size}")
    if size_factor <= 0 or size_factor % patch_size:
        raise TilingError(
            f"size_factor ({size_factor}) must be a positive multiple of patch_size ({patch_size})"
        )
    if align_factor <= 0 or patch_size % align_factor or size_factor % align_factor:
        raise TilingError(
            f"align_factor ({align_factor}) must divide patch_size and size_factor"
        )
    if pad_mode not in PAD_MODES:
        raise TilingError(f"Unknown pad mode '{pad_mode}', expected one of {PAD_MODES}")


# =============================================================================
# Tile Grid
# =============================================================================

class TileGrid:
    """Fixed rows x cols arena of tile slots; a slot is empty until its task exists."""

    def __init__(self, rows: int, cols: int):
        self.rows = rows
        self.cols = cols
        self._slots: List[List[Optional[PatchUpscaleTask]]] = [
            [None] * cols for _ in range(rows)
        ]

    def __getitem__(self, position: Tuple[int, int]) -> Optional[PatchUpscaleTask]:
        row, col = position
        return self._slots[row][col]

    def place(self, row: int, col: int, task: PatchUpscaleTask):
        if self._slots[row][col] is not None:
            raise TilingError(f"Tile slot ({row}, {col}) is already occupied")
        self._slots[row][col] = task

    def positions(self) -> Iterator[Tuple[int, int]]:
        """Row-major slot positions."""
        for row in range(self.rows):
            for col in range(self.cols):
                yield row, col

    def tasks(self) -> Iterator[PatchUpscaleTask]:
        for row, col in self.positions():
            task = self._slots[row][col]
            if task is not None:
                yield task

    def to_rows(self) -> List[List[Optional[PatchUpscaleTask]]]:
        return [list(row) for row in self._slots]

    @property
    def total(self) -> int:
        return self.rows * self.cols

    @property
    def completed(self) -> int:
        return sum(1 for task in self.tasks() if task.status == TaskStatus.SUCCESS)


# =============================================================================
# Dispatch
# =============================================================================

class TileDispatcher:
    """
    Bounded work queue for tiles.

    ``max_in_flight`` workers pull positions in row-major order. With the
    default of one, a tile is created only after the previous one finished,
    so upscaler calls for one image never overlap and progress only grows.
    The first failure stops workers from taking new positions; the earliest
    failed position's error is raised once in-flight tiles settle.
    """

    def __init__(self, max_in_flight: int = 1):
        if max_in_flight < 1:
            raise ValueError(f"max_in_flight must be >= 1, got {max_in_flight}")
        self.max_in_flight = max_in_flight

    async def dispatch(
        self,
        positions: Iterable[Tuple[int, int]],
        process: Callable[[int, int], Awaitable[None]]
    ):
        queue: "asyncio.Queue[Tuple[int, int]]" = asyncio.Queue()
        for position in positions:
            queue.put_nowait(position)

        failures: List[Tuple[Tuple[int, int], Exception]] = []

        async def worker():
            while not failures:
                try:
                    row, col = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    await process(row, col)
                except Exception as e:
                    failures.append(((row, col), e))
                    return

        await asyncio.gather(*(worker() for _ in range(self.max_in_flight)))

        if failures:
            _, error = min(failures, key=lambda failure: failure[0])
            raise error


# =============================================================================
# Upscale Task
# =============================================================================

class UpscaleTask(Task[ImageBuffer]):
    """
    Whole-image tiled upscale.

    Observers are notified when the grid is created, when each tile slot is
    filled, and on every tile state transition.

    Finished tiles are pasted into ``_canvas``, a private mutable tensor of
    the destination size. It never leaves the task; the result is an
    immutable ImageBuffer built from it once every tile succeeded.
    """

    def __init__(
        self,
        upscaler: Upscaler,
        source: ImageBuffer,
        patch_size: Optional[int] = None,
        size_factor: Optional[int] = None,
        align_factor: Optional[int] = None,
        scale: Optional[int] = None,
        pad_mode: Optional[str] = None,
        max_in_flight: int = 1
    ):
        super().__init__(name="upscale")
        self.upscaler = upscaler
        self.source = source
        self.patch_size = patch_size or settings.PATCH_SIZE
        self.size_factor = size_factor or settings.SIZE_FACTOR
        self.align_factor = align_factor or settings.ALIGN_FACTOR
        self.scale = scale or settings.PRESCALE_FACTOR
        self.pad_mode = pad_mode or settings.PAD_MODE
        validate_tiling(self.patch_size, self.size_factor, self.align_factor, self.pad_mode)

        self.dispatcher = TileDispatcher(max_in_flight)
        self.grid: Optional[TileGrid] = None
        self.preprocessed: Optional[ImageBuffer] = None
        self.preview: Optional[ImageBuffer] = None
        self._canvas: Optional[np.ndarray] = None

    @property
    def progress(self) -> float:
        """Percentage of successful tiles; NaN until the grid exists."""
        if self.grid is None or self.grid.total == 0:
            return math.nan
        return 100.0 * self.grid.completed / self.grid.total

    @property
    def output_size(self) -> Tuple[int, int]:
        return self.source.width * self.scale, self.source.height * self.scale

    async def execute(self) -> ImageBuffer:
        start_time = time.time()
        p = self.patch_size

        preprocessed = preprocess(
            self.source,
            patch_size=p,
            size_factor=self.size_factor,
            align_factor=self.align_factor,
            scale=self.scale,
            pad_mode=self.pad_mode
        )
        rows, cols = grid_shape(preprocessed.width, preprocessed.height, p)

        self.preprocessed = preprocessed
        self.preview = preprocessed.shrink(p // 2)
        self._canvas = np.zeros(
            (preprocessed.height - p, preprocessed.width - p, preprocessed.channels),
            dtype=np.uint8
        )
        self.grid = TileGrid(rows, cols)
        self._notify()

        logger.info(
            "upscale_grid_ready",
            source_size=self.source.size,
            preprocessed_size=preprocessed.size,
            rows=rows,
            cols=cols,
            tiles=self.grid.total
        )

        await self.dispatcher.dispatch(self.grid.positions(), self._upscale_tile)

        result = ImageBuffer.from_tensor(self._canvas).center_crop(*self.output_size)

        logger.info(
            "upscale_tiles_completed",
            tiles=self.grid.total,
            output_size=result.size,
            duration_ms=int((time.time() - start_time) * 1000)
        )
        return result

    async def _upscale_tile(self, row: int, col: int):
        p = self.patch_size
        x, y = col * p, row * p

        tile = PatchUpscaleTask(
            self.upscaler,
            source=self.preprocessed.crop(x, y, 2 * p, 2 * p),
            patch_size=p,
            original=self.preview.crop(x, y, p, p),
            position=(row, col)
        )
        tile.subscribe(self._on_tile_changed)
        self.grid.place(row, col, tile)
        self._notify()

        try:
            upscaled = await tile.result()
        except Exception as e:
            logger.warning("tile_failed", row=row, col=col, error=str(e))
            raise

        upscaled.paste_into(self._canvas, x, y)

    def _on_tile_changed(self, tile: PatchUpscaleTask):
        self._notify()

    def render_preview(self) -> Optional[ImageBuffer]:
        """
        Preview with every created tile painted over the preprocessed image:
        the upscaled tile once it succeeded, its original otherwise.
        """
        if self.preview is None or self.grid is None:
            return None

        p = self.patch_size
        canvas = self.preview.to_tensor()
        for tile in self.grid.tasks():
            row, col = tile.position
            if tile.status == TaskStatus.SUCCESS:
                patch = tile.state.result
            else:
                patch = tile.original
            patch.paste_into(canvas, col * p, row * p)
        return ImageBuffer.from_tensor(canvas)
