"""
Conversion Flow

Sequences the three stages of one submitted image:

    load     decode the uploaded bytes
    scale2x  nearest-neighbour 2x of the loaded image (reference output)
    upscale  tiled model upscale of the loaded image

A failed stage stops the chain; its Task carries the error and later stages
are never created. ``run()`` does not raise stage errors.
"""

import asyncio
import time
import uuid
from enum import Enum
from typing import Dict, List, Optional, Set

from tilescale.core.config import settings
from tilescale.core.logging import LogContext, get_logger
from tilescale.core.metrics import (
    record_conversion_finished,
    record_conversion_started,
    record_stage_latency
)
from tilescale.engine.image import ImageBuffer
from tilescale.engine.observable import Observable
from tilescale.engine.patch import Upscaler
from tilescale.engine.resample import upsample
from tilescale.engine.task import Task, TaskStatus
from tilescale.engine.tiling import UpscaleTask

logger = get_logger(__name__)


class Stage(str, Enum):
    """Conversion stages, in execution order."""
    LOAD = "load"
    SCALE2X = "scale2x"
    UPSCALE = "upscale"


STAGE_ORDER = (Stage.LOAD, Stage.SCALE2X, Stage.UPSCALE)


def generate_conversion_id() -> str:
    return uuid.uuid4().hex[:12]


class ConversionFlow(Observable):
    """One submitted image moving through load -> scale2x -> upscale."""

    def __init__(
        self,
        data: bytes,
        upscaler: Upscaler,
        owner: Optional["ConversionList"] = None,
        filename: Optional[str] = None,
        conversion_id: Optional[str] = None,
        upscale_options: Optional[dict] = None
    ):
        super().__init__()
        self.id = conversion_id or generate_conversion_id()
        self.filename = filename
        self.upscaler = upscaler
        self.owner = owner
        self.upscale_options = upscale_options or {}
        self._data = data

        self._tasks: Dict[Stage, Optional[Task]] = {stage: None for stage in STAGE_ORDER}
        self.current_stage: Optional[Stage] = None
        self.selected_stage: Stage = Stage.LOAD
        self.running = False
        self._started = False

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def get_task(self, stage: Stage) -> Optional[Task]:
        return self._tasks[Stage(stage)]

    @property
    def load_task(self) -> Optional[Task]:
        return self._tasks[Stage.LOAD]

    @property
    def scale2x_task(self) -> Optional[Task]:
        return self._tasks[Stage.SCALE2X]

    @property
    def upscale_task(self) -> Optional[UpscaleTask]:
        return self._tasks[Stage.UPSCALE]

    @property
    def can_close(self) -> bool:
        return not self.running

    @property
    def all_finished(self) -> bool:
        return all(
            task is not None and task.status == TaskStatus.SUCCESS
            for task in self._tasks.values()
        )

    @property
    def failed_stage(self) -> Optional[Stage]:
        for stage in STAGE_ORDER:
            task = self._tasks[stage]
            if task is not None and task.status == TaskStatus.FAILURE:
                return stage
        return None

    def select_stage(self, stage: Stage):
        """Change the displayed stage; never affects execution."""
        self.selected_stage = Stage(stage)
        self._notify()

    def close(self) -> bool:
        """Ask the owning list to drop this flow. Returns True if it was removed."""
        if self.owner is None:
            return False
        return self.owner.close_conversion(self)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def run(self):
        """Run the stages once; later calls return without doing anything."""
        if self._started:
            return
        self._started = True
        self.running = True
        self._notify()
        record_conversion_started()
        start_time = time.time()

        with LogContext(conversion_id=self.id):
            logger.info("conversion_started", filename=self.filename, input_size=len(self._data))
            try:
                loaded = await self._run_stage(Stage.LOAD, Task(self._load, name=Stage.LOAD.value))
                if loaded is None:
                    return
                scaled = await self._run_stage(
                    Stage.SCALE2X,
                    Task(lambda: self._scale2x(loaded), name=Stage.SCALE2X.value)
                )
                if scaled is None:
                    return
                await self._run_stage(
                    Stage.UPSCALE,
                    UpscaleTask(self.upscaler, loaded, **self.upscale_options)
                )
            finally:
                self.running = False
                failed = self.failed_stage
                if failed is None and self.all_finished:
                    record_conversion_finished("completed")
                else:
                    record_conversion_finished("failed", failure_stage=failed.value if failed else "none")
                logger.info(
                    "conversion_finished",
                    all_finished=self.all_finished,
                    failed_stage=failed.value if failed else None,
                    duration_ms=int((time.time() - start_time) * 1000)
                )
                self._notify()

    async def _run_stage(self, stage: Stage, task: Task) -> Optional[ImageBuffer]:
        """Register and run one stage; returns its result or None on failure."""
        self._tasks[stage] = task
        self.current_stage = stage
        task.subscribe(self._on_task_changed)
        self._notify()

        with LogContext(stage=stage.value):
            logger.info("stage_started")
            start_time = time.time()
            state = await task.run()
            duration = time.time() - start_time
            duration_ms = int(duration * 1000)
            record_stage_latency(stage.value, state.kind.value, duration)

            if state.kind == TaskStatus.FAILURE:
                logger.error(
                    "stage_failed",
                    duration_ms=duration_ms,
                    error=str(state.error),
                    error_type=type(state.error).__name__
                )
                return None

            logger.info("stage_completed", duration_ms=duration_ms)
            return state.result

    async def _load(self) -> ImageBuffer:
        image = ImageBuffer.decode(self._data)
        logger.info("image_loaded", width=image.width, height=image.height, channels=image.channels)
        return image

    async def _scale2x(self, image: ImageBuffer) -> ImageBuffer:
        factor = self.upscale_options.get("scale") or settings.PRESCALE_FACTOR
        return ImageBuffer.from_tensor(upsample(image.pixels, factor))

    def _on_task_changed(self, task: Task):
        self._notify()

    def __repr__(self) -> str:
        return f"ConversionFlow(id={self.id!r}, current_stage={self.current_stage}, running={self.running})"


class ConversionList(Observable):
    """Conversions, newest first."""

    def __init__(self):
        super().__init__()
        self._conversions: List[ConversionFlow] = []
        self._background: Set["asyncio.Task"] = set()

    @property
    def conversions(self) -> List[ConversionFlow]:
        return list(self._conversions)

    def get(self, conversion_id: str) -> Optional[ConversionFlow]:
        for conversion in self._conversions:
            if conversion.id == conversion_id:
                return conversion
        return None

    def start_conversion(
        self,
        data: bytes,
        upscaler: Upscaler,
        filename: Optional[str] = None,
        upscale_options: Optional[dict] = None
    ) -> ConversionFlow:
        """Register a new flow at the front of the list and start it."""
        conversion = ConversionFlow(
            data,
            upscaler,
            owner=self,
            filename=filename,
            upscale_options=upscale_options
        )
        self._conversions.insert(0, conversion)
        self._notify()

        runner = asyncio.ensure_future(conversion.run())
        self._background.add(runner)
        runner.add_done_callback(self._background.discard)
        return conversion

    def close_conversion(self, conversion: ConversionFlow) -> bool:
        if conversion not in self._conversions:
            return False
        if not conversion.can_close:
            return False
        self._conversions = [c for c in self._conversions if c is not conversion]
        self._notify()
        logger.info("conversion_closed", conversion_id=conversion.id)
        return True

    async def wait_all(self):
        """Wait for every started flow to finish."""
        if self._background:
            await asyncio.gather(*self._background)
