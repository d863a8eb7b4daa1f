"""
Snapshot Schemas

Read-only views of engine state for the presentation layer.
"""

import math
from typing import List, Optional

from pydantic import BaseModel, Field

from tilescale.engine.conversion import STAGE_ORDER, ConversionFlow, Stage
from tilescale.engine.task import Task, TaskStatus, describe_error
from tilescale.engine.tiling import UpscaleTask


class TileSnapshot(BaseModel):
    """One created tile."""
    row: int
    col: int
    status: TaskStatus


class UpscaleSnapshot(BaseModel):
    """Tile grid and progress of the upscale stage."""
    progress: Optional[float] = Field(None, description="Percent of finished tiles; null while unknown")
    rows: Optional[int] = None
    cols: Optional[int] = None
    patch_size: int
    tiles: List[List[Optional[TileSnapshot]]] = Field(default_factory=list)


class StageSnapshot(BaseModel):
    """State of one conversion stage."""
    stage: Stage
    status: Optional[TaskStatus] = Field(None, description="null until the stage starts")
    error: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    upscale: Optional[UpscaleSnapshot] = None


class ConversionSnapshot(BaseModel):
    """Full conversion state."""
    id: str
    filename: Optional[str] = None
    current_stage: Optional[Stage] = None
    selected_stage: Stage
    running: bool
    can_close: bool
    all_finished: bool
    stages: List[StageSnapshot]


class ConversionListResponse(BaseModel):
    conversions: List[ConversionSnapshot]
    total: int


class SelectStageRequest(BaseModel):
    stage: Stage


def snapshot_upscale(task: UpscaleTask) -> UpscaleSnapshot:
    progress = task.progress
    snapshot = UpscaleSnapshot(
        progress=None if math.isnan(progress) else progress,
        patch_size=task.patch_size
    )
    if task.grid is not None:
        snapshot.rows = task.grid.rows
        snapshot.cols = task.grid.cols
        snapshot.tiles = [
            [
                None if tile is None else TileSnapshot(row=row, col=col, status=tile.status)
                for col, tile in enumerate(cells)
            ]
            for row, cells in enumerate(task.grid.to_rows())
        ]
    return snapshot


def snapshot_stage(stage: Stage, task: Optional[Task]) -> StageSnapshot:
    snapshot = StageSnapshot(stage=stage)
    if task is None:
        return snapshot

    snapshot.status = task.status
    snapshot.error = describe_error(task.state)
    if task.status == TaskStatus.SUCCESS:
        snapshot.width = task.state.result.width
        snapshot.height = task.state.result.height
    if isinstance(task, UpscaleTask):
        snapshot.upscale = snapshot_upscale(task)
    return snapshot


def snapshot_conversion(conversion: ConversionFlow) -> ConversionSnapshot:
    return ConversionSnapshot(
        id=conversion.id,
        filename=conversion.filename,
        current_stage=conversion.current_stage,
        selected_stage=conversion.selected_stage,
        running=conversion.running,
        can_close=conversion.can_close,
        all_finished=conversion.all_finished,
        stages=[snapshot_stage(stage, conversion.get_task(stage)) for stage in STAGE_ORDER]
    )
