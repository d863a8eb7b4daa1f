"""
Conversions Endpoint

POST   /api/v1/conversions                          - Upload an image and start a conversion
GET    /api/v1/conversions                          - List conversions, newest first
GET    /api/v1/conversions/{id}                     - Conversion state with stages and tiles
PUT    /api/v1/conversions/{id}/selected-stage      - Change the displayed stage
DELETE /api/v1/conversions/{id}                     - Close a finished conversion
GET    /api/v1/conversions/{id}/stages/{stage}/image - PNG of a finished stage
GET    /api/v1/conversions/{id}/preview             - PNG of the live tile preview

Stage ids are ``load``, ``scale2x`` and ``upscale``; ``scale2x`` is the
pre-scale stage (nearest-neighbour 2x of the loaded image).
"""

from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile

from tilescale.api.dependencies import get_conversion, get_conversion_list, get_upscaler
from tilescale.api.schemas import (
    ConversionListResponse,
    ConversionSnapshot,
    SelectStageRequest,
    snapshot_conversion
)
from tilescale.core.config import settings
from tilescale.core.exceptions import ConversionBusyError
from tilescale.core.logging import get_logger
from tilescale.engine.conversion import ConversionFlow, ConversionList, Stage
from tilescale.engine.patch import Upscaler
from tilescale.engine.task import TaskStatus

MAX_IMAGE_SIZE_BYTES = settings.MAX_IMAGE_SIZE_BYTES
MAX_IMAGE_SIZE_MB = MAX_IMAGE_SIZE_BYTES / (1024 * 1024)

logger = get_logger(__name__)
router = APIRouter()


@router.post("", response_model=ConversionSnapshot, status_code=201)
async def create_conversion(
    file: UploadFile = File(...),
    conversions: ConversionList = Depends(get_conversion_list),
    upscaler: Upscaler = Depends(get_upscaler)
):
    """
    Start a conversion for an uploaded image.

    The conversion runs in the background; poll GET /conversions/{id}.
    A file that is not an image is accepted here and fails in the load stage.
    """
    data = await file.read()

    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(data) > MAX_IMAGE_SIZE_BYTES:
        raise HTTPException(
            status_code=400,
            detail=(
                f"Image size ({len(data) / (1024 * 1024):.2f}MB) exceeds maximum allowed "
                f"size ({MAX_IMAGE_SIZE_MB:.0f}MB)"
            )
        )

    conversion = conversions.start_conversion(data, upscaler, filename=file.filename)
    logger.info(
        "conversion_submitted",
        conversion_id=conversion.id,
        filename=file.filename,
        size_bytes=len(data)
    )
    return snapshot_conversion(conversion)


@router.get("", response_model=ConversionListResponse)
async def list_conversions(conversions: ConversionList = Depends(get_conversion_list)):
    items = [snapshot_conversion(c) for c in conversions.conversions]
    return ConversionListResponse(conversions=items, total=len(items))


@router.get("/{conversion_id}", response_model=ConversionSnapshot)
async def get_conversion_status(conversion: ConversionFlow = Depends(get_conversion)):
    return snapshot_conversion(conversion)


@router.put("/{conversion_id}/selected-stage", response_model=ConversionSnapshot)
async def select_stage(
    request: SelectStageRequest,
    conversion: ConversionFlow = Depends(get_conversion)
):
    conversion.select_stage(request.stage)
    return snapshot_conversion(conversion)


@router.delete("/{conversion_id}", status_code=204)
async def close_conversion(conversion: ConversionFlow = Depends(get_conversion)):
    if not conversion.close():
        raise ConversionBusyError(conversion.id)
    return Response(status_code=204)


@router.get("/{conversion_id}/stages/{stage}/image")
async def get_stage_image(stage: Stage, conversion: ConversionFlow = Depends(get_conversion)):
    task = conversion.get_task(stage)
    if task is None or task.status != TaskStatus.SUCCESS:
        raise HTTPException(
            status_code=404,
            detail=f"Stage '{stage.value}' has no image yet"
        )
    return Response(content=task.state.result.encode("PNG"), media_type="image/png")


@router.get("/{conversion_id}/preview")
async def get_preview(conversion: ConversionFlow = Depends(get_conversion)):
    task = conversion.upscale_task
    preview = task.render_preview() if task is not None else None
    if preview is None:
        raise HTTPException(status_code=404, detail="Preview is not available yet")
    return Response(content=preview.encode("PNG"), media_type="image/png")
