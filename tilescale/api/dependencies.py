"""
FastAPI Dependencies

The conversion list and the upscaler are process-wide singletons created in
the application lifespan and stored on ``app.state``.
"""

from fastapi import Request

from tilescale.core.exceptions import ConversionNotFoundError
from tilescale.engine.conversion import ConversionFlow, ConversionList
from tilescale.engine.patch import Upscaler


def get_conversion_list(request: Request) -> ConversionList:
    return request.app.state.conversions


def get_upscaler(request: Request) -> Upscaler:
    return request.app.state.upscaler


def get_conversion(conversion_id: str, request: Request) -> ConversionFlow:
    conversion = get_conversion_list(request).get(conversion_id)
    if conversion is None:
        raise ConversionNotFoundError(conversion_id)
    return conversion
