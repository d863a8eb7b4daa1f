"""
Upscaler Backends

An upscaler is any async callable ``ImageBuffer -> ImageBuffer`` that keeps
the tile size (the pipeline has already enlarged the image; the model only
restores detail).

- PassthroughUpscaler: returns the tile unchanged (development/testing)
- RemoteUpscaler: sends the tile to a model server over HTTP
"""

import asyncio
import base64
import binascii
from typing import Optional

import httpx

from tilescale.core.config import settings
from tilescale.core.exceptions import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    ConversionError,
    DecodeError
)
from tilescale.core.logging import get_logger
from tilescale.core.metrics import record_upscaler_call
from tilescale.engine.image import ImageBuffer
from tilescale.engine.patch import Upscaler

logger = get_logger(__name__)


class PassthroughUpscaler:
    """Simulated model: waits ``delay_seconds`` and returns the tile as-is."""

    backend = "passthrough"

    def __init__(self, delay_seconds: float = 0.0):
        self.delay_seconds = delay_seconds

    async def __call__(self, tile: ImageBuffer) -> ImageBuffer:
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        record_upscaler_call(self.backend, "success")
        return tile


class RemoteUpscaler:
    """
    Model server client.

    Request:  POST {"image": <base64 PNG>, "width": w, "height": h}
    Response: {"image": <base64 PNG>} with the same dimensions
    """

    backend = "remote"

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
        circuit: Optional[CircuitBreaker] = None
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client
        self.circuit = circuit or CircuitBreaker("upscaler", failure_threshold=3, recovery_timeout=60)

    async def __call__(self, tile: ImageBuffer) -> ImageBuffer:
        if not self.circuit.can_execute():
            record_upscaler_call(self.backend, "rejected")
            raise CircuitBreakerOpenError("upscaler")

        payload = {
            "image": base64.b64encode(tile.encode("PNG")).decode("ascii"),
            "width": tile.width,
            "height": tile.height
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            self._fail(e)
            raise ConversionError("Upscaler request timed out", details={"url": self.url}) from e
        except httpx.HTTPError as e:
            self._fail(e)
            raise ConversionError(f"Upscaler request failed: {e}", details={"url": self.url}) from e

        if response.status_code != 200:
            error = ConversionError(
                f"Upscaler returned HTTP {response.status_code}",
                details={"url": self.url, "http_status": response.status_code}
            )
            self._fail(error)
            raise error

        try:
            encoded = response.json()["image"]
            upscaled = ImageBuffer.decode(base64.b64decode(encoded, validate=True))
        except (ValueError, KeyError, TypeError, binascii.Error, DecodeError) as e:
            self._fail(e)
            raise ConversionError(f"Upscaler response is not an image: {e}") from e

        self.circuit.record_success()
        record_upscaler_call(self.backend, "success")
        return upscaled

    def _fail(self, error: Exception):
        self.circuit.record_failure(error)
        record_upscaler_call(self.backend, "error")
        logger.warning("upscaler_call_failed", backend=self.backend, error=str(error))


def build_upscaler() -> Upscaler:
    """Create the upscaler configured by ``UPSCALER_BACKEND``."""
    backend = settings.UPSCALER_BACKEND.lower()
    if backend == "passthrough":
        return PassthroughUpscaler(settings.UPSCALER_SIMULATED_DELAY_SECONDS)
    if backend == "remote":
        return RemoteUpscaler(
            settings.UPSCALER_API_URL,
            api_key=settings.UPSCALER_API_KEY,
            timeout=settings.UPSCALER_TIMEOUT_SECONDS
        )
    raise ValueError(f"Unknown upscaler backend: {settings.UPSCALER_BACKEND}")
