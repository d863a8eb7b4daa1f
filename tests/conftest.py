import io

import numpy as np
import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image
from typing import AsyncGenerator

from tilescale.engine.image import ImageBuffer
from tilescale.main import app


def make_gradient(width: int, height: int, channels: int = 1) -> np.ndarray:
    """Deterministic HxWxC tensor where neighbouring pixels differ."""
    ys, xs = np.mgrid[0:height, 0:width]
    base = (xs * 7 + ys * 13) % 256
    return np.stack([(base + 31 * c) % 256 for c in range(channels)], axis=-1).astype(np.uint8)


def encode_png(tensor: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    if tensor.shape[2] == 1:
        Image.fromarray(tensor[:, :, 0]).save(buffer, format="PNG")
    else:
        Image.fromarray(tensor).save(buffer, format="PNG")
    return buffer.getvalue()


async def identity_upscaler(tile: ImageBuffer) -> ImageBuffer:
    return tile


@pytest.fixture
def gradient_image() -> ImageBuffer:
    return ImageBuffer.from_tensor(make_gradient(96, 96, channels=1))


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    # Run lifespan so app.state holds a fresh conversion list per test
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac


@pytest.fixture
def gradient():
    return make_gradient


@pytest.fixture
def png_bytes():
    return encode_png


@pytest.fixture
def identity():
    return identity_upscaler
