"""
Image Buffer

Immutable raster value backed by a read-only ``uint8`` numpy tensor of shape
``height x width x channels``. Every transform returns a new buffer.
"""

import io
import base64
from typing import Optional, Tuple, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from tilescale.core.config import settings
from tilescale.core.exceptions import DecodeError

# PIL modes kept as-is; everything else is converted to RGBA
_CHANNELS_BY_MODE = {"L": 1, "RGB": 3, "RGBA": 4}
_MODE_BY_CHANNELS = {1: "L", 3: "RGB", 4: "RGBA"}

PAD_MODES = ("edge", "constant")


class ImageBuffer:
    """Decoded raster image."""

    __slots__ = ("_pixels",)

    def __init__(self, pixels: np.ndarray):
        if pixels.ndim == 2:
            pixels = pixels[:, :, np.newaxis]
        if pixels.ndim != 3:
            raise ValueError(f"Expected a HxWxC tensor, got shape {pixels.shape}")
        if pixels.shape[2] not in _MODE_BY_CHANNELS:
            raise ValueError(f"Unsupported channel count: {pixels.shape[2]}")

        pixels = np.array(pixels, dtype=np.uint8, copy=True)
        pixels.setflags(write=False)
        self._pixels = pixels

    # -------------------------------------------------------------------------
    # Construction / conversion
    # -------------------------------------------------------------------------

    @classmethod
    def from_tensor(cls, tensor: np.ndarray) -> "ImageBuffer":
        return cls(tensor)

    def to_tensor(self) -> np.ndarray:
        """Return a writable copy of the pixel tensor."""
        return self._pixels.copy()

    @classmethod
    def from_pil(cls, image: Image.Image) -> "ImageBuffer":
        if image.mode not in _CHANNELS_BY_MODE:
            image = image.convert("RGBA")
        return cls(np.asarray(image, dtype=np.uint8))

    def to_pil(self) -> Image.Image:
        if self.channels == 1:
            return Image.fromarray(self._pixels[:, :, 0])
        return Image.fromarray(self._pixels)

    @classmethod
    def decode(
        cls,
        data: Union[bytes, io.IOBase],
        max_pixels: Optional[int] = None
    ) -> "ImageBuffer":
        """
        Decode encoded image bytes (or a binary file-like object).

        ``max_pixels`` defaults to ``MAX_IMAGE_PIXELS``; the header is checked
        against it before any pixel data is decoded.

        Raises:
            DecodeError: if the input is empty, too large or not a readable image.
        """
        if max_pixels is None:
            max_pixels = settings.MAX_IMAGE_PIXELS

        if isinstance(data, (bytes, bytearray)):
            if not data:
                raise DecodeError("Empty image payload")
            stream = io.BytesIO(data)
        else:
            stream = data

        try:
            with Image.open(stream) as image:
                width, height = image.size
                if width * height > max_pixels:
                    raise DecodeError(
                        f"Image is {width}x{height} pixels, more than the {max_pixels} allowed",
                        details={"width": width, "height": height, "max_pixels": max_pixels}
                    )
                image.load()
                return cls.from_pil(image)
        except Image.DecompressionBombError as e:
            raise DecodeError(f"Image exceeds the decoder pixel limit: {e}") from e
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            raise DecodeError(f"Could not decode image: {e}") from e

    def encode(self, format: str = "PNG") -> bytes:
        buffer = io.BytesIO()
        self.to_pil().save(buffer, format=format)
        return buffer.getvalue()

    def to_data_url(self) -> str:
        """Display string for the presentation layer."""
        encoded = base64.b64encode(self.encode("PNG")).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def pixels(self) -> np.ndarray:
        """Read-only view of the pixel tensor."""
        return self._pixels

    @property
    def width(self) -> int:
        return self._pixels.shape[1]

    @property
    def height(self) -> int:
        return self._pixels.shape[0]

    @property
    def channels(self) -> int:
        return self._pixels.shape[2]

    @property
    def size(self) -> Tuple[int, int]:
        return (self.width, self.height)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ImageBuffer):
            return NotImplemented
        return self._pixels.shape == other._pixels.shape and np.array_equal(self._pixels, other._pixels)

    __hash__ = None

    def __repr__(self) -> str:
        return f"ImageBuffer(width={self.width}, height={self.height}, channels={self.channels})"

    # -------------------------------------------------------------------------
    # Transforms
    # -------------------------------------------------------------------------

    def crop(self, x: int, y: int, width: int, height: int) -> "ImageBuffer":
        """Return the region [x, x+width) x [y, y+height)."""
        if width < 0 or height < 0:
            raise ValueError(f"Negative crop size: {width}x{height}")
        if x < 0 or y < 0 or x + width > self.width or y + height > self.height:
            raise ValueError(
                f"Crop ({x}, {y}, {width}, {height}) is outside a {self.width}x{self.height} image"
            )
        return ImageBuffer(self._pixels[y:y + height, x:x + width, :])

    def center_crop(self, width: int, height: int) -> "ImageBuffer":
        return self.crop((self.width - width) // 2, (self.height - height) // 2, width, height)

    def shrink(self, border: int) -> "ImageBuffer":
        """Trim ``border`` pixels from every side."""
        return self.crop(border, border, self.width - 2 * border, self.height - 2 * border)

    def pad(
        self,
        top: int,
        bottom: int,
        left: int,
        right: int,
        mode: str = "edge"
    ) -> "ImageBuffer":
        """
        Pad the spatial axes.

        ``edge`` repeats the outermost row/column, ``constant`` fills with zeros.
        """
        if min(top, bottom, left, right) < 0:
            raise ValueError("Padding must be non-negative")
        if mode not in PAD_MODES:
            raise ValueError(f"Unknown pad mode '{mode}', expected one of {PAD_MODES}")
        widths = ((top, bottom), (left, right), (0, 0))
        if mode == "constant":
            return ImageBuffer(np.pad(self._pixels, widths, mode="constant", constant_values=0))
        return ImageBuffer(np.pad(self._pixels, widths, mode="edge"))

    def composite(self, other: "ImageBuffer", x: int, y: int) -> "ImageBuffer":
        """Return a copy of this buffer with ``other`` written at (x, y)."""
        out = self.to_tensor()
        other.paste_into(out, x, y)
        return ImageBuffer(out)

    def paste_into(self, target: np.ndarray, x: int, y: int):
        """
        Write this buffer into a caller-owned HxWxC tensor at (x, y).

        Raises:
            ValueError: on a channel mismatch or if the region leaves ``target``.
        """
        height, width, channels = target.shape
        if channels != self.channels:
            raise ValueError(f"Channel mismatch: {self.channels} != {channels}")
        if x < 0 or y < 0 or x + self.width > width or y + self.height > height:
            raise ValueError(
                f"Cannot place {self.width}x{self.height} at ({x}, {y}) "
                f"in a {width}x{height} image"
            )
        target[y:y + self.height, x:x + self.width, :] = self._pixels

    @classmethod
    def blank(cls, width: int, height: int, channels: int) -> "ImageBuffer":
        return cls(np.zeros((height, width, channels), dtype=np.uint8))
