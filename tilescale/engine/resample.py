"""
Nearest-neighbour resample primitives on HxWxC tensors.
"""

import numpy as np


def upsample(tensor: np.ndarray, factor: int) -> np.ndarray:
    """Integer scale-up: every pixel becomes a ``factor x factor`` block."""
    if factor < 1:
        raise ValueError(f"Upsample factor must be >= 1, got {factor}")
    if factor == 1:
        return tensor.copy()
    return np.repeat(np.repeat(tensor, factor, axis=0), factor, axis=1)


def downsample(tensor: np.ndarray, factor: int) -> np.ndarray:
    """Integer scale-down keeping the top-left pixel of each block."""
    if factor < 1:
        raise ValueError(f"Downsample factor must be >= 1, got {factor}")
    return tensor[::factor, ::factor].copy()


def align(tensor: np.ndarray, factor: int) -> np.ndarray:
    """
    Downsample then upsample at ``factor``.

    Snaps nearest-neighbour blocks back onto a ``factor`` grid; dimensions are
    preserved when they are multiples of ``factor``.
    """
    height, width = tensor.shape[:2]
    if height % factor or width % factor:
        raise ValueError(
            f"Cannot align a {width}x{height} tensor at factor {factor} without resizing"
        )
    return upsample(downsample(tensor, factor), factor)
