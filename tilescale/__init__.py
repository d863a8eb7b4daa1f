"""Tilescale - tiled image upscaling service."""

__version__ = "1.0.0"
