"""
Tiled Upscale Engine

Three-stage async conversion:
1. Load - Decode the submitted image
2. Scale2x - Nearest-neighbour reference enlargement
3. Upscale - Tiled model upscaling with per-tile progress
"""
