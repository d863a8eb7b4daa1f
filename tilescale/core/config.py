"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Tilescale Tiled Upscaler"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True

    # ==========================================================================
    # Tiling Settings
    # ==========================================================================
    # Output tile edge; upscaler input tiles are twice this on each axis
    PATCH_SIZE: int = 32
    # Padded dimensions are rounded up to a multiple of this, plus one patch
    SIZE_FACTOR: int = 64
    # Nearest down/up resample factor used to normalize block phase after padding
    ALIGN_FACTOR: int = 2
    # Nearest-neighbour factor for the scale2x stage and preprocessing
    PRESCALE_FACTOR: int = 2
    # Border fill policy: "edge" (replicate outermost pixels) or "constant" (zeros)
    PAD_MODE: str = "edge"

    MAX_IMAGE_SIZE_BYTES: int = 10485760  # 10MB
    # Decoded width * height limit, checked from the header before decoding
    MAX_IMAGE_PIXELS: int = 16777216  # 4096 x 4096

    # ==========================================================================
    # Upscaler Backend
    # ==========================================================================
    UPSCALER_BACKEND: str = "passthrough"  # passthrough, remote
    UPSCALER_SIMULATED_DELAY_SECONDS: float = 0.0

    # Remote model server
    UPSCALER_API_URL: str = "http://localhost:8501/v1/upscale"
    UPSCALER_API_KEY: Optional[str] = None
    UPSCALER_TIMEOUT_SECONDS: float = 60.0

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://localhost:8000"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
