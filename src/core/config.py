"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Background Remover & Cartoonizer"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True

    # ==========================================================================
    # Storage Settings
    # ==========================================================================
    # Background-removed previews and exported artifacts
    LOCAL_STORAGE_PATH: str = "./data/storage"

    # ==========================================================================
    # Intake Settings
    # ==========================================================================
    MAX_IMAGE_SIZE_BYTES: int = 10485760  # 10MB, checked after conversion
    HEIC_JPEG_QUALITY: int = 90

    # ==========================================================================
    # Pipeline Settings
    # ==========================================================================
    # Background removal (rembg, runs locally)
    REMBG_MODEL: str = "u2net"
    REMBG_PRELOAD: bool = False  # load the model at startup instead of first use

    # Cartoonize API
    STYLIZE_API_BASE_URL: str = "http://localhost:5000"
    STYLIZE_API_PATH: str = "/api/cartoonize"
    STYLIZE_TIMEOUT_SECONDS: float = 60.0

    # Downloading remote artifacts for export
    EXPORT_FETCH_TIMEOUT_SECONDS: float = 30.0

    # ==========================================================================
    # Progress Settings
    # ==========================================================================
    PROGRESS_TICK_SECONDS: float = 0.15
    PROGRESS_CAP: int = 90
    PROGRESS_DECAY_SECONDS: float = 1.2

    # ==========================================================================
    # Session Settings
    # ==========================================================================
    MAX_NOTIFICATIONS: int = 50

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

    @property
    def stylize_endpoint(self) -> str:
        """Full URL of the cartoonize endpoint."""
        return self.STYLIZE_API_BASE_URL.rstrip("/") + self.STYLIZE_API_PATH


# Global settings instance
settings = Settings()

# Ensure critical directories exist
Path(settings.LOCAL_STORAGE_PATH).mkdir(parents=True, exist_ok=True)
