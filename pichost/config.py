#config.py
import os
from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict


class ImageEncoding(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    AVIF = "avif"
    JPEG_XL = "jxl"

    @property
    def extension(self) -> str:
        return {
            ImageEncoding.JPEG: "jpg",
            ImageEncoding.PNG: "png",
            ImageEncoding.AVIF: "avif",
            ImageEncoding.JPEG_XL: "jxl",
        }[self]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")
    # Application Settings
    APP_NAME: str = "pichost"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = int(os.environ.get("PORT", 8000))

    # Database Settings
    DATA_DIR: str = os.environ.get("DATA_DIR", ".")
    # Empty means <DATA_DIR>/db.sqlite
    DATABASE_URL: Optional[str] = None
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: float = 30.0

    # Image Library Settings
    IMAGE_DIR: str = "images"
    IMAGE_PIXEL_SIZE: int = 1280
    THUMB_PIXEL_SIZE: int = 256
    IMAGE_ENCODING: ImageEncoding = ImageEncoding.JPEG
    IMAGE_ENCODING_QUALITY: int = 90

    # File Upload Settings
    UPLOAD_BYTES_MAX: int = 100 * 1024 * 1024  # 100MB
    UPLOAD_CHUNK_SIZE: int = 64 * 1024

    # Transcoder Settings ("magick" or "pillow")
    TRANSCODER: str = "magick"
    MAGICK_BINARY: str = "magick"

    # Session Settings
    SESSION_LIFE_TIME_SEC: int = 30 * 24 * 3600  # 30 days

    # Logging Settings
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @model_validator(mode="after")
    def _default_database_url(self) -> "Settings":
        if not self.DATABASE_URL:
            db_path = os.path.join(self.DATA_DIR, "db.sqlite")
            self.DATABASE_URL = f"sqlite:///{db_path}"
        return self

    @property
    def image_extension(self) -> str:
        return self.IMAGE_ENCODING.extension


@lru_cache()
def get_settings() -> Settings:
    return Settings()

settings: Settings = get_settings()
