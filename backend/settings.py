import os
from dataclasses import dataclass, field
from typing import List, Sequence

from dotenv import load_dotenv

from services.image_normalize import (
    ACCEPTED_IMAGE_TYPES,
    MAX_IMAGE_BYTES,
    MAX_IMAGE_HEIGHT,
    MAX_IMAGE_WIDTH,
    NormalizerConfig,
)

load_dotenv()


def _env_bool(key: str, default: bool = False) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if not value:
        return default
    return int(value)


def _env_list(key: str, default: Sequence[str] | None = None) -> List[str]:
    value = os.getenv(key)
    if not value:
        return list(default or [])
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(slots=True)
class Settings:
    max_image_width: int = _env_int("PINSTAR_MAX_IMAGE_WIDTH", MAX_IMAGE_WIDTH)
    max_image_height: int = _env_int("PINSTAR_MAX_IMAGE_HEIGHT", MAX_IMAGE_HEIGHT)
    max_image_bytes: int = _env_int("PINSTAR_MAX_IMAGE_BYTES", MAX_IMAGE_BYTES)
    # Raw upload ceiling, before normalization.
    max_upload_bytes: int = int(float(os.getenv("PINSTAR_MAX_UPLOAD_MB", "20")) * 1024 * 1024)
    upload_folder: str = os.getenv("PINSTAR_UPLOAD_FOLDER", "pins")
    cors_origins: List[str] = field(default_factory=list)
    port: int = int(os.getenv("PORT", "8000"))
    debug: bool = _env_bool("PINSTAR_DEBUG", False)

    def __post_init__(self):
        default_origins = [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
        self.cors_origins = _env_list("PINSTAR_ALLOWED_ORIGINS", default_origins)

    def normalizer_config(self) -> NormalizerConfig:
        return NormalizerConfig(
            max_width=self.max_image_width,
            max_height=self.max_image_height,
            max_bytes=self.max_image_bytes,
            accepted_types=ACCEPTED_IMAGE_TYPES,
        )


settings = Settings()
