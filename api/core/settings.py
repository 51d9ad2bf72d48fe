"""
Process-wide configuration, read from the environment once at startup.

`load_settings()` is called from the FastAPI lifespan. Missing credentials
raise immediately so a misconfigured deployment never starts serving.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

DEFAULT_CLOUDINARY_FOLDER = "masters-academy"
DEFAULT_CONNECT_TIMEOUT_S = 5.0
DEFAULT_BLOB_TIMEOUT_S = 30.0
DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024  # 5 MiB
DEFAULT_ALLOWED_FORMATS = ("jpg", "jpeg", "png", "gif", "webp", "svg")
DEFAULT_CORS_ORIGINS = ("http://localhost:3000", "http://localhost:5173")

REQUIRED_VARS = (
    "DATABASE_URL",
    "CLOUDINARY_CLOUD_NAME",
    "CLOUDINARY_API_KEY",
    "CLOUDINARY_API_SECRET",
)


@dataclass(frozen=True)
class Settings:
    database_url: str
    cloudinary_cloud_name: str
    cloudinary_api_key: str
    cloudinary_api_secret: str = field(repr=False)
    cloudinary_folder: str = DEFAULT_CLOUDINARY_FOLDER
    connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S
    blob_timeout_s: float = DEFAULT_BLOB_TIMEOUT_S
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    allowed_formats: tuple[str, ...] = DEFAULT_ALLOWED_FORMATS
    log_level: str = "INFO"


def _env_str(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip() or default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise RuntimeError(f"Invalid {name}. It must be a number.")
    if value <= 0:
        raise RuntimeError(f"Invalid {name}. It must be > 0.")
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"Invalid {name}. It must be an integer.")
    if value <= 0:
        raise RuntimeError(f"Invalid {name}. It must be > 0.")
    return value


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    items = tuple(part.strip() for part in raw.split(",") if part.strip())
    return items or default


def load_settings() -> Settings:
    missing = [name for name in REQUIRED_VARS if not os.environ.get(name, "").strip()]
    if missing:
        raise RuntimeError(f"Missing required configuration: {', '.join(missing)}.")

    return Settings(
        database_url=_env_str("DATABASE_URL"),
        cloudinary_cloud_name=_env_str("CLOUDINARY_CLOUD_NAME"),
        cloudinary_api_key=_env_str("CLOUDINARY_API_KEY"),
        cloudinary_api_secret=_env_str("CLOUDINARY_API_SECRET"),
        cloudinary_folder=_env_str("CLOUDINARY_FOLDER", DEFAULT_CLOUDINARY_FOLDER),
        connect_timeout_s=_env_float("DB_CONNECT_TIMEOUT_S", DEFAULT_CONNECT_TIMEOUT_S),
        blob_timeout_s=_env_float("CLOUDINARY_TIMEOUT_S", DEFAULT_BLOB_TIMEOUT_S),
        max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES),
        allowed_formats=tuple(
            fmt.lower() for fmt in _env_list("UPLOAD_ALLOWED_FORMATS", DEFAULT_ALLOWED_FORMATS)
        ),
        log_level=_env_str("LOG_LEVEL", "INFO").upper(),
    )


def cors_origins() -> list[str]:
    """
    Read separately from `load_settings()`: middleware is installed when the
    app object is built, before startup.
    """
    return list(_env_list("CORS_ORIGINS", DEFAULT_CORS_ORIGINS))
