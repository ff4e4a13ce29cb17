"""
Runtime configuration, read from the environment (and a local .env file).

    CERT_DATA_DIR          root for layouts/, uploads/, certificates/ and the template catalog (default ./data)
    CERT_JWT_SECRET        HS256 secret used to verify bearer tokens
    CERT_JWKS_URL          JWKS endpoint for RS256/ES256 bearer tokens
    CERT_AUTH_DISABLED     1/true/yes to skip token checks (local use only)
    CERT_IMAGE_PAGE_SIZE   page size for image templates: WIDTHxHEIGHT or "native"
    CERT_CORS_ORIGINS      comma separated list of allowed origins
    CERT_LOG_LEVEL         logging level name (default INFO)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_IMAGE_PAGE_SIZE = (800.0, 600.0)
_TRUE_VALUES = {"1", "true", "yes", "on"}


def parse_page_size(value: str | None) -> tuple[float, float] | None:
    """``"800x600"`` -> (800.0, 600.0); ``"native"`` -> None (use image size)."""
    if value is None or not value.strip():
        return DEFAULT_IMAGE_PAGE_SIZE
    cleaned = value.strip().lower()
    if cleaned == "native":
        return None
    try:
        width_text, height_text = cleaned.split("x", 1)
        width, height = float(width_text), float(height_text)
    except ValueError as exc:
        raise ValueError(f"Invalid page size '{value}'. Use WIDTHxHEIGHT or 'native'.") from exc
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid page size '{value}'. Width and height must be positive.")
    return (width, height)


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    jwt_secret: str = ""
    jwks_url: str = ""
    auth_disabled: bool = False
    image_page_size: tuple[float, float] | None = DEFAULT_IMAGE_PAGE_SIZE
    cors_origins: tuple[str, ...] = ("http://localhost:5173", "http://127.0.0.1:5173")
    log_level: str = "INFO"

    @property
    def layouts_dir(self) -> Path:
        return self.data_dir / "layouts"

    @property
    def templates_dir(self) -> Path:
        return self.data_dir / "uploads" / "templates"

    @property
    def fonts_dir(self) -> Path:
        return self.data_dir / "uploads" / "fonts"

    @property
    def certificates_dir(self) -> Path:
        return self.data_dir / "certificates"

    @property
    def template_catalog_path(self) -> Path:
        return self.data_dir / "template_catalog.json"

    def ensure_directories(self) -> None:
        for directory in (self.layouts_dir, self.templates_dir, self.fonts_dir, self.certificates_dir):
            directory.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        origins = os.environ.get("CERT_CORS_ORIGINS", "")
        return cls(
            data_dir=Path(os.environ.get("CERT_DATA_DIR", "data")).resolve(),
            jwt_secret=os.environ.get("CERT_JWT_SECRET", ""),
            jwks_url=os.environ.get("CERT_JWKS_URL", "").rstrip("/"),
            auth_disabled=os.environ.get("CERT_AUTH_DISABLED", "").strip().lower() in _TRUE_VALUES,
            image_page_size=parse_page_size(os.environ.get("CERT_IMAGE_PAGE_SIZE")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()) or cls.cors_origins,
            log_level=os.environ.get("CERT_LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
