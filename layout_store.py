"""Layout records and the on-disk stores the renderer reads from.

Layouts are kept as one JSON file per layout under ``layouts/``; template
and font uploads live in their own directories and are addressed by the
opaque file names stored on the layout.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from render_errors import AssetNotFound
from text_layout import DEFAULT_FONT_SIZE

logger = logging.getLogger(__name__)

LAYOUT_ID_MAX_LENGTH = 50
FILE_SEGMENT_MAX_LENGTH = 60
TEMPLATE_SUFFIXES = frozenset({".pdf", ".png", ".jpg", ".jpeg"})
FONT_SUFFIXES = frozenset({".ttf", ".otf"})
TEMPLATE_MAX_BYTES = 50 * 1024 * 1024
FONT_MAX_BYTES = 10 * 1024 * 1024

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9\-_]")
_UNDERSCORE_RUNS = re.compile(r"_+")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class FontRef(BaseModel):
    name: str
    file: str


class TextField(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    x: float
    y: float
    font_size: float = Field(DEFAULT_FONT_SIZE, alias="fontSize")
    font_family: str = Field("", alias="fontFamily")
    color: str | None = "#000000"
    alignment: Literal["left", "center", "right"] = "left"
    bold: bool = False
    italic: bool = False

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Field name must not be empty.")
        return value

    @field_validator("font_size", mode="before")
    @classmethod
    def _default_font_size(cls, value: Any) -> Any:
        return DEFAULT_FONT_SIZE if value in (None, "", 0) else value

    @field_validator("font_family", mode="before")
    @classmethod
    def _default_font_family(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("alignment", mode="before")
    @classmethod
    def _default_alignment(cls, value: Any) -> Any:
        if value is None or value == "":
            return "left"
        return value.lower() if isinstance(value, str) else value


class Layout(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    layout_id: str = Field(alias="layoutId")
    layout_name: str = Field("", alias="layoutName")
    template_file: str = Field(alias="templateFile")
    fonts: list[FontRef] = Field(default_factory=list)
    fields: list[TextField] = Field(default_factory=list)
    confirmed: bool = False
    created_by: str | None = Field(None, alias="createdBy")
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=_utcnow, alias="updatedAt")

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------


def slugify_layout_id(layout_name: str) -> str:
    return _UNSAFE_CHARS.sub("_", layout_name.strip())[:LAYOUT_ID_MAX_LENGTH].lower()


def sanitize_segment(value: Any, fallback: str = "Value") -> str:
    """Make an untrusted value safe to use inside a download file name."""
    text = "" if value is None else str(value)
    cleaned = _UNSAFE_CHARS.sub("_", text.strip())
    cleaned = _UNDERSCORE_RUNS.sub("_", cleaned).strip("_")
    return cleaned[:FILE_SEGMENT_MAX_LENGTH] or fallback


def certificate_file_name(data: Mapping[str, Any], layout: Layout, saved: bool = False) -> str:
    person = sanitize_segment(data.get("Name"), fallback="Certificate")
    layout_part = sanitize_segment((layout.layout_id or "layout").lower())
    infix = "Layout_" if saved else ""
    return f"{person}_{infix}{layout_part}_Certificate.pdf"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class LayoutStoreError(Exception):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class LayoutNotFound(LayoutStoreError):
    status_code = 404


class LayoutConfirmed(LayoutStoreError):
    pass


class LayoutConflict(LayoutStoreError):
    status_code = 409


class InvalidLayout(LayoutStoreError):
    pass


class UploadRejected(LayoutStoreError):
    pass


# ---------------------------------------------------------------------------
# Layout store
# ---------------------------------------------------------------------------


def _validate_fields(fields: list[Any]) -> list[TextField]:
    if not fields:
        raise InvalidLayout("Template file and fields are required")
    validated = []
    for raw in fields:
        if isinstance(raw, TextField):
            validated.append(raw)
            continue
        if not isinstance(raw, Mapping) or not raw.get("name") or raw.get("x") is None or raw.get("y") is None:
            raise InvalidLayout("Each field must have name, x, and y coordinates")
        try:
            validated.append(TextField.model_validate(raw))
        except ValidationError as exc:
            raise InvalidLayout(f"Invalid field '{raw.get('name')}': {exc}") from exc
    return validated


def _validate_fonts(fonts: list[Any] | None) -> list[FontRef]:
    try:
        return [f if isinstance(f, FontRef) else FontRef.model_validate(f) for f in fonts or []]
    except ValidationError as exc:
        raise InvalidLayout(f"Invalid font list: {exc}") from exc


class LayoutStore:
    """JSON-file persistence for layouts.

    Confirmed layouts are frozen: update and delete are refused, and a new
    layout whose id collides with a confirmed one is rejected. The template
    file is the only thing that may still be swapped, through
    ``replace_template``.
    """

    def __init__(self, layouts_dir: Path) -> None:
        self.layouts_dir = Path(layouts_dir)
        self._lock = threading.Lock()

    def _path_for(self, layout_id: str) -> Path:
        if not layout_id or _UNSAFE_CHARS.search(layout_id):
            raise LayoutNotFound(f"Layout not found: {layout_id}")
        return self.layouts_dir / f"{layout_id}.json"

    def _read(self, path: Path) -> Layout:
        try:
            return Layout.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise LayoutStoreError(f"Stored layout {path.name} is unreadable: {exc}") from exc

    def _write(self, layout: Layout) -> None:
        self.layouts_dir.mkdir(parents=True, exist_ok=True)
        target = self._path_for(layout.layout_id)
        fd, temp_name = tempfile.mkstemp(suffix=".tmp", dir=self.layouts_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(layout.to_json_dict(), f, indent=2)
            os.replace(temp_name, target)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def find(self, layout_id: str) -> Layout | None:
        try:
            path = self._path_for(layout_id)
        except LayoutNotFound:
            return None
        if path.exists():
            return self._read(path)
        if not self.layouts_dir.exists():
            return None
        wanted = f"{layout_id.lower()}.json"
        for candidate in self.layouts_dir.glob("*.json"):
            if candidate.name.lower() == wanted:
                return self._read(candidate)
        return None

    def get(self, layout_id: str) -> Layout:
        layout = self.find(layout_id)
        if layout is None:
            raise LayoutNotFound(f"Layout not found: {layout_id}")
        return layout

    def list_layouts(self) -> list[Layout]:
        if not self.layouts_dir.exists():
            return []
        layouts = []
        for path in self.layouts_dir.glob("*.json"):
            try:
                layouts.append(self._read(path))
            except LayoutStoreError as exc:
                logger.warning("Skipping %s", exc)
        return sorted(layouts, key=lambda layout: layout.updated_at, reverse=True)

    def save_new(
        self,
        layout_name: str | None,
        template_file: str | None,
        fonts: list[Any] | None,
        fields: list[Any] | None,
        created_by: str | None = None,
    ) -> Layout:
        if not template_file:
            raise InvalidLayout("Template file and fields are required")
        validated_fields = _validate_fields(fields or [])
        if not layout_name or not layout_name.strip():
            raise InvalidLayout("Event name (layoutName) is required")

        layout_id = slugify_layout_id(layout_name)
        now = _utcnow()
        layout = Layout(
            layout_id=layout_id,
            layout_name=layout_name.strip(),
            template_file=template_file,
            fonts=_validate_fonts(fonts),
            fields=validated_fields,
            confirmed=False,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            existing = self.find(layout_id)
            if existing is not None and existing.confirmed:
                raise LayoutConflict(
                    f"A confirmed layout named '{layout_id}' already exists. Choose a different name."
                )
            if existing is not None:
                layout.created_at = existing.created_at
            self._write(layout)
        logger.info("Saved layout %s (%d field(s))", layout_id, len(validated_fields))
        return layout

    def update(
        self,
        layout_id: str,
        template_file: str | None = None,
        fonts: list[Any] | None = None,
        fields: list[Any] | None = None,
        created_by: str | None = None,
    ) -> Layout:
        with self._lock:
            layout = self.get(layout_id)
            if layout.confirmed:
                raise LayoutConfirmed("Cannot update confirmed layout. Create a new layout instead.")
            if template_file:
                layout.template_file = template_file
            if fonts is not None:
                layout.fonts = _validate_fonts(fonts)
            if fields is not None:
                layout.fields = _validate_fields(fields)
            if created_by and not layout.created_by:
                layout.created_by = created_by
            layout.updated_at = _utcnow()
            self._write(layout)
        return layout

    def confirm(self, layout_id: str) -> Layout:
        with self._lock:
            layout = self.get(layout_id)
            if not layout.confirmed:
                layout.confirmed = True
                layout.updated_at = _utcnow()
                self._write(layout)
        logger.info("Confirmed layout %s", layout.layout_id)
        return layout

    def delete(self, layout_id: str) -> None:
        with self._lock:
            layout = self.get(layout_id)
            if layout.confirmed:
                raise LayoutConfirmed("Cannot delete confirmed layout. Create a new layout instead.")
            self._path_for(layout.layout_id).unlink(missing_ok=True)

    def replace_template(self, layout_id: str, template_file: str) -> Layout:
        """Swap the background of a layout, confirmed or not."""
        if not template_file:
            raise InvalidLayout("Template file is required")
        with self._lock:
            layout = self.get(layout_id)
            layout.template_file = template_file
            layout.updated_at = _utcnow()
            self._write(layout)
        logger.info("Replaced template of layout %s with %s", layout.layout_id, template_file)
        return layout


# ---------------------------------------------------------------------------
# Asset store
# ---------------------------------------------------------------------------


class AssetStore:
    """Read/write access to uploaded templates and fonts."""

    def __init__(self, templates_dir: Path, fonts_dir: Path) -> None:
        self.templates_dir = Path(templates_dir)
        self.fonts_dir = Path(fonts_dir)

    @staticmethod
    def _resolve(directory: Path, file_name: str, kind: str) -> Path:
        safe_name = Path(file_name or "").name
        path = directory / safe_name
        if not safe_name or not path.is_file():
            raise AssetNotFound(kind, file_name or "")
        return path

    def resolve_background_path(self, file_name: str) -> Path:
        return self._resolve(self.templates_dir, file_name, "template")

    def resolve_font_path(self, file_name: str) -> Path:
        return self._resolve(self.fonts_dir, file_name, "font")

    @staticmethod
    def _store(
        directory: Path,
        original_name: str,
        contents: bytes,
        allowed: frozenset[str],
        max_bytes: int,
        kind: str,
    ) -> dict[str, Any]:
        suffix = Path(original_name or "").suffix.lower()
        if suffix not in allowed:
            allowed_list = ", ".join(sorted(allowed))
            raise UploadRejected(f"Invalid file type for {kind}. Allowed: {allowed_list}. Got: {suffix or 'none'}")
        if len(contents) > max_bytes:
            raise UploadRejected(f"{kind.capitalize()} file exceeds {max_bytes // (1024 * 1024)} MB.")
        if not contents:
            raise UploadRejected(f"{kind.capitalize()} file is empty.")

        directory.mkdir(parents=True, exist_ok=True)
        stored_name = f"{uuid.uuid4().hex}{suffix}"
        (directory / stored_name).write_bytes(contents)
        logger.info("Stored %s upload %s as %s", kind, original_name, stored_name)
        return {
            "fileName": stored_name,
            "originalName": original_name,
            "size": len(contents),
            "uploadedAt": _utcnow().isoformat(),
        }

    def save_template(self, original_name: str, contents: bytes) -> dict[str, Any]:
        return self._store(self.templates_dir, original_name, contents, TEMPLATE_SUFFIXES, TEMPLATE_MAX_BYTES, "template")

    def save_font(self, original_name: str, contents: bytes) -> dict[str, Any]:
        return self._store(self.fonts_dir, original_name, contents, FONT_SUFFIXES, FONT_MAX_BYTES, "font")

    def list_fonts(self) -> list[dict[str, Any]]:
        if not self.fonts_dir.exists():
            return []
        fonts = []
        for path in sorted(self.fonts_dir.iterdir()):
            if path.suffix.lower() in FONT_SUFFIXES:
                fonts.append(
                    {
                        "file": path.name,
                        "type": path.suffix.lower().lstrip("."),
                        "size_kb": round(path.stat().st_size / 1024, 2),
                    }
                )
        return fonts
