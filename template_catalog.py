"""Catalog of predefined certificate templates.

A predefined template points at a background already present in the
templates directory, so a layout can be started from a known design
instead of an upload. The catalog is a single JSON file.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from layout_store import LayoutStoreError
from settings import Settings, configure_logging

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "general"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


DEFAULT_TEMPLATES: list[dict[str, str]] = [
    {
        "templateId": "template-kriya-event",
        "templateName": "Kriya Event Certificate",
        "description": "Certificate for Kriya Event participants",
        "fileName": "kriya-event.pdf",
        "category": "kriya",
    },
    {
        "templateId": "template-kriya-workshop",
        "templateName": "Kriya Workshop Certificate",
        "description": "Certificate for Kriya Workshop attendees",
        "fileName": "kriya-workshop.pdf",
        "category": "kriya",
    },
    {
        "templateId": "template-kriya-paper",
        "templateName": "Kriya Paper Presentation Certificate",
        "description": "Certificate for paper presentations at Kriya",
        "fileName": "kriya-paperpresentation.pdf",
        "category": "kriya",
    },
    {
        "templateId": "template-infinitum",
        "templateName": "Infinitum Certificate",
        "description": "Certificate for Infinitum event participants",
        "fileName": "infinitum.pdf",
        "category": "infinitum",
    },
]


class TemplateNotFound(LayoutStoreError):
    status_code = 404


class TemplateConflict(LayoutStoreError):
    status_code = 409


class InvalidTemplate(LayoutStoreError):
    pass


class PredefinedTemplate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    template_id: str = Field(alias="templateId")
    template_name: str = Field(alias="templateName")
    description: str = ""
    file_name: str = Field(alias="fileName")
    category: str = DEFAULT_CATEGORY
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=_utcnow, alias="updatedAt")

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def _build_template(
    template_id: str | None,
    template_name: str | None,
    file_name: str | None,
    description: str | None = None,
    category: str | None = None,
) -> PredefinedTemplate:
    template_id = (template_id or "").strip()
    template_name = (template_name or "").strip()
    file_name = (file_name or "").strip()
    if not template_id or not template_name or not file_name:
        raise InvalidTemplate("Missing required fields: templateId, templateName, fileName")
    if Path(file_name).name != file_name:
        raise InvalidTemplate(f"fileName must be a bare file name: {file_name}")
    return PredefinedTemplate(
        template_id=template_id,
        template_name=template_name,
        file_name=file_name,
        description=description or "",
        category=category or DEFAULT_CATEGORY,
    )


class TemplateCatalog:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read_all(self) -> list[PredefinedTemplate]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return [PredefinedTemplate.model_validate(item) for item in raw]
        except (json.JSONDecodeError, TypeError, ValidationError) as exc:
            raise LayoutStoreError(f"Template catalog {self.path.name} is unreadable: {exc}") from exc

    def _write_all(self, templates: list[PredefinedTemplate]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump([t.to_json_dict() for t in templates], f, indent=2)
            os.replace(temp_name, self.path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def list_templates(self) -> list[PredefinedTemplate]:
        """Newest first."""
        return sorted(self._read_all(), key=lambda t: t.created_at, reverse=True)

    def get(self, template_id: str) -> PredefinedTemplate:
        for template in self._read_all():
            if template.template_id == template_id:
                return template
        raise TemplateNotFound("Template not found")

    def create(
        self,
        template_id: str | None,
        template_name: str | None,
        file_name: str | None,
        description: str | None = None,
        category: str | None = None,
    ) -> PredefinedTemplate:
        template = _build_template(template_id, template_name, file_name, description, category)
        with self._lock:
            templates = self._read_all()
            if any(t.template_id == template.template_id for t in templates):
                raise TemplateConflict("Template with this ID already exists")
            templates.append(template)
            self._write_all(templates)
        logger.info("Added predefined template %s (%s)", template.template_id, template.file_name)
        return template

    def seed(self, entries: list[dict[str, Any]]) -> list[PredefinedTemplate]:
        """Replace the whole catalog with ``entries``."""
        templates = [
            _build_template(
                entry.get("templateId"),
                entry.get("templateName"),
                entry.get("fileName"),
                entry.get("description"),
                entry.get("category"),
            )
            for entry in entries
        ]
        ids = [t.template_id for t in templates]
        if len(set(ids)) != len(ids):
            raise TemplateConflict("Template with this ID already exists")
        with self._lock:
            self._write_all(templates)
        return templates


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = Settings.from_env()
    parser = argparse.ArgumentParser(
        description="Replace the predefined template catalog with a known set of templates."
    )
    parser.add_argument(
        "--catalog",
        default=str(settings.template_catalog_path),
        help="Path to the catalog JSON file.",
    )
    parser.add_argument(
        "--templates-json",
        help="Path to a JSON list of templates. Defaults to the built-in set.",
    )
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)

    entries = DEFAULT_TEMPLATES
    if args.templates_json:
        entries = json.loads(Path(args.templates_json).read_text(encoding="utf-8"))

    catalog = TemplateCatalog(Path(args.catalog))
    print(f"Clearing existing templates in {catalog.path}")
    seeded = catalog.seed(entries)
    print(f"Successfully added {len(seeded)} templates")
    for template in seeded:
        print(f"- {template.template_name} ({template.template_id})")


if __name__ == "__main__":
    main()
