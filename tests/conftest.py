import shutil
import uuid
from pathlib import Path

import pytest
import reportlab
from PIL import Image
from reportlab.pdfgen import canvas

from layout_store import AssetStore, Layout

VERA_TTF = Path(reportlab.__file__).parent / "fonts" / "Vera.ttf"


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def assets(data_dir):
    store = AssetStore(data_dir / "uploads" / "templates", data_dir / "uploads" / "fonts")
    store.templates_dir.mkdir(parents=True)
    store.fonts_dir.mkdir(parents=True)
    return store


def write_pdf_template(directory: Path, name: str, size=(612.0, 792.0), label: str = "BACKGROUND") -> str:
    path = directory / name
    c = canvas.Canvas(str(path), pagesize=size)
    c.setFont("Helvetica", 12)
    c.drawString(20, 20, label)
    c.showPage()
    c.save()
    return name


def write_png_template(directory: Path, name: str, size=(400, 300)) -> str:
    Image.new("RGB", size, (200, 220, 240)).save(directory / name)
    return name


@pytest.fixture
def pdf_template(assets):
    def _make(name: str = "template.pdf", size=(612.0, 792.0)) -> str:
        return write_pdf_template(assets.templates_dir, name, size)

    return _make


@pytest.fixture
def png_template(assets):
    def _make(name: str = "template.png", size=(400, 300)) -> str:
        return write_png_template(assets.templates_dir, name, size)

    return _make


@pytest.fixture
def vera_font(assets):
    """Copy reportlab's bundled Vera.ttf under a fresh name; returns the stored file name."""
    if not VERA_TTF.exists():
        pytest.skip("reportlab bundled Vera.ttf not available")
    name = f"{uuid.uuid4().hex}.ttf"
    shutil.copy(VERA_TTF, assets.fonts_dir / name)
    return name


def make_layout(template_file: str, fields: list[dict], fonts: list[dict] | None = None, **extra) -> Layout:
    payload = {
        "layoutId": extra.pop("layoutId", "test-layout"),
        "layoutName": extra.pop("layoutName", "Test Layout"),
        "templateFile": template_file,
        "fonts": fonts or [],
        "fields": fields,
    }
    payload.update(extra)
    return Layout.model_validate(payload)
