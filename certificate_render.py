import argparse
import csv
import io
import json
import logging
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

from pypdf import PageObject, PdfReader, PdfWriter, Transformation
from reportlab.lib.colors import Color
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from font_registry import STANDARD_FONT, FontRegistry, measure_text
from layout_store import AssetStore, Layout, TextField, certificate_file_name
from render_errors import (
    AssetNotFound,
    BackgroundLoadError,
    FieldRenderFailure,
    SerializationFailure,
)
from settings import DEFAULT_IMAGE_PAGE_SIZE, Settings, configure_logging, parse_page_size
from text_layout import (
    DEFAULT_SIZING_POLICIES,
    RGB,
    WHITE,
    SizingPolicyTable,
    plan_field,
    to_hex_color,
)

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg"}

# Template families printed on a fixed dark background. Any configured text
# color is unreadable on them, so text is always drawn white.
DARK_TEMPLATE_MARKERS = ("infinitum",)


@dataclass(frozen=True)
class BackgroundStyleHint:
    forced_text_color: RGB | None = None

    @classmethod
    def for_template(cls, template_file: str) -> "BackgroundStyleHint":
        name = (template_file or "").lower()
        if any(marker in name for marker in DARK_TEMPLATE_MARKERS):
            return cls(forced_text_color=WHITE)
        return cls()


@dataclass
class Background:
    path: Path
    width: float
    height: float
    style: BackgroundStyleHint
    pdf_page: PageObject | None = None
    image: ImageReader | None = None


@dataclass
class RenderResult:
    """Output of one render call.

    A successful result is best-effort: ``failed`` lists fields whose drawing
    raised and ``skipped`` lists fields without a value.
    """

    pdf_bytes: bytes
    rendered: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def load_background(
    layout: Layout,
    assets: AssetStore,
    image_page_size: tuple[float, float] | None = DEFAULT_IMAGE_PAGE_SIZE,
) -> Background:
    try:
        path = assets.resolve_background_path(layout.template_file)
    except AssetNotFound as exc:
        # A confirmed layout pointing at a missing file means storage drifted.
        raise AssetNotFound("template", layout.template_file, storage_inconsistency=layout.confirmed) from exc

    style = BackgroundStyleHint.for_template(layout.template_file)
    suffix = path.suffix.lower()

    if suffix == ".pdf":
        try:
            reader = PdfReader(str(path))
            if len(reader.pages) == 0:
                raise BackgroundLoadError(f"Template {layout.template_file} has no pages.")
            page = reader.pages[0]
            width = float(page.mediabox.width)
            height = float(page.mediabox.height)
        except BackgroundLoadError:
            raise
        except Exception as exc:
            raise BackgroundLoadError(f"Could not read template {layout.template_file}: {exc}") from exc
        background = Background(path=path, width=width, height=height, style=style, pdf_page=page)
    elif suffix in IMAGE_SUFFIXES:
        try:
            image = ImageReader(str(path))
            native_width, native_height = image.getSize()
        except Exception as exc:
            raise BackgroundLoadError(f"Could not read template {layout.template_file}: {exc}") from exc
        width, height = image_page_size or (native_width, native_height)
        background = Background(path=path, width=float(width), height=float(height), style=style, image=image)
    else:
        raise BackgroundLoadError(f"Unsupported template type '{suffix}' for {layout.template_file}.")

    if not background.width > 0 or not background.height > 0:
        raise BackgroundLoadError(
            f"Template {layout.template_file} reports an unusable page size "
            f"{background.width} x {background.height}."
        )
    return background


class CertificateRenderer:
    """Stamps field values from a layout onto its background.

    The renderer itself holds only configuration, so a single instance can be
    shared by concurrent callers.
    """

    def __init__(
        self,
        assets: AssetStore,
        image_page_size: tuple[float, float] | None = DEFAULT_IMAGE_PAGE_SIZE,
        policies: SizingPolicyTable = DEFAULT_SIZING_POLICIES,
        fallback_font: str = STANDARD_FONT,
    ) -> None:
        self.assets = assets
        self.image_page_size = image_page_size
        self.policies = policies
        self.fallback_font = fallback_font

    def render(self, layout: Layout, data: Mapping[str, Any]) -> RenderResult:
        background = load_background(layout, self.assets, self.image_page_size)

        values = {f.name: _field_value(data, f.name) for f in layout.fields}
        fonts = FontRegistry(layout.fonts, self.assets, fallback_font=self.fallback_font)
        fonts.preload(f.font_family for f in layout.fields if values[f.name])

        logger.debug(
            "Rendering layout %s on %.2f x %.2f page",
            layout.layout_id,
            background.width,
            background.height,
        )
        packet = io.BytesIO()
        c = canvas.Canvas(packet, pagesize=(background.width, background.height))
        if background.image is not None:
            try:
                c.drawImage(background.image, 0, 0, width=background.width, height=background.height)
            except Exception as exc:
                raise BackgroundLoadError(f"Could not paint template {layout.template_file}: {exc}") from exc

        result = RenderResult(pdf_bytes=b"")
        for text_field in layout.fields:
            text = values[text_field.name]
            if not text:
                result.skipped.append(text_field.name)
                continue
            try:
                self._draw_field(c, text_field, text, background, fonts)
            except Exception as exc:
                failure = FieldRenderFailure(text_field.name, str(exc))
                logger.warning("%s", failure)
                result.failed.append(text_field.name)
                continue
            result.rendered.append(text_field.name)

        try:
            c.showPage()
            c.save()
            result.pdf_bytes = self._serialize(packet.getvalue(), background)
        except Exception as exc:
            raise SerializationFailure(f"Failed to assemble certificate PDF: {exc}") from exc

        logger.info(
            "Rendered layout %s: %d field(s) drawn, %d skipped, %d failed",
            layout.layout_id,
            len(result.rendered),
            len(result.skipped),
            len(result.failed),
        )
        return result

    def _draw_field(
        self,
        c: canvas.Canvas,
        text_field: TextField,
        text: str,
        background: Background,
        fonts: FontRegistry,
    ) -> None:
        font_name = fonts.resolve(text_field.font_family)
        placement = plan_field(
            text_field,
            text,
            page_width=background.width,
            page_height=background.height,
            measure=lambda value, size: measure_text(value, font_name, size),
            policies=self.policies,
            forced_color=background.style.forced_text_color,
        )
        c.saveState()
        try:
            c.setFont(font_name, placement.font_size)
            c.setFillColor(Color(*placement.color))
            c.drawString(placement.x, placement.y, text)
        finally:
            c.restoreState()
        logger.debug(
            "Field %s: font=%s size=%.2f at (%.2f, %.2f) color=%s",
            text_field.name,
            font_name,
            placement.font_size,
            placement.x,
            placement.y,
            to_hex_color(placement.color),
        )

    @staticmethod
    def _serialize(overlay_bytes: bytes, background: Background) -> bytes:
        if background.pdf_page is None:
            return overlay_bytes

        page = background.pdf_page
        overlay_page = PdfReader(io.BytesIO(overlay_bytes)).pages[0]
        left = float(page.mediabox.left)
        bottom = float(page.mediabox.bottom)
        if left or bottom:
            page.merge_transformed_page(overlay_page, Transformation().translate(left, bottom))
        else:
            page.merge_page(overlay_page)

        writer = PdfWriter()
        writer.add_page(page)
        out = io.BytesIO()
        writer.write(out)
        return out.getvalue()


def _field_value(data: Mapping[str, Any], name: str) -> str:
    value = data.get(name)
    if value is None:
        return ""
    return str(value)


def render_certificate(
    layout: Layout,
    data: Mapping[str, Any],
    assets: AssetStore,
    image_page_size: tuple[float, float] | None = DEFAULT_IMAGE_PAGE_SIZE,
) -> bytes:
    return CertificateRenderer(assets, image_page_size=image_page_size).render(layout, data).pdf_bytes


def render_preview_png(pdf_bytes: bytes, zoom: float = 1.0) -> bytes:
    """Rasterize the first page of a rendered certificate."""
    try:
        import fitz
    except ImportError as exc:
        raise RuntimeError("PyMuPDF is required for previews. Install pymupdf.") from exc

    doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    try:
        pixmap = doc[0].get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
        return pixmap.tobytes("png")
    finally:
        doc.close()


# ---------------------------------------------------------------------------
# Batch generation
# ---------------------------------------------------------------------------


def read_csv_rows(text: str) -> list[dict]:
    rows = list(csv.DictReader(io.StringIO(text.lstrip("\ufeff"))))
    if not rows:
        raise ValueError("CSV has no data rows.")
    return rows


def merge_row_values(
    csv_row: Mapping[str, str],
    field_mappings: Mapping[str, str] | None,
    fixed_values: Mapping[str, str] | None,
) -> dict:
    """Build the value map for one certificate.

    Fixed values apply to every row. Mapped fields take the value of their
    CSV column. Without mappings, CSV columns are used as field names.
    """
    result: dict = {}
    if fixed_values:
        result.update(fixed_values)
    if field_mappings:
        for field_name, csv_column in field_mappings.items():
            if csv_column and csv_column in csv_row:
                result[field_name] = csv_row[csv_column]
    else:
        result.update({k: v for k, v in csv_row.items() if k is not None})
    return result


def _unique_name(name: str, used: set[str]) -> str:
    candidate = name
    stem = name[:-4] if name.lower().endswith(".pdf") else name
    counter = 2
    while candidate in used:
        candidate = f"{stem}_{counter}.pdf"
        counter += 1
    used.add(candidate)
    return candidate


def render_batch(
    renderer: CertificateRenderer,
    layout: Layout,
    rows: Iterable[Mapping[str, Any]],
    max_workers: int = 4,
) -> list[tuple[str, RenderResult]]:
    rows = list(rows)
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        results = list(pool.map(lambda row: renderer.render(layout, row), rows))

    used: set[str] = set()
    named = []
    for row, result in zip(rows, results):
        named.append((_unique_name(certificate_file_name(row, layout), used), result))
    return named


def build_zip(items: Iterable[tuple[str, RenderResult]]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zipf:
        for name, result in items:
            zipf.writestr(name, result.pdf_bytes)
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = Settings.from_env()
    parser = argparse.ArgumentParser(
        description="Stamp participant values onto a certificate layout and write a PDF."
    )
    parser.add_argument("--layout", required=True, help="Path to the layout JSON.")
    parser.add_argument(
        "--templates-dir",
        default=str(settings.templates_dir),
        help="Directory holding template files referenced by the layout.",
    )
    parser.add_argument(
        "--fonts-dir",
        default=str(settings.fonts_dir),
        help="Directory holding font files referenced by the layout.",
    )
    parser.add_argument("--data-json", help="Path to JSON file with field values.")
    parser.add_argument("--csv", dest="csv_path", help="Path to CSV file with values.")
    parser.add_argument("--row", type=int, default=0, help="CSV row index to use.")
    parser.add_argument(
        "--batch",
        action="store_true",
        help="Generate certificates for all CSV rows. Output path becomes a directory.",
    )
    parser.add_argument(
        "--field-mappings",
        help="Path to JSON file mapping field names to CSV columns.",
    )
    parser.add_argument(
        "--fixed-values",
        help="Path to JSON file with fixed values for non-mapped fields.",
    )
    parser.add_argument("--output", required=True, help="Output PDF path (directory with --batch).")
    parser.add_argument(
        "--image-page-size",
        default=None,
        help="Page size for image templates: WIDTHxHEIGHT or 'native'. Default 800x600.",
    )
    parser.add_argument("--preview-png", help="Also write a PNG preview of the certificate.")
    parser.add_argument("--workers", type=int, default=4, help="Parallel renders in --batch mode.")
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level.")
    return parser.parse_args(argv)


def _read_json(path: str | None) -> Any:
    if not path:
        return None
    return json.loads(Path(path).read_text(encoding="utf-8"))


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)

    if args.csv_path and args.data_json:
        raise ValueError("Use either --csv or --data-json, not both.")
    if not args.csv_path and not args.data_json:
        raise ValueError("Provide --csv or --data-json.")
    if args.batch and not args.csv_path:
        raise ValueError("--batch requires --csv")

    layout = Layout.model_validate(_read_json(args.layout))
    assets = AssetStore(Path(args.templates_dir), Path(args.fonts_dir))
    renderer = CertificateRenderer(assets, image_page_size=parse_page_size(args.image_page_size))
    field_mappings = _read_json(args.field_mappings)
    fixed_values = _read_json(args.fixed_values)

    if args.batch:
        csv_text = Path(args.csv_path).read_text(encoding="utf-8-sig")
        rows = [merge_row_values(row, field_mappings, fixed_values) for row in read_csv_rows(csv_text)]
        output_dir = Path(args.output)
        output_dir.mkdir(parents=True, exist_ok=True)

        print(f"Generating {len(rows)} certificates...")
        items = render_batch(renderer, layout, rows, max_workers=args.workers)
        for idx, (name, result) in enumerate(items, start=1):
            (output_dir / name).write_bytes(result.pdf_bytes)
            print(f"  [{idx}/{len(items)}] {name}")

        zip_path = output_dir.parent / f"{output_dir.name}.zip"
        zip_path.write_bytes(build_zip(items))
        print(f"Done! Generated {len(items)} certificates in {output_dir}")
        print(f"Created ZIP archive: {zip_path}")
        return

    if args.data_json:
        data = _read_json(args.data_json)
    else:
        csv_text = Path(args.csv_path).read_text(encoding="utf-8-sig")
        rows = read_csv_rows(csv_text)
        if args.row < 0 or args.row >= len(rows):
            raise IndexError(f"Row index {args.row} out of range. CSV has {len(rows)} row(s).")
        data = merge_row_values(rows[args.row], field_mappings, fixed_values)

    result = renderer.render(layout, data)
    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(result.pdf_bytes)
    if result.failed:
        print(f"[WARN] Fields not drawn: {', '.join(result.failed)}")
    print(f"Wrote: {output_path}")

    if args.preview_png:
        Path(args.preview_png).write_bytes(render_preview_png(result.pdf_bytes))
        print(f"Wrote preview: {args.preview_png}")


if __name__ == "__main__":
    main()
