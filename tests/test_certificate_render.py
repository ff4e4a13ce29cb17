import io
import json
import logging
import zipfile

import pytest
from PIL import Image
from pypdf import PdfReader, PdfWriter
from pypdf.generic import RectangleObject
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

import certificate_render
from certificate_render import (
    BackgroundStyleHint,
    CertificateRenderer,
    build_zip,
    load_background,
    main,
    merge_row_values,
    read_csv_rows,
    render_batch,
    render_certificate,
    render_preview_png,
)
from render_errors import AssetNotFound, BackgroundLoadError, SerializationFailure
from text_layout import WHITE

from conftest import make_layout

NAME_FIELD = {"name": "Name", "x": 100, "y": 50, "fontSize": 50, "alignment": "center"}
COLLEGE_FIELD = {"name": "College", "x": 100, "y": 200, "fontSize": 20}


def page_of(pdf_bytes):
    reader = PdfReader(io.BytesIO(pdf_bytes))
    assert len(reader.pages) == 1
    return reader.pages[0]


@pytest.fixture
def drawn(monkeypatch):
    """Record every drawString call as (x, y, text)."""
    calls = []
    original = canvas.Canvas.drawString

    def recorder(self, x, y, text, *args, **kwargs):
        calls.append((x, y, text))
        return original(self, x, y, text, *args, **kwargs)

    monkeypatch.setattr(canvas.Canvas, "drawString", recorder)
    return calls


@pytest.fixture
def fill_colors(monkeypatch):
    colors = []
    real_color = certificate_render.Color

    def recording_color(*args):
        colors.append(args)
        return real_color(*args)

    monkeypatch.setattr(certificate_render, "Color", recording_color)
    return colors


# ---------------------------------------------------------------------------
# Backgrounds
# ---------------------------------------------------------------------------


def test_pdf_background_keeps_page_size_and_content(assets, pdf_template):
    layout = make_layout(pdf_template(size=(612, 792)), [NAME_FIELD])
    result = CertificateRenderer(assets).render(layout, {"Name": "Alex"})

    page = page_of(result.pdf_bytes)
    assert float(page.mediabox.width) == 612
    assert float(page.mediabox.height) == 792
    text = page.extract_text()
    assert "BACKGROUND" in text
    assert "Alex" in text
    assert result.rendered == ["Name"]


def test_pdf_background_with_offset_mediabox(assets, pdf_template):
    source = assets.templates_dir / pdf_template()
    writer = PdfWriter()
    writer.append(str(source))
    writer.pages[0].mediabox = RectangleObject([50, 50, 662, 842])
    with open(assets.templates_dir / "offset.pdf", "wb") as f:
        writer.write(f)

    layout = make_layout("offset.pdf", [NAME_FIELD])
    page = page_of(render_certificate(layout, {"Name": "Alex"}, assets))
    assert float(page.mediabox.left) == 50
    assert float(page.mediabox.width) == 612
    assert "Alex" in page.extract_text()


@pytest.mark.parametrize(
    "page_size, expected",
    [
        ((800.0, 600.0), (800, 600)),
        ((1000.0, 700.0), (1000, 700)),
        (None, (400, 300)),
    ],
)
def test_image_background_page_size(assets, png_template, page_size, expected):
    layout = make_layout(png_template(size=(400, 300)), [NAME_FIELD])
    result = CertificateRenderer(assets, image_page_size=page_size).render(layout, {"Name": "Alex"})

    page = page_of(result.pdf_bytes)
    assert (float(page.mediabox.width), float(page.mediabox.height)) == expected


def test_jpeg_background(assets):
    Image.new("RGB", (640, 480), (10, 10, 10)).save(assets.templates_dir / "photo.jpg")
    layout = make_layout("photo.jpg", [NAME_FIELD])
    result = CertificateRenderer(assets).render(layout, {"Name": "Alex"})
    assert result.pdf_bytes.startswith(b"%PDF")


def test_missing_template(assets):
    layout = make_layout("nope.pdf", [NAME_FIELD])
    with pytest.raises(AssetNotFound) as excinfo:
        CertificateRenderer(assets).render(layout, {"Name": "Alex"})
    assert excinfo.value.status_code == 404
    assert not excinfo.value.storage_inconsistency


def test_missing_template_on_confirmed_layout_is_server_error(assets):
    layout = make_layout("nope.pdf", [NAME_FIELD], confirmed=True)
    with pytest.raises(AssetNotFound) as excinfo:
        CertificateRenderer(assets).render(layout, {"Name": "Alex"})
    assert excinfo.value.status_code == 500


def test_unsupported_template_type(assets):
    (assets.templates_dir / "template.gif").write_bytes(b"GIF89a")
    layout = make_layout("template.gif", [NAME_FIELD])
    with pytest.raises(BackgroundLoadError):
        load_background(layout, assets)


def test_unreadable_pdf_template(assets):
    (assets.templates_dir / "broken.pdf").write_bytes(b"not a pdf at all")
    layout = make_layout("broken.pdf", [NAME_FIELD])
    with pytest.raises(BackgroundLoadError):
        CertificateRenderer(assets).render(layout, {"Name": "Alex"})


def test_unusable_page_size(assets, png_template):
    layout = make_layout(png_template(), [NAME_FIELD])
    with pytest.raises(BackgroundLoadError):
        load_background(layout, assets, image_page_size=(0.0, 600.0))


@pytest.mark.parametrize(
    "template_file, forced",
    [
        ("Infinitum-2024.pdf", WHITE),
        ("club_INFINITUM_dark.png", WHITE),
        ("classic.pdf", None),
    ],
)
def test_style_hint(template_file, forced):
    assert BackgroundStyleHint.for_template(template_file).forced_text_color == forced


# ---------------------------------------------------------------------------
# Fields
# ---------------------------------------------------------------------------


def test_field_position_on_reference_page(assets, png_template, drawn):
    layout = make_layout(png_template(), [NAME_FIELD])
    CertificateRenderer(assets).render(layout, {"Name": "Alex"})

    x, y, text = drawn[-1]
    assert text == "Alex"
    assert x == pytest.approx(100 - stringWidth("Alex", "Helvetica", 50) / 2)
    assert y == pytest.approx(500)


def test_field_position_scales_with_page(assets, pdf_template, drawn):
    layout = make_layout(pdf_template(size=(1600, 1200)), [{"name": "Title", "x": 100, "y": 50, "fontSize": 20}])
    CertificateRenderer(assets).render(layout, {"Title": "Hello"})

    x, y, text = drawn[-1]
    assert (x, y) == pytest.approx((200, 1200 - 100 - 40))


def test_missing_values_are_skipped(assets, pdf_template, drawn):
    layout = make_layout(pdf_template(), [NAME_FIELD, COLLEGE_FIELD, {"name": "Event", "x": 10, "y": 10}])
    result = CertificateRenderer(assets).render(layout, {"Name": "Alex", "Event": ""})

    assert result.rendered == ["Name"]
    assert result.skipped == ["College", "Event"]
    assert result.failed == []
    assert [text for _, _, text in drawn if text != "BACKGROUND"] == ["Alex"]


def test_non_string_values_are_drawn(assets, pdf_template, drawn):
    layout = make_layout(pdf_template(), [{"name": "Rank", "x": 10, "y": 10}])
    result = CertificateRenderer(assets).render(layout, {"Rank": 1})
    assert result.rendered == ["Rank"]
    assert drawn[-1][2] == "1"


def test_field_failure_is_isolated(assets, pdf_template, monkeypatch, caplog):
    real_measure = certificate_render.measure_text

    def flaky_measure(text, font_name, size):
        if text == "boom":
            raise RuntimeError("glyph table exploded")
        return real_measure(text, font_name, size)

    monkeypatch.setattr(certificate_render, "measure_text", flaky_measure)
    layout = make_layout(pdf_template(), [{"name": "Broken", "x": 10, "y": 10}, NAME_FIELD])

    with caplog.at_level(logging.WARNING, logger="certificate_render"):
        result = CertificateRenderer(assets).render(layout, {"Broken": "boom", "Name": "Alex"})

    assert result.failed == ["Broken"]
    assert result.rendered == ["Name"]
    assert "Could not draw field 'Broken'" in caplog.text
    assert "Alex" in page_of(result.pdf_bytes).extract_text()


def test_configured_color(assets, pdf_template, fill_colors):
    field = dict(NAME_FIELD, color="#ff0000")
    CertificateRenderer(assets).render(make_layout(pdf_template(), [field]), {"Name": "Alex"})
    assert fill_colors == [(1.0, 0.0, 0.0)]


def test_dark_template_forces_white_text(assets, pdf_template, fill_colors):
    fields = [dict(NAME_FIELD, color="#ff0000"), dict(COLLEGE_FIELD, color="#000000")]
    layout = make_layout(pdf_template("Infinitum-2024.pdf"), fields)
    CertificateRenderer(assets).render(layout, {"Name": "Alex", "College": "MIT"})
    assert fill_colors == [WHITE, WHITE]


def test_layout_font_used_for_field(assets, pdf_template, vera_font, monkeypatch):
    fonts_set = []
    original = canvas.Canvas.setFont

    def recorder(self, name, size, *args, **kwargs):
        fonts_set.append(name)
        return original(self, name, size, *args, **kwargs)

    monkeypatch.setattr(canvas.Canvas, "setFont", recorder)
    field = dict(NAME_FIELD, fontFamily="Vera")
    layout = make_layout(pdf_template(), [field], fonts=[{"name": "Vera", "file": vera_font}])
    result = CertificateRenderer(assets).render(layout, {"Name": "Alex"})

    assert result.rendered == ["Name"]
    assert fonts_set[-1].startswith("LayoutFont-")


def test_unknown_font_family_still_renders(assets, pdf_template, drawn):
    field = dict(NAME_FIELD, fontFamily="Does Not Exist")
    result = CertificateRenderer(assets).render(make_layout(pdf_template(), [field]), {"Name": "Alex"})
    assert result.rendered == ["Name"]
    assert drawn[-1][0] == pytest.approx(100 - stringWidth("Alex", "Helvetica", 50) / 2)


def test_pdf_write_failure_is_fatal(assets, pdf_template, monkeypatch):
    def broken_write(self, stream):
        raise OSError("disk full")

    monkeypatch.setattr(certificate_render.PdfWriter, "write", broken_write)
    layout = make_layout(pdf_template(), [NAME_FIELD])

    with pytest.raises(SerializationFailure) as excinfo:
        CertificateRenderer(assets).render(layout, {"Name": "Alex"})
    assert excinfo.value.status_code == 500
    assert excinfo.value.message == "Failed to assemble certificate PDF: disk full"
    assert isinstance(excinfo.value.__cause__, OSError)


def test_canvas_save_failure_on_image_background(assets, png_template, monkeypatch):
    def broken_save(self):
        raise ValueError("cannot flush overlay")

    monkeypatch.setattr(canvas.Canvas, "save", broken_save)
    layout = make_layout(png_template(), [NAME_FIELD])

    with pytest.raises(SerializationFailure, match="cannot flush overlay"):
        CertificateRenderer(assets).render(layout, {"Name": "Alex"})


def test_preview_png(assets, pdf_template):
    pdf_bytes = render_certificate(make_layout(pdf_template(), [NAME_FIELD]), {"Name": "Alex"}, assets)
    assert render_preview_png(pdf_bytes, zoom=0.5).startswith(b"\x89PNG\r\n\x1a\n")


# ---------------------------------------------------------------------------
# Batch helpers
# ---------------------------------------------------------------------------


def test_read_csv_rows_strips_bom():
    rows = read_csv_rows("\ufeffName,College\nAlex,MIT\nSam,CMU\n")
    assert rows == [{"Name": "Alex", "College": "MIT"}, {"Name": "Sam", "College": "CMU"}]


def test_read_csv_rows_requires_data():
    with pytest.raises(ValueError):
        read_csv_rows("Name,College\n")


def test_merge_row_values_with_mappings():
    row = {"Full Name": "Alex", "Institute": "MIT", "Extra": "x"}
    merged = merge_row_values(row, {"Name": "Full Name", "College": "Institute", "Event": ""}, {"Event": "Hackathon"})
    assert merged == {"Name": "Alex", "College": "MIT", "Event": "Hackathon"}


def test_merge_row_values_without_mappings():
    merged = merge_row_values({"Name": "Alex", "College": "MIT"}, None, {"Event": "Hackathon", "Name": "Nobody"})
    assert merged == {"Name": "Alex", "College": "MIT", "Event": "Hackathon"}


def test_render_batch_names_and_zip(assets, pdf_template):
    layout = make_layout(pdf_template(), [NAME_FIELD])
    rows = [{"Name": name} for name in ["Alex", "Sam", "Alex", "Jo Ann", "Kim", "Lee", "Max", "Ned"]]

    items = render_batch(CertificateRenderer(assets), layout, rows, max_workers=4)

    names = [name for name, _ in items]
    assert names[:4] == [
        "Alex_test-layout_Certificate.pdf",
        "Sam_test-layout_Certificate.pdf",
        "Alex_test-layout_Certificate_2.pdf",
        "Jo_Ann_test-layout_Certificate.pdf",
    ]
    for row, (_, result) in zip(rows, items):
        assert row["Name"] in page_of(result.pdf_bytes).extract_text()

    with zipfile.ZipFile(io.BytesIO(build_zip(items))) as archive:
        assert archive.namelist() == names


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _cli_base(tmp_path, assets, template):
    layout_path = tmp_path / "layout.json"
    layout_path.write_text(json.dumps(make_layout(template, [NAME_FIELD]).to_json_dict()))
    return [
        "--layout",
        str(layout_path),
        "--templates-dir",
        str(assets.templates_dir),
        "--fonts-dir",
        str(assets.fonts_dir),
    ]


def test_cli_single(tmp_path, assets, pdf_template, capsys):
    data_path = tmp_path / "data.json"
    data_path.write_text(json.dumps({"Name": "Alex"}))
    output = tmp_path / "out" / "cert.pdf"

    main(_cli_base(tmp_path, assets, pdf_template()) + ["--data-json", str(data_path), "--output", str(output)])

    assert "Alex" in page_of(output.read_bytes()).extract_text()
    assert f"Wrote: {output}" in capsys.readouterr().out


def test_cli_csv_row_with_mappings(tmp_path, assets, pdf_template):
    csv_path = tmp_path / "people.csv"
    csv_path.write_text("Full Name\nAlex\nSam\n")
    mappings = tmp_path / "mappings.json"
    mappings.write_text(json.dumps({"Name": "Full Name"}))
    output = tmp_path / "cert.pdf"

    main(
        _cli_base(tmp_path, assets, pdf_template())
        + ["--csv", str(csv_path), "--row", "1", "--field-mappings", str(mappings), "--output", str(output)]
    )

    assert "Sam" in page_of(output.read_bytes()).extract_text()


def test_cli_batch(tmp_path, assets, pdf_template):
    csv_path = tmp_path / "people.csv"
    csv_path.write_text("Name\nAlex\nSam\n")
    output_dir = tmp_path / "batch"

    main(_cli_base(tmp_path, assets, pdf_template()) + ["--csv", str(csv_path), "--batch", "--output", str(output_dir)])

    assert sorted(p.name for p in output_dir.iterdir()) == [
        "Alex_test-layout_Certificate.pdf",
        "Sam_test-layout_Certificate.pdf",
    ]
    with zipfile.ZipFile(tmp_path / "batch.zip") as archive:
        assert len(archive.namelist()) == 2


def test_cli_rejects_batch_without_csv(tmp_path, assets, pdf_template):
    data_path = tmp_path / "data.json"
    data_path.write_text("{}")
    with pytest.raises(ValueError):
        main(
            _cli_base(tmp_path, assets, pdf_template())
            + ["--data-json", str(data_path), "--batch", "--output", str(tmp_path / "x")]
        )
