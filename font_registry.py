import hashlib
import logging
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont

from render_errors import AssetNotFound, FontEmbedFailure, FontResolutionError

logger = logging.getLogger(__name__)

STANDARD_FONT = "Helvetica"

_BASE14_FONTS = {
    "Courier",
    "Courier-Bold",
    "Courier-Oblique",
    "Courier-BoldOblique",
    "Helvetica",
    "Helvetica-Bold",
    "Helvetica-Oblique",
    "Helvetica-BoldOblique",
    "Times-Roman",
    "Times-Bold",
    "Times-Italic",
    "Times-BoldItalic",
    "Symbol",
    "ZapfDingbats",
}


class FontEntry(Protocol):
    name: str
    file: str


class FontPathResolver(Protocol):
    def resolve_font_path(self, file_name: str) -> Path: ...


def _normalize_font_name(name: str) -> str:
    return "".join(ch for ch in name.lower() if ch.isalnum())


def font_is_available(font_name: str) -> bool:
    if font_name in _BASE14_FONTS:
        return True
    try:
        pdfmetrics.getFont(font_name)
        return True
    except Exception:
        return False


def registered_font_name(font_path: Path) -> str:
    # reportlab keeps one process-wide registry: the name must change whenever
    # the file behind it does, not just when the family label does.
    resolved = font_path.resolve()
    stat = resolved.stat()
    digest = hashlib.sha1(f"{resolved}:{stat.st_mtime_ns}:{stat.st_size}".encode("utf-8")).hexdigest()[:12]
    return f"LayoutFont-{_normalize_font_name(font_path.stem)}-{digest}"


def measure_text(text: str, font_name: str, size: float) -> float:
    return pdfmetrics.stringWidth(text, font_name, size)


class FontRegistry:
    """Resolves a field's font family to a usable reportlab font name.

    One registry is built per render call. Families are resolved lazily and
    cached, so a font file is parsed at most once however many fields use
    it. A blank family means the layout's first font. Unknown families,
    missing files and unparsable fonts fall back to ``fallback_font``.
    """

    def __init__(
        self,
        fonts: Sequence[FontEntry],
        assets: FontPathResolver,
        fallback_font: str = STANDARD_FONT,
    ) -> None:
        if not font_is_available(fallback_font):
            raise FontResolutionError(f"Fallback font '{fallback_font}' is not available.")
        self._fonts = list(fonts)
        self._assets = assets
        self._fallback_font = fallback_font
        self._by_family: dict[str, str] = {}
        self._by_file: dict[str, str | None] = {}

    @property
    def fallback_font(self) -> str:
        return self._fallback_font

    def resolve(self, family: str | None) -> str:
        key = (family or "").strip()
        if key in self._by_family:
            return self._by_family[key]

        entry = self._find_entry(key)
        font_name = None
        if entry is not None:
            font_name = self._load(entry)
        elif key:
            logger.warning(
                "Font family '%s' is not registered on this layout; using '%s'.",
                key,
                self._fallback_font,
            )

        resolved = font_name or self._fallback_font
        self._by_family[key] = resolved
        return resolved

    def preload(self, families: Iterable[str | None]) -> None:
        for family in families:
            self.resolve(family)

    def _find_entry(self, key: str) -> FontEntry | None:
        if not key:
            return self._fonts[0] if self._fonts else None
        for entry in self._fonts:
            if entry.name == key:
                return entry
        return None

    def _load(self, entry: FontEntry) -> str | None:
        if entry.file in self._by_file:
            return self._by_file[entry.file]

        font_name = None
        try:
            font_path = self._assets.resolve_font_path(entry.file)
        except AssetNotFound as exc:
            logger.warning("%s; using '%s' for family '%s'.", exc, self._fallback_font, entry.name)
        else:
            try:
                font_name = registered_font_name(font_path)
                if not font_is_available(font_name):
                    pdfmetrics.registerFont(TTFont(font_name, str(font_path)))
                    logger.debug("Registered font %s from %s", font_name, font_path)
            except Exception as exc:
                failure = FontEmbedFailure(entry.name, entry.file, str(exc))
                logger.warning("%s; using '%s'.", failure, self._fallback_font)
                font_name = None

        self._by_file[entry.file] = font_name
        return font_name
