"""Editor-space to page-space text layout.

Fields are positioned in an editor canvas that is always 800 units wide with
``y`` measured from the top. Everything here is pure: given a field, its
value, the page size and a way to measure text, it returns where and how
large the text is drawn.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Mapping, Protocol

EDITOR_REFERENCE_WIDTH = 800.0
DEFAULT_FONT_SIZE = 24.0
ALIGNMENTS = ("left", "center", "right")

RGB = tuple[float, float, float]
BLACK: RGB = (0.0, 0.0, 0.0)
WHITE: RGB = (1.0, 1.0, 1.0)

_HEX_COLOR = re.compile(r"[0-9a-fA-F]{6}")

# (text, font size) -> width in page units
TextMeasure = Callable[[str, float], float]


def parse_hex_color(value: str | None) -> RGB:
    """Parse ``#RRGGBB`` into 0..1 floats. Anything else is black."""
    if not isinstance(value, str):
        return BLACK
    hexv = value[1:] if value.startswith("#") else value
    if not _HEX_COLOR.fullmatch(hexv):
        return BLACK
    return (
        int(hexv[0:2], 16) / 255.0,
        int(hexv[2:4], 16) / 255.0,
        int(hexv[4:6], 16) / 255.0,
    )


def to_hex_color(color: RGB) -> str:
    r, g, b = (max(0, min(255, round(c * 255))) for c in color)
    return f"#{r:02x}{g:02x}{b:02x}"


# ---------------------------------------------------------------------------
# Adaptive font sizing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StandardPolicy:
    """Proportional shrink once the value is longer than ``max_length``."""

    max_length: int = 30
    min_factor: float = 0.6
    min_size: float = 10.0

    def apply(self, text_length: int, base_font_size: float) -> float:
        if text_length <= self.max_length:
            return base_font_size
        reduction = (text_length - self.max_length) * (base_font_size / self.max_length)
        floor = max(base_font_size * self.min_factor, self.min_size)
        return max(base_font_size - reduction, floor)


@dataclass(frozen=True)
class SizeTier:
    max_excess: int | None  # None: no upper bound
    multiplier: float
    floor: float


@dataclass(frozen=True)
class TieredPolicy:
    """Fixed base size with a steeper penalty the further a value overflows.

    The configured field size is ignored.
    """

    fixed_base: float
    max_length: int
    tiers: tuple[SizeTier, ...]

    def apply(self, text_length: int, base_font_size: float) -> float:
        if text_length <= self.max_length:
            return self.fixed_base
        excess = text_length - self.max_length
        tier = self.tiers[-1]
        for candidate in self.tiers:
            if candidate.max_excess is None or excess <= candidate.max_excess:
                tier = candidate
                break
        return max(self.fixed_base - excess * tier.multiplier, tier.floor)


@dataclass(frozen=True)
class LongValueOverride:
    """Extra shrink and leftward shift for long values of specific fields.

    Applied after the base policy and replaces its result.
    """

    max_length: int = 20
    per_char: float = 0.8
    floor: float = 12.0
    shift_per_char: float = 5.0

    def applies(self, text_length: int) -> bool:
        return text_length > self.max_length

    def apply(self, text_length: int, font_size: float) -> float:
        if not self.applies(text_length):
            return font_size
        return max(font_size - (text_length - self.max_length) * self.per_char, self.floor)

    def horizontal_shift(self, text_length: int, ratio: float) -> float:
        if not self.applies(text_length):
            return 0.0
        return (text_length - self.max_length) * self.shift_per_char * ratio


SizingPolicy = StandardPolicy | TieredPolicy

COLLEGE_POLICY = TieredPolicy(
    fixed_base=25.0,
    max_length=30,
    tiers=(
        SizeTier(max_excess=10, multiplier=1.0, floor=16.0),
        SizeTier(max_excess=20, multiplier=1.1, floor=13.0),
        SizeTier(max_excess=30, multiplier=1.2, floor=10.0),
        SizeTier(max_excess=None, multiplier=1.3, floor=8.0),
    ),
)
LONG_NAME_OVERRIDE = LongValueOverride()


@dataclass(frozen=True)
class SizingPolicyTable:
    """Field name -> sizing policy, plus optional long-value overrides."""

    default: SizingPolicy = StandardPolicy()
    by_field: Mapping[str, SizingPolicy] = field(default_factory=dict)
    overrides: Mapping[str, LongValueOverride] = field(default_factory=dict)

    def policy_for(self, field_name: str) -> SizingPolicy:
        return self.by_field.get(field_name, self.default)

    def font_size(self, field_name: str, text: str, base_font_size: float) -> float:
        size = self.policy_for(field_name).apply(len(text), float(base_font_size))
        override = self.overrides.get(field_name)
        if override is not None:
            size = override.apply(len(text), size)
        return size

    def horizontal_shift(self, field_name: str, text: str, ratio: float) -> float:
        override = self.overrides.get(field_name)
        if override is None:
            return 0.0
        return override.horizontal_shift(len(text), ratio)


DEFAULT_SIZING_POLICIES = SizingPolicyTable(
    by_field={"College": COLLEGE_POLICY},
    overrides={"Name": LONG_NAME_OVERRIDE, "Event": LONG_NAME_OVERRIDE},
)


def effective_font_size(
    field_name: str,
    text: str,
    base_font_size: float,
    policies: SizingPolicyTable = DEFAULT_SIZING_POLICIES,
) -> float:
    return policies.font_size(field_name, text, base_font_size)


# ---------------------------------------------------------------------------
# Scaling and placement
# ---------------------------------------------------------------------------


def scale_ratio(page_width: float, reference_width: float = EDITOR_REFERENCE_WIDTH) -> float:
    if page_width is None or not page_width > 0:
        raise ValueError(f"Page width must be positive, got {page_width!r}.")
    return float(page_width) / reference_width


def scale_coordinate(
    value: float,
    page_width: float,
    reference_width: float = EDITOR_REFERENCE_WIDTH,
) -> float:
    return float(value) * scale_ratio(page_width, reference_width)


@dataclass(frozen=True)
class DrawPosition:
    x: float
    y: float


def resolve_draw_position(
    scaled_x: float,
    scaled_y_from_top: float,
    scaled_base_font_size: float,
    page_height: float,
    text_width: float,
    alignment: str = "left",
    shift: float = 0.0,
) -> DrawPosition:
    """Return the baseline origin in bottom-left page coordinates.

    The vertical anchor uses the configured font size so a shrunk value keeps
    the same baseline as a short one.
    """
    draw_x = scaled_x - shift
    if alignment == "center":
        draw_x -= text_width / 2.0
    elif alignment == "right":
        draw_x -= text_width
    draw_y = page_height - scaled_y_from_top - scaled_base_font_size
    return DrawPosition(draw_x, draw_y)


class PlaceableField(Protocol):
    name: str
    x: float
    y: float
    font_size: float
    alignment: str
    color: str | None


@dataclass(frozen=True)
class FieldPlacement:
    field_name: str
    text: str
    font_size: float
    text_width: float
    x: float
    y: float
    color: RGB


def plan_field(
    text_field: PlaceableField,
    text: str,
    page_width: float,
    page_height: float,
    measure: TextMeasure,
    policies: SizingPolicyTable = DEFAULT_SIZING_POLICIES,
    forced_color: RGB | None = None,
) -> FieldPlacement:
    """Size, measure and position one field value on the page.

    ``measure`` must use the font the text is drawn with; it is called with
    the final page-space font size.
    """
    ratio = scale_ratio(page_width)
    base_font_size = float(text_field.font_size or DEFAULT_FONT_SIZE)

    size = policies.font_size(text_field.name, text, base_font_size) * ratio
    text_width = float(measure(text, size))

    position = resolve_draw_position(
        scaled_x=float(text_field.x) * ratio,
        scaled_y_from_top=float(text_field.y) * ratio,
        scaled_base_font_size=base_font_size * ratio,
        page_height=page_height,
        text_width=text_width,
        alignment=(text_field.alignment or "left").lower(),
        shift=policies.horizontal_shift(text_field.name, text, ratio),
    )
    color = forced_color if forced_color is not None else parse_hex_color(text_field.color)
    return FieldPlacement(
        field_name=text_field.name,
        text=text,
        font_size=size,
        text_width=text_width,
        x=position.x,
        y=position.y,
        color=color,
    )
