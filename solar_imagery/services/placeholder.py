from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

PLACEHOLDER_CONTENT_TYPE = "image/svg+xml"
PLACEHOLDER_TITLE = "Satellite imagery temporarily unavailable"
MAX_REASON_LENGTH = 96

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"

_environment = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(enabled_extensions=("svg", "svg.j2"), default_for_string=True),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)


@dataclass(frozen=True)
class PlaceholderImage:
    payload: bytes
    content_type: str = PLACEHOLDER_CONTENT_TYPE


def generate_placeholder(
    lat: float, lon: float, width: int, height: int, reason: str | None = None
) -> PlaceholderImage:
    """Render an SVG stand-in telling the user that imagery could not be fetched.

    The output only depends on the arguments, so the same request always gets
    byte-identical markup.
    """

    width = max(1, int(width))
    height = max(1, int(height))
    shortest = min(width, height)
    font_size = max(10, round(shortest / 22))
    small_font_size = max(8, round(font_size * 0.75))
    cy = height / 2

    template = _environment.get_template("placeholder.svg.j2")
    markup = template.render(
        width=width,
        height=height,
        grid=max(8, shortest // 8),
        cx=_fmt(width / 2),
        cy=_fmt(cy),
        marker_radius=max(6, round(shortest / 12)),
        title=PLACEHOLDER_TITLE,
        title_y=_fmt(cy + shortest / 6),
        coords_y=_fmt(cy + shortest / 6 + font_size * 1.5),
        reason_y=_fmt(cy + shortest / 6 + font_size * 2.8),
        coordinates=format_coordinates(lat, lon),
        reason=_short_reason(reason),
        font_size=font_size,
        small_font_size=small_font_size,
    )
    return PlaceholderImage(payload=markup.encode("utf-8"))


def format_coordinates(lat: float, lon: float) -> str:
    lat_hemisphere = "N" if lat >= 0 else "S"
    lon_hemisphere = "E" if lon >= 0 else "W"
    return f"{abs(lat):.5f}° {lat_hemisphere}, {abs(lon):.5f}° {lon_hemisphere}"


def _short_reason(reason: str | None) -> str:
    reason = " ".join((reason or "").split())
    if len(reason) > MAX_REASON_LENGTH:
        return f"{reason[: MAX_REASON_LENGTH - 3]}..."
    return reason


def _fmt(value: float) -> str:
    return f"{value:.1f}"
