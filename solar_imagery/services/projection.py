"""Conversion of WGS84 coordinates into the reference systems used by imagery providers.

WMS providers are addressed with a geographic bounding box around the point of
interest, while tile caches are addressed with integer column/row indices under
the spherical web-mercator projection. Both conversions are pure arithmetic.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Tuple, Union

if TYPE_CHECKING:  # pragma: no cover - import only needed for annotations
    from .providers import ProviderDescriptor

WEB_MERCATOR_LATITUDE_LIMIT = 85.05112878
WMS_VERSION_1_1_1 = "1.1.1"
WMS_VERSION_1_3_0 = "1.3.0"


class InvalidCoordinatesError(ValueError):
    """Raised when a latitude or longitude falls outside the valid WGS84 range."""


class ProjectionKind(str, Enum):
    GEOGRAPHIC = "geographic"
    PROJECTED_TILE = "projected-tile"


@dataclass(frozen=True)
class GeographicBBox:
    """Bounding box expressed in the axis order expected by a WMS protocol version."""

    min_x: float
    min_y: float
    max_x: float
    max_y: float
    axis_order: str

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.min_x, self.min_y, self.max_x, self.max_y)

    def as_param(self) -> str:
        return ",".join(f"{value:.6f}" for value in self.as_tuple())


@dataclass(frozen=True)
class TileCoordinates:
    zoom: int
    column: int
    row: int


ProjectedCoordinates = Union[GeographicBBox, TileCoordinates]


def validate_coordinates(lat: float, lon: float) -> None:
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise InvalidCoordinatesError("Latitude and longitude must be finite numbers.")
    if not -90.0 <= lat <= 90.0:
        raise InvalidCoordinatesError(f"Latitude {lat} must be within -90 and 90 degrees.")
    if not -180.0 <= lon <= 180.0:
        raise InvalidCoordinatesError(f"Longitude {lon} must be within -180 and 180 degrees.")


def project(lat: float, lon: float, descriptor: "ProviderDescriptor") -> ProjectedCoordinates:
    """Project ``lat``/``lon`` into the reference system ``descriptor`` is addressed in."""

    if descriptor.projection_kind == ProjectionKind.PROJECTED_TILE:
        return lat_lon_to_tile(lat, lon, descriptor.zoom)
    return geographic_bbox(lat, lon, descriptor.half_width_degrees, descriptor.wms_version)


def geographic_bbox(
    lat: float, lon: float, half_width: float, wms_version: str = WMS_VERSION_1_3_0
) -> GeographicBBox:
    """Build a bounding box of ``2 * half_width`` degrees centred on the point.

    WMS 1.3.0 honours the CRS-native axis order, which for EPSG:4326 is
    latitude first. WMS 1.1.1 always expects longitude first. Mixing the two
    up is the most common reason for an upstream to reject a GetMap request.
    """

    validate_coordinates(lat, lon)
    if half_width <= 0:
        raise ValueError("Bounding box half-width must be positive.")

    south = _clamp(lat - half_width, -90.0, 90.0)
    north = _clamp(lat + half_width, -90.0, 90.0)
    west = _clamp(lon - half_width, -180.0, 180.0)
    east = _clamp(lon + half_width, -180.0, 180.0)

    if wms_version == WMS_VERSION_1_3_0:
        return GeographicBBox(south, west, north, east, axis_order="lat-lon")
    return GeographicBBox(west, south, east, north, axis_order="lon-lat")


def lat_lon_to_tile(lat: float, lon: float, zoom: int) -> TileCoordinates:
    """Return the web-mercator tile containing ``lat``/``lon`` at ``zoom``."""

    validate_coordinates(lat, lon)
    if zoom < 0:
        raise ValueError("Zoom level must not be negative.")

    scale = 2 ** zoom
    clamped_lat = _clamp(lat, -WEB_MERCATOR_LATITUDE_LIMIT, WEB_MERCATOR_LATITUDE_LIMIT)
    lat_rad = math.radians(clamped_lat)

    column = math.floor((lon + 180.0) / 360.0 * scale)
    row = math.floor((1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * scale)

    # lon == 180 and the polar clamp land exactly on the far edge of the grid
    column = int(_clamp(column, 0, scale - 1))
    row = int(_clamp(row, 0, scale - 1))
    return TileCoordinates(zoom=zoom, column=column, row=row)


def _clamp(value: float, minimum: float, maximum: float) -> float:
    return max(min(value, maximum), minimum)
