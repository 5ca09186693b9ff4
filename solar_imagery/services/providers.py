from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Mapping, Sequence, Tuple

from .projection import (
    WMS_VERSION_1_1_1,
    WMS_VERSION_1_3_0,
    GeographicBBox,
    ProjectedCoordinates,
    ProjectionKind,
    TileCoordinates,
)

logger = logging.getLogger(__name__)

DEFAULT_TILE_ZOOM = 17
TILE_PIXELS = 256

ParamsBuilder = Callable[["ProviderDescriptor", ProjectedCoordinates, int, int], Dict[str, Any]]


@dataclass(frozen=True)
class ProviderDescriptor:
    """Static description of how to request imagery from one upstream service.

    ``base_url`` may contain ``{zoom}``, ``{column}`` and ``{row}`` placeholders
    for tile services; WMS services keep a fixed URL and carry everything in the
    query string built by ``build_request_params``.
    """

    name: str
    label: str
    base_url: str
    projection_kind: ProjectionKind
    build_request_params: ParamsBuilder
    response_format: str = "image/jpeg"
    zoom: int = DEFAULT_TILE_ZOOM
    half_width_degrees: float = 0.002
    wms_version: str = WMS_VERSION_1_3_0
    layer: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)

    def build_request(
        self, projected: ProjectedCoordinates, width: int, height: int
    ) -> Tuple[str, Dict[str, Any]]:
        """Return the URL and query parameters for a single GET against this provider."""

        url = self.base_url
        if isinstance(projected, TileCoordinates):
            url = url.format(zoom=projected.zoom, column=projected.column, row=projected.row)
        return url, self.build_request_params(self, projected, width, height)


def wms_getmap_params(
    descriptor: ProviderDescriptor, projected: ProjectedCoordinates, width: int, height: int
) -> Dict[str, Any]:
    if not isinstance(projected, GeographicBBox):
        raise TypeError(f"{descriptor.name} expects a geographic bounding box")

    crs_key = "CRS" if descriptor.wms_version == WMS_VERSION_1_3_0 else "SRS"
    return {
        "SERVICE": "WMS",
        "VERSION": descriptor.wms_version,
        "REQUEST": "GetMap",
        "LAYERS": descriptor.layer or "",
        "STYLES": "",
        "FORMAT": descriptor.response_format,
        "TRANSPARENT": "FALSE",
        "WIDTH": width,
        "HEIGHT": height,
        crs_key: "EPSG:4326",
        "BBOX": projected.as_param(),
    }


def tile_params(
    descriptor: ProviderDescriptor, projected: ProjectedCoordinates, width: int, height: int
) -> Dict[str, Any]:
    if not isinstance(projected, TileCoordinates):
        raise TypeError(f"{descriptor.name} expects tile coordinates")
    # Tile servers encode the address in the path and always return fixed-size tiles.
    return {}


KARTVERKET_NIB_WMTS = ProviderDescriptor(
    name="kartverket_nib_wmts",
    label="Kartverket Norge i bilder (WMTS cache)",
    base_url=(
        "https://cache.kartverket.no/v1/wmts/1.0.0/nib/default/webmercator/"
        "{zoom}/{row}/{column}.jpeg"
    ),
    projection_kind=ProjectionKind.PROJECTED_TILE,
    build_request_params=tile_params,
    response_format="image/jpeg",
)

KARTVERKET_NIB_WMS = ProviderDescriptor(
    name="kartverket_nib_wms",
    label="Geonorge Norge i bilder (WMS 1.3.0)",
    base_url="https://wms.geonorge.no/skwms1/wms.nib",
    projection_kind=ProjectionKind.GEOGRAPHIC,
    build_request_params=wms_getmap_params,
    response_format="image/png",
    half_width_degrees=0.002,
    wms_version=WMS_VERSION_1_3_0,
    layer="ortofoto",
)

STATKART_OPENWMS = ProviderDescriptor(
    name="statkart_openwms",
    label="Statkart open WMS (WMS 1.1.1)",
    base_url="https://openwms.statkart.no/skwms1/wms.nib",
    projection_kind=ProjectionKind.GEOGRAPHIC,
    build_request_params=wms_getmap_params,
    response_format="image/jpeg",
    half_width_degrees=0.005,
    wms_version=WMS_VERSION_1_1_1,
    layer="ortofoto",
)

ESRI_WORLD_IMAGERY = ProviderDescriptor(
    name="esri_world_imagery",
    label="Esri World Imagery",
    base_url=(
        "https://server.arcgisonline.com/ArcGIS/rest/services/World_Imagery/MapServer/tile/"
        "{zoom}/{row}/{column}"
    ),
    projection_kind=ProjectionKind.PROJECTED_TILE,
    build_request_params=tile_params,
    response_format="image/jpeg",
)

OSM_STANDARD = ProviderDescriptor(
    name="osm_standard",
    label="OpenStreetMap standard tiles",
    base_url="https://tile.openstreetmap.org/{zoom}/{column}/{row}.png",
    projection_kind=ProjectionKind.PROJECTED_TILE,
    build_request_params=tile_params,
    response_format="image/png",
)

# Highest priority first: national orthophoto services, then global imagery,
# then a generic street map so something geographic is always shown.
DEFAULT_PROVIDERS: Tuple[ProviderDescriptor, ...] = (
    KARTVERKET_NIB_WMTS,
    KARTVERKET_NIB_WMS,
    STATKART_OPENWMS,
    ESRI_WORLD_IMAGERY,
    OSM_STANDARD,
)

PROVIDERS_BY_NAME: Dict[str, ProviderDescriptor] = {
    descriptor.name: descriptor for descriptor in DEFAULT_PROVIDERS
}


def list_providers(names: Sequence[str] | None = None) -> Tuple[ProviderDescriptor, ...]:
    """Return the ordered provider registry, optionally restricted to ``names``."""

    if not names:
        return DEFAULT_PROVIDERS

    unknown = [name for name in names if name not in PROVIDERS_BY_NAME]
    if unknown:
        raise ValueError(
            f"Unknown imagery provider(s): {', '.join(unknown)}. "
            f"Available providers: {', '.join(PROVIDERS_BY_NAME)}."
        )
    selected = tuple(PROVIDERS_BY_NAME[name] for name in _unique(names))
    logger.info("Using imagery provider order: %s", ", ".join(d.name for d in selected))
    return selected


def _unique(names: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for name in names:
        if name not in seen:
            seen.append(name)
    return seen
