import pytest

from solar_imagery.services.projection import (
    GeographicBBox,
    InvalidCoordinatesError,
    TileCoordinates,
    geographic_bbox,
    lat_lon_to_tile,
    project,
)
from solar_imagery.services.providers import KARTVERKET_NIB_WMS, KARTVERKET_NIB_WMTS, STATKART_OPENWMS


def test_oslo_tile_matches_web_mercator_reference():
    tile = lat_lon_to_tile(59.9139, 10.7522, 17)

    assert tile == TileCoordinates(zoom=17, column=69450, row=38125)


def test_origin_lands_on_the_centre_tiles():
    assert lat_lon_to_tile(0.0, 0.0, 1) == TileCoordinates(zoom=1, column=1, row=1)
    assert lat_lon_to_tile(0.0, 0.0, 0) == TileCoordinates(zoom=0, column=0, row=0)


def test_grid_edges_are_clamped():
    north_east = lat_lon_to_tile(90.0, 180.0, 3)
    south_west = lat_lon_to_tile(-90.0, -180.0, 3)

    assert (north_east.column, north_east.row) == (7, 0)
    assert (south_west.column, south_west.row) == (0, 7)


def test_wms_130_bbox_uses_latitude_first():
    bbox = geographic_bbox(59.9, 10.75, 0.002, "1.3.0")

    assert bbox.axis_order == "lat-lon"
    assert bbox.as_param() == "59.898000,10.748000,59.902000,10.752000"


def test_wms_111_bbox_uses_longitude_first():
    bbox = geographic_bbox(59.9, 10.75, 0.005, "1.1.1")

    assert bbox.axis_order == "lon-lat"
    assert bbox.as_tuple() == pytest.approx((10.745, 59.895, 10.755, 59.905))


def test_bbox_is_clamped_at_the_poles():
    bbox = geographic_bbox(89.999, 179.999, 0.01, "1.1.1")

    assert bbox.max_x == 180.0
    assert bbox.max_y == 90.0


def test_project_dispatches_on_provider_projection_kind():
    assert isinstance(project(59.9139, 10.7522, KARTVERKET_NIB_WMTS), TileCoordinates)

    wms_bbox = project(59.9139, 10.7522, KARTVERKET_NIB_WMS)
    legacy_bbox = project(59.9139, 10.7522, STATKART_OPENWMS)
    assert isinstance(wms_bbox, GeographicBBox)
    assert wms_bbox.axis_order == "lat-lon"
    assert legacy_bbox.axis_order == "lon-lat"


@pytest.mark.parametrize("lat, lon", [(90.5, 0.0), (-91.0, 0.0), (0.0, 180.1), (0.0, -200.0)])
def test_out_of_range_coordinates_are_rejected(lat, lon):
    with pytest.raises(InvalidCoordinatesError):
        lat_lon_to_tile(lat, lon, 17)
    with pytest.raises(InvalidCoordinatesError):
        geographic_bbox(lat, lon, 0.002)


def test_non_finite_coordinates_are_rejected():
    with pytest.raises(InvalidCoordinatesError):
        lat_lon_to_tile(float("nan"), 10.0, 17)
