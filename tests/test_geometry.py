import math

import pytest
from PIL import Image

from ameshbot import EARTH_RADIUS, GeoPoint, Raster, WebMercator


def mercator(lat, lng, zoom):
    factor = 256 * 2 ** zoom
    x = factor * (lng + 180) / 360
    y = factor * (0.5 - math.log(math.tan(math.pi / 4 + math.radians(lat) / 2)) / (2 * math.pi))
    return (x, y)

def test_project_matches_formula():
    x, y = WebMercator.project(GeoPoint(35.6895, 139.6917), 10)
    expected_x, expected_y = mercator(35.6895, 139.6917, 10)
    assert x == pytest.approx(expected_x, abs=1e-6)
    assert y == pytest.approx(expected_y, abs=1e-6)

def test_project_is_deterministic():
    p = GeoPoint(35.6895, 139.6917)
    assert WebMercator.project(p, 10) == WebMercator.project(p, 10)

def test_project_at_zoom_0():
    x, y = WebMercator.project(GeoPoint(51.5, -0.12), 0)
    assert x == pytest.approx(256 * (-0.12 + 180) / 360)
    assert y == pytest.approx(mercator(51.5, -0.12, 0)[1])

def test_project_origin_is_world_center():
    x, y = WebMercator.project(GeoPoint(0, 0), 1)
    assert x == pytest.approx(256)
    assert y == pytest.approx(256)

@pytest.mark.parametrize("zoom", [-1, 31, 100])
def test_project_out_of_range_zoom(zoom):
    assert WebMercator.project(GeoPoint(35.6895, 139.6917), zoom) == (0, 0)

def test_project_highest_zoom():
    x, y = WebMercator.project(GeoPoint(35.6895, 139.6917), 30)
    assert x > 0 and y > 0

def test_project_nonsensical_latitude():
    x, y = WebMercator.project(GeoPoint(-100, 0), 5)
    assert math.isnan(y)

def test_tile_of():
    assert WebMercator.tile_of(1000.5, 255.9) == (3, 0)
    assert WebMercator.tile_of(256, 512) == (1, 2)
    assert WebMercator.tile_of(-0.5, 0) == (-1, 0)

def test_offset():
    p = GeoPoint(35.0, 139.0)
    assert p.offset(0, 1.234).lat == pytest.approx(35.0)

    # one degree of latitude northward
    north = p.offset(EARTH_RADIUS * math.pi / 180, 0)
    assert north.lat == pytest.approx(36.0)
    assert north.lon == pytest.approx(139.0)

    # eastward offsets are stretched by 1/cos(lat)
    east = p.offset(EARTH_RADIUS * math.pi / 180, math.pi / 2)
    assert east.lat == pytest.approx(35.0)
    assert east.lon == pytest.approx(139.0 + 1 / math.cos(math.radians(35.0)))


WHITE = (255, 255, 255, 255)
RED = (255, 0, 0, 255)

@pytest.fixture
def canvas():
    return Image.new("RGBA", (20, 10), WHITE)

def set_pixels(image):
    return {(x, y) for x in range(image.width) for y in range(image.height) if image.getpixel((x, y)) != WHITE}

def test_line_horizontal(canvas):
    Raster.line(canvas, 2, 3, 8, 3, RED)
    assert set_pixels(canvas) == {(x, 3) for x in range(2, 9)}

def test_line_diagonal(canvas):
    Raster.line(canvas, 5, 5, 0, 0, RED)
    assert set_pixels(canvas) == {(i, i) for i in range(6)}

def test_line_steep_is_connected(canvas):
    Raster.line(canvas, 1, 0, 3, 9, RED)
    pixels = set_pixels(canvas)
    assert len(pixels) == 10
    assert {y for _, y in pixels} == set(range(10))
    assert (1, 0) in pixels and (3, 9) in pixels

def test_line_single_point(canvas):
    Raster.line(canvas, 4, 4, 4, 4, RED)
    assert set_pixels(canvas) == {(4, 4)}

def test_line_partially_outside(canvas):
    Raster.line(canvas, -5, 2, 5, 2, RED)
    assert set_pixels(canvas) == {(x, 2) for x in range(0, 6)}

def test_line_entirely_outside(canvas):
    before = canvas.tobytes()
    Raster.line(canvas, -10, -10, -1, -50, RED)
    Raster.line(canvas, 30, 0, 40, 9, RED)
    assert canvas.tobytes() == before

def test_filled_circle_inside():
    image = Image.new("RGBA", (30, 30), WHITE)
    Raster.filled_circle(image, 15, 15, 7, RED)
    expected = {(15 + dx, 15 + dy) for dx in range(-7, 8) for dy in range(-7, 8) if dx * dx + dy * dy <= 49}
    assert set_pixels(image) == expected

def test_filled_circle_at_corner():
    image = Image.new("RGBA", (30, 30), WHITE)
    Raster.filled_circle(image, 0, 0, 7, RED)
    pixels = set_pixels(image)
    assert (0, 0) in pixels
    assert (7, 0) in pixels
    assert (8, 0) not in pixels
    assert (5, 5) not in pixels
    assert all(dx * dx + dy * dy <= 49 for dx, dy in pixels)

def test_filled_circle_outside(canvas):
    before = canvas.tobytes()
    Raster.filled_circle(canvas, -20, -20, 7, RED)
    Raster.filled_circle(canvas, 100, 5, 7, RED)
    assert canvas.tobytes() == before
