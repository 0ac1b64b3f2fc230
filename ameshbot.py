import io
import json
import math
import os
import sys
import time

import argparse

import logging
import traceback

import concurrent.futures
import threading

from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import requests

from configobj import ConfigObj

from PIL import Image

import websocket

from ameshbot_utilities import AmeshError, ErrorKind, geocode_nominatim, geocode_yahoo


VERSION = "1.0"

TILE_SIZE = 256  # in pixels
EARTH_RADIUS = 6371.0  # in kilometers
MAX_ZOOM = 30

# timeouts in seconds, every outbound request carries one
API_TIMEOUT = 30
HANDSHAKE_TIMEOUT = 10

USER_AGENT = f"ameshbot/{VERSION}"

DEFAULT_PLACE = "東京"
DEFAULT_ZOOM = 10
DEFAULT_AROUND_TILES = 2

BASEMAP_URL_TEMPLATE = "https://tile.openstreetmap.org/{zoom}/{x}/{y}.png"
RADAR_URL_TEMPLATE = "https://www.jma.go.jp/bosai/jmatile/data/nowc/{timestamp}/none/{timestamp}/surf/hrpns/{zoom}/{x}/{y}.png"
LIGHTNING_URL_TEMPLATE = "https://www.jma.go.jp/bosai/jmatile/data/nowc/{timestamp}/none/{timestamp}/surf/liden/data.geojson"
TIMESTAMP_INDEX_URLS = [
    "https://www.jma.go.jp/bosai/jmatile/data/nowc/targetTimes_N1.json",
    "https://www.jma.go.jp/bosai/jmatile/data/nowc/targetTimes_N2.json",
    "https://www.jma.go.jp/bosai/jmatile/data/nowc/targetTimes_N3.json",
]

# data layer names as they appear in the timestamp indices
RADAR_ELEMENT = "hrpns_nd"
LIGHTNING_ELEMENT = "liden"

# fixed rendering constants
BACKGROUND_COLOR = (255, 255, 255, 255)
RADAR_ALPHA = 128  # out of 255
DISTANCE_CIRCLE_RADII = [10, 20, 30, 40, 50]  # in kilometers
DISTANCE_CIRCLE_SEGMENTS = 64
DISTANCE_CIRCLE_COLOR = (100, 100, 100, 255)
LIGHTNING_MARKER_RADIUS = 7  # in pixels
LIGHTNING_MARKER_COLOR = (0, 255, 255, 255)

REACTION = "👀"
CW_TEXT = "隠すっぽ！"
REPLY_TEXT = "📡 {name} ({lat:.4f}, {lng:.4f}) の雨雲レーダー画像だっぽ"
APOLOGY_TEXT = "申し訳ないっぽ。ameshコマンドの処理中にエラーが発生したっぽ"


class Log:
    """
    A simplifying wrapper around the parts of the logging module that are
    relevant here, plus some minor extensions. Goal: Logging of warnings
    (depending on verbosity level), errors and exceptions on stderr, other
    messages (modulo verbosity) on stdout, and everything (independent of
    verbosity) in a logfile. Until configure() is called, messages simply go
    wherever the logging module sends them by default.
    """

    def __init__(self, name="ameshbot"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG)

    def configure(self, verbosity, logfile):

        # start from a clean slate in case this is called more than once
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)

        # via https://stackoverflow.com/a/36338212
        class LevelFilter(logging.Filter):
            def __init__(self, low, high):
                self.low = low
                self.high = high
                logging.Filter.__init__(self)
            def filter(self, record):
                return self.low <= record.levelno <= self.high

        # log errors (and warnings if a higher verbosity level is dialed in) on
        # stderr
        eh = logging.StreamHandler()
        if verbosity == "quiet":
            eh.setLevel(logging.ERROR)
        else:
            eh.setLevel(logging.WARNING)
        eh.addFilter(LevelFilter(logging.WARNING, logging.CRITICAL))
        eh.setFormatter(logging.Formatter('%(asctime)s %(levelname)-8s %(message)s', datefmt='%Y-%m-%dT%H:%M:%S'))
        self.logger.addHandler(eh)

        # log other messages on stdout if verbosity not set to quiet
        if verbosity != "quiet":
            oh = logging.StreamHandler(stream=sys.stdout)
            if verbosity == "deafening":
                oh.setLevel(logging.DEBUG)
            else:
                oh.setLevel(logging.INFO)
            oh.addFilter(LevelFilter(logging.DEBUG, logging.INFO))
            oh.setFormatter(logging.Formatter('%(asctime)s %(message)s', datefmt='%Y-%m-%dT%H:%M:%S'))
            self.logger.addHandler(oh)

        # log everything to file independent of verbosity
        if logfile is not None:
            fh = logging.FileHandler(logfile)
            fh.setLevel(logging.DEBUG)
            file_formatter = logging.Formatter('%(asctime)s %(levelname)-8s %(threadName)s %(message)s', datefmt='%Y-%m-%dT%H:%M:%S')
            fh.setFormatter(file_formatter)
            self.logger.addHandler(fh)

    def debug(self, s): self.logger.debug(s)
    def info(self, s): self.logger.info(s)
    def warning(self, s): self.logger.warning(s)
    def error(self, s): self.logger.error(s)
    def critical(self, s): self.logger.critical(s)

    def exception(self, e):
        """
        Logs an exception along with its traceback, line by line, based on:
        https://stackoverflow.com/a/40428650
        """

        e_traceback = traceback.format_exception(e.__class__, e, e.__traceback__)
        traceback_lines = []
        for line in [line.rstrip('\n') for line in e_traceback]:
            traceback_lines.extend(line.splitlines())
        for line in traceback_lines:
            self.error(line)

LOGGER = Log()


class GeoPoint:
    """
    A latitude-longitude coordinate pair, in that order due to ISO 6709, see:
    https://stackoverflow.com/questions/7309121/preferred-order-of-writing-latitude-longitude-tuples
    Out-of-range values are tolerated, they just project to nonsense.
    """

    def __init__(self, lat, lon):
        self.lat = lat
        self.lon = lon

    def __repr__(self):
        return f"GeoPoint({self.lat}, {self.lon})"

    def offset(self, distance, angle):
        """
        The point `distance` kilometers away in direction `angle` (radians,
        clockwise from north), using the small-angle approximation of a great
        circle - good enough for the few dozen kilometers we care about.
        """

        delta = (distance / EARTH_RADIUS) * 180 / math.pi
        lat = self.lat + delta * math.cos(angle)
        lon = self.lon + delta * math.sin(angle) / math.cos(self.lat * math.pi / 180)
        return GeoPoint(lat, lon)

class Location(GeoPoint):
    """A resolved place: coordinates plus a name fit for captions and filenames."""

    def __init__(self, lat, lon, name):
        super().__init__(lat, lon)
        self.name = name

    def __repr__(self):
        return f"Location({self.lat}, {self.lon}, {self.name!r})"

class LightningPoint(GeoPoint):
    """A lightning strike as reported by the JMA, `kind` is their strike type."""

    def __init__(self, lat, lon, kind):
        super().__init__(lat, lon)
        self.kind = kind

    def __repr__(self):
        return f"LightningPoint({self.lat}, {self.lon}, {self.kind})"

class WebMercator:
    """Various functions related to the Web Mercator projection."""

    @staticmethod
    def project(geopoint, zoom):
        """
        An implementation of the Web Mercator projection (see
        https://en.wikipedia.org/wiki/Web_Mercator_projection#Formulas) that
        returns floats in global pixel coordinates, i.e. tile coordinates
        multiplied by TILE_SIZE. Zoom levels outside [0, MAX_ZOOM] yield (0, 0)
        instead of an error. Latitudes so far out of range that the logarithm
        is undefined yield NaN for y.
        """

        if zoom < 0 or zoom > MAX_ZOOM:
            return (0.0, 0.0)

        factor = TILE_SIZE * (1 << zoom)
        x = factor * (geopoint.lon + 180) / 360
        t = math.tan(math.pi / 4 + (geopoint.lat * math.pi / 180) / 2)
        if t <= 0:
            return (x, math.nan)
        y = factor * (0.5 - math.log(t) / (2 * math.pi))
        return (x, y)

    @staticmethod
    def tile_of(x, y):
        """Indices of the tile containing the pixel (x, y)."""

        return (math.floor(x / TILE_SIZE), math.floor(y / TILE_SIZE))

class Raster:
    """
    Drawing primitives on RGBA images. Both never fail: pixels outside of the
    image are silently skipped.
    """

    @staticmethod
    def line(image, x1, y1, x2, y2, color):
        """
        Bresenham's line algorithm in its integer-only error-accumulating form,
        see https://en.wikipedia.org/wiki/Bresenham%27s_line_algorithm#All_cases
        """

        pixels = image.load()
        width, height = image.size

        dx = abs(x2 - x1)
        dy = abs(y2 - y1)
        sx = 1 if x1 <= x2 else -1
        sy = 1 if y1 <= y2 else -1
        error = dx - dy

        x, y = x1, y1
        while True:
            if 0 <= x < width and 0 <= y < height:
                pixels[x, y] = color

            if x == x2 and y == y2:
                break

            e2 = 2 * error
            if e2 > -dy:
                error -= dy
                x += sx
            if e2 < dx:
                error += dx
                y += sy

    @staticmethod
    def filled_circle(image, cx, cy, radius, color):
        """Sets every pixel within `radius` of (cx, cy), inclusive."""

        pixels = image.load()
        width, height = image.size

        for dy in range(-radius, radius + 1):
            for dx in range(-radius, radius + 1):
                if dx * dx + dy * dy > radius * radius:
                    continue
                x = cx + dx
                y = cy + dy
                if 0 <= x < width and 0 <= y < height:
                    pixels[x, y] = color


class FetchCancelled(requests.RequestException):
    """Raised by HTTPFetcher.fetch once the fetcher has been cancelled."""

class HTTPFetcher:
    """
    Thin wrapper around a requests session: adds the user agent and a timeout
    to every request and lets a render be aborted from another thread. Anything
    with a compatible fetch(url, params=None) method returning an object with
    `status_code`, `content` and `json()` can stand in for it.
    """

    def __init__(self, session=None, timeout=API_TIMEOUT, user_agent=USER_AGENT):
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        self.user_agent = user_agent
        self.cancelled = threading.Event()

    def fetch(self, url, params=None):
        if self.cancelled.is_set():
            raise FetchCancelled(f"not fetching {url}, cancelled")

        LOGGER.debug(f"GET {url}")
        return self.session.get(url, params=params, headers={'User-Agent': self.user_agent}, timeout=self.timeout)

    def cancel(self):
        """
        Makes all further fetches fail immediately and drops pooled
        connections, so a render in progress winds down quickly.
        """

        self.cancelled.set()
        self.session.close()

def fetch_json(fetcher, url):
    """
    Fetches and decodes a JSON document. Returns None for non-2xx responses,
    which for the JMA endpoints simply means "no data right now".
    """

    try:
        r = fetcher.fetch(url)
    except requests.RequestException as e:
        raise AmeshError(ErrorKind.UPSTREAM_UNAVAILABLE, f"unable to fetch {url}: {e}") from e

    if not 200 <= r.status_code < 300:
        LOGGER.debug(f"{url} returned status code {r.status_code}")
        return None

    try:
        return r.json()
    except ValueError as e:
        raise AmeshError(ErrorKind.MALFORMED_RESPONSE, f"{url} did not return valid json") from e

def get_latest_timestamps(fetcher, urls=TIMESTAMP_INDEX_URLS):
    """
    Polls the JMA nowcast timestamp indices and returns a dict mapping each
    data layer ("element") to the latest base time at which it's an analysis
    rather than a forecast, i.e. basetime == validtime. Indices that can't be
    loaded are skipped; if none can, the dict is empty.
    """

    records = []
    for url in urls:
        try:
            data = fetch_json(fetcher, url)
        except AmeshError as e:
            LOGGER.warning(f"Unable to load timestamp index, skipping it: {e}")
            continue

        if data is None:
            LOGGER.warning(f"Timestamp index {url} unavailable, skipping it.")
            continue
        if not isinstance(data, list):
            LOGGER.warning(f"Timestamp index {url} is not a list, skipping it.")
            continue

        records.extend(record for record in data if isinstance(record, dict))

    def elements_of(record):
        elements = record.get("elements")
        if not isinstance(elements, list):
            return []
        return [element for element in elements if isinstance(element, str)]

    elements = {element for record in records for element in elements_of(record)}

    # timestamps are fixed-width YYYYMMDDHHmmss, so comparing them as strings
    # is the same as comparing them chronologically
    timestamps = {}
    for element in elements:
        latest = ""
        for record in records:
            basetime = str(record.get("basetime") or "")
            validtime = str(record.get("validtime") or "")
            if basetime != validtime:
                continue
            if element in elements_of(record) and latest < basetime:
                latest = basetime
        timestamps[element] = latest

    return timestamps

def get_lightning_points(fetcher, timestamp):
    """
    Loads the lightning strikes observed at `timestamp` from the JMA's GeoJSON
    feed. An unavailable feed just means no lightning.
    """

    url = LIGHTNING_URL_TEMPLATE.format(timestamp=timestamp)
    data = fetch_json(fetcher, url)
    if data is None:
        return []

    if not isinstance(data, dict):
        raise AmeshError(ErrorKind.MALFORMED_RESPONSE, "lightning data is not a feature collection")

    features = data.get("features") or []
    if not isinstance(features, list):
        raise AmeshError(ErrorKind.MALFORMED_RESPONSE, "lightning features are not a list")

    points = []
    for feature in features:
        if not isinstance(feature, dict):
            continue
        geometry = feature.get("geometry")
        coordinates = geometry.get("coordinates") if isinstance(geometry, dict) else None

        # geojson order is lng, lat and possibly an elevation we don't need
        if not isinstance(coordinates, list) or len(coordinates) < 2:
            continue

        properties = feature.get("properties")
        if not isinstance(properties, dict):
            properties = {}
        try:
            point = LightningPoint(float(coordinates[1]), float(coordinates[0]), int(properties.get("type", 0)))
        except (TypeError, ValueError) as e:
            raise AmeshError(ErrorKind.MALFORMED_RESPONSE, f"unreadable lightning feature {feature!r}") from e
        points.append(point)

    return points


class MapTileStatus:
    """An enum type used to keep track of the current status of map tiles."""

    PENDING = 1
    DOWNLOADING = 2
    DOWNLOADED = 3
    ERROR = 4

class MapTile:
    """
    A map tile: coordinates and, once loaded, the basemap image and (if
    available) the radar image covering it.
    """

    def __init__(self, zoom, x, y):
        self.zoom = zoom
        self.x = x
        self.y = y

        self.status = MapTileStatus.PENDING
        self.basemap = None
        self.radar = None

    def __repr__(self):
        return f"MapTile({self.zoom}, {self.x}, {self.y})"

    def load(self, fetcher, basemap_url_template, radar_url_template, radar_timestamp):
        """
        Downloads the basemap and radar images for this tile. Sets the status
        to ERROR if the basemap can't be had, in which case the radar image
        isn't even attempted - there'd be nothing to overlay it onto.
        """

        self.status = MapTileStatus.DOWNLOADING

        basemap_url = basemap_url_template.format(zoom=self.zoom, x=self.x, y=self.y)
        self.basemap = MapTile.download(fetcher, basemap_url)
        if self.basemap is None:
            self.status = MapTileStatus.ERROR
            return

        radar_url = radar_url_template.format(timestamp=radar_timestamp, zoom=self.zoom, x=self.x, y=self.y)
        self.radar = MapTile.download(fetcher, radar_url)

        self.status = MapTileStatus.DOWNLOADED

    @staticmethod
    def download(fetcher, url):
        """
        Downloads and decodes a tile image. Returns None if that doesn't work
        out for whatever reason (a warning is appropriate, not an error: the
        render goes on with a hole where this tile would have been).
        """

        try:
            r = fetcher.fetch(url)
        except requests.RequestException as e:
            LOGGER.warning(f"Unable to download {url}: {e}")
            return None

        if r.status_code != 200:
            LOGGER.warning(f"Unable to download {url}, status code {r.status_code}.")
            return None

        try:
            image = Image.open(io.BytesIO(r.content))
            image.load()
        except OSError as e:
            LOGGER.warning(f"Unable to decode {url}: {e}")
            return None

        if image.size != (TILE_SIZE, TILE_SIZE):
            LOGGER.warning(f"Unexpected tile size {image.size} for {url}.")
            return None

        return image.convert("RGBA")

class MapTileGrid:
    """
    A square grid of map tiles, kept as a nested list such that indexing works
    via [x][y]. Manages the download and compositing of the tiles onto a
    canvas.
    """

    def __init__(self, maptiles):
        self.maptiles = maptiles
        self.width = len(maptiles)
        self.height = len(maptiles[0])

    def __repr__(self):
        return f"MapTileGrid({self.maptiles})"

    @classmethod
    def around(cls, center_x, center_y, zoom, radius):
        """The (2 * radius + 1)² tiles centered on tile (center_x, center_y)."""

        maptiles = [[MapTile(zoom, center_x + dx, center_y + dy)
                     for dy in range(-radius, radius + 1)]
                     for dx in range(-radius, radius + 1)]
        return cls(maptiles)

    def flat(self):
        """Returns the grid as a flattened list."""

        return [maptile for col in self.maptiles for maptile in col]

    def download(self, fetcher, basemap_url_template, radar_url_template, radar_timestamp):
        """
        Downloads the constituent tiles using a threadpool. Tiles are
        independent of each other, so failures are merely counted and logged.
        """

        threads = max(self.width, self.height)
        with concurrent.futures.ThreadPoolExecutor(max_workers=threads) as executor:
            futures = [executor.submit(maptile.load, fetcher, basemap_url_template, radar_url_template, radar_timestamp)
                       for maptile in self.flat()]

            # surface anything unexpected that happened in a worker
            for future in futures:
                future.result()

        missing_tiles = [maptile for maptile in self.flat() if maptile.status == MapTileStatus.ERROR]
        if missing_tiles:
            LOGGER.warning(f"Unable to load {len(missing_tiles)} of {self.width * self.height} map tiles: {missing_tiles}")

        missing_radar = [maptile for maptile in self.flat() if maptile.status == MapTileStatus.DOWNLOADED and maptile.radar is None]
        if missing_radar:
            LOGGER.warning(f"No radar imagery for {len(missing_radar)} map tiles.")

    def stitch(self, image):
        """
        Draws the tiles onto `image`: basemaps as they are, radar on top at a
        uniform opacity of RADAR_ALPHA/255 (which multiplies with the radar
        tile's own transparency, so rain-free areas stay untouched). Must not be
        called before the tiles have been loaded.
        """

        for x in range(0, self.width):
            for y in range(0, self.height):
                maptile = self.maptiles[x][y]
                if maptile.basemap is None:
                    continue

                dest = (x * TILE_SIZE, y * TILE_SIZE)
                image.alpha_composite(maptile.basemap, dest=dest)
                if maptile.radar is not None:
                    image.alpha_composite(MapTileGrid.fade(maptile.radar, RADAR_ALPHA), dest=dest)

    @staticmethod
    def fade(image, alpha):
        """A copy of an RGBA image with its alpha channel scaled by alpha/255."""

        faded = image.copy()
        faded.putalpha(image.getchannel("A").point(lambda a: round(a * alpha / 255)))
        return faded


class AmeshRequest:
    """What to render: where, at which zoom level, and how many tiles around."""

    def __init__(self, location, zoom=DEFAULT_ZOOM, around_tiles=DEFAULT_AROUND_TILES):
        assert around_tiles >= 0

        self.location = location
        self.zoom = zoom
        self.around_tiles = around_tiles

    def __repr__(self):
        return f"AmeshRequest({self.location}, {self.zoom}, {self.around_tiles})"

    @property
    def image_size(self):
        return (2 * self.around_tiles + 1) * TILE_SIZE

class AmeshImage:
    """
    The canvas being composited, plus enough context (center pixel and zoom)
    to translate geographic coordinates onto it.
    """

    def __init__(self, image, center, zoom):
        self.image = image
        self.center = center
        self.zoom = zoom

    @classmethod
    def blank(cls, size, center, zoom):
        return cls(Image.new("RGBA", (size, size), BACKGROUND_COLOR), center, zoom)

    def to_canvas(self, geopoint):
        """
        Canvas pixel coordinates of a geopoint, or None if it doesn't project
        to anything sensible.
        """

        x, y = WebMercator.project(geopoint, self.zoom)
        half = self.image.width // 2
        x = x - self.center[0] + half
        y = y - self.center[1] + half

        # also catches a center that itself didn't project
        if not (math.isfinite(x) and math.isfinite(y)):
            return None

        return (int(x), int(y))

    def draw_distance_circle(self, geopoint, radius, color=DISTANCE_CIRCLE_COLOR):
        """
        Draws a circle of `radius` kilometers around `geopoint`, approximated
        by DISTANCE_CIRCLE_SEGMENTS straight lines.
        """

        for i in range(DISTANCE_CIRCLE_SEGMENTS):
            angle1 = i * 2 * math.pi / DISTANCE_CIRCLE_SEGMENTS
            angle2 = (i + 1) * 2 * math.pi / DISTANCE_CIRCLE_SEGMENTS

            start = self.to_canvas(geopoint.offset(radius, angle1))
            end = self.to_canvas(geopoint.offset(radius, angle2))
            if start is None or end is None:
                continue

            Raster.line(self.image, start[0], start[1], end[0], end[1], color)

    def draw_lightning_marker(self, point, color=LIGHTNING_MARKER_COLOR):
        position = self.to_canvas(point)
        if position is None:
            return

        Raster.filled_circle(self.image, position[0], position[1], LIGHTNING_MARKER_RADIUS, color)

    def to_png(self):
        """Encodes the image as PNG, in memory."""

        buf = io.BytesIO()
        self.image.save(buf, format="PNG")
        return buf.getvalue()

    def save(self, path):
        self.image.save(path, format="PNG")

class AmeshRenderer:
    """
    Puts it all together: basemap and radar tiles around a location, distance
    circles and lightning markers on top. Upstream trouble degrades the image
    but never prevents one from being rendered.
    """

    def __init__(self, fetcher, basemap_url_template=BASEMAP_URL_TEMPLATE, radar_url_template=RADAR_URL_TEMPLATE, timestamp_index_urls=TIMESTAMP_INDEX_URLS):
        self.fetcher = fetcher
        self.basemap_url_template = basemap_url_template
        self.radar_url_template = radar_url_template
        self.timestamp_index_urls = timestamp_index_urls

    def render(self, request):
        location = request.location

        LOGGER.info("Determining latest radar and lightning timestamps...")
        timestamps = get_latest_timestamps(self.fetcher, self.timestamp_index_urls)
        LOGGER.debug(timestamps)
        radar_timestamp = timestamps.get(RADAR_ELEMENT, "")
        lightning_timestamp = timestamps.get(LIGHTNING_ELEMENT, "")

        LOGGER.info("Loading lightning data...")
        try:
            lightning_points = get_lightning_points(self.fetcher, lightning_timestamp)
        except AmeshError as e:
            LOGGER.warning(f"Unable to load lightning data, proceeding without: {e}")
            lightning_points = []
        LOGGER.debug(f"{len(lightning_points)} lightning strikes")

        center = WebMercator.project(location, request.zoom)
        image = AmeshImage.blank(request.image_size, center, request.zoom)

        if math.isfinite(center[0]) and math.isfinite(center[1]):
            center_tile_x, center_tile_y = WebMercator.tile_of(*center)

            LOGGER.info("Downloading tiles...")
            grid = MapTileGrid.around(center_tile_x, center_tile_y, request.zoom, request.around_tiles)
            LOGGER.debug(grid)
            grid.download(self.fetcher, self.basemap_url_template, self.radar_url_template, radar_timestamp)

            LOGGER.info("Compositing tiles...")
            grid.stitch(image.image)
        else:
            LOGGER.warning(f"{location.lat}, {location.lon} doesn't project onto the map, skipping tiles")

        LOGGER.info("Drawing distance circles and lightning markers...")
        for radius in DISTANCE_CIRCLE_RADII:
            image.draw_distance_circle(location, radius)
        for point in lightning_points:
            image.draw_lightning_marker(point)

        return image


def resolve_location(fetcher, place, api_key, geocoder="yahoo", geolocator=None):
    """
    Turns a user-supplied place into a Location. Two whitespace-separated
    numbers are taken as latitude and longitude as-is; everything else (or
    nothing, which means DEFAULT_PLACE) is geocoded.
    """

    parts = place.split()
    if len(parts) == 2:
        try:
            lat = float(parts[0])
            lon = float(parts[1])
        except ValueError:
            pass
        else:
            return Location(lat, lon, f"{lat:.2f},{lon:.2f}")

    if not place.strip():
        place = DEFAULT_PLACE

    try:
        if geocoder == "nominatim":
            lat, lon, name = geocode_nominatim(place, geolocator)
        else:
            lat, lon, name = geocode_yahoo(fetcher, place, api_key)
    except AmeshError as e:
        raise e.wrap(f"unable to resolve {place!r}")

    return Location(lat, lon, name)

def generate_filename(location, now=None):
    """E.g. "amesh_東京_1700000000.png"."""

    if now is None:
        now = time.time()
    return f"amesh_{location.name.replace(' ', '_')}_{int(now)}.png"


class ParsedCommand:
    """Result of parsing a mention: whether it's an amesh command, and for where."""

    def __init__(self, is_amesh, place=""):
        self.is_amesh = is_amesh
        self.place = place

    def __repr__(self):
        return f"ParsedCommand({self.is_amesh}, {self.place!r})"

def parse_amesh_command(text):
    """
    Recognizes "amesh" and "amesh <place>", ignoring any @mentions. Matching is
    by prefix including the separating space, so "ameshi" is no command.
    """

    words = [word for word in text.strip().split() if not word.startswith("@")]
    text = " ".join(words)

    if text.startswith("amesh "):
        return ParsedCommand(True, text[len("amesh "):].strip())
    if text == "amesh":
        return ParsedCommand(True, DEFAULT_PLACE)
    return ParsedCommand(False)


class MisskeyError(Exception):
    """Raised when the Misskey API responds with a non-2xx status code."""

    def __init__(self, endpoint, status_code):
        super().__init__(f"{endpoint} returned status code {status_code}")
        self.endpoint = endpoint
        self.status_code = status_code

class Misskey:
    """
    Basic Misskey client: just the handful of API endpoints needed for replying
    with an image, plus the streaming connection mentions arrive on.
    """

    def __init__(self, domain, token, session=None, user_agent=USER_AGENT, timeout=API_TIMEOUT):
        self.domain = domain
        self.token = token
        self.session = session if session is not None else requests.Session()
        self.user_agent = user_agent
        self.timeout = timeout
        self.retry_delay = 10
        self.ws = None

    def __retry__(self, fn, exception, tries=3):
        """
        Retries a function up to `tries` times every `self.retry_delay` seconds
        until it stops throwing `exception`.
        """

        while tries > 0:
            tries -= 1
            try:
                return fn()
            except exception as e:
                if tries == 0:
                    raise e
                LOGGER.warning(f"{e}, retrying in {self.retry_delay} seconds...")
                time.sleep(self.retry_delay)

    def __check__(self, endpoint, r):
        if not 200 <= r.status_code < 300:
            raise MisskeyError(endpoint, r.status_code)
        return r

    def api(self, endpoint, data=None):
        """Calls an API endpoint, authenticating via the "i" parameter."""

        payload = {"i": self.token}
        if data:
            payload.update(data)

        r = self.session.post(
            f"https://{self.domain}/api/{endpoint}",
            json=payload,
            headers={'User-Agent': self.user_agent},
            timeout=self.timeout
        )
        return self.__check__(endpoint, r)

    def add_reaction(self, note_id, reaction):
        self.api("notes/reactions/create", {"noteId": note_id, "reaction": reaction})

    def upload(self, data, filename):
        """
        Uploads a PNG image to the drive, retrying up to three times in case the
        server has a hiccup. Returns the created file's metadata.
        """

        def __do_upload__():
            r = self.session.post(
                f"https://{self.domain}/api/drive/files/create",
                data={"i": self.token},
                files={"file": (filename, data, "image/png")},
                headers={'User-Agent': self.user_agent},
                timeout=self.timeout
            )
            return self.__check__("drive/files/create", r).json()

        return self.__retry__(__do_upload__, (MisskeyError, requests.RequestException))

    def note(self, text, original_note, file_ids=None):
        """
        Posts a reply to `original_note`, matching its visibility (except that
        public notes get a home-only reply) and its content warning, if any.
        """

        visibility = original_note.get("visibility", "home")
        if visibility == "public":
            visibility = "home"

        data = {"text": text, "visibility": visibility}
        if original_note.get("id"):
            data["replyId"] = original_note["id"]
        if file_ids:
            data["fileIds"] = file_ids
        if original_note.get("cw") is not None:
            data["cw"] = CW_TEXT

        return self.api("notes/create", data).json().get("createdNote")

    def connect(self):
        """Opens the streaming connection and subscribes to the main channel."""

        self.close()
        self.ws = websocket.create_connection(
            f"wss://{self.domain}/streaming?i={self.token}",
            timeout=HANDSHAKE_TIMEOUT,
            header=[f"User-Agent: {self.user_agent}"]
        )

        # the timeout only applies to the handshake, listening blocks
        self.ws.settimeout(None)
        self.ws.send(json.dumps({"type": "connect", "body": {"channel": "main", "id": "main"}}))
        LOGGER.info(f"Connected to Misskey streaming API on {self.domain}")

    def listen(self, handler):
        """
        Calls `handler` with every note mentioning us. Only returns by raising
        once the connection is gone.
        """

        if self.ws is None:
            raise websocket.WebSocketConnectionClosedException("not connected")

        while True:
            message = self.ws.recv()
            if not message:
                raise websocket.WebSocketConnectionClosedException("connection closed by server")

            try:
                msg = json.loads(message)
            except ValueError:
                LOGGER.warning(f"Ignoring unparseable message: {message!r}")
                continue

            body = msg.get("body") or {}
            if msg.get("type") != "channel" or body.get("type") != "mention":
                continue

            note = body.get("body") or {}
            LOGGER.info(f"Received mention from @{(note.get('user') or {}).get('username')}: {note.get('text')}")
            handler(note)

    def close(self):
        if self.ws is not None:
            try:
                self.ws.close()
            except (websocket.WebSocketException, OSError) as e:
                LOGGER.debug(f"Error while closing streaming connection: {e}")
            self.ws = None

class AmeshBot:
    """
    Answers "amesh [place]" mentions with a radar image. Each command is
    processed in a worker thread so that the streaming connection keeps being
    read while images are rendered.
    """

    def __init__(self, misskey, renderer, resolve, zoom=DEFAULT_ZOOM, around_tiles=DEFAULT_AROUND_TILES, max_workers=4, fetcher=None):
        self.misskey = misskey
        self.renderer = renderer
        self.fetcher = fetcher
        self.resolve = resolve
        self.zoom = zoom
        self.around_tiles = around_tiles
        self.executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers)

    def handle_note(self, note):
        """Dispatches a mention, returns a future if it was an amesh command."""

        command = parse_amesh_command(note.get("text") or "")
        if not command.is_amesh:
            return None

        LOGGER.info(f"Processing amesh command for place: {command.place}")
        return self.executor.submit(self.respond, note, command.place)

    def respond(self, note, place):
        """
        Processes a command, replying with an apology if anything goes wrong.
        Details end up in the log only.
        """

        try:
            self.process_amesh_command(note, place)
        except Exception as e:
            LOGGER.error(f"Error processing amesh command: {e}")
            LOGGER.exception(e)
            try:
                self.misskey.note(APOLOGY_TEXT, note)
            except (MisskeyError, requests.RequestException) as reply_error:
                LOGGER.error(f"Failed to send error message: {reply_error}")

    def process_amesh_command(self, note, place):

        # let the user know we're on it, no big deal if that fails
        try:
            self.misskey.add_reaction(note.get("id"), REACTION)
        except (MisskeyError, requests.RequestException) as e:
            LOGGER.warning(f"Failed to add reaction: {e}")

        location = self.resolve(place)
        LOGGER.info(f"Generating amesh image for {location.name} ({location.lat:.4f}, {location.lon:.4f})")
        image = self.renderer.render(AmeshRequest(location, self.zoom, self.around_tiles))

        LOGGER.info("Uploading image to Misskey...")
        uploaded = self.misskey.upload(image.to_png(), generate_filename(location))
        LOGGER.debug(uploaded)

        LOGGER.info("Sending reply...")
        text = REPLY_TEXT.format(name=location.name, lat=location.lat, lng=location.lon)
        self.misskey.note(text, note, file_ids=[uploaded["id"]])

        LOGGER.info(f"Successfully processed amesh command for {location.name}")

    def run(self):
        """
        Listens for mentions until interrupted, reconnecting whenever the
        connection drops. A failed reconnect is retried on the next pass.
        """

        try:
            self.misskey.connect()
            while True:
                try:
                    self.misskey.listen(self.handle_note)
                except (websocket.WebSocketException, OSError) as e:
                    LOGGER.warning(f"Streaming connection lost: {e}")

                LOGGER.info("Attempting to reconnect...")
                time.sleep(5)
                try:
                    self.misskey.connect()
                except (websocket.WebSocketException, OSError) as e:
                    LOGGER.error(f"Failed to reconnect: {e}")
                    time.sleep(10)
        finally:
            self.shutdown()

    def shutdown(self):
        """
        Aborts renders still in progress (if the bot owns a fetcher), closes
        the streaming connection and stops accepting commands.
        """

        LOGGER.info("Shutting down...")
        if self.fetcher is not None:
            self.fetcher.cancel()
        self.misskey.close()
        self.executor.shutdown(wait=False)


class StatusHandler(BaseHTTPRequestHandler):
    """Answers GET /status so that container orchestration can tell we're alive."""

    def do_GET(self):
        if self.path != "/status":
            self.send_response(404)
            self.end_headers()
            return

        body = json.dumps({"message": "ameshbot is running", "version": VERSION}).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        LOGGER.debug(format % args)

def start_health_check_server(port):
    """Serves StatusHandler from a daemon thread, returns the server."""

    server = ThreadingHTTPServer(("", port), StatusHandler)
    threading.Thread(target=server.serve_forever, daemon=True, name="health-check").start()
    LOGGER.info(f"Health check listening on port {server.server_address[1]}")
    return server

def health_check(port):
    """True if a bot on this machine answers its status endpoint."""

    try:
        r = requests.get(f"http://localhost:{port}/status", timeout=HANDSHAKE_TIMEOUT)
    except requests.RequestException as e:
        LOGGER.error(f"Health check failed: {e}")
        return False

    if r.status_code != 200:
        LOGGER.error(f"Health check failed, status code {r.status_code}.")
        return False

    LOGGER.info("Health check passed")
    return True


def load_settings(config_path, environ=None):
    """
    Reads the configuration file (missing sections and keys fall back to
    defaults, so old configuration files keep working) and applies environment
    variable overrides for the secrets.
    """

    if environ is None:
        environ = os.environ

    config = ConfigObj(config_path, unrepr=True)

    def get(section, key, default):
        if section in config and key in config[section]:
            return config[section][key]
        return default

    settings = {
        "verbosity": get('GENERAL', 'verbosity', "normal"),
        "logfile": get('GENERAL', 'logfile', None),
        "misskey_domain": get('MISSKEY', 'domain', None),
        "misskey_api_token": get('MISSKEY', 'api_token', None),
        "geocoder": get('GEOCODING', 'geocoder', "yahoo"),
        "yahoo_api_token": get('GEOCODING', 'yahoo_api_token', None),
        "zoom": get('IMAGE', 'zoom', DEFAULT_ZOOM),
        "around_tiles": get('IMAGE', 'around_tiles', DEFAULT_AROUND_TILES),
        "basemap_url_template": get('IMAGE', 'basemap_url_template', BASEMAP_URL_TEMPLATE),
        "radar_url_template": get('IMAGE', 'radar_url_template', RADAR_URL_TEMPLATE),
        "health_check_port": get('HEALTH_CHECK', 'port', 8080),
    }

    # secrets are usually passed via the environment when running in a
    # container
    overrides = {
        "MISSKEY_DOMAIN": "misskey_domain",
        "MISSKEY_API_TOKEN": "misskey_api_token",
        "YAHOO_API_TOKEN": "yahoo_api_token",
    }
    for variable, key in overrides.items():
        if environ.get(variable):
            settings[key] = environ[variable]

    if settings["geocoder"] not in ("yahoo", "nominatim"):
        raise ValueError(f"not a recognized geocoder: {settings['geocoder']}")

    return settings

def main():

    # handle cli arguments
    parser = argparse.ArgumentParser(description="Replies to \"amesh [place]\" mentions on Misskey with a rain radar image.")
    parser.add_argument('-c', '--config', dest='config_path', metavar='CONFIG_PATH', type=str, default="config.ini", help='config file to use instead of looking for config.ini in the current working directory')
    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.add_parser('bot', help='run the bot (the default)')
    amesh_parser = subparsers.add_parser('amesh', help='render a radar image for a place and save it to disk')
    amesh_parser.add_argument('place', metavar='PLACE', nargs='+', help='a place name, or latitude and longitude, e.g. \'35.6895 139.6917\'')
    amesh_parser.add_argument('-o', '--output-dir', dest='output_dir', metavar='DIR', type=str, default=".", help='directory to save the image to')
    subparsers.add_parser('health-check', help='check whether a running bot answers its status endpoint')
    args = parser.parse_args()

    settings = load_settings(args.config_path)
    LOGGER.configure(settings["verbosity"], settings["logfile"])

    command = args.command or "bot"

    if command == "health-check":
        sys.exit(0 if health_check(settings["health_check_port"]) else 1)

    if settings["geocoder"] == "yahoo" and not settings["yahoo_api_token"]:
        raise RuntimeError("no yahoo api token configured, set YAHOO_API_TOKEN or switch to the nominatim geocoder")

    fetcher = HTTPFetcher()
    renderer = AmeshRenderer(fetcher, settings["basemap_url_template"], settings["radar_url_template"])

    def resolve(place):
        return resolve_location(fetcher, place, settings["yahoo_api_token"], settings["geocoder"])

    if command == "amesh":
        LOGGER.info("Resolving location...")
        location = resolve(" ".join(args.place))
        LOGGER.info(f"Generating amesh image for {location.name} ({location.lat:.4f}, {location.lon:.4f})")
        image = renderer.render(AmeshRequest(location, settings["zoom"], settings["around_tiles"]))

        LOGGER.info("Saving image to disk...")
        if not os.path.isdir(args.output_dir):
            os.makedirs(args.output_dir)
        path = os.path.join(args.output_dir, generate_filename(location))
        image.save(path)
        print(path)
        return

    if not settings["misskey_domain"] or not settings["misskey_api_token"]:
        raise RuntimeError("misskey domain and api token must be configured, set MISSKEY_DOMAIN and MISSKEY_API_TOKEN")

    start_health_check_server(settings["health_check_port"])

    # own session, cancelling the fetcher on shutdown closes its session
    misskey = Misskey(settings["misskey_domain"], settings["misskey_api_token"])
    bot = AmeshBot(misskey, renderer, resolve, settings["zoom"], settings["around_tiles"], fetcher=fetcher)
    LOGGER.info(f"ameshbot {VERSION} starting on {settings['misskey_domain']}")
    bot.run()

def cli():

    # log all exceptions
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(130)
    except Exception as e:
        LOGGER.exception(e)
        sys.exit(1)


if __name__ == "__main__":
    cli()
