from geopy.geocoders import Nominatim
from geopy.exc import GeopyError
import requests

YAHOO_GEOCODER_URL = "https://map.yahooapis.jp/geocode/V1/geoCoder"

class ErrorKind:
    """An enum type used to tell the different kinds of failure apart."""

    UPSTREAM_UNAVAILABLE = "upstream-unavailable"
    GEOCODING = "geocoding"
    NOT_FOUND = "not-found"
    INVALID_COORDINATES = "invalid-coordinates"
    MALFORMED_RESPONSE = "malformed-response"

class AmeshError(Exception):
    """
    Raised whenever a location can't be resolved or an upstream data source
    misbehaves. Callers should look at `kind`, not at the message. Context is
    added on the way up via wrap(), innermost message last.
    """

    def __init__(self, kind, message):
        super().__init__(message)
        self.kind = kind
        self.context = [message]

    def wrap(self, message):
        self.context.insert(0, message)
        return self

    def __str__(self):
        return f"{self.kind}: " + ": ".join(self.context)

def parse_coordinates(coordinates):
    """
    Parses the "lng,lat" strings returned by the Yahoo! geocoder. Exactly two
    numeric fields are accepted, anything else is an error.
    """

    fields = coordinates.split(",") if isinstance(coordinates, str) else []
    if len(fields) != 2:
        raise AmeshError(ErrorKind.INVALID_COORDINATES, f"expected 'lng,lat', got {coordinates!r}")

    try:
        lng = float(fields[0])
        lat = float(fields[1])
    except ValueError as e:
        raise AmeshError(ErrorKind.INVALID_COORDINATES, f"non-numeric coordinates {coordinates!r}") from e

    return (lat, lng)

def geocode_yahoo(fetcher, place, api_key):
    """
    Looks up a place name with the Yahoo! Japan geocoder and returns a tuple
    (lat, lng, name) for the first result.
    """

    params = {"appid": api_key, "query": place, "output": "json"}
    try:
        r = fetcher.fetch(YAHOO_GEOCODER_URL, params=params)
    except requests.RequestException as e:
        raise AmeshError(ErrorKind.GEOCODING, f"request failed: {e}") from e

    if not 200 <= r.status_code < 300:
        raise AmeshError(ErrorKind.GEOCODING, f"geocoder returned status code {r.status_code}")

    try:
        data = r.json()
    except ValueError as e:
        raise AmeshError(ErrorKind.MALFORMED_RESPONSE, "geocoder response is not valid json") from e

    features = data.get("Feature") if isinstance(data, dict) else None
    if not features:
        raise AmeshError(ErrorKind.NOT_FOUND, f"no results found for {place}")

    feature = features[0]
    try:
        coordinates = feature["Geometry"]["Coordinates"]
    except (KeyError, TypeError) as e:
        raise AmeshError(ErrorKind.INVALID_COORDINATES, "result has no coordinates") from e

    lat, lng = parse_coordinates(coordinates)
    return (lat, lng, feature.get("Name", place))

def geocode_nominatim(place, geolocator=None):
    """
    Same as geocode_yahoo, but asks OpenStreetMap's Nominatim instead - handy
    if you don't have a Yahoo! API key.
    """

    if geolocator is None:
        geolocator = Nominatim(user_agent="ameshbot")

    try:
        location = geolocator.geocode(place, language='ja')
    except GeopyError as e:
        raise AmeshError(ErrorKind.GEOCODING, f"nominatim lookup failed: {e}") from e

    if location is None:
        raise AmeshError(ErrorKind.NOT_FOUND, f"no results found for {place}")

    return (location.latitude, location.longitude, location.address)
