import json
from unittest import mock

import pytest
import requests
from geopy.exc import GeocoderServiceError

from ameshbot import Location, generate_filename, resolve_location
from ameshbot_utilities import AmeshError, ErrorKind, parse_coordinates

from conftest import ScriptedFetcher, ScriptedResponse


def geocoder_response(*features):
    data = {"Feature": [{"Name": name, "Geometry": {"Coordinates": coordinates}} for name, coordinates in features]}
    return ScriptedResponse(200, json.dumps(data))

def resolve_error(fetcher, place="新宿"):
    with pytest.raises(AmeshError) as excinfo:
        resolve_location(fetcher, place, "api-key")
    return excinfo.value

def test_coordinates_skip_geocoding():
    fetcher = ScriptedFetcher()

    location = resolve_location(fetcher, "35.6895 139.6917", "api-key")

    assert (location.lat, location.lon, location.name) == (35.6895, 139.6917, "35.69,139.69")
    assert fetcher.calls == []

def test_integer_coordinates():
    fetcher = ScriptedFetcher()

    location = resolve_location(fetcher, "  35   139 ", "api-key")

    assert (location.lat, location.lon, location.name) == (35.0, 139.0, "35.00,139.00")
    assert fetcher.calls == []

@pytest.mark.parametrize("place", ["35.6895", "35.6895 east", "1 2 3"])
def test_non_coordinates_are_geocoded(place):
    fetcher = ScriptedFetcher([("geoCoder", geocoder_response(("どこか", "139.0,35.0")))])

    location = resolve_location(fetcher, place, "api-key")

    assert location.name == "どこか"
    assert fetcher.calls[0][1]["query"] == place

def test_geocoding():
    fetcher = ScriptedFetcher([("geoCoder", geocoder_response(("東京都新宿区", "139.70356,35.69384"), ("other", "0,0")))])

    location = resolve_location(fetcher, "新宿", "api-key")

    assert (location.lat, location.lon, location.name) == (35.69384, 139.70356, "東京都新宿区")
    url, params = fetcher.calls[0]
    assert url == "https://map.yahooapis.jp/geocode/V1/geoCoder"
    assert params == {"appid": "api-key", "query": "新宿", "output": "json"}

@pytest.mark.parametrize("place", ["", "   "])
def test_empty_place_defaults_to_tokyo(place):
    fetcher = ScriptedFetcher([("geoCoder", geocoder_response(("東京都", "139.69171,35.6895")))])

    location = resolve_location(fetcher, place, "api-key")

    assert location.name == "東京都"
    assert fetcher.calls[0][1]["query"] == "東京"

@pytest.mark.parametrize("response, kind", [
    (ScriptedResponse(400, '{"Error": "Invalid API key"}'), ErrorKind.GEOCODING),
    (ScriptedResponse(500, ""), ErrorKind.GEOCODING),
    (requests.ConnectionError("unreachable"), ErrorKind.GEOCODING),
    (ScriptedResponse(200, '{"Feature": []}'), ErrorKind.NOT_FOUND),
    (ScriptedResponse(200, '{"ResultInfo": {"Count": 0}}'), ErrorKind.NOT_FOUND),
    (ScriptedResponse(200, "invalid json"), ErrorKind.MALFORMED_RESPONSE),
    (geocoder_response(("x", "139.70356")), ErrorKind.INVALID_COORDINATES),
    (geocoder_response(("x", "139.70356,35.69384,12")), ErrorKind.INVALID_COORDINATES),
    (geocoder_response(("x", "east,north")), ErrorKind.INVALID_COORDINATES),
    (ScriptedResponse(200, '{"Feature": [{"Name": "x"}]}'), ErrorKind.INVALID_COORDINATES),
])
def test_geocoding_errors(response, kind):
    error = resolve_error(ScriptedFetcher([("geoCoder", response)]))

    assert error.kind == kind
    assert error.context[0] == "unable to resolve '新宿'"
    assert str(error).startswith(f"{kind}: unable to resolve '新宿': ")

def test_parse_coordinates():
    assert parse_coordinates("139.5,35.25") == (35.25, 139.5)
    assert parse_coordinates(" 139.5 , 35.25 ") == (35.25, 139.5)
    with pytest.raises(AmeshError):
        parse_coordinates(None)

def test_nominatim():
    geolocator = mock.Mock()
    geolocator.geocode.return_value = mock.Mock(latitude=34.69, longitude=135.50, address="大阪市, 日本")

    location = resolve_location(None, "大阪", None, geocoder="nominatim", geolocator=geolocator)

    assert (location.lat, location.lon, location.name) == (34.69, 135.50, "大阪市, 日本")
    geolocator.geocode.assert_called_once_with("大阪", language='ja')

def test_nominatim_not_found():
    geolocator = mock.Mock()
    geolocator.geocode.return_value = None

    with pytest.raises(AmeshError) as excinfo:
        resolve_location(None, "nowhere", None, geocoder="nominatim", geolocator=geolocator)
    assert excinfo.value.kind == ErrorKind.NOT_FOUND

def test_nominatim_failure():
    geolocator = mock.Mock()
    geolocator.geocode.side_effect = GeocoderServiceError("service down")

    with pytest.raises(AmeshError) as excinfo:
        resolve_location(None, "大阪", None, geocoder="nominatim", geolocator=geolocator)
    assert excinfo.value.kind == ErrorKind.GEOCODING

def test_nominatim_coordinates_skip_geocoding():
    geolocator = mock.Mock()

    location = resolve_location(None, "34.69 135.50", None, geocoder="nominatim", geolocator=geolocator)

    assert location.name == "34.69,135.50"
    geolocator.geocode.assert_not_called()


@pytest.mark.parametrize("name, expected", [
    ("東京", "amesh_東京_1700000000.png"),
    ("35.69,139.69", "amesh_35.69,139.69_1700000000.png"),
    ("New York City", "amesh_New_York_City_1700000000.png"),
    ("", "amesh__1700000000.png"),
])
def test_generate_filename(name, expected):
    assert generate_filename(Location(0, 0, name), now=1700000000.9) == expected

def test_generate_filename_uses_current_time():
    filename = generate_filename(Location(0, 0, "東京"))
    timestamp = filename[len("amesh_東京_"):-len(".png")]
    assert timestamp.isdigit()
