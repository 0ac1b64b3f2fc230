import io
import json
import threading

import pytest
from PIL import Image


class ScriptedResponse:
    """Just enough of requests.Response for the code under test."""

    def __init__(self, status_code=200, content=b""):
        if isinstance(content, str):
            content = content.encode("utf-8")
        self.status_code = status_code
        self.content = content

    def json(self):
        return json.loads(self.content)

class ScriptedFetcher:
    """
    In-memory stand-in for HTTPFetcher. Routes are (substring, response) pairs,
    the first one whose substring occurs in the URL wins; a response may also be
    an exception to raise. Unrouted URLs get a 404. Every call is recorded.
    """

    def __init__(self, routes=None):
        self.routes = list(routes or [])
        self.calls = []
        self.lock = threading.Lock()

    def fetch(self, url, params=None):
        with self.lock:
            self.calls.append((url, params))

        for substring, response in self.routes:
            if substring in url:
                if isinstance(response, Exception):
                    raise response
                return response
        return ScriptedResponse(404, "Not Found")

    def urls(self, substring=""):
        return [url for url, _ in self.calls if substring in url]

def png_bytes(color, size=(256, 256), mode="RGBA"):
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format="PNG")
    return buf.getvalue()


TIMESTAMPS = [
    {"basetime": "20240101120000", "validtime": "20240101120000", "elements": ["hrpns_nd", "liden"]},
]

@pytest.fixture
def timestamps_response():
    return ScriptedResponse(200, json.dumps(TIMESTAMPS))

@pytest.fixture
def white_tile():
    return ScriptedResponse(200, png_bytes((255, 255, 255, 255)))
