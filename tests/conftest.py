"""Pytest shared fixtures: fake HTTP transport and credentials."""
import json
import pathlib
import sys
from typing import Optional

# Add project root to Python path
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from cloudadmin.core.microsoft import CloudClient, StaticTokenCredential


def make_response(
    status_code: int = 200,
    body=None,
    headers: Optional[dict] = None,
    url: str = "https://api.example.test/",
) -> requests.Response:
    """Build a real requests.Response carrying ``body`` as JSON."""
    resp = requests.Response()
    resp.status_code = status_code
    resp.headers = CaseInsensitiveDict(headers or {})
    resp.url = url
    resp._content = json.dumps(body).encode("utf-8") if body is not None else b""
    resp.encoding = "utf-8"
    return resp


class FakeTransport:
    """Stands in for ``requests.request``: replays queued responses and records calls."""

    def __init__(self):
        self.calls = []
        self._queue = []

    def queue(self, status_code=200, body=None, headers=None):
        self._queue.append((status_code, body, headers))
        return self

    def __call__(self, method, url, params=None, data=None, headers=None, timeout=None, **kwargs):
        self.calls.append({
            "method": method,
            "url": url,
            "params": params,
            "data": data,
            "headers": headers or {},
            "timeout": timeout,
        })
        if not self._queue:
            raise AssertionError(f"Unexpected HTTP {method} {url}")
        status_code, body, resp_headers = self._queue.pop(0)
        return make_response(status_code, body, resp_headers, url=url)

    def json_body(self, index: int):
        """Decode the JSON payload sent with call ``index``."""
        return json.loads(self.calls[index]["data"])

    @property
    def remaining(self) -> int:
        return len(self._queue)


# ─────────────────────────────────────────────────────────────────────────────
# Network Guard Rails
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture(autouse=True)
def _block_network(monkeypatch, request):
    """Fail any unit test that reaches for the network without a fake in place."""
    if request.node.get_closest_marker("integration"):
        return

    def _refuse(*args, **kwargs):
        raise RuntimeError(f"Unexpected HTTP call in unit test: {args[:2]}")

    monkeypatch.setattr(requests, "request", _refuse)
    monkeypatch.setattr(requests, "post", _refuse)
    monkeypatch.setattr(requests, "get", _refuse)


@pytest.fixture
def transport(monkeypatch):
    fake = FakeTransport()
    monkeypatch.setattr(requests, "request", fake)
    return fake


@pytest.fixture
def credential():
    return StaticTokenCredential("test-token")


@pytest.fixture
def client(credential):
    return CloudClient("https://api.example.test", credential, "https://api.example.test/.default")


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def response_factory():
    return make_response
