from __future__ import annotations

import pathlib
import sys
from types import SimpleNamespace
from typing import Dict, List, Tuple, Union

import pytest
import requests
from requests.structures import CaseInsensitiveDict
from requests.utils import get_encoding_from_headers
from urllib3 import HTTPHeaderDict

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1]))

import variant_proxy


REASONS = {200: "OK", 404: "Not Found", 500: "Internal Server Error", 502: "Bad Gateway"}


Headers = Union[Dict[str, str], List[Tuple[str, str]], None]


def make_response(url: str, status_code: int = 200, body: str = "", headers: Headers = None) -> requests.Response:
    """Build a response the way requests' HTTPAdapter does from a urllib3 one."""
    raw_headers = HTTPHeaderDict()
    pairs = headers.items() if isinstance(headers, dict) else (headers or [])
    for key, value in pairs:
        raw_headers.add(key, value)

    response = requests.Response()
    response.url = url
    response.status_code = status_code
    response.reason = REASONS.get(status_code, "")
    response._content = body.encode("utf-8")
    response.raw = SimpleNamespace(headers=raw_headers)
    response.headers = CaseInsensitiveDict(raw_headers)
    response.encoding = get_encoding_from_headers(response.headers)
    return response


class FakeTransport:
    """Stands in for requests.get; routes are url -> response or exception."""

    def __init__(self) -> None:
        self.routes: Dict[str, object] = {}
        self.calls: List[dict] = []

    def add(self, url: str, status_code: int = 200, body: str = "", headers: Headers = None) -> None:
        self.routes[url] = make_response(url, status_code, body, headers)

    def fail(self, url: str, exc: Exception) -> None:
        self.routes[url] = exc

    def __call__(self, url, headers=None, timeout=None, **kwargs):
        self.calls.append({"url": url, "headers": headers, "timeout": timeout})
        target = self.routes.get(url)
        if target is None:
            raise requests.ConnectionError(f"No route to {url}")
        if isinstance(target, Exception):
            raise target
        return target


@pytest.fixture
def transport(monkeypatch):
    fake = FakeTransport()
    monkeypatch.setattr(variant_proxy.requests, "get", fake)
    return fake


@pytest.fixture
def settings():
    return variant_proxy.Settings(
        variants_url=variant_proxy.VARIANTS_URL_DEFAULT,
        fetch_timeout=5.0,
        user_agent="variant-proxy-tests",
    )
