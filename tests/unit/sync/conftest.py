"""Shared fixtures for sync tests."""

import json
from collections.abc import Callable

import httpx
import pytest


def json_response(body, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json=body)


class Router:
    """Mock transport handler dispatching on URL path.

    Records every request so tests can assert on call counts and params.
    """

    def __init__(self, routes: dict[str, Callable[[httpx.Request], httpx.Response] | dict | list]):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for prefix, route in self.routes.items():
            if request.url.path.startswith(prefix):
                if callable(route):
                    return route(request)
                return json_response(route)
        return httpx.Response(404, text=json.dumps({"error": "not found"}))

    def calls_to(self, prefix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.startswith(prefix)]


@pytest.fixture
def router_factory():
    """Build a Router from a path-prefix mapping."""
    return Router


@pytest.fixture
def aladhan_methods():
    """Trimmed Aladhan /methods payload, including a nameless placeholder."""
    return {
        "code": 200,
        "data": {
            "MWL": {
                "id": 3,
                "name": "Muslim World League",
                "params": {"Fajr": 18, "Isha": 17},
            },
            "MAKKAH": {
                "id": 4,
                "name": "Umm Al-Qura University, Makkah",
                "params": {"Fajr": 18.5, "Isha": "90 min"},
            },
            "KARACHI": {
                "id": 1,
                "name": "University of Islamic Sciences, Karachi",
                "params": {"Fajr": 18, "Isha": 18},
            },
            "CUSTOM": {"id": 99},
        },
    }


@pytest.fixture
def timings_payload():
    """Factory for an Aladhan /timings response."""

    def build(fajr: str = "04:12 (+06)") -> dict:
        return {
            "code": 200,
            "data": {
                "timings": {
                    "Fajr": fajr,
                    "Sunrise": "05:30",
                    "Dhuhr": "12:01",
                    "Asr": "15:20",
                    "Maghrib": "18:05",
                    "Isha": "19:25",
                    "Imsak": "04:02",
                    "Midnight": "00:01",
                },
                "meta": {"timezone": "Asia/Dhaka"},
            },
        }

    return build
