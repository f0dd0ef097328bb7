import json
from typing import Any, Optional

import httpx
import pytest

from tracklet import AsyncTracklet
from tracklet.destinations.loader import script_registry

HOST = "https://collect.example.com"
WRITE_KEY = "key1:secret1"


class MockCollector:
    """Collection endpoint stand-in: records POSTs, serves plugin sources on GET."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.fetches: list[str] = []
        self.destinations: list[dict[str, Any]] = []
        self.scripts: dict[str, str] = {}
        self.status = 200
        self.body: Optional[str] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            self.fetches.append(str(request.url))
            source = self.scripts.get(str(request.url))
            if source is None:
                return httpx.Response(404, text="not found")
            return httpx.Response(200, text=source)
        self.requests.append(request)
        if self.body is not None:
            return httpx.Response(self.status, text=self.body)
        return httpx.Response(self.status, json={"destinations": self.destinations})

    @property
    def events(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]

    @property
    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture(autouse=True)
def fresh_script_registry():
    script_registry.reset()
    yield
    script_registry.reset()


@pytest.fixture
def collector() -> MockCollector:
    return MockCollector()


@pytest.fixture
def http_client(collector) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(collector))


@pytest.fixture
def make_client(http_client):
    def _make(**kwargs: Any) -> AsyncTracklet:
        kwargs.setdefault("host", HOST)
        kwargs.setdefault("write_key", WRITE_KEY)
        return AsyncTracklet(http_client=http_client, **kwargs)
    return _make
