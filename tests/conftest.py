"""Shared fixtures: an in-memory HTTP origin served through httpx.MockTransport."""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import httpx
import pytest

from pullcache.cache.config import CacheConfig


@dataclass
class Route:
    status: int = 200
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""


class FakeOrigin:
    """Minimal HTTP origin recording every request it serves.

    Set ``delay`` to keep requests in flight long enough to observe overlap.
    """

    def __init__(self):
        self.routes: Dict[str, Route] = {}
        self.requests: List[Tuple[str, str]] = []
        self.delay = 0.0
        self.active = 0
        self.max_active = 0
        self.active_by_url: Counter = Counter()
        self.max_active_by_url: Counter = Counter()
        self.failures: Dict[str, Exception] = {}

    def serve(
        self,
        url: str,
        body: bytes = b"",
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        status: int = 200,
    ) -> None:
        headers = {}
        if etag is not None:
            headers["ETag"] = etag
        if last_modified is not None:
            headers["Last-Modified"] = last_modified
        self.routes[url] = Route(status=status, headers=headers, body=body)

    def redirect(self, url: str, location: str, status: int = 302) -> None:
        self.routes[url] = Route(status=status, headers={"Location": location})

    def fail(self, url: str, error: Exception) -> None:
        self.failures[url] = error

    def count(self, method: str, url: Optional[str] = None) -> int:
        return sum(1 for m, u in self.requests if m == method and (url is None or u == url))

    async def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append((request.method, url))
        if url in self.failures:
            raise self.failures[url]

        self.active += 1
        self.active_by_url[url] += 1
        self.max_active = max(self.max_active, self.active)
        self.max_active_by_url[url] = max(self.max_active_by_url[url], self.active_by_url[url])
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
            self.active_by_url[url] -= 1

        route = self.routes.get(url)
        if route is None:
            return httpx.Response(404)
        body = route.body if request.method == "GET" else b""
        return httpx.Response(route.status, headers=route.headers, content=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def origin():
    """Fresh fake HTTP origin."""
    return FakeOrigin()


@pytest.fixture
def config(tmp_path):
    """Cache configuration rooted in a temporary directory."""
    return CacheConfig(cache_root=tmp_path / "cache")
