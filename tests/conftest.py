from __future__ import annotations

from typing import Dict, List, Tuple, Union

import pytest
import requests

PNG_HEADER = b"\x89PNG\r\n\x1a\n"

Route = Union[int, Tuple[bytes, str]]


def png_bytes(size: int) -> bytes:
    return PNG_HEADER + b"\x00" * (size - len(PNG_HEADER))


class StubResponse:
    def __init__(self, status_code: int, content: bytes = b"", content_type: str = "") -> None:
        self.status_code = status_code
        self.content = content
        self.headers = {"Content-Type": content_type} if content_type else {}

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class StubSession:
    """Answers ``get`` from a URL -> (body, content type) or status code table."""

    def __init__(self, routes: Dict[str, Route]) -> None:
        self.routes = routes
        self.calls: List[str] = []

    def get(self, url: str, timeout: float = 0) -> StubResponse:
        self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            raise requests.ConnectionError(f"unreachable: {url}")
        if isinstance(route, int):
            return StubResponse(route)
        body, content_type = route
        return StubResponse(200, body, content_type)


@pytest.fixture
def stub_session():
    return StubSession


@pytest.fixture
def make_png():
    return png_bytes
