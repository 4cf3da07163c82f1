import threading
from typing import Dict, List, Optional, Tuple, Union

import pytest

from site_cloner.errors import FetchError
from site_cloner.transport import Fetched

Body = Union[str, bytes]


class FakeTransport:
    """Canned responses keyed by exact URL; anything else is a 404."""

    def __init__(self, routes: Optional[Dict[str, object]] = None):
        self.routes: Dict[str, Tuple[int, bytes, Dict[str, str]]] = {}
        self.errors: Dict[str, str] = {}
        self.redirects: Dict[str, str] = {}
        self.calls: List[str] = []
        self._lock = threading.Lock()
        for url, route in (routes or {}).items():
            if isinstance(route, tuple):
                self.add(url, *route)
            else:
                self.add(url, route)

    def add(self, url: str, body: Body = b"", status: int = 200, content_type: str = "text/html"):
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.routes[url] = (status, body, {"Content-Type": content_type})

    def fail(self, url: str, message: str = "connection refused"):
        self.errors[url] = message

    def redirect(self, url: str, target: str):
        self.redirects[url] = target

    def _get(self, url: str) -> Fetched:
        with self._lock:
            self.calls.append(url)
        if url in self.errors:
            raise FetchError(url, self.errors[url])
        served = self.redirects.get(url, url)
        status, body, headers = self.routes.get(served, (404, b"not found", {"Content-Type": "text/plain"}))
        return Fetched(url=served, status_code=status, headers=dict(headers), content=body, encoding="utf-8")

    def fetch_text(self, url: str, *, timeout: Optional[float] = None) -> Fetched:
        return self._get(url)

    def fetch_bytes(self, url: str, *, timeout: Optional[float] = None) -> Fetched:
        return self._get(url)

    def count(self, url: str) -> int:
        return self.calls.count(url)

    def close(self) -> None:
        pass


def html_page(body: str, head: str = "", title: str = "Page") -> str:
    return (
        "<!DOCTYPE html><html><head>"
        f"<title>{title}</title>{head}</head><body>{body}</body></html>"
    )


@pytest.fixture
def transport():
    return FakeTransport()
