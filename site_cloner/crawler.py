import html as htmllib
import logging
import re
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional, Set
from urllib.parse import urlparse

from .backends import FetchBackend
from .config import DEFAULT_MAX_PAGES, UrlHeuristics
from .errors import BackendError, CrawlError, PageFetchError, PageNotFound
from .pages import Page, bs4_parse, effective_base_url, looks_like_html
from .sitemap import SitemapReader
from .urls import (
    is_fetchable,
    is_same_origin,
    is_valid_internal_url,
    normalize_identity,
    origin_of,
    resolve,
)

log = logging.getLogger(__name__)

HREF_RE = re.compile(r"""href\s*=\s*["']([^"']+)["']""", re.IGNORECASE)
SKIP_PREFIXES = ("#", "javascript:", "mailto:", "tel:", "data:")
NON_PAGE_SUFFIXES = {
    ".css", ".js", ".mjs", ".json", ".xml", ".rss", ".txt", ".map", ".pdf",
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".ico", ".bmp", ".avif",
    ".woff", ".woff2", ".ttf", ".otf", ".eot",
    ".mp4", ".webm", ".mp3", ".ogg", ".wav", ".zip", ".gz",
}


def _is_page_candidate(url: str) -> bool:
    path = urlparse(url).path.lower()
    dot = path.rfind(".")
    if dot <= path.rfind("/"):
        return True
    return path[dot:] not in NON_PAGE_SUFFIXES


def extract_links(
    html: str, page_url: str, heuristics: Optional[UrlHeuristics] = None
) -> Set[str]:
    """Internal page links of a document, normalized.

    Two independent passes whose results are unioned: structured anchor
    parsing, and a raw ``href=`` scan that still works on broken markup.
    """
    origin = origin_of(page_url)
    links: Set[str] = set()

    def consider(href: Optional[str], base: str) -> None:
        if not href or href.strip().lower().startswith(SKIP_PREFIXES):
            return
        resolved = resolve(href, base, heuristics)
        if not resolved or not is_valid_internal_url(resolved, origin):
            return
        if _is_page_candidate(resolved):
            links.add(normalize_identity(resolved))

    soup = bs4_parse(html)
    base = effective_base_url(soup, page_url)
    for a in soup.select("a[href]"):
        consider(a.get("href"), base)
    for m in HREF_RE.finditer(html):
        consider(htmllib.unescape(m.group(1)), base)
    return links


# -------------------- State --------------------


@dataclass
class CrawlState:
    origin: str
    visited: Set[str] = field(default_factory=set)
    queued: Set[str] = field(default_factory=set)
    frontier: Deque[str] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def enqueue(self, url: str) -> bool:
        with self.lock:
            if url in self.visited or url in self.queued:
                return False
            self.frontier.append(url)
            self.queued.add(url)
            return True

    def pop(self) -> Optional[str]:
        with self.lock:
            if not self.frontier:
                return None
            url = self.frontier.popleft()
            self.queued.discard(url)
            return url

    def mark_visited(self, url: str) -> bool:
        with self.lock:
            if url in self.visited:
                return False
            self.visited.add(url)
            return True


@dataclass
class CrawlResult:
    pages: List[Page]
    base_url: str
    failed: List[str]
    not_found: List[str]
    backend: str
    downgraded: bool


# -------------------- Engine --------------------


class Crawler:
    def __init__(
        self,
        start_url: str,
        *,
        backend: FetchBackend,
        fallback: Optional[FetchBackend] = None,
        sitemap: Optional[SitemapReader] = None,
        max_pages: int = DEFAULT_MAX_PAGES,
        backend_attempts: int = 2,
        heuristics: Optional[UrlHeuristics] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.start_url = normalize_identity(start_url)
        self.state = CrawlState(origin=origin_of(self.start_url))
        self.primary = backend
        self.backend = backend
        self.fallback = fallback
        self.sitemap = sitemap
        self.max_pages = max(1, max_pages)
        self.backend_attempts = max(1, backend_attempts)
        self.heuristics = heuristics
        self.log = logger or log
        self.pages: List[Page] = []
        self.failed: List[str] = []
        self.not_found: List[str] = []
        self.backend_failures = 0
        self.downgraded = False

    def seed(self) -> None:
        self.state.enqueue(self.start_url)
        if self.sitemap is None:
            return
        try:
            found = self.sitemap.discover(self.state.origin + "/")
        except Exception as e:
            self.log.warning("sitemap discovery failed: %s", e)
            return
        for u in sorted(found):
            if is_fetchable(u) and is_same_origin(u, self.state.origin):
                self.state.enqueue(u)

    def _downgrade(self, reason: BackendError) -> None:
        self.log.info(
            "%s backend failed (%s), falling back to %s",
            self.backend.name,
            reason,
            self.fallback.name,
        )
        self.backend = self.fallback
        self.downgraded = True

    def _fetch(self, url: str) -> Page:
        while True:
            try:
                return self.backend.fetch(url)
            except BackendError as e:
                self.backend.close()
                if self.fallback is None or self.backend is self.fallback:
                    raise PageFetchError(url, str(e)) from e
                self.backend_failures += 1
                if self.backend_failures >= self.backend_attempts:
                    self._downgrade(e)
                else:
                    self.log.info(
                        "%s backend failed (%s), retry %d...",
                        self.backend.name,
                        e,
                        self.backend_failures + 1,
                    )

    def step(self) -> Optional[Page]:
        url = self.state.pop()
        if url is None or not self.state.mark_visited(url):
            return None
        self.log.info("Fetching: %s", url)
        try:
            page = self._fetch(url)
        except PageNotFound:
            self.log.debug("not found, skipping: %s", url)
            self.not_found.append(url)
            return None
        except PageFetchError as e:
            self.log.error("Failed to load %s", e)
            self.failed.append(url)
            return None
        if not looks_like_html(page.html):
            self.log.debug("not an HTML document, skipping: %s", url)
            return None
        self.pages.append(page)
        for link in sorted(extract_links(page.html, page.base_url, self.heuristics)):
            if is_fetchable(link) and is_same_origin(link, self.state.origin):
                self.state.enqueue(link)
        return page

    def run(self) -> CrawlResult:
        if not self.state.frontier and not self.state.visited:
            self.seed()
        try:
            while self.state.frontier and len(self.pages) < self.max_pages:
                self.step()
        finally:
            self.backend.close()
            if self.primary is not self.backend:
                self.primary.close()
        self.log.info("Crawled %d pages", len(self.pages))
        if not self.pages:
            raise CrawlError("No pages could be fetched")
        return CrawlResult(
            pages=list(self.pages),
            base_url=self.state.origin,
            failed=list(self.failed),
            not_found=list(self.not_found),
            backend=self.backend.name,
            downgraded=self.downgraded,
        )
