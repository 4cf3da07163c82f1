import logging
import xml.etree.ElementTree as ET
from typing import List, Optional, Set, Tuple
from urllib.parse import urljoin

from .errors import FetchError
from .transport import Transport
from .urls import is_fetchable, is_same_origin, normalize_identity

log = logging.getLogger(__name__)

SITEMAP_PATHS = (
    "/sitemap.xml",
    "/sitemap_index.xml",
    "/sitemap-index.xml",
    "/sitemap/index.xml",
)
MAX_CHILD_SITEMAPS = 100
MAX_SITEMAP_DEPTH = 5
SITEMAP_TIMEOUT = 10.0


def is_feed_url(url: str) -> bool:
    lower = url.lower()
    return (
        lower.endswith(".rss")
        or lower.endswith(".xml")
        or "/rss" in lower
        or "/feed" in lower
    )


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1].lower()


def parse_sitemap_xml(text: str) -> Tuple[List[str], List[str]]:
    """Return ``(page_locs, child_sitemap_locs)`` from one sitemap document.

    Namespace and tag agnostic: ``<url><loc>`` entries are pages,
    ``<sitemap><loc>`` entries are children, and a document with only bare
    ``<loc>`` elements is read as a flat page list.
    """
    root = ET.fromstring(text.strip().encode("utf-8"))
    pages: List[str] = []
    children: List[str] = []
    bare: List[str] = []
    for parent in root.iter():
        kind = _local(parent.tag)
        for child in parent:
            if _local(child.tag) != "loc":
                continue
            loc = (child.text or "").strip()
            if not loc:
                continue
            if kind == "url":
                pages.append(loc)
            elif kind == "sitemap":
                children.append(loc)
            else:
                bare.append(loc)
    if not pages and bare:
        pages = bare
    return pages, children


class SitemapReader:
    def __init__(
        self,
        transport: Transport,
        *,
        max_children: int = MAX_CHILD_SITEMAPS,
        max_depth: int = MAX_SITEMAP_DEPTH,
        logger: Optional[logging.Logger] = None,
    ):
        self.transport = transport
        self.max_children = max_children
        self.max_depth = max_depth
        self.log = logger or log

    def _fetch(self, url: str) -> Optional[str]:
        try:
            r = self.transport.fetch_text(url, timeout=SITEMAP_TIMEOUT)
        except FetchError as e:
            self.log.debug("sitemap fetch failed: %s", e)
            return None
        if r.status_code != 200:
            return None
        return r.text

    def read(
        self,
        sitemap_url: str,
        base_origin: str,
        *,
        _seen: Optional[Set[str]] = None,
        _depth: int = 0,
    ) -> Set[str]:
        seen = _seen if _seen is not None else set()
        urls: Set[str] = set()
        if sitemap_url in seen or _depth > self.max_depth:
            return urls
        seen.add(sitemap_url)
        text = self._fetch(sitemap_url)
        if not text:
            return urls
        try:
            pages, children = parse_sitemap_xml(text)
        except (ET.ParseError, ValueError) as e:
            self.log.debug("sitemap parse failed %s: %s", sitemap_url, e)
            return urls
        for loc in pages:
            if not is_same_origin(loc, base_origin) or is_feed_url(loc):
                continue
            if not is_fetchable(loc):
                continue
            urls.add(normalize_identity(loc))
        children = [c for c in children if is_same_origin(c, base_origin)]
        for child in children[: self.max_children]:
            urls |= self.read(child, base_origin, _seen=seen, _depth=_depth + 1)
        return urls

    def _robots_sitemaps(self, base_origin: str) -> List[str]:
        text = self._fetch(urljoin(base_origin, "/robots.txt"))
        if not text:
            return []
        out = []
        for line in text.splitlines():
            if line.strip().lower().startswith("sitemap:"):
                out.append(line.split(":", 1)[1].strip())
        return out

    def discover(self, base_origin: str) -> Set[str]:
        for path in SITEMAP_PATHS:
            found = self.read(urljoin(base_origin, path), base_origin)
            if found:
                self.log.info("Found %d URLs in sitemap", len(found))
                return found
        seen: Set[str] = set()
        found = set()
        for sm in self._robots_sitemaps(base_origin)[: self.max_children]:
            found |= self.read(sm, base_origin, _seen=seen)
        if found:
            self.log.info("Found %d URLs via robots.txt sitemaps", len(found))
        return found
