import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set, Tuple

from .config import UrlHeuristics
from .errors import FetchError
from .pages import Page, bs4_parse, effective_base_url
from .transport import Fetched, Transport
from .urls import is_fetchable, resolve

log = logging.getLogger(__name__)

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
CSS_IMPORT_RE = re.compile(
    r"@import\s+(?:url\(\s*[\"']?([^\"')]+)[\"']?\s*\)|[\"']([^\"']+)[\"'])\s*[^;]*;",
    re.IGNORECASE,
)
FONT_FACE_RE = re.compile(r"@font-face\s*\{([^}]+)\}", re.IGNORECASE)

INLINE_SOURCE = "inline-style"

# Keeps the first slide of common carousels visible when their script is gone.
HERO_FALLBACK_CSS = """
/* Carousel/slider fallback: first slide visible before scripts run */
.flexslider .slides > li:first-child, .slideshow .slides > li:first-child,
.slick-slider .slick-slide:first-child, .owl-carousel .owl-item:first-child,
.carousel .carousel-item:first-child, .swiper .swiper-slide:first-child,
[class*="slider"] .slides > li:first-child, [class*="carousel"] .slides > li:first-child,
[class*="slider"] .slide:first-child, [class*="carousel"] .slide:first-child { display: block !important; }
.flexslider .slides > li:not(:first-child), .slick-slider .slick-slide:not(:first-child),
.owl-carousel .owl-item:not(:first-child), .carousel .carousel-item:not(:first-child) { display: none; }
.flexslider img, .slideshow img, .slick-slide img, .owl-item img, .carousel-item img,
[class*="hero"] img, [class*="slider"] img, [class*="carousel"] img { max-width: 100%; height: auto; display: block; }
"""


@dataclass
class CssBlock:
    source: str
    content: str
    base_url: str


def css_urls(text: str) -> List[str]:
    return [m.group(2).strip() for m in CSS_URL_RE.finditer(text)]


def import_urls(text: str) -> List[str]:
    return [(m.group(1) or m.group(2)).strip() for m in CSS_IMPORT_RE.finditer(text)]


def font_face_urls(text: str) -> List[str]:
    out: List[str] = []
    for m in FONT_FACE_RE.finditer(text):
        out.extend(css_urls(m.group(1)))
    return out


def stylesheet_hrefs(soup) -> List[str]:
    out = []
    for link in soup.select("link[href]"):
        rels = {r.lower() for r in (link.get("rel") or [])}
        if "stylesheet" in rels:
            out.append(link.get("href"))
    return out


def consolidate(blocks: Iterable[CssBlock]) -> str:
    return "\n\n".join(f"/* From: {b.source} */\n{b.content}" for b in blocks)


class StylesheetCollector:
    """Collects inline, linked and ``@import``ed stylesheets of a page set.

    Every block keeps its own base URL so relative ``url(...)`` references are
    later resolved against the stylesheet's location, not the page's.
    """

    def __init__(
        self,
        transport: Transport,
        heuristics: Optional[UrlHeuristics] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.transport = transport
        self.heuristics = heuristics
        self.log = logger or log

    def _fetch(self, url: str) -> Optional[Fetched]:
        try:
            r = self.transport.fetch_text(url)
        except FetchError as e:
            self.log.warning("stylesheet fetch failed: %s", e)
            return None
        if r.status_code >= 400:
            self.log.warning("stylesheet %s -> HTTP %s", url, r.status_code)
            return None
        return r

    def _expand_imports(
        self, text: str, base_url: str, seen: Set[str]
    ) -> Tuple[List[CssBlock], str]:
        children: List[CssBlock] = []
        inlined: Set[str] = set()
        for imp in import_urls(text):
            u = resolve(imp, base_url, self.heuristics)
            if not u or not is_fetchable(u) or u in seen:
                continue
            seen.add(u)
            loaded = self._load(u, seen)
            if loaded:
                children.extend(loaded)
                inlined.add(imp)

        def repl(m: re.Match) -> str:
            imp = (m.group(1) or m.group(2)).strip()
            return "/* @import resolved */" if imp in inlined else m.group(0)

        return children, CSS_IMPORT_RE.sub(repl, text)

    def _load(self, url: str, seen: Set[str]) -> List[CssBlock]:
        r = self._fetch(url)
        if r is None:
            return []
        base = r.url or url
        children, content = self._expand_imports(r.text, base, seen)
        return children + [CssBlock(source=url, content=content, base_url=base)]

    def collect(self, pages: Iterable[Page]) -> List[CssBlock]:
        blocks: List[CssBlock] = []
        keys: Set[str] = set()
        seen: Set[str] = set()

        def add(block: CssBlock) -> None:
            key = block.source + block.content[:100]
            if key not in keys:
                keys.add(key)
                blocks.append(block)

        for page in pages:
            soup = bs4_parse(page.html)
            base = effective_base_url(soup, page.base_url)
            for style in soup.find_all("style"):
                text = (style.string or style.get_text() or "").strip()
                if not text:
                    continue
                children, content = self._expand_imports(text, base, seen)
                for b in children:
                    add(b)
                add(CssBlock(source=INLINE_SOURCE, content=content, base_url=base))
            for href in stylesheet_hrefs(soup):
                u = resolve(href, base, self.heuristics)
                if not u or not is_fetchable(u) or u in seen:
                    continue
                seen.add(u)
                for b in self._load(u, seen):
                    add(b)
        self.log.info("Collected %d stylesheet blocks", len(blocks))
        return blocks
