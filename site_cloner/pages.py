import re
from dataclasses import dataclass
from typing import Dict, Iterable, List
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from .urls import normalize_identity, www_variants

SLUG_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9_-]")
DASHES_RE = re.compile(r"-+")


@dataclass
class Page:
    url: str
    html: str
    title: str = ""
    final_url: str = ""

    @property
    def base_url(self) -> str:
        """Address the document was served from, after redirects."""
        return self.final_url or self.url


# -------------------- HTML utils --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        return urljoin(fallback, tag["href"])
    return fallback


def serialize_html(soup: BeautifulSoup) -> str:
    try:
        return soup.decode(formatter="html")
    except Exception:
        return str(soup)


def title_of(html: str) -> str:
    soup = bs4_parse(html)
    if soup.title and soup.title.string:
        return soup.title.string.strip()
    return ""


def looks_like_html(html: str) -> bool:
    h = (html or "").strip().lower()
    return "<html" in h or "<!doctype" in h or ("<body" in h and "</body>" in h)


# -------------------- Local file names --------------------


def url_to_slug(url: str) -> str:
    path = urlparse(url).path.rstrip("/") or "index"
    slug = SLUG_UNSAFE_RE.sub("-", path.lstrip("/"))
    slug = DASHES_RE.sub("-", slug).strip("-")
    return slug or "index"


def assign_filenames(pages: Iterable[Page]) -> Dict[str, str]:
    """Map each page URL to a unique ``<slug>.html`` file name."""
    out: Dict[str, str] = {}
    used = set()
    for page in pages:
        slug = url_to_slug(page.url)
        if slug in used:
            n = 1
            while f"{slug}-{n}" in used:
                n += 1
            slug = f"{slug}-{n}"
        used.add(slug)
        out[page.url] = "index.html" if slug == "index" else f"{slug}.html"
    return out


def url_variants(url: str, base_origin: str) -> List[str]:
    variants = [url]
    path = urlparse(normalize_identity(url)).path
    for origin in www_variants(base_origin):
        variants.append(origin + path)
        variants.append(origin if path == "/" else origin + path + "/")
    return list(dict.fromkeys(variants))


def build_url_to_local_path(filenames: Dict[str, str], base_origin: str) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    for url, filename in filenames.items():
        for v in url_variants(url, base_origin):
            mapping.setdefault(v, filename)
    return mapping
