import hashlib
import html as htmllib
import logging
import mimetypes
import os
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set
from urllib.parse import urlparse

from .config import UrlHeuristics
from .css import INLINE_SOURCE, CssBlock, css_urls, font_face_urls, import_urls
from .errors import FetchError
from .pages import Page, bs4_parse, effective_base_url
from .transport import Fetched, Transport
from .urls import is_fetchable, resolve, strip_query_and_fragment

log = logging.getLogger(__name__)

IMAGE = "image"
FONT = "font"
SCRIPT = "script"
STYLESHEET = "stylesheet"

KIND_DIRS = {
    IMAGE: "assets/images",
    FONT: "assets/fonts",
    SCRIPT: "assets/js",
}
KIND_DEFAULTS = {IMAGE: ("image", ".bin"), FONT: ("font", ".woff2"), SCRIPT: ("script", ".js")}

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico", ".bmp", ".avif"}
FONT_EXTENSIONS = {".woff", ".woff2", ".ttf", ".otf", ".eot"}
SCRIPT_EXTENSIONS = {".js", ".mjs"}
KIND_EXTENSIONS = {IMAGE: IMAGE_EXTENSIONS, FONT: FONT_EXTENSIONS, SCRIPT: SCRIPT_EXTENSIONS}

LAZY_ATTRS = [
    "data-src", "data-lazy-src", "data-lazy", "data-original", "data-srcset",
    "data-lazy-srcset", "data-slide-src", "data-image", "data-img",
]
SRCSET_ATTRS = {"srcset", "data-srcset", "data-lazy-srcset"}
BG_ATTRS = [
    "data-background", "data-bg", "data-bg-src", "data-background-image",
    "data-src", "data-srcset",
]
ICON_RELS = {"icon", "shortcut icon", "apple-touch-icon"}
META_IMAGE_SELECTOR = (
    'meta[property="og:image"], meta[name="og:image"], '
    'meta[name="twitter:image"], meta[property="twitter:image"]'
)

SRCSET_SPLIT_RE = re.compile(r"\s*,\s*")
WS_RE = re.compile(r"\s+")
IMAGE_EXT_RE = re.compile(r"\.(png|jpg|jpeg|gif|webp|svg|ico|bmp|avif)", re.IGNORECASE)
IMAGE_PATH_RE = re.compile(
    r"\.(png|jpg|jpeg|gif|webp|svg|ico|bmp|avif)|(/image|/img|/photo|/media|/uploads|/userfiles|/assets)",
    re.IGNORECASE,
)
# raw-text fallback: catches URLs inside scripts, JSON blobs and broken markup
RAW_IMAGE_RES = [
    re.compile(
        r"(?:url\s*\(\s*[\"']?|src\s*=\s*[\"']|data-(?:src|background|bg|image|img|slide-src|thumb)\s*=\s*[\"'])"
        r"([^\"')>\s]+\.(?:jpg|jpeg|png|gif|webp|svg|bmp|avif)(?:\?[^\"')>\s]*)?)",
        re.IGNORECASE,
    ),
    re.compile(
        r"[\"']([^\"']*(?:/uploads/|/images/|/img/|/media/|/assets/|/userfiles/)[^\"']*"
        r"\.(?:jpg|jpeg|png|gif|webp)(?:\?[^\"']*)?)[\"']",
        re.IGNORECASE,
    ),
]
GOOGLE_FONTS_LINK_RE = re.compile(
    r"<link[^>]+href=[\"']([^\"']*fonts\.googleapis\.com[^\"']*)[\"']", re.IGNORECASE
)
SAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9._-]")
MAX_NAME = 100


def short_h(url: str) -> str:
    return hashlib.md5(url.encode("utf-8")).hexdigest()[:8]


def parse_srcset(v: str) -> List[str]:
    urls: List[str] = []
    if not v:
        return urls
    for cand in SRCSET_SPLIT_RE.split(v.strip()):
        if not cand:
            continue
        parts = WS_RE.split(cand.strip())
        if parts and parts[0]:
            urls.append(parts[0])
    return urls


def is_image_url(url: str) -> bool:
    path = urlparse(url).path.lower()
    ext = os.path.splitext(path)[1]
    if ext in FONT_EXTENSIONS:
        return False
    if ext in IMAGE_EXTENSIONS:
        return True
    return any(h in path for h in ("/image", "/img", "/photo", "/media"))


def has_extension(url: str, extensions: Set[str]) -> bool:
    lower = url.lower()
    return any(ext in lower for ext in extensions)


# -------------------- Extraction --------------------


class _Collector:
    def __init__(self, base: str, heuristics: Optional[UrlHeuristics]):
        self.base = base
        self.heuristics = heuristics
        self.urls: Set[str] = set()

    def add(self, value: Optional[str], *, srcset: bool = False) -> None:
        if not value:
            return
        for raw in parse_srcset(value) if srcset else [value]:
            u = resolve(raw, self.base, self.heuristics)
            if u and is_fetchable(u):
                self.urls.add(u)


def extract_image_urls_from_html(
    html: str, page_url: str, heuristics: Optional[UrlHeuristics] = None
) -> Set[str]:
    soup = bs4_parse(html)
    c = _Collector(effective_base_url(soup, page_url), heuristics)

    for img in soup.find_all("img"):
        for attr in ["src", "srcset"] + LAZY_ATTRS:
            c.add(img.get(attr), srcset=attr in SRCSET_ATTRS)
    for link in soup.select("link[href]"):
        rel = " ".join(link.get("rel") or []).lower()
        if rel in ICON_RELS or "icon" in rel.split():
            c.add(link.get("href"))
    for meta in soup.select(META_IMAGE_SELECTOR):
        c.add(meta.get("content"))
    for source in soup.find_all("source"):
        c.add(source.get("src"))
        c.add(source.get("srcset"), srcset=True)
    for video in soup.select("video[poster]"):
        c.add(video.get("poster"))
    for tag in soup.select("[style]"):
        for u in css_urls(tag.get("style") or ""):
            if not u.startswith("data:"):
                c.add(u)
    for tag in soup.find_all(True):
        for attr in BG_ATTRS:
            val = tag.get(attr)
            if not val:
                continue
            if attr == "data-srcset":
                c.add(val, srcset=True)
                continue
            u = resolve(val, c.base, heuristics)
            if u and is_fetchable(u) and (is_image_url(u) or IMAGE_EXT_RE.search(val)):
                c.urls.add(u)
        thumb = tag.get("data-thumb")
        if thumb:
            u = resolve(thumb, c.base, heuristics)
            if u and is_fetchable(u) and (is_image_url(u) or IMAGE_EXT_RE.search(thumb)):
                c.urls.add(u)

    for pattern in RAW_IMAGE_RES:
        for m in pattern.finditer(html):
            c.add(htmllib.unescape(m.group(1)).replace("\\/", "/"))
    return c.urls


def extract_image_urls_from_css(
    css: str, base_url: str, heuristics: Optional[UrlHeuristics] = None
) -> Set[str]:
    urls: Set[str] = set()
    for u in css_urls(css):
        if u.startswith("data:"):
            continue
        resolved = resolve(u, base_url, heuristics)
        if not resolved or not is_fetchable(resolved):
            continue
        if has_extension(resolved, FONT_EXTENSIONS) and not is_image_url(resolved):
            continue
        if is_image_url(resolved) or IMAGE_PATH_RE.search(u):
            urls.add(resolved)
    return urls


def extract_font_urls_from_css(
    css: str, base_url: str, heuristics: Optional[UrlHeuristics] = None
) -> Set[str]:
    urls: Set[str] = set()
    for u in font_face_urls(css):
        if u.startswith("data:"):
            continue
        resolved = resolve(u, base_url, heuristics)
        if resolved and is_fetchable(resolved) and has_extension(resolved, FONT_EXTENSIONS):
            urls.add(resolved)
    return urls


def extract_google_font_stylesheets(html: str) -> Set[str]:
    found = [m.group(1) for m in GOOGLE_FONTS_LINK_RE.finditer(html)]
    found += [u for u in import_urls(html) if "fonts.googleapis.com" in u]
    urls: Set[str] = set()
    for u in found:
        u = htmllib.unescape(u)
        if not u.startswith("http"):
            u = "https://" + u.lstrip("/")
        if is_fetchable(u):
            urls.add(u)
    return urls


def extract_script_urls(
    html: str, page_url: str, heuristics: Optional[UrlHeuristics] = None
) -> Set[str]:
    soup = bs4_parse(html)
    c = _Collector(effective_base_url(soup, page_url), heuristics)
    for script in soup.select("script[src]"):
        stype = (script.get("type") or "").lower()
        if stype and "javascript" not in stype and stype != "module":
            continue
        c.add(script.get("src"))
    return c.urls


# -------------------- Local file names --------------------


def guess_ext_from_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    ct = content_type.split(";")[0].strip().lower()
    if ct in ("application/javascript", "text/javascript"):
        return ".js"
    if ct == "image/svg+xml":
        return ".svg"
    if ct == "image/jpeg":
        return ".jpg"
    if ct == "font/woff2":
        return ".woff2"
    if ct == "font/woff":
        return ".woff"
    return mimetypes.guess_extension(ct)


def asset_filename(url: str, kind: str, content_type: Optional[str] = None) -> str:
    default_stem, default_ext = KIND_DEFAULTS[kind]
    name = urlparse(url).path.strip("/").replace("/", "_") or default_stem
    stem, ext = os.path.splitext(name)
    if ext.lower() not in KIND_EXTENSIONS[kind]:
        guessed = guess_ext_from_type(content_type)
        if guessed or not ext or len(ext) > 6:
            stem, ext = name, guessed or default_ext
    stem = SAFE_NAME_RE.sub("_", stem).strip("_") or default_stem
    ext = SAFE_NAME_RE.sub("", ext)
    if len(stem) + len(ext) > MAX_NAME:
        stem = f"{stem[: MAX_NAME - len(ext) - 9]}_{short_h(url)}"
    return stem + ext


def hashed_filename(url: str, name: str) -> str:
    stem, ext = os.path.splitext(name)
    return f"{stem[:80]}_{short_h(url)}{ext}"


# -------------------- Asset map --------------------


class AssetMap:
    """Remote URL -> local relative path, built once before rewriting."""

    def __init__(self) -> None:
        self._paths: Dict[str, str] = {}
        self._kinds: Dict[str, str] = {}

    def add(self, url: str, local_path: str, kind: str) -> None:
        self._paths[url] = local_path
        self._paths.setdefault(strip_query_and_fragment(url), local_path)
        self._kinds[local_path] = kind

    def get(self, url: str) -> Optional[str]:
        return self._paths.get(url)

    def __contains__(self, url: str) -> bool:
        return url in self._paths

    def __len__(self) -> int:
        return len(self._kinds)

    def count(self, kind: str) -> int:
        return sum(1 for k in self._kinds.values() if k == kind)

    def kind_of(self, local_path: str) -> Optional[str]:
        return self._kinds.get(local_path)

    def items(self) -> List[tuple]:
        return sorted(self._paths.items())

    def lookup(
        self,
        url: Optional[str],
        base_url: Optional[str] = None,
        heuristics: Optional[UrlHeuristics] = None,
        kinds: Optional[Set[str]] = None,
    ) -> Optional[str]:
        """Exact URL, then resolved against the document base, then stripped."""
        if not url or not url.strip() or url.strip().startswith("data:"):
            return None
        url = url.strip()
        if url in self._kinds:
            # already one of our local paths
            return None
        candidates = [url]
        resolved = url
        if base_url and not url.startswith(("http:", "https:")):
            resolved = resolve(url, base_url, heuristics) or url
            candidates.append(resolved)
        candidates.append(strip_query_and_fragment(resolved))
        for c in candidates:
            local = self._paths.get(c)
            if local is not None and (kinds is None or self._kinds.get(local) in kinds):
                return local
        return None


# -------------------- Resolver --------------------


class AssetResolver:
    def __init__(
        self,
        transport: Transport,
        output_dir: Path,
        *,
        workers: int = 8,
        heuristics: Optional[UrlHeuristics] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.transport = transport
        self.output_dir = Path(output_dir)
        self.workers = max(1, workers)
        self.heuristics = heuristics
        self.log = logger or log
        self.asset_map = AssetMap()
        self._names: Dict[str, Dict[str, str]] = {}

    def _download(self, url: str) -> Optional[Fetched]:
        try:
            r = self.transport.fetch_bytes(url)
        except FetchError as e:
            self.log.warning("Failed to download %s", e)
            return None
        if r.status_code >= 400:
            self.log.warning("Failed to download %s: HTTP %s", url, r.status_code)
            return None
        if not r.content:
            self.log.warning("empty response %s", url)
            return None
        return r

    def _store(self, key: str, fetched: Fetched, kind: str) -> str:
        folder = KIND_DIRS[kind]
        used = self._names.setdefault(folder, {})
        name = asset_filename(key, kind, fetched.content_type)
        if used.get(name, key) != key:
            name = hashed_filename(key, name)
        used[name] = key
        path = self.output_dir / folder / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(fetched.content)
        return f"{folder}/{name}"

    def download(self, urls: Iterable[str], kind: str) -> int:
        """Fetch each distinct resource once and record every spelling of it."""
        groups: Dict[str, List[str]] = {}
        for u in urls:
            if not is_fetchable(u):
                continue
            key = strip_query_and_fragment(u)
            existing = self.asset_map.get(key)
            if existing is not None:
                self.asset_map.add(u, existing, self.asset_map.kind_of(existing) or kind)
                continue
            groups.setdefault(key, []).append(u)
        if not groups:
            return 0

        results: Dict[str, Fetched] = {}
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            future_map = {
                pool.submit(self._download, sorted(spellings)[0]): key
                for key, spellings in groups.items()
            }
            for fut in as_completed(future_map):
                r = fut.result()
                if r is not None:
                    results[future_map[fut]] = r

        for key in sorted(results):
            try:
                rel = self._store(key, results[key], kind)
            except OSError as e:
                self.log.error("Failed to save %s: %s", key, e)
                continue
            self.asset_map.add(key, rel, kind)
            for u in groups[key]:
                self.asset_map.add(u, rel, kind)
            self.log.info("Downloaded %s: %s", kind, rel)
        return len(results)

    def register_stylesheets(self, css_blocks: Iterable[CssBlock], css_path: str = "style.css") -> int:
        """Point every consolidated stylesheet URL at the single local sheet."""
        n = 0
        for block in css_blocks:
            if block.source == INLINE_SOURCE:
                continue
            self.asset_map.add(block.source, css_path, STYLESHEET)
            n += 1
        return n

    # -- per kind --

    def resolve_images(self, pages: Iterable[Page], css_blocks: Iterable[CssBlock] = ()) -> int:
        urls: Set[str] = set()
        for page in pages:
            urls |= extract_image_urls_from_html(page.html, page.base_url, self.heuristics)
        for block in css_blocks:
            urls |= extract_image_urls_from_css(block.content, block.base_url, self.heuristics)
        return self.download(urls, IMAGE)

    def resolve_google_fonts(self, stylesheet_urls: Iterable[str]) -> Set[str]:
        font_urls: Set[str] = set()
        for url in sorted(set(stylesheet_urls)):
            try:
                r = self.transport.fetch_text(url)
            except FetchError as e:
                self.log.warning("Google Fonts stylesheet failed: %s", e)
                continue
            if r.status_code >= 400:
                continue
            for u in css_urls(r.text):
                if u.startswith("http") and has_extension(u, FONT_EXTENSIONS):
                    font_urls.add(u)
        return font_urls

    def resolve_fonts(self, pages: Iterable[Page], css_blocks: Iterable[CssBlock] = ()) -> int:
        css_blocks = list(css_blocks)
        urls: Set[str] = set()
        for block in css_blocks:
            urls |= extract_font_urls_from_css(block.content, block.base_url, self.heuristics)
        google: Set[str] = set()
        for page in pages:
            google |= extract_google_font_stylesheets(page.html)
        # sheets the stylesheet collector already fetched are covered above
        urls |= self.resolve_google_fonts(google - {b.source for b in css_blocks})
        return self.download(urls, FONT)

    def resolve_scripts(self, pages: Iterable[Page]) -> int:
        urls: Set[str] = set()
        for page in pages:
            urls |= extract_script_urls(page.html, page.base_url, self.heuristics)
        return self.download(urls, SCRIPT)
