import logging
import re
from typing import Dict, Optional, Set

from .assets import (
    FONT,
    IMAGE,
    LAZY_ATTRS,
    SCRIPT,
    SRCSET_ATTRS,
    STYLESHEET,
    AssetMap,
)
from .config import UrlHeuristics
from .css import CSS_URL_RE
from .pages import bs4_parse, effective_base_url, serialize_html
from .urls import (
    DEFAULT_HEURISTICS,
    is_valid_internal_url,
    normalize_identity,
    resolve,
)

log = logging.getLogger(__name__)

CSS_KINDS = {IMAGE, FONT}
IMAGE_KINDS = {IMAGE}

# lazy attributes that hold a single URL, in promotion priority order
PROMOTE_ATTRS = [
    "data-src", "data-lazy-src", "data-lazy", "data-original",
    "data-image", "data-img", "data-slide-src",
]
BG_DATA_ATTRS = [
    "data-background", "data-bg", "data-bg-src", "data-background-image",
    "data-src", "data-image", "data-img",
]
BG_DATA_SELECTOR = "[data-background], [data-bg], [data-bg-src], [data-background-image]"
LAZY_BG_ATTRS = ["data-src", "data-image", "data-img", "data-slide-src"]
IMAGE_EXT_RE = re.compile(r"\.(png|jpg|jpeg|gif|webp|svg|ico|bmp|avif)", re.IGNORECASE)
SKIP_HREF_PREFIXES = ("#", "javascript:", "mailto:", "tel:", "data:")


def split_suffix(href: str) -> str:
    """The ``?query#fragment`` tail of an href, or ''."""
    cut = len(href)
    for ch in ("?", "#"):
        i = href.find(ch)
        if i != -1:
            cut = min(cut, i)
    return href[cut:]


def background_style(local: str) -> str:
    return f'background-image: url("{local}"); background-size: cover; background-position: center;'


def rewrite_css(
    css: str,
    asset_map: AssetMap,
    base_url: Optional[str],
    heuristics: Optional[UrlHeuristics] = None,
) -> str:
    """Point every ``url(...)`` with a downloaded image or font at its local copy."""

    def repl(m: re.Match) -> str:
        local = asset_map.lookup(m.group(2), base_url, heuristics, kinds=CSS_KINDS)
        return f'url("{local}")' if local else m.group(0)

    return CSS_URL_RE.sub(repl, css)


class Rewriter:
    """Applies one AssetMap and UrlToLocalPath map to every document of a job.

    Documents that contain no mapped URL are returned as-is, which also makes
    a second pass over rewritten output a no-op: local paths never match the
    remote URLs the maps are keyed by.
    """

    def __init__(
        self,
        asset_map: AssetMap,
        url_to_local: Dict[str, str],
        origin: str,
        *,
        css_path: Optional[str] = "style.css",
        heuristics: Optional[UrlHeuristics] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.asset_map = asset_map
        self.url_to_local = url_to_local
        self.origin = origin
        self.css_path = css_path
        self.heuristics = heuristics or DEFAULT_HEURISTICS
        self.log = logger or log

    def css(self, css: str, base_url: Optional[str]) -> str:
        return rewrite_css(css, self.asset_map, base_url, self.heuristics)

    def html(self, html: str, page_url: str) -> str:
        soup = bs4_parse(html)
        doc = _Document(self, effective_base_url(soup, page_url))
        doc.images(soup)
        doc.backgrounds(soup)
        doc.scripts(soup)
        doc.stylesheets(soup)
        doc.links(soup)
        if not doc.changed:
            return html
        return serialize_html(soup)


class _Document:
    def __init__(self, rewriter: Rewriter, base_url: str):
        self.r = rewriter
        self.base = base_url
        self.changed = False

    def local(self, url: Optional[str], kinds: Optional[Set[str]] = IMAGE_KINDS) -> Optional[str]:
        return self.r.asset_map.lookup(url, self.base, self.r.heuristics, kinds=kinds)

    def set(self, tag, attr: str, value: str) -> None:
        if tag.get(attr) != value:
            tag[attr] = value
            self.changed = True

    def drop(self, tag, attr: str) -> None:
        if tag.has_attr(attr):
            del tag[attr]
            self.changed = True

    def srcset(self, value: str) -> str:
        out = []
        hit = False
        for cand in value.split(","):
            cand = cand.strip()
            if not cand:
                continue
            parts = cand.split()
            local = self.local(parts[0])
            if local:
                hit = True
                out.append(" ".join([local] + parts[1:]))
            else:
                out.append(cand)
        return ", ".join(out) if hit else value

    def rewrite_attr(self, tag, attr: str, kinds: Optional[Set[str]] = IMAGE_KINDS) -> Optional[str]:
        val = tag.get(attr)
        if not val:
            return None
        if attr in SRCSET_ATTRS:
            new = self.srcset(val)
            if new != val:
                self.set(tag, attr, new)
            return None
        local = self.local(val, kinds)
        if local:
            self.set(tag, attr, local)
        return local

    def style_attr(self, tag) -> None:
        style = tag.get("style")
        if style and "url(" in style:
            new = self.r.css(style, self.base)
            if new != style:
                self.set(tag, "style", new)

    # -- images --

    def images(self, soup) -> None:
        placeholder = self.r.heuristics.placeholder_re
        for img in soup.find_all("img"):
            src = img.get("src")
            lazy = next((img.get(a) for a in PROMOTE_ATTRS if img.get(a)), None)
            promoted = None
            if lazy and (not src or placeholder.search(src)):
                promoted = self.local(lazy)
            if promoted:
                self.set(img, "src", promoted)
                lazy_srcset = img.get("data-srcset") or img.get("data-lazy-srcset")
                if lazy_srcset and not img.get("srcset"):
                    self.set(img, "srcset", self.srcset(lazy_srcset))
                for attr in LAZY_ATTRS:
                    self.drop(img, attr)
            else:
                self.rewrite_attr(img, "src")
                for attr in LAZY_ATTRS:
                    self.rewrite_attr(img, attr)
            self.rewrite_attr(img, "srcset")

        for link in soup.select("link[href]"):
            rels = [r.lower() for r in (link.get("rel") or [])]
            if "icon" in rels or "apple-touch-icon" in rels:
                self.rewrite_attr(link, "href")
        for meta in soup.select(
            'meta[property="og:image"], meta[name="og:image"], '
            'meta[name="twitter:image"], meta[property="twitter:image"]'
        ):
            self.rewrite_attr(meta, "content")
        for source in soup.find_all("source"):
            self.rewrite_attr(source, "src")
            self.rewrite_attr(source, "srcset")
        for video in soup.select("video[poster]"):
            self.rewrite_attr(video, "poster")
        for tag in soup.select("[data-thumb]"):
            self.rewrite_attr(tag, "data-thumb")

    # -- backgrounds --

    def add_background(self, tag, local: str) -> None:
        style = tag.get("style") or ""
        if "background-image" in style:
            return
        self.set(tag, "style", (style.rstrip() + " " if style.strip() else "") + background_style(local))

    def backgrounds(self, soup) -> None:
        for tag in soup.select("[style]"):
            self.style_attr(tag)
        for tag in soup.select(BG_DATA_SELECTOR):
            for attr in BG_DATA_ATTRS:
                local = self.rewrite_attr(tag, attr)
                if local:
                    self.add_background(tag, local)
        for tag in soup.find_all(True):
            if tag.name == "img":
                continue
            for attr in LAZY_BG_ATTRS:
                val = tag.get(attr)
                if not val or not IMAGE_EXT_RE.search(val):
                    continue
                local = self.local(val)
                if local:
                    self.set(tag, attr, local)
                    self.add_background(tag, local)
                    break
        for style in soup.find_all("style"):
            text = style.string
            if not text or "url(" not in text:
                continue
            new = self.r.css(text, self.base)
            if new != text:
                style.string = new
                self.changed = True

    # -- scripts / stylesheets --

    def scripts(self, soup) -> None:
        for script in soup.select("script[src]"):
            self.rewrite_attr(script, "src", {SCRIPT})

    def stylesheets(self, soup) -> None:
        if not self.r.css_path:
            return
        kept = False
        for link in soup.select("link[href]"):
            rels = {r.lower() for r in (link.get("rel") or [])}
            if "stylesheet" not in rels:
                continue
            href = link.get("href")
            if href != self.r.css_path and not self.local(href, {STYLESHEET}):
                continue
            if kept:
                link.decompose()
                self.changed = True
                continue
            self.set(link, "href", self.r.css_path)
            kept = True

    # -- anchors --

    def links(self, soup) -> None:
        if not self.r.url_to_local:
            return
        for a in soup.select("a[href]"):
            href = (a.get("href") or "").strip()
            if not href or href.lower().startswith(SKIP_HREF_PREFIXES):
                continue
            resolved = resolve(href, self.base, self.r.heuristics)
            if not resolved or not is_valid_internal_url(resolved, self.r.origin):
                continue
            local = self.r.url_to_local.get(normalize_identity(resolved)) or self.r.url_to_local.get(
                resolved
            )
            if local:
                self.set(a, "href", local + split_suffix(href))
