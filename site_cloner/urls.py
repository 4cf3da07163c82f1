"""URL canonicalization and scoping.

Real-world markup is full of malformed ``href``/``src`` values. Everything in
this module is pure string work: no network access, and nothing here returns
a URL whose path has the hostname baked into it (the usual symptom of a bad
relative join such as ``https://example.com/www.example.com/page``).
"""

import re
from typing import List, Optional
from urllib.parse import urljoin, urlparse, urlunparse

from .config import UrlHeuristics

SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*:")
FETCHABLE_SCHEMES = {"http", "https"}

DEFAULT_HEURISTICS = UrlHeuristics()


def looks_like_host(href: str, heuristics: Optional[UrlHeuristics] = None) -> bool:
    h = heuristics or DEFAULT_HEURISTICS
    first = href.split("/")[0]
    if not first:
        return False
    if first.lower().startswith("www."):
        return True
    if not h.domain_like_re.match(first):
        return False
    return first.rsplit(".", 1)[-1].lower() not in h.file_suffixes


def directory_of(url: str) -> str:
    p = urlparse(url)
    path = p.path or "/"
    if not path.endswith("/"):
        path = path[: path.rfind("/") + 1] or "/"
    return urlunparse((p.scheme, p.netloc, path, "", "", ""))


def path_contains_host(url: str) -> bool:
    p = urlparse(url)
    return bool(p.hostname) and p.hostname in p.path


def resolve(
    href: Optional[str], base_url: str, heuristics: Optional[UrlHeuristics] = None
) -> Optional[str]:
    if not href or not isinstance(href, str):
        return None
    href = href.strip()
    if not href:
        return None
    try:
        if href.startswith("//"):
            href = "https:" + href
        elif looks_like_host(href, heuristics):
            href = "https://" + href.lstrip("/")
        elif not href.startswith(("/", "#", "?")) and not SCHEME_RE.match(href):
            base_url = directory_of(base_url or "")
        resolved = urljoin(base_url or "", href)
        p = urlparse(resolved)
        if not p.scheme or not p.hostname:
            return None
        if p.hostname in p.path:
            return None
        return resolved
    except ValueError:
        return None


def bare_host(url: str) -> str:
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


def is_same_origin(a: str, b: str) -> bool:
    ha, hb = bare_host(a), bare_host(b)
    return bool(ha) and ha == hb


def is_valid_internal_url(url: str, base_origin: str) -> bool:
    if not is_same_origin(url, base_origin):
        return False
    try:
        u = urlparse(url)
        base = urlparse(base_origin)
    except ValueError:
        return False
    if u.hostname and u.hostname in u.path:
        return False
    if base.hostname and base.hostname in u.path:
        return False
    return True


def is_fetchable(url: Optional[str]) -> bool:
    if not url:
        return False
    try:
        u = urlparse(url)
    except ValueError:
        return False
    if u.scheme.lower() not in FETCHABLE_SCHEMES or not u.hostname:
        return False
    return u.hostname not in u.path


def normalize_identity(url: str) -> str:
    try:
        p = urlparse(url)
    except ValueError:
        return url
    path = p.path.rstrip("/") or "/"
    return urlunparse((p.scheme.lower(), p.netloc.lower(), path, p.params, "", ""))


def strip_query_and_fragment(url: str) -> str:
    try:
        p = urlparse(url)
    except ValueError:
        return url
    return urlunparse((p.scheme, p.netloc, p.path, p.params, "", ""))


def origin_of(url: str) -> str:
    p = urlparse(url)
    return f"{p.scheme}://{p.netloc}"


def www_variants(origin: str) -> List[str]:
    p = urlparse(origin)
    host = p.netloc
    alt = host[4:] if host.startswith("www.") else "www." + host
    return [f"{p.scheme}://{host}", f"{p.scheme}://{alt}"]
