import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Union

# -------------------- Defaults --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

DEFAULT_MAX_PAGES = 2000

# First path segment of a scheme-less href that should be read as a host.
DOMAIN_LIKE_PATTERN = r"^[a-z0-9][-a-z0-9]*(?:\.[a-z0-9][-a-z0-9]*)*\.[a-z]{2,}$"

# Suffixes that make a "domain-like" segment a file name instead.
FILE_SUFFIXES = frozenset(
    {
        "htm", "html", "xhtml", "php", "asp", "aspx", "jsp", "cfm", "shtml",
        "css", "js", "mjs", "json", "xml", "txt", "pdf", "map",
        "png", "jpg", "jpeg", "gif", "webp", "svg", "ico", "bmp", "avif",
        "woff", "woff2", "ttf", "otf", "eot",
        "mp4", "webm", "mp3", "ogg", "wav", "zip", "gz",
    }
)

PLACEHOLDER_PATTERN = (
    r"(1x1|transparent|loading|spacer|blank|placeholder|data:image|\.gif\?|pixel|dummy)"
)


# -------------------- Settings --------------------


@dataclass
class UrlHeuristics:
    """String heuristics tuned against real-world markup."""

    # scheme-less first segment treated as a hostname (``example.com/x``)
    domain_like: str = DOMAIN_LIKE_PATTERN
    # a domain-like segment ending in one of these is a file, not a host
    file_suffixes: FrozenSet[str] = FILE_SUFFIXES
    # image src values that stand in for a lazily loaded real image
    placeholder: str = PLACEHOLDER_PATTERN

    def __post_init__(self) -> None:
        self.domain_like_re = re.compile(self.domain_like, re.IGNORECASE)
        self.placeholder_re = re.compile(self.placeholder, re.IGNORECASE)


@dataclass
class MaterializationSettings:
    """Delays and caps for the headless content materialization protocol."""

    navigation_timeout_ms: int = 30000
    first_page_wait_ms: int = 5000
    page_wait_ms: int = 3000
    carousel_image_timeout_ms: int = 8000
    reveal_settle_ms: int = 1500
    carousel_rounds: int = 15
    carousel_click_delay_ms: int = 400
    carousel_settle_ms: int = 2000
    scroll_step_px: int = 300
    scroll_interval_ms: int = 150
    scroll_timeout_ms: int = 20000
    scroll_settle_ms: int = 2500
    pending_image_timeout_ms: int = 5000
    final_settle_ms: int = 1500
    viewport_width: int = 1920
    viewport_height: int = 1080


@dataclass
class CloneOptions:
    # download linked/inline stylesheets and write a consolidated style.css
    css: bool = True
    # download images and rewrite image references
    images: bool = True
    # download @font-face and Google Fonts files
    fonts: bool = True
    # download external scripts and point <script src> at local copies
    scripts: bool = True
    # write content.json with extracted text
    content: bool = True
    # render pages in headless chromium; falls back to plain HTTP on failure
    use_headless: bool = True
    # seed the frontier from sitemap.xml
    use_sitemap: bool = True
    # stop crawling after this many fetched pages
    max_pages: int = DEFAULT_MAX_PAGES
    # full headless attempts per crawl before downgrading to HTTP
    headless_attempts: int = 2
    # per-request timeout (seconds)
    timeout: float = 30.0
    # transport retries on transient errors and 5xx
    retries: int = 3
    # verify TLS certificates
    verify_tls: bool = False
    # parallel asset downloads
    workers: int = 8
    # skip asset bodies larger than this
    max_bytes: int = 50_000_000
    materialization: MaterializationSettings = field(
        default_factory=MaterializationSettings
    )
    heuristics: UrlHeuristics = field(default_factory=UrlHeuristics)


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        import tomllib

        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        import yaml

        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


def flatten_config(
    cfg: Dict[str, Union[str, int, float, bool, List[str], dict]],
) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
    for g in ("crawl", "render", "assets", "output", "general"):
        if isinstance(cfg.get(g), dict):
            flat.update(cfg[g])
    return {k.replace("-", "_"): v for k, v in flat.items()}
