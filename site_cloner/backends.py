"""Page fetch backends.

``HeadlessBackend`` renders pages in chromium (Playwright) and runs the
content materialization protocol before capturing HTML, so that carousels,
hero images and scroll-triggered lazy loaders have populated the DOM.
``HttpBackend`` is a plain GET through the transport.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from .config import DEFAULT_HEADERS, MaterializationSettings
from .errors import BackendError, FetchError, PageFetchError, PageNotFound
from .pages import Page, title_of
from .transport import Transport

log = logging.getLogger(__name__)

CAROUSEL_IMAGE_SELECTORS = [
    ".flexslider img", ".slideshow img", ".slides img", ".slide img",
    '[class*="hero"] img', '[class*="carousel"] img', '[class*="slider"] img',
    '[class*="banner"] img', '[class*="gallery"] img',
    ".slick-slide img", ".slick-slider img", ".swiper-slide img", ".swiper-wrapper img",
    ".owl-carousel img", ".owl-item img", ".carousel-item img", ".carousel-inner img",
    '[class*="slide"] img',
]

SLIDE_SELECTORS = [
    ".owl-item", ".slick-slide", ".swiper-slide", ".carousel-item",
    ".slides li", ".slide", '[class*="slide"]',
]

SLIDE_LAZY_ATTRS = ["data-src", "data-lazy-src", "data-original"]

NEXT_CONTROL_SELECTORS = [
    ".slick-next", ".slick-prev", ".owl-next", ".owl-prev",
    ".carousel-control-next", ".carousel-control-prev",
    '[data-slide="next"]', '[data-slide="prev"]', '[data-bs-slide="next"]',
    ".flex-direction-nav .next", ".flex-direction-nav .prev",
    ".slider-next", ".slider-prev", ".carousel-next", ".carousel-prev",
    'button[aria-label*="next"]', 'button[aria-label*="Next"]',
    'a[href="#next"]', ".next", ".prev",
]

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]

# -------------------- In-page scripts --------------------

WAIT_FOR_IMAGES_JS = """
({selector, timeout}) => Promise.all(
  Array.from(document.querySelectorAll(selector)).map(img => {
    if (img.complete) return true;
    return new Promise(resolve => {
      img.addEventListener('load', resolve);
      img.addEventListener('error', resolve);
      setTimeout(resolve, timeout);
    });
  })
).then(results => results.length)
"""

REVEAL_SLIDES_JS = """
({selector, lazyAttrs}) => {
  let revealed = 0;
  document.querySelectorAll(selector).forEach(el => {
    const s = el.style;
    if (s.display === 'none' || s.visibility === 'hidden' || s.opacity === '0') {
      s.setProperty('display', 'block', 'important');
      s.setProperty('visibility', 'visible', 'important');
      s.setProperty('opacity', '1', 'important');
      revealed++;
    }
    el.querySelectorAll('img').forEach(img => {
      let src = null;
      for (const attr of lazyAttrs) {
        src = src || img.getAttribute(attr);
      }
      const cur = img.getAttribute('src') || '';
      if (src && (!cur || cur.includes('data:') || cur.includes('blank'))) {
        img.setAttribute('src', src);
      }
    });
  });
  return revealed;
}
"""

CYCLE_CAROUSEL_JS = """
async ({selectors, rounds, delay}) => {
  let clicks = 0;
  for (let round = 0; round < rounds; round++) {
    let clicked = false;
    for (const sel of selectors) {
      const btn = document.querySelector(sel);
      if (btn && btn.offsetParent !== null) {
        btn.click();
        clicked = true;
        clicks++;
        await new Promise(r => setTimeout(r, delay));
        break;
      }
    }
    if (!clicked) break;
  }
  return clicks;
}
"""

AUTO_SCROLL_JS = """
({step, interval, limit}) => new Promise(resolve => {
  let total = 0;
  const started = Date.now();
  const timer = setInterval(() => {
    window.scrollBy(0, step);
    total += step;
    const height = document.body ? document.body.scrollHeight : 0;
    if (total >= height || Date.now() - started > limit) {
      clearInterval(timer);
      window.scrollTo(0, 0);
      resolve(total);
    }
  }, interval);
})
"""

# -------------------- Materialization protocol --------------------


@dataclass
class MaterializationContext:
    settings: MaterializationSettings
    first_page: bool


@dataclass
class MaterializationStep:
    name: str
    run: Callable[[Any, MaterializationContext], None]
    timeout_ms: Callable[[MaterializationSettings], int]


def _hero_wait(page: Any, ctx: MaterializationContext) -> None:
    s = ctx.settings
    page.wait_for_timeout(s.first_page_wait_ms if ctx.first_page else s.page_wait_ms)


def _carousel_images(page: Any, ctx: MaterializationContext) -> None:
    page.evaluate(
        WAIT_FOR_IMAGES_JS,
        {
            "selector": ", ".join(CAROUSEL_IMAGE_SELECTORS),
            "timeout": ctx.settings.carousel_image_timeout_ms,
        },
    )


def _reveal_slides(page: Any, ctx: MaterializationContext) -> None:
    page.evaluate(
        REVEAL_SLIDES_JS,
        {"selector": ", ".join(SLIDE_SELECTORS), "lazyAttrs": SLIDE_LAZY_ATTRS},
    )
    page.wait_for_timeout(ctx.settings.reveal_settle_ms)


def _cycle_carousel(page: Any, ctx: MaterializationContext) -> None:
    s = ctx.settings
    page.evaluate(
        CYCLE_CAROUSEL_JS,
        {
            "selectors": NEXT_CONTROL_SELECTORS,
            "rounds": s.carousel_rounds,
            "delay": s.carousel_click_delay_ms,
        },
    )
    page.wait_for_timeout(s.carousel_settle_ms)


def _auto_scroll(page: Any, ctx: MaterializationContext) -> None:
    s = ctx.settings
    page.evaluate(
        AUTO_SCROLL_JS,
        {
            "step": s.scroll_step_px,
            "interval": s.scroll_interval_ms,
            "limit": s.scroll_timeout_ms,
        },
    )
    page.wait_for_timeout(s.scroll_settle_ms)


def _pending_images(page: Any, ctx: MaterializationContext) -> None:
    page.evaluate(
        WAIT_FOR_IMAGES_JS,
        {"selector": "img", "timeout": ctx.settings.pending_image_timeout_ms},
    )


def _settle(page: Any, ctx: MaterializationContext) -> None:
    page.wait_for_timeout(ctx.settings.final_settle_ms)


DEFAULT_STEPS = [
    MaterializationStep(
        "hero-wait", _hero_wait, lambda s: max(s.first_page_wait_ms, s.page_wait_ms)
    ),
    MaterializationStep(
        "carousel-images", _carousel_images, lambda s: s.carousel_image_timeout_ms
    ),
    MaterializationStep("reveal-slides", _reveal_slides, lambda s: s.reveal_settle_ms),
    MaterializationStep(
        "cycle-carousel",
        _cycle_carousel,
        lambda s: s.carousel_rounds * s.carousel_click_delay_ms + s.carousel_settle_ms,
    ),
    MaterializationStep(
        "auto-scroll",
        _auto_scroll,
        lambda s: s.scroll_timeout_ms + s.scroll_settle_ms,
    ),
    MaterializationStep(
        "pending-images", _pending_images, lambda s: s.pending_image_timeout_ms
    ),
    MaterializationStep("settle", _settle, lambda s: s.final_settle_ms),
]


class MaterializationProtocol:
    """Ordered best-effort steps run against a loaded page before capture."""

    def __init__(
        self,
        settings: Optional[MaterializationSettings] = None,
        steps: Optional[List[MaterializationStep]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings or MaterializationSettings()
        self.steps = list(DEFAULT_STEPS if steps is None else steps)
        self.log = logger or log

    @property
    def budget_ms(self) -> int:
        return sum(step.timeout_ms(self.settings) for step in self.steps)

    def run(self, page: Any, *, first_page: bool = False) -> List[str]:
        """Run every step; returns the names of the steps that failed."""
        ctx = MaterializationContext(settings=self.settings, first_page=first_page)
        failed: List[str] = []
        for step in self.steps:
            try:
                step.run(page, ctx)
            except Exception as e:
                self.log.debug("materialize step %s failed: %s", step.name, e)
                failed.append(step.name)
        return failed


# -------------------- Backends --------------------


class FetchBackend:
    name = "backend"

    def start(self) -> None:
        pass

    def fetch(self, url: str) -> Page:
        raise NotImplementedError

    def close(self) -> None:
        pass


class HttpBackend(FetchBackend):
    name = "http"

    def __init__(self, transport: Transport):
        self.transport = transport

    def fetch(self, url: str) -> Page:
        try:
            r = self.transport.fetch_text(url)
        except FetchError as e:
            raise PageFetchError(url, str(e)) from e
        if r.status_code == 404:
            raise PageNotFound(url)
        if r.status_code >= 400:
            raise PageFetchError(url, f"HTTP {r.status_code}", r.status_code)
        html = r.text
        return Page(url=url, html=html, title=title_of(html), final_url=r.url or url)


class HeadlessBackend(FetchBackend):
    name = "headless"

    def __init__(
        self,
        settings: Optional[MaterializationSettings] = None,
        protocol: Optional[MaterializationProtocol] = None,
        *,
        verify_tls: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings or MaterializationSettings()
        self.protocol = protocol or MaterializationProtocol(self.settings, logger=logger)
        self.verify_tls = verify_tls
        self.log = logger or log
        self.pages_fetched = 0
        self._pl = None
        self._browser = None
        self._page = None

    def start(self) -> None:
        try:
            from playwright.sync_api import sync_playwright
        except ImportError as e:
            raise BackendError(
                "Playwright not installed. Run: pip install playwright && playwright install"
            ) from e
        try:
            self._pl = sync_playwright().start()
            self._browser = self._pl.chromium.launch(headless=True, args=BROWSER_ARGS)
            context = self._browser.new_context(
                user_agent=DEFAULT_HEADERS["User-Agent"],
                viewport={
                    "width": self.settings.viewport_width,
                    "height": self.settings.viewport_height,
                },
                ignore_https_errors=not self.verify_tls,
            )
            self._page = context.new_page()
        except Exception as e:
            self.close()
            raise BackendError(f"browser launch failed: {e}") from e

    def _connected(self) -> bool:
        try:
            return self._browser is not None and self._browser.is_connected()
        except Exception:
            return False

    def fetch(self, url: str) -> Page:
        if self._page is None:
            self.start()
        try:
            response = self._page.goto(
                url,
                wait_until="networkidle",
                timeout=self.settings.navigation_timeout_ms,
            )
        except Exception as e:
            if not self._connected():
                raise BackendError(f"browser disconnected: {e}") from e
            raise PageFetchError(url, str(e)) from e
        status = response.status if response is not None else None
        if status == 404:
            raise PageNotFound(url)
        if status is None or status >= 400:
            raise PageFetchError(url, f"HTTP {status or 'no response'}", status)

        failed = self.protocol.run(self._page, first_page=self.pages_fetched == 0)
        if failed:
            self.log.debug("%s: skipped steps %s", url, ", ".join(failed))
        try:
            html = self._page.content()
            title = self._page.title()
            final_url = self._page.url or url
        except Exception as e:
            if not self._connected():
                raise BackendError(f"browser disconnected: {e}") from e
            raise PageFetchError(url, str(e)) from e
        self.pages_fetched += 1
        return Page(url=url, html=html, title=(title or "").strip(), final_url=final_url)

    def close(self) -> None:
        try:
            if self._browser:
                self._browser.close()
        except Exception:
            pass
        try:
            if self._pl:
                self._pl.stop()
        except Exception:
            pass
        self._browser = None
        self._pl = None
        self._page = None
