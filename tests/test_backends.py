import pytest
from conftest import FakeTransport, html_page

from site_cloner.backends import (
    DEFAULT_STEPS,
    HeadlessBackend,
    HttpBackend,
    MaterializationProtocol,
    MaterializationStep,
)
from site_cloner.config import MaterializationSettings
from site_cloner.errors import BackendError, PageFetchError, PageNotFound

STEP_NAMES = [
    "hero-wait",
    "carousel-images",
    "reveal-slides",
    "cycle-carousel",
    "auto-scroll",
    "pending-images",
    "settle",
]


class FakePage:
    def __init__(self, fail_evaluate=False, status=200, html="<html><body>x</body></html>", final_url=None):
        self.final_url = final_url
        self.url = ""
        self.fail_evaluate = fail_evaluate
        self.status = status
        self.html = html
        self.waits = []
        self.evaluated = []
        self.goto_error = None

    def wait_for_timeout(self, ms):
        self.waits.append(ms)

    def evaluate(self, script, arg=None):
        if self.fail_evaluate:
            raise RuntimeError("Execution context was destroyed")
        self.evaluated.append(arg)
        return 0

    def goto(self, url, wait_until=None, timeout=None):
        if self.goto_error:
            raise self.goto_error
        self.url = self.final_url or url
        return type("Response", (), {"status": self.status})()

    def content(self):
        return self.html

    def title(self):
        return " Rendered "


class FakeBrowser:
    def __init__(self, connected=True):
        self.connected = connected

    def is_connected(self):
        return self.connected

    def close(self):
        pass


def headless_with(page, browser=None):
    backend = HeadlessBackend(MaterializationSettings())
    backend._page = page
    backend._browser = browser or FakeBrowser()
    return backend


def test_default_steps_in_order():
    assert [s.name for s in DEFAULT_STEPS] == STEP_NAMES


def test_first_page_waits_longer():
    s = MaterializationSettings(first_page_wait_ms=5000, page_wait_ms=3000)
    first, later = FakePage(), FakePage()
    protocol = MaterializationProtocol(s)
    assert protocol.run(first, first_page=True) == []
    assert protocol.run(later, first_page=False) == []
    assert first.waits[0] == 5000
    assert later.waits[0] == 3000


def test_step_failures_are_swallowed():
    page = FakePage(fail_evaluate=True)
    s = MaterializationSettings()
    failed = MaterializationProtocol(s).run(page)
    assert failed == ["carousel-images", "reveal-slides", "cycle-carousel", "auto-scroll", "pending-images"]
    # waits before and after the script steps still ran
    assert page.waits == [s.page_wait_ms, s.final_settle_ms]


def test_carousel_step_gets_bounded_rounds():
    page = FakePage()
    MaterializationProtocol(MaterializationSettings(carousel_rounds=4)).run(page)
    rounds = [a["rounds"] for a in page.evaluated if isinstance(a, dict) and "rounds" in a]
    assert rounds == [4]


def test_custom_steps_are_pluggable():
    calls = []
    step = MaterializationStep("mark", lambda page, ctx: calls.append(ctx.first_page), lambda s: 10)
    protocol = MaterializationProtocol(steps=[step])
    protocol.run(FakePage(), first_page=True)
    assert calls == [True]
    assert protocol.budget_ms == 10


def test_budget_is_sum_of_step_timeouts():
    s = MaterializationSettings()
    assert MaterializationProtocol(s).budget_ms == sum(step.timeout_ms(s) for step in DEFAULT_STEPS)


def test_http_backend_page():
    t = FakeTransport({"https://example.com/": html_page("hi", title=" Home ")})
    page = HttpBackend(t).fetch("https://example.com/")
    assert page.title == "Home"
    assert "hi" in page.html


def test_http_backend_keeps_served_address():
    t = FakeTransport({"https://example.com/blog/": html_page("posts")})
    t.redirect("https://example.com/blog", "https://example.com/blog/")
    page = HttpBackend(t).fetch("https://example.com/blog")
    assert page.url == "https://example.com/blog"
    assert page.base_url == "https://example.com/blog/"


def test_headless_backend_keeps_served_address():
    backend = headless_with(FakePage(final_url="https://example.com/blog/"))
    page = backend.fetch("https://example.com/blog")
    assert page.url == "https://example.com/blog"
    assert page.base_url == "https://example.com/blog/"


def test_http_backend_errors():
    t = FakeTransport()
    t.add("https://example.com/boom", "err", status=503)
    t.fail("https://example.com/down")
    backend = HttpBackend(t)
    with pytest.raises(PageNotFound):
        backend.fetch("https://example.com/missing")
    with pytest.raises(PageFetchError) as exc:
        backend.fetch("https://example.com/boom")
    assert exc.value.status == 503
    with pytest.raises(PageFetchError):
        backend.fetch("https://example.com/down")


def test_headless_fetch_runs_protocol_and_tracks_first_page():
    page = FakePage()
    backend = headless_with(page)
    result = backend.fetch("https://example.com/")
    assert result.title == "Rendered"
    assert result.html == page.html
    assert page.waits[0] == backend.settings.first_page_wait_ms
    backend.fetch("https://example.com/a")
    assert backend.pages_fetched == 2
    assert backend.settings.page_wait_ms in page.waits


def test_headless_status_errors():
    backend = headless_with(FakePage(status=404))
    with pytest.raises(PageNotFound):
        backend.fetch("https://example.com/x")
    backend = headless_with(FakePage(status=500))
    with pytest.raises(PageFetchError):
        backend.fetch("https://example.com/x")


def test_headless_navigation_error_vs_crash():
    page = FakePage()
    page.goto_error = RuntimeError("net::ERR_NAME_NOT_RESOLVED")
    with pytest.raises(PageFetchError):
        headless_with(page).fetch("https://example.com/x")
    page = FakePage()
    page.goto_error = RuntimeError("Target closed")
    with pytest.raises(BackendError):
        headless_with(page, FakeBrowser(connected=False)).fetch("https://example.com/x")


def test_headless_close_resets_state():
    backend = headless_with(FakePage())
    backend.close()
    assert backend._page is None
    assert backend._browser is None
