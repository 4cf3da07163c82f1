import logging

import pytest
from conftest import FakeTransport, html_page

from site_cloner.backends import FetchBackend, HttpBackend
from site_cloner.crawler import CrawlState, Crawler, extract_links
from site_cloner.errors import BackendError, CrawlError
from site_cloner.sitemap import SitemapReader

ROOT = "https://example.com/"


class FlakyBackend(FetchBackend):
    """Raises BackendError on the first ``failures`` fetches, then serves HTML."""

    name = "headless"

    def __init__(self, transport, failures=10**6):
        self.inner = HttpBackend(transport)
        self.failures = failures
        self.fetch_calls = 0
        self.closed = 0

    def fetch(self, url):
        self.fetch_calls += 1
        if self.fetch_calls <= self.failures:
            raise BackendError("browser crashed")
        return self.inner.fetch(url)

    def close(self):
        self.closed += 1


def site(t, pages):
    for path, body in pages.items():
        t.add("https://example.com" + path, html_page(body))


def test_extract_links_union_of_parsers():
    html = (
        '<a href="/about">About</a>'
        '<a href="contact#form">Contact</a>'
        '<a href="https://other.com/x">ext</a>'
        '<a href="mailto:a@example.com">mail</a>'
        '<a href="/img/logo.png">logo</a>'
        # unterminated tag only the raw scan sees
        '<div data-x="<a href=\'/hidden\'"'
    )
    links = extract_links(html, ROOT)
    assert "https://example.com/about" in links
    assert "https://example.com/contact" in links
    assert "https://example.com/hidden" in links
    assert not any("other.com" in u for u in links)
    assert not any(u.endswith(".png") for u in links)


def test_crawl_state_at_most_once():
    s = CrawlState(origin="https://example.com")
    assert s.enqueue("https://example.com/a")
    assert not s.enqueue("https://example.com/a")
    assert s.pop() == "https://example.com/a"
    assert s.mark_visited("https://example.com/a")
    assert not s.enqueue("https://example.com/a")
    assert not s.mark_visited("https://example.com/a")


def test_about_fetched_once_without_trailing_slash_variant():
    t = FakeTransport()
    site(t, {
        "/": '<a href="/about">About</a><a href="/about/">About again</a><a href="about#team">Team</a>',
        "/about": '<a href="/">Home</a><a href="/about?ref=self">Self</a>',
    })
    result = Crawler(ROOT, backend=HttpBackend(t)).run()
    assert [p.url for p in result.pages] == ["https://example.com/", "https://example.com/about"]
    assert t.count("https://example.com/about") == 1
    assert t.count("https://example.com/about/") == 0


def test_cycles_terminate():
    t = FakeTransport()
    site(t, {
        "/": '<a href="/a">a</a>',
        "/a": '<a href="/b">b</a><a href="/a">self</a>',
        "/b": '<a href="/">home</a><a href="/a">a</a>',
    })
    result = Crawler(ROOT, backend=HttpBackend(t)).run()
    assert len(result.pages) == 3
    for path in ("", "a", "b"):
        assert t.count(ROOT + path) == 1


def test_missing_and_failed_pages_are_skipped(caplog):
    t = FakeTransport()
    site(t, {"/": '<a href="/missing">x</a><a href="/broken">y</a><a href="/ok">z</a>', "/ok": "ok"})
    t.add("https://example.com/broken", "oops", status=500)
    with caplog.at_level(logging.DEBUG, logger="site_cloner"):
        result = Crawler(ROOT, backend=HttpBackend(t)).run()
    assert [p.url for p in result.pages] == ["https://example.com/", "https://example.com/ok"]
    assert result.not_found == ["https://example.com/missing"]
    assert result.failed == ["https://example.com/broken"]
    errors = [r.getMessage() for r in caplog.records if r.levelno >= logging.ERROR]
    assert not any("missing" in m for m in errors)
    assert any("broken" in m for m in errors)


def test_non_html_documents_skipped():
    t = FakeTransport()
    site(t, {"/": '<a href="/data">data</a>'})
    t.add("https://example.com/data", '{"a": 1}', content_type="application/json")
    result = Crawler(ROOT, backend=HttpBackend(t)).run()
    assert [p.url for p in result.pages] == ["https://example.com/"]


def test_page_cap():
    t = FakeTransport()
    links = "".join(f'<a href="/p{i}">{i}</a>' for i in range(20))
    site(t, {"/": links, **{f"/p{i}": "x" for i in range(20)}})
    result = Crawler(ROOT, backend=HttpBackend(t), max_pages=5).run()
    assert len(result.pages) == 5


def test_zero_pages_is_fatal():
    t = FakeTransport()
    with pytest.raises(CrawlError):
        Crawler(ROOT, backend=HttpBackend(t)).run()


def test_sitemap_seeds_unlinked_pages():
    t = FakeTransport()
    site(t, {"/": "home", "/hidden": "hidden"})
    t.add(
        "https://example.com/sitemap.xml",
        "<urlset><url><loc>https://example.com/hidden</loc></url>"
        "<url><loc>https://other.com/x</loc></url></urlset>",
        content_type="application/xml",
    )
    result = Crawler(ROOT, backend=HttpBackend(t), sitemap=SitemapReader(t)).run()
    assert {p.url for p in result.pages} == {"https://example.com/", "https://example.com/hidden"}


def test_headless_failure_downgrades_exactly_once(caplog):
    t = FakeTransport()
    site(t, {
        "/": '<a href="/a">a</a><a href="/b">b</a>',
        "/a": '<a href="/b">b</a>',
        "/b": "b",
    })
    flaky = FlakyBackend(t)
    crawler = Crawler(ROOT, backend=flaky, fallback=HttpBackend(t))
    with caplog.at_level(logging.INFO, logger="site_cloner"):
        result = crawler.run()
    assert flaky.fetch_calls == 2
    assert result.downgraded
    assert result.backend == "http"
    assert len(result.pages) == 3
    for path in ("", "a", "b"):
        assert t.count(ROOT + path) == 1
    switches = [r for r in caplog.records if "falling back" in r.getMessage()]
    assert len(switches) == 1
    assert switches[0].levelno == logging.INFO


def test_attempts_are_counted_per_crawl_not_per_page():
    t = FakeTransport()
    site(t, {"/": '<a href="/a">a</a>', "/a": "a"})
    flaky = FlakyBackend(t, failures=1)
    result = Crawler(ROOT, backend=flaky, fallback=HttpBackend(t)).run()
    assert not result.downgraded
    assert result.backend == "headless"
    assert flaky.fetch_calls == 3
    assert len(result.pages) == 2


def test_backend_failure_without_fallback_skips_page():
    t = FakeTransport()
    site(t, {"/": "home"})
    with pytest.raises(CrawlError):
        Crawler(ROOT, backend=FlakyBackend(t)).run()


def test_redirected_page_resolves_links_against_served_address():
    t = FakeTransport()
    site(t, {
        "/": '<a href="/blog">Blog</a>',
        "/blog/": '<a href="post-1">First post</a>',
        "/blog/post-1": "hello",
    })
    t.redirect("https://example.com/blog", "https://example.com/blog/")
    result = Crawler(ROOT, backend=HttpBackend(t)).run()
    assert [p.url for p in result.pages] == [
        "https://example.com/",
        "https://example.com/blog",
        "https://example.com/blog/post-1",
    ]
    assert result.pages[1].base_url == "https://example.com/blog/"
    assert result.not_found == []
    assert t.count("https://example.com/post-1") == 0
