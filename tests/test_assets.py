from conftest import FakeTransport, html_page

from site_cloner.assets import (
    FONT,
    IMAGE,
    STYLESHEET,
    AssetMap,
    AssetResolver,
    asset_filename,
    extract_font_urls_from_css,
    extract_google_font_stylesheets,
    extract_image_urls_from_css,
    extract_image_urls_from_html,
    extract_script_urls,
    is_image_url,
    parse_srcset,
)
from site_cloner.css import CssBlock, StylesheetCollector
from site_cloner.pages import Page

PNG = b"\x89PNG\r\n\x1a\nfake"


def resolver_for(t, tmp_path):
    return AssetResolver(t, tmp_path, workers=4)


def test_parse_srcset():
    assert parse_srcset("a.jpg 1x, b.jpg 2x") == ["a.jpg", "b.jpg"]
    assert parse_srcset("") == []


def test_html_image_extraction():
    html = html_page(
        '<img src="/img/a.png" srcset="/img/a-2x.png 2x, /img/a-3x.png 3x">'
        '<img src="loading.gif" data-src="/img/lazy.jpg">'
        '<div style="background-image: url(\'/img/bg.jpg\')"></div>'
        '<div data-bg="/img/data-bg.webp"></div>'
        '<div data-src="/not-an-image"></div>'
        '<li data-thumb="/img/thumb.jpg"></li>'
        '<picture><source srcset="/img/wide.avif"></picture>'
        '<video poster="/media/poster.jpg"></video>'
        '<img src="data:image/gif;base64,R0lGOD">'
        '<script>var slides = ["/wp-content/uploads/2020/slide.jpg"];</script>',
        head='<meta property="og:image" content="https://example.com/og.png">'
        '<link rel="apple-touch-icon" href="/touch.png">',
    )
    urls = extract_image_urls_from_html(html, "https://example.com/page")
    for path in (
        "/img/a.png", "/img/a-2x.png", "/img/a-3x.png", "/img/lazy.jpg", "/img/bg.jpg",
        "/img/data-bg.webp", "/img/thumb.jpg", "/img/wide.avif", "/media/poster.jpg",
        "/wp-content/uploads/2020/slide.jpg", "/og.png", "/touch.png", "/loading.gif",
    ):
        assert "https://example.com" + path in urls, path
    assert "https://example.com/not-an-image" not in urls
    assert not any(u.startswith("data:") for u in urls)


def test_css_image_resolved_against_stylesheet():
    css = ".icon { background: url(../img/x.png); } @font-face { src: url('../fonts/f.woff2'); }"
    base = "https://example.com/css/app.css"
    assert extract_image_urls_from_css(css, base) == {"https://example.com/img/x.png"}
    assert extract_font_urls_from_css(css, base) == {"https://example.com/fonts/f.woff2"}


def test_google_fonts_links_and_imports():
    html = (
        '<link rel="stylesheet" href="https://fonts.googleapis.com/css2?family=Roboto&amp;display=swap">'
        "<style>@import url('//fonts.googleapis.com/css?family=Lato');</style>"
    )
    assert extract_google_font_stylesheets(html) == {
        "https://fonts.googleapis.com/css2?family=Roboto&display=swap",
        "https://fonts.googleapis.com/css?family=Lato",
    }


def test_script_extraction_skips_non_js_types():
    html = (
        '<script src="/js/app.js"></script>'
        '<script type="module" src="/js/mod.js"></script>'
        '<script type="text/template" src="/tpl.html"></script>'
    )
    assert extract_script_urls(html, "https://example.com/") == {
        "https://example.com/js/app.js",
        "https://example.com/js/mod.js",
    }


def test_asset_filename():
    assert asset_filename("https://example.com/img/a.png?v=2", IMAGE) == "img_a.png"
    assert asset_filename("https://example.com/image?id=5", IMAGE, "image/jpeg") == "image.jpg"
    assert asset_filename("https://example.com/x/caf%C3%A9 pic.png", IMAGE) == "x_caf_C3_A9_pic.png"
    long = asset_filename("https://example.com/" + "a" * 300 + ".png", IMAGE)
    assert len(long) <= 100
    assert long.endswith(".png")


def test_lookup_three_spellings():
    m = AssetMap()
    m.add("https://example.com/img/x.png", "assets/images/img_x.png", IMAGE)
    assert m.lookup("https://example.com/img/x.png") == "assets/images/img_x.png"
    assert m.lookup("https://example.com/img/x.png?ver=5.1") == "assets/images/img_x.png"
    assert m.lookup("../../img/x.png", "https://example.com/blog/2020/post") == "assets/images/img_x.png"
    assert m.lookup("/img/x.png#frag", "https://example.com/about") == "assets/images/img_x.png"
    assert m.lookup("https://example.com/img/y.png") is None
    assert m.lookup("assets/images/img_x.png", "https://example.com/") is None


def test_lookup_kind_filter():
    m = AssetMap()
    m.add("https://example.com/css/app.css", "style.css", STYLESHEET)
    assert m.lookup("https://example.com/css/app.css", kinds={IMAGE, FONT}) is None
    assert m.lookup("https://example.com/css/app.css", kinds={STYLESHEET}) == "style.css"


def test_download_dedups_spellings(tmp_path):
    t = FakeTransport()
    t.add("https://example.com/img/a.png", PNG, content_type="image/png")
    r = resolver_for(t, tmp_path)
    n = r.download(
        [
            "https://example.com/img/a.png?v=2",
            "https://example.com/img/a.png",
            "https://example.com/img/a.png#top",
        ],
        IMAGE,
    )
    assert n == 1
    assert t.calls == ["https://example.com/img/a.png"]
    assert (tmp_path / "assets/images/img_a.png").read_bytes() == PNG
    for u in ("https://example.com/img/a.png?v=2", "https://example.com/img/a.png#top"):
        assert r.asset_map.get(u) == "assets/images/img_a.png"
    # already mapped: nothing fetched again
    r.download(["https://example.com/img/a.png?v=3"], IMAGE)
    assert len(t.calls) == 1


def test_download_name_collisions(tmp_path):
    t = FakeTransport()
    t.add("https://example.com/a/b.png", PNG, content_type="image/png")
    t.add("https://example.com/a_b.png", PNG + b"2", content_type="image/png")
    r = resolver_for(t, tmp_path)
    r.download(["https://example.com/a_b.png", "https://example.com/a/b.png"], IMAGE)
    first = r.asset_map.get("https://example.com/a/b.png")
    second = r.asset_map.get("https://example.com/a_b.png")
    assert first == "assets/images/a_b.png"
    assert second != first
    assert (tmp_path / second).read_bytes() == PNG + b"2"


def test_failed_downloads_stay_unmapped(tmp_path, caplog):
    t = FakeTransport()
    t.fail("https://example.com/down.png")
    r = resolver_for(t, tmp_path)
    assert r.download(["https://example.com/missing.png", "https://example.com/down.png"], IMAGE) == 0
    assert len(r.asset_map) == 0
    assert "missing.png" in caplog.text


def test_resolve_images_from_pages_and_css(tmp_path):
    t = FakeTransport()
    t.add("https://example.com/img/logo.png", PNG, content_type="image/png")
    t.add("https://example.com/img/bg.png", PNG, content_type="image/png")
    pages = [Page("https://example.com/", html_page('<img src="/img/logo.png">'))]
    blocks = [CssBlock("https://example.com/css/app.css", "body{background:url(../img/bg.png)}",
                       "https://example.com/css/app.css")]
    r = resolver_for(t, tmp_path)
    r.resolve_images(pages, blocks)
    assert r.asset_map.count(IMAGE) == 2
    assert r.asset_map.get("https://example.com/img/bg.png") == "assets/images/img_bg.png"


def test_resolve_fonts_through_google_stylesheet(tmp_path):
    t = FakeTransport()
    gcss = "https://fonts.googleapis.com/css2?family=Roboto&display=swap"
    t.add(gcss, "@font-face { src: url(https://fonts.gstatic.com/s/roboto/v1/a.woff2) format('woff2'); }",
          content_type="text/css")
    t.add("https://fonts.gstatic.com/s/roboto/v1/a.woff2", b"wOF2", content_type="font/woff2")
    pages = [Page("https://example.com/", html_page("", head=f'<link rel="stylesheet" href="{gcss}">'))]
    r = resolver_for(t, tmp_path)
    r.resolve_fonts(pages)
    assert r.asset_map.get("https://fonts.gstatic.com/s/roboto/v1/a.woff2") == "assets/fonts/s_roboto_v1_a.woff2"
    assert (tmp_path / "assets/fonts/s_roboto_v1_a.woff2").exists()


def test_collected_google_stylesheet_is_not_fetched_twice(tmp_path):
    t = FakeTransport()
    gcss = "https://fonts.googleapis.com/css2?family=Roboto"
    t.add(gcss, "@font-face { src: url(https://fonts.gstatic.com/s/roboto/v1/a.woff2) format('woff2'); }",
          content_type="text/css")
    t.add("https://fonts.gstatic.com/s/roboto/v1/a.woff2", b"wOF2", content_type="font/woff2")
    pages = [Page("https://example.com/", html_page("", head=f'<link rel="stylesheet" href="{gcss}">'))]
    blocks = StylesheetCollector(t).collect(pages)
    r = resolver_for(t, tmp_path)
    assert r.resolve_fonts(pages, blocks) == 1
    assert t.count(gcss) == 1
    assert r.asset_map.count(FONT) == 1


def test_fonts_under_media_paths_are_not_images(tmp_path):
    css = (
        "@font-face{font-family:B;src:url(/media/fonts/brand.woff2)}"
        ".hero{background:url(/media/hero.jpg)}"
        ".x{background:url(/media/banner)}"
    )
    base = "https://example.com/css/app.css"
    assert extract_image_urls_from_css(css, base) == {
        "https://example.com/media/hero.jpg",
        "https://example.com/media/banner",
    }
    assert extract_font_urls_from_css(css, base) == {"https://example.com/media/fonts/brand.woff2"}
    assert not is_image_url("https://example.com/img/icons.ttf")
    assert is_image_url("https://example.com/media/photo")

    t = FakeTransport()
    t.add("https://example.com/media/fonts/brand.woff2", b"wOF2", content_type="font/woff2")
    r = resolver_for(t, tmp_path)
    r.resolve_images([], [CssBlock(base, css, base)])
    r.resolve_fonts([], [CssBlock(base, css, base)])
    assert r.asset_map.get("https://example.com/media/fonts/brand.woff2") == "assets/fonts/media_fonts_brand.woff2"
    assert r.asset_map.count(IMAGE) == 0


def test_register_stylesheets_skips_inline(tmp_path):
    r = resolver_for(FakeTransport(), tmp_path)
    blocks = [
        CssBlock("https://example.com/a.css", "a{}", "https://example.com/a.css"),
        CssBlock("inline-style", "b{}", "https://example.com/"),
    ]
    assert r.register_stylesheets(blocks) == 1
    assert r.asset_map.get("https://example.com/a.css") == "style.css"
