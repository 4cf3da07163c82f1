from typing import Dict, Iterable, List

from .pages import Page, bs4_parse

MIN_CELL_TEXT = 10
SKIP_LINK_PREFIXES = ("#", "javascript:")


def text_of(el) -> str:
    return " ".join(el.get_text(" ").split())


def meta_content(soup, **attrs) -> str:
    tag = soup.find("meta", attrs=attrs)
    return (tag.get("content") or "").strip() if tag else ""


def extract_page_content(page: Page) -> Dict:
    soup = bs4_parse(page.html)
    title = page.title or (text_of(soup.title) if soup.title else "")
    meta = {}
    for key, attrs in (
        ("description", {"name": "description"}),
        ("og_title", {"property": "og:title"}),
        ("og_description", {"property": "og:description"}),
    ):
        value = meta_content(soup, **attrs)
        if value:
            meta[key] = value

    headings = []
    for h in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
        text = text_of(h)
        if text:
            headings.append({"tag": h.name, "text": text})

    paragraphs = [t for t in (text_of(p) for p in soup.find_all("p")) if t]
    for cell in soup.find_all(["li", "td", "th"]):
        text = text_of(cell)
        if len(text) > MIN_CELL_TEXT:
            paragraphs.append(text)

    links = []
    for a in soup.select("a[href]"):
        href = a.get("href") or ""
        text = text_of(a)
        if text and href and not href.startswith(SKIP_LINK_PREFIXES):
            links.append({"href": href, "text": text})

    images = []
    for img in soup.select("img[alt]"):
        alt = (img.get("alt") or "").strip()
        if alt:
            images.append({"src": img.get("src"), "alt": alt})

    return {
        "url": page.url,
        "title": title,
        "meta": meta,
        "headings": headings,
        "paragraphs": paragraphs,
        "links": links,
        "images": images,
    }


def extract_content(pages: Iterable[Page]) -> Dict:
    """Per-page text content plus site-wide aggregates."""
    out: Dict[str, List] = {
        "pages": [],
        "headings": [],
        "paragraphs": [],
        "links": [],
        "images": [],
    }
    for page in pages:
        pc = extract_page_content(page)
        out["pages"].append(pc)
        for key in ("headings", "paragraphs", "links", "images"):
            out[key].extend(pc[key])
    return out
