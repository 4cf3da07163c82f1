import codecs
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import requests
import urllib3
from bs4.dammit import EncodingDetector, UnicodeDammit
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import DEFAULT_HEADERS
from .errors import FetchError

log = logging.getLogger(__name__)

MAX_REDIRECTS = 5
RETRY_STATUSES = [500, 502, 503, 504]


def header_charset(headers) -> Optional[str]:
    ct = headers.get("Content-Type") or headers.get("content-type") or ""
    for part in ct.split(";")[1:]:
        key, _, value = part.partition("=")
        if key.strip().lower() == "charset" and value.strip():
            return value.strip().strip("\"'")
    return None


def detect_encoding(body: bytes, content_type: str = "") -> str:
    """Encoding for a body whose Content-Type carries no charset.

    A declaration inside the document wins, then UTF-8 if the bytes decode
    cleanly, then whatever UnicodeDammit guesses.
    """
    is_html = "html" in content_type
    declared = EncodingDetector.find_declared_encoding(body, is_html=is_html)
    if declared and _known(declared):
        return declared
    dammit = UnicodeDammit(body, user_encodings=["utf-8"], is_html=is_html)
    return dammit.original_encoding or "utf-8"


def _known(encoding: str) -> bool:
    try:
        codecs.lookup(encoding)
    except LookupError:
        return False
    return True


@dataclass
class Fetched:
    url: str
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    content: bytes = b""
    encoding: Optional[str] = None

    @property
    def text(self) -> str:
        return self.content.decode(self.encoding or "utf-8", errors="replace")

    @property
    def content_type(self) -> str:
        for k, v in self.headers.items():
            if k.lower() == "content-type":
                return v.split(";")[0].strip().lower()
        return ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400


def build_session(
    retries: int = 3,
    verify: bool = False,
    headers: Optional[Dict[str, str]] = None,
) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=retries,
        connect=retries,
        read=retries,
        status=retries,
        backoff_factor=0.5,
        status_forcelist=RETRY_STATUSES,
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=32, pool_maxsize=32)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    s.max_redirects = MAX_REDIRECTS
    s.verify = verify
    if not verify:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    return s


class Transport:
    """Byte/text fetches with timeout, redirects and retry on transient errors."""

    def __init__(
        self,
        timeout: float = 30.0,
        retries: int = 3,
        verify: bool = False,
        max_bytes: int = 50_000_000,
        session: Optional[requests.Session] = None,
    ):
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.session = session or build_session(retries=retries, verify=verify)

    def _get(self, url: str, timeout: Optional[float]) -> requests.Response:
        log.debug("GET %s", url)
        try:
            return self.session.get(url, timeout=timeout or self.timeout, stream=True)
        except requests.RequestException as e:
            raise FetchError(url, str(e)) from e

    def fetch_text(self, url: str, *, timeout: Optional[float] = None) -> Fetched:
        r = self._get(url, timeout)
        try:
            body = r.content
        except requests.RequestException as e:
            raise FetchError(url, str(e)) from e
        finally:
            r.close()
        headers = dict(r.headers)
        encoding = header_charset(headers)
        if not encoding or not _known(encoding):
            content_type = (headers.get("Content-Type") or headers.get("content-type") or "").lower()
            encoding = detect_encoding(body, content_type)
        return Fetched(
            url=r.url or url,
            status_code=r.status_code,
            headers=headers,
            content=body,
            encoding=encoding,
        )

    def fetch_bytes(self, url: str, *, timeout: Optional[float] = None) -> Fetched:
        r = self._get(url, timeout)
        try:
            cl = r.headers.get("Content-Length")
            if cl and cl.isdigit() and int(cl) > self.max_bytes:
                raise FetchError(url, f"too large ({cl} bytes)")
            chunks = []
            written = 0
            for chunk in r.iter_content(chunk_size=64 * 1024):
                if not chunk:
                    continue
                written += len(chunk)
                if written > self.max_bytes:
                    raise FetchError(url, f"exceeds {self.max_bytes} bytes")
                chunks.append(chunk)
        except requests.RequestException as e:
            raise FetchError(url, str(e)) from e
        finally:
            r.close()
        return Fetched(
            url=r.url or url,
            status_code=r.status_code,
            headers=dict(r.headers),
            content=b"".join(chunks),
        )

    def close(self) -> None:
        self.session.close()
