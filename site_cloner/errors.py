from typing import Dict, List, Optional


class CloneError(Exception):
    pass


class FetchError(CloneError):
    def __init__(self, url: str, message: str):
        super().__init__(f"{url}: {message}")
        self.url = url


class PageNotFound(CloneError):
    def __init__(self, url: str):
        super().__init__(f"{url}: HTTP 404")
        self.url = url


class PageFetchError(CloneError):
    def __init__(self, url: str, message: str, status: Optional[int] = None):
        super().__init__(f"{url}: {message}")
        self.url = url
        self.status = status


class BackendError(CloneError):
    """The fetch backend itself is unusable (launch failure, browser crash)."""


class CrawlError(CloneError):
    pass


class CloneJobError(CloneError):
    def __init__(
        self,
        message: str,
        *,
        log: Optional[List[str]] = None,
        stats: Optional[Dict[str, int]] = None,
    ):
        super().__init__(message)
        self.log = list(log or [])
        self.stats = dict(stats or {})
