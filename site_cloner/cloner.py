"""Clone job orchestration.

A job crawls the site, collects and downloads stylesheets, images, fonts and
scripts, rewrites every page and the consolidated stylesheet against one
AssetMap, then packages the result. Only an empty crawl is fatal; any other
stage that fails leaves its own output empty and the job carries on.
"""

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, TypeVar

from .assets import FONT, IMAGE, SCRIPT, AssetResolver
from .backends import FetchBackend, HeadlessBackend, HttpBackend, MaterializationProtocol
from .config import CloneOptions
from .content import extract_content
from .crawler import Crawler, CrawlResult
from .css import HERO_FALLBACK_CSS, CssBlock, StylesheetCollector, consolidate
from .errors import CloneError, CloneJobError
from .joblog import job_logger, release_job_logger
from .packaging import CSS_FILENAME, SitePackager
from .pages import Page, assign_filenames, build_url_to_local_path
from .rewriter import Rewriter
from .sitemap import SitemapReader
from .transport import Transport
from .urls import SCHEME_RE, is_fetchable

T = TypeVar("T")

OUTPUT_BASE = Path("output")


def create_job_id() -> str:
    return uuid.uuid4().hex[:8]


@dataclass
class ProgressUpdate:
    status: str
    progress: int
    current_step: str
    log: List[Dict[str, str]] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)


@dataclass
class CloneResult:
    job_id: str
    output_dir: Path
    stats: Dict[str, int]
    manifest: Dict
    pages: List[Page]
    status: str = "completed"


ProgressSink = Callable[[ProgressUpdate], None]


class CloneJob:
    def __init__(
        self,
        job_id: str,
        url: str,
        options: Optional[CloneOptions] = None,
        output_dir: Optional[Path] = None,
        progress: Optional[ProgressSink] = None,
        *,
        transport: Optional[Transport] = None,
        backend: Optional[FetchBackend] = None,
    ):
        self.job_id = job_id
        self.url = url if SCHEME_RE.match(url) else "https://" + url
        self.options = options or CloneOptions()
        self.output_dir = Path(output_dir) if output_dir else OUTPUT_BASE / job_id
        self.progress = progress
        self._own_transport = transport is None
        o = self.options
        self.transport = transport or Transport(
            timeout=o.timeout, retries=o.retries, verify=o.verify_tls, max_bytes=o.max_bytes
        )
        self._backend = backend
        self.log, self.handler = job_logger(job_id)
        self.stats: Dict[str, int] = {"pages": 0, "images": 0, "fonts": 0, "scripts": 0, "css_files": 0}

    def report(self, step: str, percent: int, status: str = "in_progress") -> None:
        if self.progress is None:
            return
        update = ProgressUpdate(
            status=status,
            progress=percent,
            current_step=step,
            log=self.handler.records(),
            stats=dict(self.stats),
        )
        try:
            self.progress(update)
        except Exception as e:
            self.log.debug("progress sink failed: %s", e)

    def stage(self, name: str, fn: Callable[[], T], default: T) -> T:
        try:
            return fn()
        except Exception as e:
            self.log.error("%s: %s", name, e)
            return default

    # -------------------- Stages --------------------

    def crawl(self) -> CrawlResult:
        o = self.options
        http = HttpBackend(self.transport)
        fallback: Optional[FetchBackend] = None
        if self._backend is not None:
            backend = self._backend
            fallback = http
        elif o.use_headless:
            protocol = MaterializationProtocol(o.materialization, logger=self.log)
            backend = HeadlessBackend(
                o.materialization, protocol, verify_tls=o.verify_tls, logger=self.log
            )
            fallback = http
        else:
            backend = http
        sitemap = SitemapReader(self.transport, logger=self.log) if o.use_sitemap else None
        crawler = Crawler(
            self.url,
            backend=backend,
            fallback=fallback,
            sitemap=sitemap,
            max_pages=o.max_pages,
            backend_attempts=o.headless_attempts,
            heuristics=o.heuristics,
            logger=self.log,
        )
        return crawler.run()

    def rewrite_pages(self, rewriter: Rewriter, pages: List[Page]) -> List[Page]:
        out: List[Page] = []
        for page in pages:
            try:
                html = rewriter.html(page.html, page.base_url)
            except Exception as e:
                self.log.error("Rewrite failed for %s: %s", page.url, e)
                html = page.html
            out.append(Page(url=page.url, html=html, title=page.title, final_url=page.final_url))
        return out

    def run(self) -> CloneResult:
        try:
            return self._run()
        finally:
            if self._own_transport:
                self.transport.close()
            release_job_logger(self.log, self.handler)

    def _run(self) -> CloneResult:
        o = self.options
        self.log.info("Connecting to %s", self.url)
        self.report("Starting crawl...", 5)
        try:
            if not is_fetchable(self.url):
                raise CloneError(f"Invalid URL: {self.url}")
            crawled = self.crawl()
        except CloneError as e:
            self.log.error("Clone failed: %s", e)
            self.report(f"Error: {e}", 0, status="error")
            raise CloneJobError(str(e), log=self.handler.messages(), stats=self.stats) from e

        pages = crawled.pages
        origin = crawled.base_url
        self.stats["pages"] = len(pages)
        self.log.info("Crawled %d HTML pages", len(pages))

        self.report("Extracting HTML...", 15)
        filenames = assign_filenames(pages)
        url_to_local = build_url_to_local_path(filenames, origin)

        resolver = AssetResolver(
            self.transport,
            self.output_dir,
            workers=o.workers,
            heuristics=o.heuristics,
            logger=self.log,
        )
        blocks: List[CssBlock] = []
        if o.css:
            self.log.info("Extracting CSS stylesheets...")
            self.report("Extracting CSS...", 25)
            collector = StylesheetCollector(self.transport, o.heuristics, logger=self.log)
            blocks = self.stage("CSS extraction", lambda: collector.collect(pages), [])
            self.stats["css_files"] = resolver.register_stylesheets(blocks, CSS_FILENAME)

        if o.images:
            self.log.info("Downloading images...")
            self.report("Downloading images...", 40)
            self.stage("Image extraction", lambda: resolver.resolve_images(pages, blocks), 0)
            self.stats["images"] = resolver.asset_map.count(IMAGE)

        if o.fonts:
            self.log.info("Downloading fonts...")
            self.report("Downloading fonts...", 55)
            self.stage("Font extraction", lambda: resolver.resolve_fonts(pages, blocks), 0)
            self.stats["fonts"] = resolver.asset_map.count(FONT)

        if o.scripts:
            self.log.info("Extracting JavaScript...")
            self.report("Extracting JavaScript...", 60)
            self.stage("Script extraction", lambda: resolver.resolve_scripts(pages), 0)
            self.stats["scripts"] = resolver.asset_map.count(SCRIPT)

        self.log.info("Rewriting asset paths...")
        self.report("Rewriting paths...", 70)
        rewriter = Rewriter(
            resolver.asset_map,
            url_to_local,
            origin,
            css_path=CSS_FILENAME if o.css else None,
            heuristics=o.heuristics,
            logger=self.log,
        )
        css_text = ""
        if o.css:
            css_text = self.stage(
                "CSS rewriting",
                lambda: consolidate(
                    CssBlock(b.source, rewriter.css(b.content, b.base_url), b.base_url)
                    for b in blocks
                )
                + HERO_FALLBACK_CSS,
                consolidate(blocks) + HERO_FALLBACK_CSS,
            )
        rewritten = self.rewrite_pages(rewriter, pages)

        packager = SitePackager(self.output_dir, logger=self.log)
        if o.content:
            self.log.info("Extracting text content...")
            self.report("Extracting content...", 80)
            self.stage(
                "Content extraction",
                lambda: packager.write_content(extract_content(pages)),
                None,
            )

        self.log.info("Packaging site...")
        self.report("Packaging site...", 90)
        sitemap = self.stage("Packaging", lambda: packager.write_pages(rewritten, filenames), [])
        if o.css:
            self.stage("Packaging", lambda: packager.write_css(css_text), None)
        manifest = self.stage(
            "Manifest",
            lambda: packager.write_manifest(
                self.job_id, self.url, self.stats, sitemap, resolver.asset_map
            ),
            {},
        )

        self.log.info("Clone complete!", extra={"entry_type": "success"})
        self.report("Done!", 100, status="completed")
        return CloneResult(
            job_id=self.job_id,
            output_dir=self.output_dir,
            stats=dict(self.stats),
            manifest=manifest,
            pages=rewritten,
        )


def run_clone_job(
    job_id: str,
    url: str,
    options: Optional[CloneOptions] = None,
    output_dir: Optional[Path] = None,
    progress: Optional[ProgressSink] = None,
    *,
    transport: Optional[Transport] = None,
    backend: Optional[FetchBackend] = None,
) -> CloneResult:
    return CloneJob(
        job_id,
        url,
        options,
        output_dir,
        progress,
        transport=transport,
        backend=backend,
    ).run()
