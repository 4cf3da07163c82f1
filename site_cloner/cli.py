import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .cloner import ProgressUpdate, create_job_id, run_clone_job
from .config import (
    DEFAULT_MAX_PAGES,
    CloneOptions,
    MaterializationSettings,
    UrlHeuristics,
    flatten_config,
    load_config_file,
)
from .errors import CloneJobError
from .urls import SCHEME_RE, is_fetchable


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Crawl a website and build a self-contained local copy.",
        add_help=True,
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("url", help="http(s) URL of the site")
    p.add_argument(
        "output_folder",
        nargs="?",
        default=None,
        help="output directory (default: output/<job id>)",
    )
    p.add_argument("--job-id", type=str, default=None, help="job id (default: random)")
    p.add_argument("--verbose", action="store_true", help="debug logging")

    # crawl
    p.add_argument(
        "--max-pages", type=int, default=DEFAULT_MAX_PAGES, help="max HTML pages"
    )
    p.add_argument("--no-sitemap", action="store_true", help="do not seed from sitemap(s)")
    p.add_argument(
        "--http-only",
        action="store_true",
        help="fetch pages with plain HTTP instead of headless chromium",
    )
    p.add_argument(
        "--headless-attempts",
        type=int,
        default=2,
        help="headless failures before falling back to HTTP",
    )

    # transport
    p.add_argument("--timeout", type=float, default=30.0, help="request timeout seconds")
    p.add_argument("--retries", type=int, default=3, help="retries on transient errors")
    p.add_argument("--verify-tls", action="store_true", help="verify TLS certificates")
    p.add_argument("--workers", type=int, default=8, help="concurrent asset downloads")
    p.add_argument(
        "--max-bytes", type=int, default=50_000_000, help="max bytes per asset"
    )

    # assets
    p.add_argument("--no-css", action="store_true", help="skip stylesheets")
    p.add_argument("--no-images", action="store_true", help="skip images")
    p.add_argument("--no-fonts", action="store_true", help="skip fonts")
    p.add_argument("--no-scripts", action="store_true", help="skip external scripts")
    p.add_argument("--no-content", action="store_true", help="do not write content.json")

    # render
    p.add_argument(
        "--navigation-timeout-ms", type=int, default=30000, help="headless page load timeout"
    )
    p.add_argument(
        "--first-page-wait-ms", type=int, default=5000, help="extra wait on the first page"
    )
    p.add_argument("--page-wait-ms", type=int, default=3000, help="extra wait on other pages")
    p.add_argument(
        "--carousel-rounds", type=int, default=15, help="max carousel 'next' clicks"
    )

    # heuristics
    p.add_argument(
        "--placeholder-pattern",
        type=str,
        default=None,
        help="regex for placeholder image sources",
    )
    p.add_argument(
        "--domain-pattern",
        type=str,
        default=None,
        help="regex for scheme-less hrefs that start with a host name",
    )
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            parser.set_defaults(**flatten_config(cfg))
    return parser.parse_args(argv)


def options_from_args(args: argparse.Namespace) -> CloneOptions:
    heuristics = UrlHeuristics()
    if args.placeholder_pattern or args.domain_pattern:
        heuristics = UrlHeuristics(
            domain_like=args.domain_pattern or heuristics.domain_like,
            placeholder=args.placeholder_pattern or heuristics.placeholder,
        )
    return CloneOptions(
        css=not args.no_css,
        images=not args.no_images,
        fonts=not args.no_fonts,
        scripts=not args.no_scripts,
        content=not args.no_content,
        use_headless=not args.http_only,
        use_sitemap=not args.no_sitemap,
        max_pages=max(1, args.max_pages),
        headless_attempts=max(1, args.headless_attempts),
        timeout=args.timeout,
        retries=max(0, args.retries),
        verify_tls=args.verify_tls,
        workers=max(1, args.workers),
        max_bytes=max(1024, args.max_bytes),
        materialization=MaterializationSettings(
            navigation_timeout_ms=args.navigation_timeout_ms,
            first_page_wait_ms=max(0, args.first_page_wait_ms),
            page_wait_ms=max(0, args.page_wait_ms),
            carousel_rounds=max(0, args.carousel_rounds),
        ),
        heuristics=heuristics,
    )


def log_progress(update: ProgressUpdate) -> None:
    logging.info("[%3d%%] %s", update.progress, update.current_step)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    url = args.url if SCHEME_RE.match(args.url) else "https://" + args.url
    if not is_fetchable(url):
        print("Invalid URL. Use http:// or https://")
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    job_id = args.job_id or create_job_id()
    output = Path(args.output_folder) if args.output_folder else None
    print("Reminder: only clone content you own or have permission to copy.")
    try:
        result = run_clone_job(job_id, url, options_from_args(args), output, log_progress)
    except CloneJobError as e:
        logging.error("clone failed: %s", e)
        sys.exit(1)
    stats = result.stats
    logging.info(
        "done: %d pages, %d images, %d fonts -> %s",
        stats["pages"],
        stats["images"],
        stats["fonts"],
        result.output_dir,
    )


if __name__ == "__main__":
    main()
