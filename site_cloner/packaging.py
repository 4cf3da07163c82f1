import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .assets import AssetMap
from .pages import Page

log = logging.getLogger(__name__)

CSS_FILENAME = "style.css"
CONTENT_FILENAME = "content.json"
MANIFEST_FILENAME = "manifest.json"


@dataclass
class PackagedPage:
    url: str
    title: str
    file: str


def _write_text(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _write_json(path: Path, data) -> Path:
    return _write_text(path, json.dumps(data, indent=2, ensure_ascii=False))


class SitePackager:
    """On-disk layout of a finished clone.

    Pages land at the output root under their slug file names, next to
    ``style.css``; downloaded assets are already under ``assets/``.
    """

    def __init__(self, output_dir: Path, logger: Optional[logging.Logger] = None):
        self.output_dir = Path(output_dir)
        self.log = logger or log

    def write_pages(self, pages: List[Page], filenames: Dict[str, str]) -> List[PackagedPage]:
        out: List[PackagedPage] = []
        for page in pages:
            name = filenames[page.url]
            _write_text(self.output_dir / name, page.html)
            out.append(PackagedPage(url=page.url, title=page.title, file=name))
        self.log.info("Wrote %d HTML files", len(out))
        return out

    def write_css(self, css: str) -> Path:
        return _write_text(self.output_dir / CSS_FILENAME, css)

    def write_content(self, content: Dict) -> Path:
        return _write_json(self.output_dir / CONTENT_FILENAME, content)

    def write_manifest(
        self,
        job_id: str,
        url: str,
        stats: Dict[str, int],
        sitemap: List[PackagedPage],
        asset_map: Optional[AssetMap] = None,
    ) -> Dict:
        manifest = {
            "job_id": job_id,
            "url": url,
            "completed_at": datetime.now(timezone.utc).isoformat(),
            "stats": dict(stats),
            "sitemap": [{"url": p.url, "title": p.title, "file": p.file} for p in sitemap],
        }
        if asset_map is not None:
            manifest["assets"] = dict(asset_map.items())
        _write_json(self.output_dir / MANIFEST_FILENAME, manifest)
        return manifest
