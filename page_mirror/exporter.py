"""High-level orchestration for capturing a page and writing its mirror."""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import requests

from .capture import merge_passes, run_capture
from .config import MANIFEST_NAME, ExportConfig
from .errors import EntryDocumentMissing
from .models import CapturePassResult, RuntimeEvidence, collect_assets
from .report import write_json
from .resolve import BlockedAsset, Resolution, resolve_assets, rewrite_document

logger = logging.getLogger("page_mirror")

MANIFEST_NOTE = (
    "Static mirror export. Assets that could not be downloaded keep their "
    "original remote URLs and are listed in blocked_assets."
)


@dataclass
class ExportResult:
    """Where a mirror was written and what went into it."""

    url: str
    final_url: str
    output_dir: Path
    entry_path: Path
    manifest_path: Path
    asset_count: int
    downloaded: int
    inlined: int
    blocked: List[BlockedAsset] = field(default_factory=list)
    total_seconds: float = 0.0


def prepare_output_dir(output_root: Path, clean: bool) -> None:
    if clean and output_root.exists():
        logger.info("Removing previous export in %s", output_root)
        shutil.rmtree(output_root)
    output_root.mkdir(parents=True, exist_ok=True)


def build_manifest(
    url: str,
    evidence: RuntimeEvidence,
    resolution: Resolution,
    passes: Sequence[CapturePassResult],
) -> Dict[str, Any]:
    return {
        "source_url": url,
        "final_url": evidence.canonical_url,
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "viewports": [
            {
                "label": result.viewport.label,
                "width": result.viewport.width,
                "height": result.viewport.height,
                "navigated": result.navigated,
            }
            for result in passes
        ],
        "resource_counts": {
            label: len(urls) for label, urls in evidence.urls_by_viewport.items()
        },
        "asset_count": len(resolution.assets),
        "downloaded_assets": resolution.downloaded,
        "inlined_assets": resolution.inlined,
        "blocked_assets": [
            {"url": item.url, "reason": item.reason, "kind": item.kind.value}
            for item in resolution.blocked
        ],
        "note": MANIFEST_NOTE,
    }


def write_mirror(
    url: str,
    passes: Sequence[CapturePassResult],
    config: ExportConfig,
    session: Optional[requests.Session] = None,
) -> ExportResult:
    """Resolve the captured evidence into a self-contained directory."""
    start = time.perf_counter()
    if not any(result.navigated for result in passes):
        raise EntryDocumentMissing(f"No viewport could render {url}; nothing to export")

    evidence = merge_passes(passes, url)
    assets = collect_assets(evidence.candidates)
    logger.info("Discovered %d unique assets across %d viewports", len(assets), len(passes))

    output_root = config.output_root
    prepare_output_dir(output_root, config.clean_output)
    resolution = resolve_assets(
        assets, output_root, config, session=session, document_url=evidence.canonical_url
    )

    html = rewrite_document(evidence.canonical_html, evidence.canonical_url, resolution.references)
    entry_path = output_root / config.entry_name
    entry_path.write_text(html, encoding="utf-8")
    logger.info("Saved entry document to %s", entry_path)

    manifest_path = write_json(
        output_root / MANIFEST_NAME, build_manifest(url, evidence, resolution, passes)
    )

    logger.info(
        "Export summary: %d discovered, %d downloaded, %d inlined, %d blocked",
        len(resolution.assets),
        resolution.downloaded,
        resolution.inlined,
        len(resolution.blocked),
    )
    for item in resolution.blocked:
        logger.warning("Blocked (%s): %s - %s", item.kind.value, item.url, item.reason)

    return ExportResult(
        url=url,
        final_url=evidence.canonical_url,
        output_dir=output_root,
        entry_path=entry_path,
        manifest_path=manifest_path,
        asset_count=len(resolution.assets),
        downloaded=resolution.downloaded,
        inlined=resolution.inlined,
        blocked=list(resolution.blocked),
        total_seconds=time.perf_counter() - start,
    )


async def export_page(
    url: str, config: ExportConfig, session: Optional[requests.Session] = None
) -> ExportResult:
    """Render ``url`` in every viewport and write a static mirror of it."""
    start = time.perf_counter()
    logger.info("Exporting %s to %s", url, config.output_root)
    passes = await run_capture(url, config.capture)
    result = write_mirror(url, passes, config, session=session)
    result.total_seconds = time.perf_counter() - start
    logger.info("Export finished in %.1fs", result.total_seconds)
    return result
