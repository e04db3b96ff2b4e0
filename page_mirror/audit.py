"""Usage classification of a produced mirror.

The classifier reconciles three sources of evidence against a fresh walk of
the mirror: static references in the entry document and its local CSS/JS,
requests the page makes when the mirror is served locally, and a small set of
protected paths. Whatever none of them reaches is reported as unused.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import posixpath
import re
from collections import deque
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from .capture import run_capture
from .config import MANIFEST_NAME, AuditConfig, CaptureConfig
from .errors import DirectoryWalkError, EntryDocumentMissing
from .extract import FONT_EXTENSIONS, extract_from_css, extract_from_html, extract_from_js
from .models import (
    Asset,
    AssetType,
    CapturePassResult,
    ExtensionStats,
    FileInventoryEntry,
    UsageReport,
    collect_assets,
)
from .report import build_asset_graph, build_audit_report, write_audit_outputs
from .server import serve_directory
from .utils import local_path_from_url, normalize_relative_path, quote_path

logger = logging.getLogger("page_mirror")

RASTER_IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".avif"}
NO_EXTENSION = "no-extension"
# A mentioned file name must stand alone, not inside a longer name.
MENTION_TEMPLATE = r"(?<![\w.-]){0}(?![\w.-])"


@dataclass
class AuditResult:
    usage: UsageReport
    report: Dict[str, object]
    report_path: Path
    static_assets: Dict[str, Asset]
    passes: List[CapturePassResult]


def inventory_files(root: Path) -> List[FileInventoryEntry]:
    """Walk ``root`` and describe every regular file beneath it."""
    root = Path(root)
    if not root.is_dir():
        raise DirectoryWalkError(str(root), "not a directory")

    def on_error(exc: OSError) -> None:
        failure = DirectoryWalkError(str(exc.filename), exc.strerror or str(exc))
        if exc.filename and Path(exc.filename) == root:
            raise failure
        logger.warning("%s; skipping subtree", failure)

    entries: List[FileInventoryEntry] = []
    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        dirnames.sort()
        for name in sorted(filenames):
            full_path = Path(dirpath) / name
            try:
                stat = full_path.stat()
            except OSError as exc:
                logger.warning("Cannot stat %s: %s", full_path, exc)
                continue
            entries.append(
                FileInventoryEntry(
                    path=full_path.relative_to(root).as_posix(),
                    size=stat.st_size,
                    modified=stat.st_mtime,
                    extension=full_path.suffix.lower(),
                )
            )
    return entries


def read_entry_document(root: Path, entry_name: str) -> str:
    entry = Path(root) / entry_name
    if not entry.is_file():
        raise EntryDocumentMissing(f"Entry file not found: {entry}")
    return entry.read_text(encoding="utf-8", errors="replace")


def static_evidence(root: Path, entry_name: str, base_url: str) -> Dict[str, Asset]:
    """Static references of the entry document and, recursively, its local CSS/JS."""
    html = read_entry_document(root, entry_name)
    document_url = urljoin(base_url, entry_name)
    assets = collect_assets(extract_from_html(html, document_url))
    queue = deque(assets)
    scanned: Set[str] = set()
    while queue:
        key = queue.popleft()
        asset = assets[key]
        if key in scanned or asset.type not in (AssetType.CSS, AssetType.JS):
            continue
        scanned.add(key)
        relative = local_path_from_url(asset.fetch_url, base_url)
        if relative is None or not (Path(root) / relative).is_file():
            continue
        try:
            text = (Path(root) / relative).read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("Cannot process %s: %s", relative, exc)
            continue
        if asset.type is AssetType.CSS:
            found = extract_from_css(text, asset.fetch_url)
        else:
            found = extract_from_js(text, asset.fetch_url, document_url)
        merged = collect_assets(found, into=assets)
        queue.extend(merged.keys() - assets.keys())
        assets = merged

    for asset in assets.values():
        asset.local_path = local_path_from_url(asset.fetch_url, base_url)
    return assets


def runtime_paths(
    passes: Sequence[CapturePassResult], base_url: str
) -> Dict[str, Set[str]]:
    """Local paths requested per viewport while the mirror was served."""
    paths: Dict[str, Set[str]] = {}
    for result in passes:
        seen: Set[str] = set()
        urls = list(result.resource_urls) + [req.url for req in result.network_requests]
        for url in urls:
            relative = local_path_from_url(url, base_url)
            if relative is not None:
                seen.add(relative)
        paths[result.viewport.label] = seen
    return paths


def script_texts(root: Path, html: str, script_paths: Iterable[str]) -> List[str]:
    """Inline scripts of the entry document plus the text of local scripts."""
    soup = BeautifulSoup(html, "html.parser")
    texts = [script.get_text() for script in soup.find_all("script") if not script.get("src")]
    for relative in script_paths:
        path = Path(root) / relative
        try:
            texts.append(path.read_text(encoding="utf-8", errors="replace"))
        except OSError as exc:
            logger.debug("Skipping script %s: %s", relative, exc)
    return [text for text in texts if text]


def protected_paths(
    inventory: Sequence[FileInventoryEntry],
    keep_patterns: Sequence[str] = (),
    scripts: Sequence[str] = (),
) -> Set[str]:
    """Files kept regardless of evidence: allow-listed or named inside a script."""
    protected: Set[str] = set()
    for entry in inventory:
        name = posixpath.basename(entry.path)
        if any(
            fnmatch.fnmatch(entry.path, pattern) or fnmatch.fnmatch(name, pattern)
            for pattern in keep_patterns
        ):
            protected.add(entry.path)
        elif scripts and _is_mentioned(name, scripts):
            protected.add(entry.path)
    return protected


def _is_mentioned(name: str, scripts: Sequence[str]) -> bool:
    forms = {re.escape(name), re.escape(quote_path(name))}
    pattern = re.compile(MENTION_TEMPLATE.format("(?:" + "|".join(sorted(forms)) + ")"))
    return any(pattern.search(text) for text in scripts)


def _extension_key(entry: FileInventoryEntry) -> str:
    return entry.extension or NO_EXTENSION


def _aggregate(entries: Iterable[FileInventoryEntry]) -> Dict[str, ExtensionStats]:
    stats: Dict[str, ExtensionStats] = {}
    for entry in entries:
        bucket = stats.setdefault(_extension_key(entry), ExtensionStats())
        bucket.count += 1
        bucket.total_bytes += entry.size
    return dict(sorted(stats.items()))


def recommend(
    unused: Sequence[FileInventoryEntry],
    waste_ratio: float,
    console_error_count: int,
    waste_threshold: float = 0.30,
    large_image_kb: int = 100,
) -> List[str]:
    recommendations: List[str] = []
    if waste_ratio > waste_threshold:
        recommendations.append(
            f"High unused file ratio (>{waste_threshold:.0%}) - review asset collection logic"
        )
    large_images = [
        entry
        for entry in unused
        if entry.extension in RASTER_IMAGE_EXTENSIONS and entry.size > large_image_kb * 1024
    ]
    if large_images:
        recommendations.append(
            f"{len(large_images)} large unused images - check srcset and responsive image handling"
        )
    fonts = [entry for entry in unused if entry.extension in FONT_EXTENSIONS]
    if fonts:
        recommendations.append(
            f"{len(fonts)} unused fonts - review conditional font loading"
        )
    if console_error_count:
        recommendations.append("Console errors detected - check JavaScript integrity")
    return recommendations


def classify_usage(
    inventory: Sequence[FileInventoryEntry],
    essential_paths: Iterable[str],
    entry_name: str = "index.html",
    viewport_paths: Optional[Mapping[str, Iterable[str]]] = None,
    protected: Iterable[str] = (),
    console_error_count: int = 0,
    waste_threshold: float = 0.30,
    large_image_kb: int = 100,
) -> UsageReport:
    """Split the inventory into essential and unused files.

    Deterministic for a given inventory and evidence: the essential set is
    intersected with the inventory so the two partitions cover it exactly.
    """
    inventory_paths = {entry.path for entry in inventory}
    evidence = {normalize_relative_path(path) for path in essential_paths}
    evidence.add(normalize_relative_path(entry_name))
    protected_set = {normalize_relative_path(path) for path in protected}
    essential = (evidence | protected_set) & inventory_paths

    unused = sorted(
        (entry for entry in inventory if entry.path not in essential),
        key=lambda entry: (-entry.size, entry.path),
    )
    total_bytes = sum(entry.size for entry in inventory)
    unused_bytes = sum(entry.size for entry in unused)
    waste_ratio = unused_bytes / total_bytes if total_bytes else 0.0

    assets_by_viewport = {
        label: len({normalize_relative_path(p) for p in paths} & inventory_paths)
        for label, paths in (viewport_paths or {}).items()
    }

    return UsageReport(
        essential=frozenset(essential),
        unused=unused,
        total_files=len(inventory),
        used_files=len(essential),
        total_bytes=total_bytes,
        used_bytes=total_bytes - unused_bytes,
        unused_bytes=unused_bytes,
        waste_ratio=waste_ratio,
        by_extension=_aggregate(inventory),
        unused_by_extension=_aggregate(unused),
        assets_by_viewport=assets_by_viewport,
        protected=sorted((protected_set & inventory_paths) - evidence),
        recommendations=recommend(
            unused, waste_ratio, console_error_count, waste_threshold, large_image_kb
        ),
    )


async def capture_original(source_url: str, capture: CaptureConfig, report_dir: Path) -> None:
    """Screenshot the live page per viewport for side-by-side comparison."""
    config = replace(
        capture,
        interaction_selectors=(),
        max_scroll_steps=0,
        screenshot_dir=report_dir / "visual-diff",
        screenshot_template="{label}-original.png",
    )
    passes = await run_capture(source_url, config)
    failed = [p.viewport.label for p in passes if not p.navigated]
    if failed:
        logger.warning("Could not capture original page for: %s", ", ".join(failed))


async def audit_mirror(config: AuditConfig) -> AuditResult:
    """Inventory, analyse and classify a mirror, then write the audit reports."""
    root = config.export_dir.resolve()
    logger.info("Auditing %s (reports in %s)", root, config.report_dir)
    inventory = inventory_files(root)
    html = read_entry_document(root, config.entry_name)
    logger.info("Inventoried %d files", len(inventory))

    report_dir = Path(config.report_dir)
    report_dir.mkdir(parents=True, exist_ok=True)
    capture_config = replace(
        config.capture,
        screenshot_dir=report_dir / "screenshots" if config.screenshots else None,
    )

    with serve_directory(root, config.server_host, config.server_port) as base_url:
        static_assets = static_evidence(root, config.entry_name, base_url)
        logger.info("Found %d assets in static analysis", len(static_assets))
        passes = await run_capture(urljoin(base_url, config.entry_name), capture_config)

    if config.source_url and config.compare_original and config.screenshots:
        await capture_original(config.source_url, config.capture, report_dir)

    per_viewport = runtime_paths(passes, base_url)
    runtime_union: Set[str] = set().union(*per_viewport.values()) if per_viewport else set()
    static_paths = {a.local_path for a in static_assets.values() if a.local_path}
    console_errors = [message for result in passes for message in result.console_errors]
    network_log = [request for result in passes for request in result.network_requests]

    scripts: List[str] = []
    if config.protect_js_mentions:
        inventory_paths = {entry.path for entry in inventory}
        local_scripts = sorted(
            path
            for path in static_paths | runtime_union
            if path in inventory_paths and path.endswith((".js", ".mjs", ".cjs"))
        )
        scripts = script_texts(root, html, local_scripts)
    protected = protected_paths(inventory, config.keep_patterns, scripts)
    protected.add(MANIFEST_NAME)

    usage = classify_usage(
        inventory,
        static_paths | runtime_union,
        entry_name=config.entry_name,
        viewport_paths=per_viewport,
        protected=protected,
        console_error_count=len(console_errors),
        waste_threshold=config.waste_threshold,
        large_image_kb=config.large_image_kb,
    )
    report = build_audit_report(
        usage,
        source_url=config.source_url,
        export_dir=str(config.export_dir),
        console_errors=console_errors,
        network_request_count=len(network_log),
        viewports=[vp.label for vp in config.capture.viewports],
        largest_limit=config.largest_unused_limit,
    )
    graph = build_asset_graph(static_assets, sorted(runtime_union))
    outputs = write_audit_outputs(report_dir, report, graph, network_log, console_errors)

    logger.info(
        "Audit summary: %d files, %d used (%.1f KB), %d unused (%.1f KB), waste %.1f%%",
        usage.total_files,
        usage.used_files,
        usage.used_bytes / 1024,
        len(usage.unused),
        usage.unused_bytes / 1024,
        usage.waste_ratio * 100,
    )
    if console_errors:
        logger.warning("Console errors: %d", len(console_errors))
    return AuditResult(
        usage=usage,
        report=report,
        report_path=outputs["report"],
        static_assets=static_assets,
        passes=passes,
    )
