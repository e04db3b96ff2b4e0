"""Export, audit, cleanup and verification as one workflow."""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from .audit import AuditResult, audit_mirror
from .config import AuditConfig, PipelineConfig
from .exporter import ExportResult, export_page
from .prune import PruneResult, prune_from_report
from .report import write_json
from .utils import slugify

logger = logging.getLogger("page_mirror")

EXPORT_INFO_NAME = "export-info.json"
WORKFLOW_STEPS = [
    "Fresh Export",
    "Usage Audit",
    "Cleanup",
    "Final Output Creation",
    "Final Verification",
]


@dataclass
class PipelineResult:
    final_dir: Path
    export: ExportResult
    audit: AuditResult
    prune: PruneResult
    verification: Optional[AuditResult]
    total_seconds: float


def page_name_for(url: str) -> str:
    """Folder name for a page: its URL path, or the host for a site root."""
    parsed = urlparse(url)
    return slugify(parsed.path.strip("/") or parsed.hostname or "", fallback="exported-page")


def _remove_tree(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)


async def run_pipeline(
    url: str, config: PipelineConfig, audit_config: Optional[AuditConfig] = None
) -> PipelineResult:
    """Export into a temporary folder, prune what the audit finds unused, then publish."""
    start = time.perf_counter()
    final_dir = config.final_dir or config.workspace / page_name_for(url)
    entry_name = config.export.entry_name
    audit_config = replace(
        audit_config or AuditConfig(export_dir=config.temp_dir),
        export_dir=config.temp_dir,
        report_dir=config.audit_dir,
        entry_name=entry_name,
        source_url=url,
    )
    logger.info("Running full workflow for %s -> %s", url, final_dir)

    try:
        logger.info("Step 1/5: export")
        exported = await export_page(url, config.export)

        logger.info("Step 2/5: audit")
        _remove_tree(config.audit_dir)
        audited = await audit_mirror(audit_config)

        logger.info("Step 3/5: cleanup")
        _remove_tree(config.backup_dir)
        pruned = prune_from_report(
            audited.report_path, config.temp_dir, config.backup_dir, entry_name
        )

        logger.info("Step 4/5: final output in %s", final_dir)
        _remove_tree(final_dir)
        shutil.copytree(config.temp_dir, final_dir)
        write_json(
            final_dir / EXPORT_INFO_NAME,
            {
                "source_url": url,
                "export_date": datetime.now(timezone.utc).isoformat(),
                "page_name": final_dir.name,
                "workflow": "full-export",
                "steps": WORKFLOW_STEPS,
            },
        )

        verification: Optional[AuditResult] = None
        if config.verify:
            logger.info("Step 5/5: verification")
            verification = await audit_mirror(
                replace(
                    audit_config,
                    export_dir=final_dir,
                    keep_patterns=audit_config.keep_patterns + (EXPORT_INFO_NAME,),
                    compare_original=False,
                )
            )
    finally:
        _remove_tree(config.temp_dir)
        if not config.keep_backup:
            _remove_tree(config.backup_dir)

    elapsed = time.perf_counter() - start
    logger.info("Workflow finished in %.1fs; result in %s", elapsed, final_dir)
    return PipelineResult(
        final_dir=final_dir,
        export=exported,
        audit=audited,
        prune=pruned,
        verification=verification,
        total_seconds=elapsed,
    )
