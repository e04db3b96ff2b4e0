"""Backup-then-delete removal of files an audit reported as unused."""

from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence

from .config import MANIFEST_NAME
from .errors import StaleReportError
from .report import load_report, unused_paths
from .utils import normalize_relative_path

logger = logging.getLogger("page_mirror")


@dataclass
class PruneResult:
    removed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    removed_dirs: List[str] = field(default_factory=list)
    freed_bytes: int = 0
    backup_dir: Optional[Path] = None


def load_prune_plan(report_path: Path) -> List[str]:
    """Read the unused paths listed in an audit report."""
    return unused_paths(load_report(report_path))


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def mirror_timestamp(mirror_root: Path, entry_name: str = "index.html") -> Optional[datetime]:
    """When the mirror was produced: manifest ``exported_at``, else the entry mtime."""
    manifest = Path(mirror_root) / MANIFEST_NAME
    if manifest.is_file():
        try:
            data = json.loads(manifest.read_text(encoding="utf-8"))
            return _parse_timestamp(str(data["exported_at"]))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable manifest %s: %s", manifest, exc)
    entry = Path(mirror_root) / entry_name
    if entry.is_file():
        return datetime.fromtimestamp(entry.stat().st_mtime, timezone.utc)
    return None


def ensure_report_is_current(
    report: Mapping[str, Any], mirror_root: Path, entry_name: str = "index.html"
) -> None:
    """Refuse to act on a report written before the mirror it describes."""
    produced = mirror_timestamp(mirror_root, entry_name)
    if produced is None:
        return
    audit_date = report.get("audit_date")
    if not audit_date:
        raise StaleReportError("Audit report has no audit_date; re-run the audit")
    try:
        audited = _parse_timestamp(str(audit_date))
    except ValueError as exc:
        raise StaleReportError(f"Unreadable audit_date {audit_date!r}") from exc
    if audited < produced:
        raise StaleReportError(
            f"Audit report ({audited.isoformat()}) predates the mirror "
            f"({produced.isoformat()}); re-run the audit before cleanup"
        )


def remove_empty_dirs(root: Path) -> List[str]:
    """Delete directories under ``root`` that contain nothing, deepest first."""
    root = Path(root)
    removed: List[str] = []
    for dirpath, _, _ in os.walk(root, topdown=False):
        directory = Path(dirpath)
        if directory == root:
            continue
        try:
            if not any(directory.iterdir()):
                directory.rmdir()
                removed.append(directory.relative_to(root).as_posix())
        except OSError as exc:
            logger.warning("Could not remove directory %s: %s", directory, exc)
    return removed


def prune_unused(
    paths: Sequence[str],
    mirror_root: Path,
    backup_root: Optional[Path] = None,
    entry_name: str = "index.html",
) -> PruneResult:
    """Back up then delete every listed path that is still present."""
    root = Path(mirror_root).resolve()
    result = PruneResult(backup_dir=Path(backup_root) if backup_root else None)
    protected = {normalize_relative_path(entry_name)}

    for raw_path in paths:
        relative = normalize_relative_path(raw_path)
        target = (root / relative).resolve()
        if relative in protected:
            logger.info("Keeping entry document %s", relative)
            result.skipped.append(relative)
            continue
        if root not in target.parents:
            logger.warning("Refusing to remove %s outside %s", raw_path, root)
            result.skipped.append(relative)
            continue
        if not target.is_file():
            logger.debug("Already gone: %s", relative)
            result.skipped.append(relative)
            continue

        size = target.stat().st_size
        if backup_root is not None:
            backup_path = Path(backup_root) / relative
            backup_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(target, backup_path)
        target.unlink()
        result.removed.append(relative)
        result.freed_bytes += size
        logger.debug("Removed %s (%d bytes)", relative, size)

    result.removed_dirs = remove_empty_dirs(root)
    logger.info(
        "Removed %d files (%.1f KB), %d empty directories; %d skipped",
        len(result.removed),
        result.freed_bytes / 1024,
        len(result.removed_dirs),
        len(result.skipped),
    )
    if backup_root is not None and result.removed:
        logger.info("Backup stored in %s", backup_root)
    return result


def prune_from_report(
    report_path: Path,
    mirror_root: Path,
    backup_root: Optional[Path] = None,
    entry_name: str = "index.html",
) -> PruneResult:
    """Load a report, check it is current for the mirror, then prune."""
    report = load_report(report_path)
    ensure_report_is_current(report, mirror_root, entry_name)
    return prune_unused(unused_paths(report), mirror_root, backup_root, entry_name)
