"""JSON reports written by the audit stage."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .models import Asset, ConsoleMessage, ExtensionStats, NetworkRequest, UsageReport

logger = logging.getLogger("page_mirror")

REPORT_NAME = "audit-report.json"
ASSET_GRAPH_NAME = "asset-graph.json"
NETWORK_LOG_NAME = "network-log.json"
CONSOLE_ERRORS_NAME = "console-errors.json"


def _kb(size: int) -> float:
    return round(size / 1024, 2)


def _group(stats: Mapping[str, ExtensionStats]) -> Dict[str, Dict[str, Any]]:
    return {
        extension: {"count": bucket.count, "total_size_kb": _kb(bucket.total_bytes)}
        for extension, bucket in stats.items()
    }


def build_audit_report(
    usage: UsageReport,
    *,
    source_url: str = "",
    export_dir: str = "",
    console_errors: Sequence[ConsoleMessage] = (),
    network_request_count: int = 0,
    viewports: Sequence[str] = (),
    largest_limit: int = 10,
    audit_date: Optional[str] = None,
) -> Dict[str, Any]:
    """Assemble the audit-report.json document from a usage classification."""
    return {
        "audit_date": audit_date or datetime.now(timezone.utc).isoformat(),
        "source_url": source_url,
        "export_dir": export_dir,
        "summary": {
            "total_files": usage.total_files,
            "used_files": usage.used_files,
            "unused_files": len(usage.unused),
            "total_size_kb": _kb(usage.total_bytes),
            "used_size_kb": _kb(usage.used_bytes),
            "unused_size_kb": _kb(usage.unused_bytes),
            "waste_percentage": round(usage.waste_ratio * 100, 2),
            "total_size_bytes": usage.total_bytes,
            "used_size_bytes": usage.used_bytes,
            "unused_size_bytes": usage.unused_bytes,
        },
        "largest_unused_files": [
            entry.as_report_entry() for entry in usage.unused[:largest_limit]
        ],
        "unused_files": [entry.as_report_entry() for entry in usage.unused],
        "unused_files_by_type": _group(usage.unused_by_extension),
        "files_by_type": _group(usage.by_extension),
        "assets_by_viewport": dict(usage.assets_by_viewport),
        "protected_files": list(usage.protected),
        "console_errors": [message.text for message in console_errors],
        "network_requests": network_request_count,
        "viewports_tested": list(viewports),
        "recommendations": list(usage.recommendations),
    }


def build_asset_graph(assets: Mapping[str, Asset], runtime: Sequence[str]) -> Dict[str, Any]:
    """Static references of the mirror plus the local paths requested at runtime."""
    static_assets = {
        url: {
            "type": asset.type.value,
            "sources": sorted(p.value for p in asset.provenance),
            "local_path": asset.local_path,
        }
        for url, asset in sorted(assets.items())
    }
    return {
        "static_assets": static_assets,
        "runtime_assets": list(runtime),
        "analysis_summary": {
            "static_count": len(static_assets),
            "runtime_count": len(runtime),
        },
    }


def write_json(path: Path, data: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return path


def write_audit_outputs(
    report_dir: Path,
    report: Mapping[str, Any],
    graph: Mapping[str, Any],
    network_log: Sequence[NetworkRequest],
    console_errors: Sequence[ConsoleMessage],
) -> Dict[str, Path]:
    report_dir = Path(report_dir)
    outputs = {
        "report": write_json(report_dir / REPORT_NAME, report),
        "asset_graph": write_json(report_dir / ASSET_GRAPH_NAME, graph),
        "network_log": write_json(
            report_dir / NETWORK_LOG_NAME, [asdict(request) for request in network_log]
        ),
        "console_errors": write_json(
            report_dir / CONSOLE_ERRORS_NAME, [asdict(message) for message in console_errors]
        ),
    }
    logger.info("Audit reports written to %s", report_dir)
    return outputs


def load_report(path: Path) -> Dict[str, Any]:
    with Path(path).open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain an audit report")
    return data


def unused_paths(report: Mapping[str, Any]) -> List[str]:
    """Every unused path listed in a report, falling back to the top-N list."""
    entries = report.get("unused_files")
    if entries is None:
        entries = report.get("largest_unused_files", [])
    return [str(entry["path"]) for entry in entries]
