"""MCP server exposing page-mirror export/audit tools."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from .audit import audit_mirror
from .config import AuditConfig, ExportConfig
from .exporter import export_page

logger = logging.getLogger("page_mirror.mcp")
logger.setLevel(logging.ERROR)

mcp = FastMCP(name="page-mirror")


@mcp.tool()
async def export(
    url: str,
    output_dir: str,
) -> str:
    """Render a web page with Playwright and write a static mirror into ``output_dir``."""

    config = ExportConfig(output_root=Path(output_dir).expanduser().resolve())
    result = await export_page(url, config)
    return json.dumps(
        {
            "output_dir": str(result.output_dir),
            "entry": str(result.entry_path),
            "final_url": result.final_url,
            "asset_count": result.asset_count,
            "downloaded": result.downloaded,
            "inlined": result.inlined,
            "blocked": [
                {"url": item.url, "kind": item.kind.value, "reason": item.reason}
                for item in result.blocked
            ],
        },
        indent=2,
    )


@mcp.tool()
async def audit(
    export_dir: str,
    source_url: str = "",
) -> str:
    """Audit a mirror and return the summary and recommendations of its report."""

    source = Path(export_dir).expanduser()
    if not source.is_dir():
        raise FileNotFoundError(f"Mirror directory does not exist: {source}")

    config = AuditConfig(export_dir=source, source_url=source_url)
    result = await audit_mirror(config)
    return json.dumps(
        {
            "report_path": str(result.report_path),
            "summary": result.report["summary"],
            "largest_unused_files": result.report["largest_unused_files"],
            "recommendations": result.report["recommendations"],
        },
        indent=2,
    )


def main() -> None:
    """Entry point for running the MCP server."""
    logging.basicConfig(level=logging.ERROR)
    mcp.run()


if __name__ == "__main__":
    main()
