"""Command-line entry point for the page mirror."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Sequence

from .audit import audit_mirror
from .config import (
    DEFAULT_INLINE_THRESHOLD,
    AuditConfig,
    CaptureConfig,
    ExportConfig,
    PipelineConfig,
    load_audit_config,
    parse_viewport,
)
from .errors import MirrorError
from .exporter import export_page
from .pipeline import run_pipeline
from .prune import prune_from_report
from .server import serve_forever

logger = logging.getLogger("page_mirror.cli")


def _ensure_command_prefix(argv: Sequence[str], commands: Iterable[str]) -> Sequence[str]:
    if not argv:
        return argv
    first = argv[0]
    if first in commands or first.startswith("-"):
        return argv
    return ("export", *argv)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )


def _add_capture_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--viewport",
        dest="viewports",
        action="append",
        type=parse_viewport,
        metavar="LABEL=WxH",
        help=(
            "Viewport to render; repeat for several "
            "(default: mobile=390x844 and desktop=1366x900)"
        ),
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Navigation timeout in seconds",
    )
    parser.add_argument(
        "--headed",
        action="store_true",
        help="Show the browser window instead of running headless",
    )


def _add_export_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("url", help="Page URL to mirror")
    parser.add_argument(
        "--output",
        default="dist",
        type=Path,
        help="Directory where the mirror should be written",
    )
    parser.add_argument(
        "--inline-threshold",
        type=int,
        default=DEFAULT_INLINE_THRESHOLD,
        help="Inline images at or below this many bytes as data URIs",
    )
    parser.add_argument(
        "--fetch-timeout",
        type=float,
        default=30.0,
        help="Per-asset download timeout in seconds",
    )
    parser.add_argument(
        "--no-follow-js",
        action="store_true",
        help="Do not scan downloaded scripts for further asset references",
    )
    parser.add_argument(
        "--keep-existing",
        action="store_true",
        help="Do not clear the output directory before exporting",
    )
    _add_capture_arguments(parser)
    _add_common_arguments(parser)


def _add_audit_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("export_dir", type=Path, help="Mirror directory to audit")
    parser.add_argument(
        "--source-url",
        default="",
        help="Original page URL, used for comparison screenshots",
    )
    parser.add_argument(
        "--report-dir",
        type=Path,
        default=None,
        help="Where reports are written (default: <export_dir>/../audit)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="JSON audit configuration file",
    )
    parser.add_argument(
        "--keep",
        dest="keep_patterns",
        action="append",
        default=[],
        metavar="GLOB",
        help="Never report files matching this pattern as unused; repeatable",
    )
    parser.add_argument(
        "--no-screenshots",
        action="store_true",
        help="Skip screenshots of the mirror and the original page",
    )
    _add_capture_arguments(parser)
    _add_common_arguments(parser)


def _add_cleanup_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("report", type=Path, help="Path to audit-report.json")
    parser.add_argument("export_dir", type=Path, help="Mirror directory to clean")
    parser.add_argument(
        "--backup",
        type=Path,
        default=Path("backup_unused"),
        help="Directory that receives a copy of every removed file",
    )
    parser.add_argument(
        "--entry",
        default="index.html",
        help="Entry document name; never removed",
    )
    _add_common_arguments(parser)


def _add_run_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("url", help="Page URL to mirror")
    parser.add_argument(
        "--workspace",
        default=Path.cwd(),
        type=Path,
        help="Directory holding the temporary, audit and final folders",
    )
    parser.add_argument(
        "--final-dir",
        type=Path,
        default=None,
        help="Final folder (default: named after the page URL)",
    )
    parser.add_argument(
        "--keep-backup",
        action="store_true",
        help="Keep the backup of removed files after the workflow",
    )
    parser.add_argument(
        "--no-verify",
        action="store_true",
        help="Skip the verification audit of the final folder",
    )
    _add_capture_arguments(parser)
    _add_common_arguments(parser)


def _add_serve_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("directory", type=Path, help="Directory to serve")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind")
    parser.add_argument("--port", type=int, default=8080, help="Port to listen on")
    _add_common_arguments(parser)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Mirror a rendered web page into a self-contained static folder, "
            "audit which files it actually uses and prune the rest."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    _add_export_arguments(
        subparsers.add_parser("export", help="Render a page and write its static mirror")
    )
    _add_audit_arguments(
        subparsers.add_parser("audit", help="Report which files of a mirror are unused")
    )
    _add_cleanup_arguments(
        subparsers.add_parser("cleanup", help="Remove files an audit reported as unused")
    )
    _add_run_arguments(
        subparsers.add_parser("run", help="Export, audit, clean up and verify in one go")
    )
    _add_serve_arguments(
        subparsers.add_parser("serve", help="Serve a mirror locally for manual testing")
    )

    argv = list(sys.argv[1:] if argv is None else argv)
    argv = list(_ensure_command_prefix(argv, subparsers.choices.keys()))
    return parser.parse_args(argv)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def _capture_overrides(args: argparse.Namespace, base: CaptureConfig) -> CaptureConfig:
    overrides = {}
    if args.viewports:
        overrides["viewports"] = tuple(args.viewports)
    if args.timeout is not None:
        overrides["navigation_timeout"] = args.timeout
    if args.headed:
        overrides["headless"] = False
    return replace(base, **overrides) if overrides else base


def _export_config(args: argparse.Namespace, output_root: Path) -> ExportConfig:
    return ExportConfig(
        output_root=output_root,
        inline_threshold=getattr(args, "inline_threshold", DEFAULT_INLINE_THRESHOLD),
        fetch_timeout=getattr(args, "fetch_timeout", 30.0),
        follow_js=not getattr(args, "no_follow_js", False),
        clean_output=not getattr(args, "keep_existing", False),
        capture=_capture_overrides(args, CaptureConfig()),
    )


def _run_export(args: argparse.Namespace) -> None:
    config = _export_config(args, Path(args.output).resolve())
    result = asyncio.run(export_page(args.url, config))
    logger.info(
        "Mirror written to %s (%d assets: %d downloaded, %d inlined, %d blocked) in %.2fs",
        result.output_dir,
        result.asset_count,
        result.downloaded,
        result.inlined,
        len(result.blocked),
        result.total_seconds,
    )


def _audit_config(args: argparse.Namespace) -> AuditConfig:
    overrides = {"export_dir": args.export_dir}
    if args.report_dir is not None:
        overrides["report_dir"] = args.report_dir
    if args.source_url:
        overrides["source_url"] = args.source_url
    if args.no_screenshots:
        overrides["screenshots"] = False
    if args.config is not None:
        config = load_audit_config(args.config, **overrides)
    else:
        config = AuditConfig(**overrides)
    if args.keep_patterns:
        config = replace(config, keep_patterns=config.keep_patterns + tuple(args.keep_patterns))
    return replace(config, capture=_capture_overrides(args, config.capture))


def _run_audit(args: argparse.Namespace) -> None:
    result = asyncio.run(audit_mirror(_audit_config(args)))
    for recommendation in result.usage.recommendations:
        logger.info("Recommendation: %s", recommendation)
    logger.info("Report saved to %s", result.report_path)


def _run_cleanup(args: argparse.Namespace) -> None:
    result = prune_from_report(args.report, args.export_dir, args.backup, args.entry)
    logger.info(
        "Cleanup finished: %d files removed, %.1f KB freed",
        len(result.removed),
        result.freed_bytes / 1024,
    )


def _run_pipeline(args: argparse.Namespace) -> None:
    workspace = Path(args.workspace).resolve()
    config = PipelineConfig(
        workspace=workspace,
        export=_export_config(args, workspace / "temp_export"),
        final_dir=args.final_dir.resolve() if args.final_dir else None,
        keep_backup=args.keep_backup,
        verify=not args.no_verify,
    )
    audit_defaults = AuditConfig(export_dir=config.temp_dir)
    audit_config = replace(
        audit_defaults, capture=_capture_overrides(args, audit_defaults.capture)
    )
    result = asyncio.run(run_pipeline(args.url, config, audit_config))
    summary = (result.verification or result.audit).report["summary"]
    logger.info(
        "Final mirror: %s | files: %d | used: %d (%s KB) | unused: %d (%s KB) | waste: %s%%",
        result.final_dir,
        summary["total_files"],
        summary["used_files"],
        summary["used_size_kb"],
        summary["unused_files"],
        summary["unused_size_kb"],
        summary["waste_percentage"],
    )


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    _configure_logging(args.verbose)
    handlers = {
        "export": _run_export,
        "audit": _run_audit,
        "cleanup": _run_cleanup,
        "run": _run_pipeline,
    }
    try:
        if args.command == "serve":
            serve_forever(args.directory, args.host, args.port)
        else:
            handlers[args.command](args)
    except (MirrorError, OSError, ValueError) as exc:
        logger.error("%s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
