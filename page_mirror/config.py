"""Configuration objects and constants for the mirror pipeline."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence, Tuple

from .errors import InvalidConfiguration
from .models import AssetType, Viewport

DEFAULT_VIEWPORTS: Tuple[Viewport, ...] = (
    Viewport("mobile", 390, 844),
    Viewport("desktop", 1366, 900),
)

DEFAULT_INTERACTION_SELECTORS: Tuple[str, ...] = (
    "[aria-controls]",
    '.accordion [role="button"]',
    '.tabs [role="tab"]',
    ".x-accordion .x-accordion-toggle",
    ".x-nav-tabs a",
    ".x-tab",
    ".x-toggle",
    "[data-toggle]",
    "details summary",
)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

DEFAULT_INLINE_THRESHOLD = 10 * 1024
MANIFEST_NAME = "manifest.json"


def parse_viewport(value: str) -> Viewport:
    """Parse ``label=WIDTHxHEIGHT`` (label optional) into a viewport."""
    label, sep, size = value.partition("=")
    if not sep:
        size, label = label, ""
    width_text, _, height_text = size.lower().partition("x")
    try:
        width, height = int(width_text), int(height_text)
    except ValueError as exc:
        raise InvalidConfiguration(f"Invalid viewport {value!r}; expected WxH") from exc
    return Viewport(label.strip() or f"{width}x{height}", width, height)


def _validate_viewports(viewports: Sequence[Viewport]) -> None:
    if not viewports:
        raise InvalidConfiguration("At least one viewport is required")
    labels = [vp.label for vp in viewports]
    if len(set(labels)) != len(labels):
        raise InvalidConfiguration(f"Viewport labels must be unique: {labels}")
    for vp in viewports:
        if vp.width <= 0 or vp.height <= 0:
            raise InvalidConfiguration(f"Viewport {vp.label} must have a positive size")


def _require_positive(**values: float) -> None:
    for name, value in values.items():
        if value <= 0:
            raise InvalidConfiguration(f"{name} must be positive (got {value})")


@dataclass(frozen=True)
class CaptureConfig:
    """Settings for the per-viewport rendering passes."""

    viewports: Tuple[Viewport, ...] = DEFAULT_VIEWPORTS
    navigation_timeout: float = 60.0
    idle_window: float = 0.5
    idle_ceiling: float = 15.0
    settle_delay: float = 0.8
    max_scroll_steps: int = 30
    scroll_pause: float = 0.15
    interaction_selectors: Tuple[str, ...] = DEFAULT_INTERACTION_SELECTORS
    click_timeout: float = 0.5
    click_pause: float = 0.2
    max_clicks_per_selector: int = 25
    inter_pass_delay: float = 1.0
    headless: bool = True
    user_agent: Optional[str] = None
    screenshot_dir: Optional[Path] = None
    screenshot_template: str = "{label}.png"

    def __post_init__(self) -> None:
        object.__setattr__(self, "viewports", tuple(self.viewports))
        object.__setattr__(
            self, "interaction_selectors", tuple(self.interaction_selectors)
        )
        _validate_viewports(self.viewports)
        _require_positive(
            navigation_timeout=self.navigation_timeout,
            idle_window=self.idle_window,
            idle_ceiling=self.idle_ceiling,
            click_timeout=self.click_timeout,
        )
        if self.max_scroll_steps < 0 or self.max_clicks_per_selector < 0:
            raise InvalidConfiguration("Step caps cannot be negative")
        if min(self.settle_delay, self.scroll_pause, self.click_pause, self.inter_pass_delay) < 0:
            raise InvalidConfiguration("Delays cannot be negative")


@dataclass(frozen=True)
class ExportConfig:
    """Top-level settings that control a single page export."""

    output_root: Path
    entry_name: str = "index.html"
    asset_dir: str = "assets"
    inline_threshold: int = DEFAULT_INLINE_THRESHOLD
    inline_types: Tuple[AssetType, ...] = (AssetType.IMAGE,)
    fetch_timeout: float = 30.0
    max_asset_bytes: int = 50 * 1024 * 1024
    follow_css: bool = True
    follow_js: bool = True
    max_follow_depth: int = 3
    clean_output: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    capture: CaptureConfig = field(default_factory=CaptureConfig)

    def __post_init__(self) -> None:
        object.__setattr__(self, "output_root", Path(self.output_root))
        object.__setattr__(self, "inline_types", tuple(self.inline_types))
        if self.inline_threshold < 0:
            raise InvalidConfiguration("inline_threshold cannot be negative")
        _require_positive(
            fetch_timeout=self.fetch_timeout, max_asset_bytes=self.max_asset_bytes
        )
        if not self.entry_name or "/" in self.entry_name:
            raise InvalidConfiguration(f"Invalid entry document name {self.entry_name!r}")
        if not self.asset_dir or self.asset_dir.startswith(("/", ".")):
            raise InvalidConfiguration(f"Invalid asset directory {self.asset_dir!r}")


@dataclass(frozen=True)
class AuditConfig:
    """Settings for auditing an already-produced mirror."""

    export_dir: Path
    entry_name: str = "index.html"
    report_dir: Optional[Path] = None
    source_url: str = ""
    capture: CaptureConfig = field(
        default_factory=lambda: CaptureConfig(
            max_scroll_steps=4, scroll_pause=0.5, settle_delay=2.0, navigation_timeout=20.0
        )
    )
    server_host: str = "127.0.0.1"
    server_port: int = 0
    waste_threshold: float = 0.30
    large_image_kb: int = 100
    largest_unused_limit: int = 10
    keep_patterns: Tuple[str, ...] = ()
    protect_js_mentions: bool = True
    screenshots: bool = True
    compare_original: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "export_dir", Path(self.export_dir))
        if self.report_dir is None:
            object.__setattr__(
                self, "report_dir", Path(self.export_dir).resolve().parent / "audit"
            )
        else:
            object.__setattr__(self, "report_dir", Path(self.report_dir))
        object.__setattr__(self, "keep_patterns", tuple(self.keep_patterns))
        if not 0 <= self.waste_threshold <= 1:
            raise InvalidConfiguration("waste_threshold must be between 0 and 1")
        if not 0 <= self.server_port <= 65535:
            raise InvalidConfiguration(f"Invalid server port {self.server_port}")
        if self.largest_unused_limit < 0 or self.large_image_kb < 0:
            raise InvalidConfiguration("Report limits cannot be negative")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], **overrides: Any) -> "AuditConfig":
        """Build a config from auditor JSON keys (``export_dir``, ``viewports`` ...)."""
        capture_kwargs: dict = {}
        if "viewports" in data:
            capture_kwargs["viewports"] = tuple(
                Viewport(str(vp["label"]), int(vp["width"]), int(vp["height"]))
                for vp in data["viewports"]
            )
        if "interactions" in data:
            capture_kwargs["interaction_selectors"] = tuple(data["interactions"])
        if "timeout_sec" in data:
            capture_kwargs["navigation_timeout"] = float(data["timeout_sec"])
        if "max_scroll_depth" in data:
            capture_kwargs["max_scroll_steps"] = int(data["max_scroll_depth"])
        kwargs: dict = {
            "export_dir": Path(data.get("export_dir", "./dist")),
            "entry_name": data.get("entry_html", "index.html"),
            "source_url": data.get("source_url", ""),
            "server_port": int(data.get("server_port", 0)),
            "keep_patterns": tuple(data.get("keep_patterns", ())),
        }
        if data.get("report_dir"):
            kwargs["report_dir"] = Path(data["report_dir"])
        kwargs.update(overrides)
        config = cls(**kwargs)
        if capture_kwargs:
            config = replace(config, capture=replace(config.capture, **capture_kwargs))
        return config


def load_audit_config(path: Path, **overrides: Any) -> AuditConfig:
    """Read an auditor JSON config file."""
    with Path(path).open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise InvalidConfiguration(f"{path} must contain a JSON object")
    return AuditConfig.from_mapping(data, **overrides)


@dataclass(frozen=True)
class PipelineConfig:
    """Settings for the export, audit and cleanup workflow."""

    workspace: Path
    export: Optional[ExportConfig] = None
    final_dir: Optional[Path] = None
    keep_backup: bool = False
    verify: bool = True

    def __post_init__(self) -> None:
        workspace = Path(self.workspace)
        object.__setattr__(self, "workspace", workspace)
        if self.export is None:
            object.__setattr__(
                self, "export", ExportConfig(output_root=workspace / "temp_export")
            )

    @property
    def temp_dir(self) -> Path:
        return self.export.output_root

    @property
    def audit_dir(self) -> Path:
        return self.workspace / "audit"

    @property
    def backup_dir(self) -> Path:
        return self.workspace / "backup_unused"
