"""Data models used throughout the mirror pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Set

from .utils import normalize_url


class AssetType(str, Enum):
    CSS = "css"
    JS = "js"
    IMAGE = "image"
    FONT = "font"
    MEDIA = "media"
    OTHER = "other"


class Provenance(str, Enum):
    HTML = "html"
    CSS_IMPORT = "css-import"
    CSS_URL = "css-url"
    JS_IMPORT = "js-import"
    JS_STRING = "js-string"
    SRCSET = "srcset"
    PRELOAD = "preload"
    NETWORK = "network"


class StepOutcome(str, Enum):
    SUCCESS = "success"
    SKIPPED_NAVIGATION = "skipped-navigation"
    FAILED = "failed"


@dataclass(frozen=True)
class Viewport:
    """Named rendering size used for one capture pass."""

    label: str
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height

    def as_playwright(self) -> Dict[str, int]:
        return {"width": self.width, "height": self.height}


@dataclass(frozen=True)
class Candidate:
    """Raw asset reference found by static analysis or network capture."""

    url: str
    type: AssetType
    provenance: Provenance


@dataclass
class Asset:
    """A discovered asset, keyed by its normalized URL."""

    url: str
    fetch_url: str
    type: AssetType
    provenance: Set[Provenance] = field(default_factory=set)
    local_path: Optional[str] = None
    inlined_payload: Optional[str] = None
    size_bytes: int = 0
    essential: bool = False
    failure: Optional[str] = None

    @property
    def disposition(self) -> str:
        if self.inlined_payload is not None:
            return "inline"
        if self.local_path is not None:
            return "local"
        return "remote"


def collect_assets(
    candidates: Iterable[Candidate],
    into: Optional[Mapping[str, Asset]] = None,
) -> Dict[str, Asset]:
    """Merge candidates into a new asset mapping keyed by normalized URL."""
    assets: Dict[str, Asset] = dict(into or {})
    for candidate in candidates:
        key = normalize_url(candidate.url)
        existing = assets.get(key)
        if existing is None:
            assets[key] = Asset(
                url=key,
                fetch_url=candidate.url,
                type=candidate.type,
                provenance={candidate.provenance},
            )
            continue
        retype = (
            existing.type is AssetType.OTHER and candidate.type is not AssetType.OTHER
        )
        if candidate.provenance in existing.provenance and not retype:
            continue
        # Copy so the caller's mapping is never mutated.
        merged = copy_asset(existing)
        merged.provenance.add(candidate.provenance)
        if retype:
            merged.type = candidate.type
        assets[key] = merged
    return assets


def copy_asset(asset: Asset) -> Asset:
    return Asset(
        url=asset.url,
        fetch_url=asset.fetch_url,
        type=asset.type,
        provenance=set(asset.provenance),
        local_path=asset.local_path,
        inlined_payload=asset.inlined_payload,
        size_bytes=asset.size_bytes,
        essential=asset.essential,
        failure=asset.failure,
    )


@dataclass(frozen=True)
class NetworkRequest:
    url: str
    resource_type: str
    method: str
    viewport: str


@dataclass(frozen=True)
class ConsoleMessage:
    text: str
    viewport: str


@dataclass
class StepResult:
    """Outcome of one content-activation step."""

    name: str
    outcome: StepOutcome
    error: Optional[Exception] = None


@dataclass
class CapturePassResult:
    """Everything observed while rendering one viewport."""

    viewport: Viewport
    final_url: str
    html: str
    resource_urls: List[str] = field(default_factory=list)
    network_requests: List[NetworkRequest] = field(default_factory=list)
    console_errors: List[ConsoleMessage] = field(default_factory=list)
    steps: List[StepResult] = field(default_factory=list)
    navigated: bool = True
    error: Optional[str] = None
    screenshot_path: Optional[str] = None


@dataclass
class RuntimeEvidence:
    """Union of all viewport passes for one target."""

    candidates: List[Candidate]
    urls_by_viewport: Dict[str, FrozenSet[str]]
    canonical_html: str
    canonical_url: str


@dataclass(frozen=True)
class FileInventoryEntry:
    path: str
    size: int
    modified: float
    extension: str

    @property
    def size_kb(self) -> int:
        return round(self.size / 1024)

    def as_report_entry(self) -> Dict[str, object]:
        return {
            "path": self.path,
            "size": self.size,
            "sizeKB": self.size_kb,
            "extension": self.extension,
        }


@dataclass
class ExtensionStats:
    count: int = 0
    total_bytes: int = 0


@dataclass
class UsageReport:
    """Classification of a mirror's files into essential and unused."""

    essential: FrozenSet[str]
    unused: List[FileInventoryEntry]
    total_files: int
    used_files: int
    total_bytes: int
    used_bytes: int
    unused_bytes: int
    waste_ratio: float
    by_extension: Dict[str, ExtensionStats]
    unused_by_extension: Dict[str, ExtensionStats]
    assets_by_viewport: Dict[str, int]
    protected: List[str]
    recommendations: List[str]
