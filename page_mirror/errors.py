"""Exception types raised by the mirror pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class MirrorError(Exception):
    """Base class for every failure the pipeline reports."""


class InvalidConfiguration(MirrorError, ValueError):
    """A configuration value failed validation."""


class NavigationFailed(MirrorError):
    """The renderer could not load the target for one viewport."""

    def __init__(self, url: str, viewport: str, reason: str) -> None:
        super().__init__(f"Navigation to {url} failed for {viewport}: {reason}")
        self.url = url
        self.viewport = viewport
        self.reason = reason


class InteractionInterrupted(MirrorError):
    """A page navigation invalidated the scripting context mid-step."""

    def __init__(self, step: str, reason: str) -> None:
        super().__init__(f"{step} interrupted by navigation: {reason}")
        self.step = step
        self.reason = reason


class FetchFailureKind(str, Enum):
    NETWORK = "network"
    ORIGIN_POLICY = "origin-policy"


class AssetFetchFailed(MirrorError):
    """Downloading a single asset failed; the asset stays remote."""

    def __init__(
        self,
        url: str,
        kind: FetchFailureKind,
        reason: str,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.kind = kind
        self.reason = reason
        self.status = status


class EntryDocumentMissing(MirrorError):
    """No document could be obtained to export or audit."""


class DirectoryWalkError(MirrorError):
    """A directory of the mirror could not be read."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Cannot read {path}: {reason}")
        self.path = path
        self.reason = reason


class StaleReportError(MirrorError):
    """An audit report predates the mirror it would be applied to."""
