"""Utility helpers for URL normalization and path handling."""

from __future__ import annotations

import posixpath
import re
from typing import Optional
from urllib.parse import quote, unquote, urljoin, urlsplit, urlunsplit

SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
UNSAFE_SEGMENT_PATTERN = re.compile(r'[<>:"\\|?*\x00-\x1f]')

SKIPPED_SCHEMES = ("data:", "blob:", "javascript:", "mailto:", "tel:", "about:")


def slugify(value: str, fallback: str = "page") -> str:
    """Generate a filesystem-friendly slug using ASCII characters only."""
    normalized = value.encode("ascii", "ignore").decode("ascii")
    normalized = normalized.lower()
    normalized = SLUG_PATTERN.sub("-", normalized).strip("-")
    return normalized or fallback


def is_fetchable(reference: Optional[str]) -> bool:
    """Return False for empty, fragment-only and non-network references."""
    if not reference:
        return False
    value = reference.strip()
    if not value or value.startswith("#"):
        return False
    return not value.lower().startswith(SKIPPED_SCHEMES)


def absolutize(base_url: str, reference: Optional[str]) -> Optional[str]:
    """Resolve a reference against a base URL, or None when it is not fetchable."""
    if not is_fetchable(reference):
        return None
    value = reference.strip().strip("'\"")
    if not is_fetchable(value):
        return None
    if value.startswith("//"):
        scheme = urlsplit(base_url).scheme or "https"
        return f"{scheme}:{value}"
    return urljoin(base_url, value)


def normalize_url(url: str) -> str:
    """Identity form of a URL: lower-case scheme/host, no query or fragment."""
    parts = urlsplit(url.strip())
    path = parts.path or "/"
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, "", ""))


def url_extension(url: str) -> str:
    """Lower-case extension of the URL path, including the dot."""
    path = urlsplit(url).path
    return posixpath.splitext(path)[1].lower()


def safe_segment(segment: str) -> str:
    cleaned = UNSAFE_SEGMENT_PATTERN.sub("_", unquote(segment))
    if cleaned in ("", ".", ".."):
        return "_"
    return cleaned


def mirror_path(url: str, type_dir: str, asset_dir: str = "assets") -> str:
    """Posix path, relative to the mirror root, where an asset is persisted."""
    parts = urlsplit(url)
    host = safe_segment(parts.netloc.replace(":", "_")) if parts.netloc else "local"
    path = parts.path or "/"
    if path.endswith("/"):
        path += "index.html"
    segments = [safe_segment(seg) for seg in path.split("/") if seg]
    return posixpath.join(asset_dir, type_dir, host, *segments)


def quote_path(path: str) -> str:
    """Percent-encode each segment of an on-disk mirror path for use as a URL."""
    return "/".join(quote(segment, safe="") for segment in path.split("/"))


def relative_reference(target: str, from_file: str) -> str:
    """Relative URL reference from one mirror file to another (on-disk paths in)."""
    start = posixpath.dirname(from_file) or "."
    rel = quote_path(posixpath.relpath(target, start))
    if not rel.startswith("."):
        rel = "./" + rel
    return rel


def local_path_from_url(url: str, origin: str) -> Optional[str]:
    """Map a URL served from ``origin`` back to a mirror-relative path."""
    parts = urlsplit(url)
    origin_parts = urlsplit(origin)
    if (parts.scheme, parts.netloc.lower()) != (
        origin_parts.scheme,
        origin_parts.netloc.lower(),
    ):
        return None
    return normalize_relative_path(unquote(parts.path))


def normalize_relative_path(path: str) -> str:
    """Strip leading ``/`` and ``./`` so paths compare against the inventory."""
    value = path.replace("\\", "/")
    while value.startswith("./") or value.startswith("/"):
        value = value[2:] if value.startswith("./") else value[1:]
    if not value or value.endswith("/"):
        value += "index.html"
    return posixpath.normpath(value)
