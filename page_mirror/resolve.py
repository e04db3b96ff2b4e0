"""Asset downloading, inlining and reference rewriting."""

from __future__ import annotations

import base64
import logging
import mimetypes
import re
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

import requests
from bs4 import BeautifulSoup
from filetype import guess

from .config import ExportConfig
from .errors import AssetFetchFailed, FetchFailureKind
from .extract import (
    CSS_IMPORT_RE,
    CSS_URL_RE,
    SRCSET_SPLIT_RE,
    WS_RE,
    extract_from_css,
    extract_from_js,
)
from .models import Asset, AssetType, Provenance, collect_assets, copy_asset
from .utils import (
    absolutize,
    is_fetchable,
    mirror_path,
    normalize_url,
    quote_path,
    relative_reference,
    url_extension,
)

logger = logging.getLogger("page_mirror")

ORIGIN_POLICY_STATUSES = {401, 403, 407, 451}
GENERIC_CONTENT_TYPES = {"", "application/octet-stream", "binary/octet-stream"}
TYPE_DIRS = {
    AssetType.CSS: "css",
    AssetType.JS: "js",
    AssetType.IMAGE: "images",
    AssetType.FONT: "fonts",
    AssetType.MEDIA: "media",
    AssetType.OTHER: "other",
}
CONTENT_TYPE_EXTENSIONS = {
    "text/css": "css",
    "text/javascript": "js",
    "application/javascript": "js",
    "image/svg+xml": "svg",
    "font/woff2": "woff2",
    "font/woff": "woff",
}

URL_ATTRIBUTES: Dict[str, Tuple[str, ...]] = {
    "link": ("href",),
    "script": ("src",),
    "img": ("src", "data-src"),
    "source": ("src",),
    "video": ("src", "poster"),
    "audio": ("src",),
    "track": ("src",),
    "input": ("src",),
    "a": ("href",),
    "area": ("href",),
}
SRCSET_ATTRIBUTES: Dict[str, Tuple[str, ...]] = {
    "img": ("srcset", "data-srcset"),
    "source": ("srcset",),
}
VERIFICATION_ATTRIBUTES = ("integrity", "crossorigin")
SPECULATIVE = {Provenance.JS_STRING}


@dataclass
class FetchedAsset:
    url: str
    data: bytes
    content_type: str
    status: int


@dataclass
class BlockedAsset:
    url: str
    kind: FetchFailureKind
    reason: str


@dataclass
class Resolution:
    """Outcome of resolving a batch of assets against the network."""

    assets: Dict[str, Asset]
    references: Dict[str, str]
    blocked: List[BlockedAsset] = field(default_factory=list)

    @property
    def downloaded(self) -> int:
        return sum(1 for asset in self.assets.values() if asset.disposition == "local")

    @property
    def inlined(self) -> int:
        return sum(1 for asset in self.assets.values() if asset.disposition == "inline")


def build_session(user_agent: Optional[str] = None) -> requests.Session:
    session = requests.Session()
    if user_agent:
        session.headers["User-Agent"] = user_agent
    return session


def fetch_asset(
    session: requests.Session, url: str, timeout: float, max_bytes: Optional[int] = None
) -> FetchedAsset:
    """Download one asset; any failure raises :class:`AssetFetchFailed`."""
    try:
        resp = session.get(url, timeout=timeout)
    except requests.RequestException as exc:
        raise AssetFetchFailed(url, FetchFailureKind.NETWORK, str(exc)) from exc
    if resp.status_code in ORIGIN_POLICY_STATUSES:
        raise AssetFetchFailed(
            url,
            FetchFailureKind.ORIGIN_POLICY,
            f"HTTP {resp.status_code}",
            resp.status_code,
        )
    try:
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise AssetFetchFailed(
            url, FetchFailureKind.NETWORK, str(exc), resp.status_code
        ) from exc
    data = resp.content
    if max_bytes is not None and len(data) > max_bytes:
        raise AssetFetchFailed(
            url, FetchFailureKind.NETWORK, f"response larger than {max_bytes} bytes"
        )
    return FetchedAsset(
        url=url,
        data=data,
        content_type=resp.headers.get("Content-Type", ""),
        status=resp.status_code,
    )


def detect_mime(content_type: Optional[str], data: bytes, url: str) -> str:
    """Pick a MIME type from the response header, file signature or extension."""
    declared = (content_type or "").split(";")[0].strip().lower()
    if declared not in GENERIC_CONTENT_TYPES:
        return declared
    kind = guess(data)
    if kind:
        return kind.mime
    guessed, _ = mimetypes.guess_type(urlsplit(url).path)
    return guessed or "application/octet-stream"


def infer_extension(content_type: Optional[str], data: bytes) -> Optional[str]:
    """Guess a file extension from the file signature or HTTP metadata."""
    kind = guess(data)
    if kind:
        return "jpg" if kind.extension == "jpeg" else kind.extension
    declared = (content_type or "").split(";")[0].strip().lower()
    if declared in CONTENT_TYPE_EXTENSIONS:
        return CONTENT_TYPE_EXTENSIONS[declared]
    guessed = mimetypes.guess_extension(declared) if declared else None
    return guessed.lstrip(".") if guessed else None


def to_data_uri(data: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def choose_disposition(
    asset_type: AssetType,
    size: int,
    threshold: int,
    inline_types: Tuple[AssetType, ...] = (AssetType.IMAGE,),
) -> str:
    """``inline`` for small inlinable assets (threshold inclusive), else ``local``."""
    if asset_type in inline_types and size <= threshold:
        return "inline"
    return "local"


def local_path_for(asset: Asset, fetched: FetchedAsset, asset_dir: str) -> str:
    path = mirror_path(asset.fetch_url, TYPE_DIRS[asset.type], asset_dir)
    if not url_extension(asset.fetch_url) or path.endswith("/index.html"):
        extension = infer_extension(fetched.content_type, fetched.data)
        if extension and not path.endswith(f".{extension}"):
            path = f"{path}.{extension}"
    return path


def reference_for(asset: Asset) -> Optional[str]:
    """Reference from the mirror root to a resolved asset, or None if remote."""
    if asset.inlined_payload is not None:
        return asset.inlined_payload
    if asset.local_path is not None:
        return "./" + quote_path(asset.local_path)
    return None


def build_references(assets: Mapping[str, Asset]) -> Dict[str, str]:
    references: Dict[str, str] = {}
    for key, asset in assets.items():
        reference = reference_for(asset)
        if reference is not None:
            references[key] = reference
    return references


def _write_bytes(root: Path, relative: str, data: bytes) -> None:
    destination = root / relative
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(data)


def resolve_assets(
    assets: Mapping[str, Asset],
    mirror_root: Path,
    config: ExportConfig,
    session: Optional[requests.Session] = None,
    document_url: Optional[str] = None,
) -> Resolution:
    """Fetch every asset and decide whether to inline, persist or keep it remote.

    Fetched stylesheets (and scripts, when enabled) are scanned for further
    references, which join the batch up to ``config.max_follow_depth``.
    """
    session = session or build_session(config.user_agent)
    resolved: Dict[str, Asset] = {key: copy_asset(asset) for key, asset in assets.items()}
    queue: Deque[Tuple[str, int]] = deque((key, 0) for key in resolved)
    seen = set()
    blocked: List[BlockedAsset] = []
    stylesheets: Dict[str, str] = {}

    while queue:
        key, depth = queue.popleft()
        if key in seen:
            continue
        seen.add(key)
        asset = resolved[key]
        speculative = asset.provenance <= SPECULATIVE
        try:
            fetched = fetch_asset(
                session, asset.fetch_url, config.fetch_timeout, config.max_asset_bytes
            )
        except AssetFetchFailed as exc:
            asset.failure = f"{exc.kind.value}: {exc.reason}"
            if speculative:
                logger.debug("Skipping unresolved script reference %s: %s", exc.url, exc.reason)
            else:
                logger.warning("Keeping remote reference for %s (%s)", exc.url, exc.reason)
                blocked.append(BlockedAsset(asset.fetch_url, exc.kind, exc.reason))
            continue

        asset.size_bytes = len(fetched.data)
        text: Optional[str] = None
        if asset.type in (AssetType.CSS, AssetType.JS):
            text = fetched.data.decode("utf-8", errors="replace")
        if depth < config.max_follow_depth and text is not None:
            if asset.type is AssetType.CSS and config.follow_css:
                discovered = extract_from_css(text, asset.fetch_url)
            elif asset.type is AssetType.JS and config.follow_js:
                discovered = extract_from_js(text, asset.fetch_url, document_url)
            else:
                discovered = []
            merged = collect_assets(discovered, into=resolved)
            for new_key in merged.keys() - resolved.keys():
                queue.append((new_key, depth + 1))
            resolved = merged
            asset = resolved[key]

        disposition = choose_disposition(
            asset.type, asset.size_bytes, config.inline_threshold, config.inline_types
        )
        if disposition == "inline":
            mime = detect_mime(fetched.content_type, fetched.data, asset.fetch_url)
            asset.inlined_payload = to_data_uri(fetched.data, mime)
            continue

        relative = local_path_for(asset, fetched, config.asset_dir)
        if asset.type is AssetType.CSS:
            # Written after every reference it contains has been resolved.
            asset.local_path = relative
            stylesheets[key] = text or ""
            continue
        try:
            _write_bytes(mirror_root, relative, fetched.data)
        except OSError as exc:
            logger.warning("Failed to write %s: %s", relative, exc)
            asset.failure = f"write: {exc}"
            blocked.append(BlockedAsset(asset.fetch_url, FetchFailureKind.NETWORK, str(exc)))
            continue
        asset.local_path = relative

    references = build_references(resolved)
    for key, css_text in stylesheets.items():
        asset = resolved[key]
        rewritten = rewrite_css_text(
            css_text,
            lambda ref, asset=asset: _stylesheet_reference(ref, asset, resolved, references),
        )
        try:
            _write_bytes(mirror_root, asset.local_path, rewritten.encode("utf-8"))
        except OSError as exc:
            logger.warning("Failed to write %s: %s", asset.local_path, exc)
            asset.local_path = None
            asset.failure = f"write: {exc}"
            blocked.append(BlockedAsset(asset.fetch_url, FetchFailureKind.NETWORK, str(exc)))
            references.pop(key, None)

    return Resolution(assets=resolved, references=references, blocked=blocked)


def _stylesheet_reference(
    reference: str,
    stylesheet: Asset,
    assets: Mapping[str, Asset],
    references: Mapping[str, str],
) -> Optional[str]:
    absolute = absolutize(stylesheet.fetch_url, reference)
    if absolute is None:
        return None
    key = normalize_url(absolute)
    target = references.get(key)
    if target is None:
        return absolute
    if target.startswith("data:"):
        return target
    return relative_reference(assets[key].local_path, stylesheet.local_path) + _fragment(absolute)


def _fragment(url: str) -> str:
    fragment = urlsplit(url).fragment
    return f"#{fragment}" if fragment else ""


def rewrite_css_text(css_text: str, mapper: Callable[[str], Optional[str]]) -> str:
    """Apply ``mapper`` to every ``url(...)`` and quoted ``@import`` in CSS text."""

    def replace_import(match: re.Match) -> str:
        if match.group(4) is None:
            return match.group(0)
        new = mapper(match.group(4).strip())
        if new is None or new == match.group(4):
            return match.group(0)
        quote = match.group(3)
        return f"@import {quote}{new}{quote}"

    def replace_url(match: re.Match) -> str:
        reference = match.group(2).strip()
        new = mapper(reference)
        if new is None or new == reference:
            return match.group(0)
        quote = match.group(1) or ""
        return f"url({quote}{new}{quote})"

    text = CSS_IMPORT_RE.sub(replace_import, css_text)
    return CSS_URL_RE.sub(replace_url, text)


class ReferenceMapper:
    """Map document references onto resolved targets.

    Values already equal to a local target are returned unchanged, which is
    what makes a second rewrite pass a no-op.
    """

    def __init__(self, base_url: str, references: Mapping[str, str]) -> None:
        self.base_url = base_url
        self.references = references
        self.local_targets = {
            value for value in references.values() if not value.startswith("data:")
        }

    def __call__(self, value: str) -> Optional[str]:
        if not is_fetchable(value):
            return None
        stripped = value.strip()
        if stripped.split("#", 1)[0] in self.local_targets:
            return None
        absolute = absolutize(self.base_url, stripped)
        if absolute is None:
            return None
        target = self.references.get(normalize_url(absolute))
        if target is None:
            return absolute
        if target.startswith("data:"):
            return target
        return target + _fragment(absolute)

    def is_resolved(self, value: str) -> bool:
        return value.startswith("data:") or value.split("#", 1)[0] in self.local_targets


def _rewrite_srcset(value: str, mapper: ReferenceMapper) -> str:
    parts: List[str] = []
    for candidate in SRCSET_SPLIT_RE.split(value.strip()):
        tokens = WS_RE.split(candidate.strip())
        if not tokens or not tokens[0]:
            continue
        url, descriptor = tokens[0], " ".join(tokens[1:])
        new = mapper(url) or url
        parts.append(f"{new} {descriptor}".strip())
    return ", ".join(parts)


def rewrite_document(html: str, base_url: str, references: Mapping[str, str]) -> str:
    """Point every URL-bearing attribute of the document at its resolved target."""
    soup = BeautifulSoup(html, "html.parser")
    base_tag = soup.find("base", href=True)
    if base_tag is not None:
        base_url = absolutize(base_url, base_tag["href"]) or base_url
    for tag in soup.find_all("base"):
        tag.decompose()

    mapper = ReferenceMapper(base_url, references)

    for tag_name, attributes in URL_ATTRIBUTES.items():
        for tag in soup.find_all(tag_name):
            rewritten_locally = False
            for attribute in attributes:
                value = tag.get(attribute)
                if not value:
                    continue
                new = mapper(value)
                if new is not None and new != value:
                    tag[attribute] = new
                if mapper.is_resolved(tag[attribute]):
                    rewritten_locally = True
            if rewritten_locally:
                for attribute in VERIFICATION_ATTRIBUTES:
                    if attribute in tag.attrs:
                        del tag.attrs[attribute]

    for tag_name, attributes in SRCSET_ATTRIBUTES.items():
        for tag in soup.find_all(tag_name):
            for attribute in attributes:
                value = tag.get(attribute)
                if not value:
                    continue
                new = _rewrite_srcset(value, mapper)
                if new != value:
                    tag[attribute] = new

    for style in soup.find_all("style"):
        css_text = style.get_text()
        if not css_text.strip():
            continue
        new_text = rewrite_css_text(css_text, mapper)
        if new_text != css_text:
            style.string = new_text

    for tag in soup.find_all(style=True):
        new_style = rewrite_css_text(tag["style"], mapper)
        if new_style != tag["style"]:
            tag["style"] = new_style

    return str(soup)
