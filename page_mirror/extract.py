"""Static discovery of asset references in markup, stylesheets and scripts.

Everything here is best-effort static evidence: CSS and JavaScript are scanned
with regular expressions rather than parsed, so computed or templated paths are
invisible and incidental strings may over-match. Runtime capture is the
authoritative source that covers those gaps.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional

from bs4 import BeautifulSoup

from .models import AssetType, Candidate, Provenance
from .utils import absolutize, url_extension

IMAGE_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".avif", ".ico", ".bmp",
}
FONT_EXTENSIONS = {".woff", ".woff2", ".ttf", ".otf", ".eot"}
MEDIA_EXTENSIONS = {".mp4", ".webm", ".ogg", ".ogv", ".mp3", ".wav", ".m4a", ".mov"}

EXTENSION_TYPES: Dict[str, AssetType] = {".css": AssetType.CSS}
EXTENSION_TYPES.update({ext: AssetType.JS for ext in (".js", ".mjs", ".cjs")})
EXTENSION_TYPES.update({ext: AssetType.IMAGE for ext in IMAGE_EXTENSIONS})
EXTENSION_TYPES.update({ext: AssetType.FONT for ext in FONT_EXTENSIONS})
EXTENSION_TYPES.update({ext: AssetType.MEDIA for ext in MEDIA_EXTENSIONS})

PRELOAD_AS_TYPES = {
    "style": AssetType.CSS,
    "script": AssetType.JS,
    "worker": AssetType.JS,
    "font": AssetType.FONT,
    "image": AssetType.IMAGE,
    "video": AssetType.MEDIA,
    "audio": AssetType.MEDIA,
    "track": AssetType.MEDIA,
}
PRELOAD_RELS = {"preload", "prefetch", "modulepreload"}
ICON_RELS = {"icon", "shortcut", "apple-touch-icon", "apple-touch-icon-precomposed", "mask-icon"}

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
CSS_IMPORT_RE = re.compile(
    r"@import\s+(?:url\(\s*([\"']?)([^)\"']+)\1\s*\)|([\"'])([^\"']+)\3)",
    re.IGNORECASE,
)
JS_STATIC_IMPORT_RE = re.compile(
    r"\b(?:import|export)\s+(?:[\w*${}\s,]+?\s+from\s+)?([\"'])([^\"'\n]+)\1"
)
JS_DYNAMIC_IMPORT_RE = re.compile(r"\bimport\(\s*([\"'`])([^\"'`\n]+)\1\s*\)")
ASSET_EXT_PATTERN = (
    r"png|jpe?g|gif|svg|webp|avif|ico|woff2?|ttf|otf|eot|css|m?js|mp4|webm|mp3|wav|ogg"
)
JS_ASSET_STRING_RE = re.compile(
    r"([\"'`])([^\"'`\s()<>{}]+\.(?:" + ASSET_EXT_PATTERN + r")(?:[?#][^\"'`\s]*)?)\1",
    re.IGNORECASE,
)
SRCSET_SPLIT_RE = re.compile(r",\s+|(?<=\d[wx]),")
WS_RE = re.compile(r"\s+")


def asset_type_for(url: str, fallback: AssetType = AssetType.OTHER) -> AssetType:
    """Infer an asset type from the URL path extension."""
    return EXTENSION_TYPES.get(url_extension(url), fallback)


def parse_srcset(value: Optional[str]) -> List[str]:
    """Return the URL of every candidate in a ``srcset`` list."""
    urls: List[str] = []
    if not value:
        return urls
    for candidate in SRCSET_SPLIT_RE.split(value.strip()):
        parts = WS_RE.split(candidate.strip())
        if parts and parts[0]:
            urls.append(parts[0].rstrip(","))
    return urls


def _candidate(
    base_url: str, reference: Optional[str], asset_type: AssetType, provenance: Provenance
) -> Optional[Candidate]:
    absolute = absolutize(base_url, reference)
    if absolute is None:
        return None
    return Candidate(absolute, asset_type, provenance)


def _effective_base(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        return absolutize(fallback, tag["href"]) or fallback
    return fallback


def _rels(tag) -> set:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return {r.lower() for r in rel}


def _link_candidate(link, base_url: str) -> Optional[Candidate]:
    href = link.get("href")
    rels = _rels(link)
    if "stylesheet" in rels:
        return _candidate(base_url, href, AssetType.CSS, Provenance.HTML)
    if rels & PRELOAD_RELS:
        declared = (link.get("as") or "").lower()
        if "modulepreload" in rels:
            asset_type = AssetType.JS
        else:
            asset_type = PRELOAD_AS_TYPES.get(declared) or asset_type_for(href or "")
        return _candidate(base_url, href, asset_type, Provenance.PRELOAD)
    if rels & ICON_RELS:
        return _candidate(base_url, href, AssetType.IMAGE, Provenance.HTML)
    return None


def extract_from_html(html: str, base_url: str) -> List[Candidate]:
    """Collect asset references from a DOM snapshot."""
    soup = BeautifulSoup(html, "html.parser")
    base = _effective_base(soup, base_url)
    found: List[Optional[Candidate]] = []

    for link in soup.find_all("link", href=True):
        found.append(_link_candidate(link, base))

    for script in soup.find_all("script", src=True):
        found.append(_candidate(base, script["src"], AssetType.JS, Provenance.HTML))

    for img in soup.find_all("img"):
        found.append(_candidate(base, img.get("src"), AssetType.IMAGE, Provenance.HTML))
        found.append(
            _candidate(base, img.get("data-src"), AssetType.IMAGE, Provenance.HTML)
        )
        for attr in ("srcset", "data-srcset"):
            for url in parse_srcset(img.get(attr)):
                found.append(_candidate(base, url, AssetType.IMAGE, Provenance.SRCSET))

    for media in soup.find_all(["video", "audio", "source", "track"]):
        src = media.get("src")
        if src:
            found.append(
                _candidate(base, src, asset_type_for(src, AssetType.MEDIA), Provenance.HTML)
            )
        for url in parse_srcset(media.get("srcset")):
            found.append(_candidate(base, url, AssetType.IMAGE, Provenance.SRCSET))
        if media.name == "video" and media.get("poster"):
            found.append(
                _candidate(base, media["poster"], AssetType.IMAGE, Provenance.HTML)
            )

    for style in soup.find_all("style"):
        found.extend(extract_from_css(style.get_text() or "", base))

    for tag in soup.find_all(style=True):
        found.extend(_css_url_candidates(tag["style"], base))

    return [candidate for candidate in found if candidate is not None]


def _css_url_type(url: str) -> AssetType:
    asset_type = asset_type_for(url)
    if asset_type in (AssetType.FONT, AssetType.IMAGE):
        return asset_type
    return AssetType.OTHER


def _css_url_candidates(css_text: str, base_url: str) -> Iterable[Candidate]:
    for match in CSS_URL_RE.finditer(css_text):
        reference = match.group(2).strip()
        candidate = _candidate(
            base_url, reference, _css_url_type(reference), Provenance.CSS_URL
        )
        if candidate is not None:
            yield candidate


def extract_from_css(css_text: str, css_url: str) -> List[Candidate]:
    """Collect ``@import`` and ``url(...)`` references from stylesheet text."""
    found: List[Candidate] = []
    import_spans = []
    for match in CSS_IMPORT_RE.finditer(css_text):
        reference = (match.group(2) or match.group(4) or "").strip()
        import_spans.append(match.span())
        candidate = _candidate(css_url, reference, AssetType.CSS, Provenance.CSS_IMPORT)
        if candidate is not None:
            found.append(candidate)
    for match in CSS_URL_RE.finditer(css_text):
        if any(start <= match.start() < end for start, end in import_spans):
            continue
        reference = match.group(2).strip()
        candidate = _candidate(
            css_url, reference, _css_url_type(reference), Provenance.CSS_URL
        )
        if candidate is not None:
            found.append(candidate)
    return found


def _is_module_specifier(specifier: str) -> bool:
    return specifier.startswith(("./", "../", "/", "http://", "https://", "//"))


def extract_from_js(
    js_text: str, script_url: str, document_url: Optional[str] = None
) -> List[Candidate]:
    """Collect module specifiers and asset-looking string literals from a script.

    Module specifiers resolve against the script itself; plain string literals
    are requested by the page, so they resolve against the document.
    """
    document_base = document_url or script_url
    found: List[Candidate] = []
    specifier_spans = []
    for pattern in (JS_STATIC_IMPORT_RE, JS_DYNAMIC_IMPORT_RE):
        for match in pattern.finditer(js_text):
            specifier = match.group(2).strip()
            if not _is_module_specifier(specifier):
                continue
            specifier_spans.append(match.span(2))
            candidate = _candidate(
                script_url, specifier, AssetType.JS, Provenance.JS_IMPORT
            )
            if candidate is not None:
                found.append(candidate)
    for match in JS_ASSET_STRING_RE.finditer(js_text):
        if match.span(2) in specifier_spans:
            continue
        literal = match.group(2)
        candidate = _candidate(
            document_base, literal, asset_type_for(literal), Provenance.JS_STRING
        )
        if candidate is not None:
            found.append(candidate)
    return found
