from __future__ import annotations

import asyncio
import json
from pathlib import Path
from urllib.parse import urlsplit

import pytest

from page_mirror import audit as audit_module
from page_mirror.audit import (
    audit_mirror,
    classify_usage,
    inventory_files,
    protected_paths,
    recommend,
    static_evidence,
)
from page_mirror.config import AuditConfig
from page_mirror.errors import DirectoryWalkError, EntryDocumentMissing
from page_mirror.models import (
    CapturePassResult,
    ConsoleMessage,
    FileInventoryEntry,
    NetworkRequest,
)
from page_mirror.report import build_audit_report, unused_paths

SERVER = "http://127.0.0.1:9999/"


def _write(root: Path, relative: str, data) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(data, str):
        path.write_text(data, encoding="utf-8")
    else:
        path.write_bytes(data)
    return path


def _entry(path: str, size: int) -> FileInventoryEntry:
    return FileInventoryEntry(path, size, 0.0, Path(path).suffix.lower())


@pytest.fixture
def scenario_inventory():
    return [
        _entry("index.html", 1000),
        _entry("a.css", 2000),
        _entry("b.js", 3000),
        _entry("c.png", 4000),
        _entry("d.woff2", 5000),
        _entry("e.png", 6000),
    ]


def test_only_unreferenced_file_is_unused(scenario_inventory):
    usage = classify_usage(
        scenario_inventory,
        {"a.css", "b.js", "/c.png", "./d.woff2"},
        entry_name="index.html",
        viewport_paths={"mobile": {"c.png", "index.html"}, "desktop": {"d.woff2"}},
    )

    assert [entry.path for entry in usage.unused] == ["e.png"]
    assert usage.used_files == 5
    assert usage.unused_bytes == 6000
    assert usage.used_bytes + usage.unused_bytes == usage.total_bytes == 21000
    assert usage.waste_ratio == pytest.approx(6000 / 21000)
    assert usage.assets_by_viewport == {"mobile": 2, "desktop": 1}


def test_classification_partitions_inventory(scenario_inventory):
    usage = classify_usage(scenario_inventory, {"b.js", "missing/not-there.png"})
    paths = {entry.path for entry in scenario_inventory}
    unused = {entry.path for entry in usage.unused}

    assert usage.essential | unused == paths
    assert not usage.essential & unused
    assert "index.html" in usage.essential
    assert "missing/not-there.png" not in usage.essential


def test_classification_is_deterministic(scenario_inventory):
    first = classify_usage(scenario_inventory, {"a.css"})
    second = classify_usage(list(reversed(scenario_inventory)), {"a.css"})
    assert first == second
    assert [e.path for e in first.unused] == ["e.png", "d.woff2", "c.png", "b.js"]


def test_protected_paths_are_never_unused(scenario_inventory):
    protected = protected_paths(scenario_inventory, ["*.woff2"], ['img.src = "e.png"'])
    assert protected == {"d.woff2", "e.png"}

    usage = classify_usage(scenario_inventory, {"a.css"}, protected=protected)
    assert {e.path for e in usage.unused} == {"b.js", "c.png"}
    assert usage.protected == ["d.woff2", "e.png"]


def test_script_mentions_must_be_whole_file_names():
    inventory = [
        _entry("index.html", 1000),
        _entry("d.js", 3000),
        _entry("e.png", 6000),
        _entry("a.js", 2000),
        _entry("img/x y.png", 500),
    ]
    scripts = ['fetch("/api/large-image.png"); fetch("/data.json"); load("img/x%20y.png")']

    protected = protected_paths(inventory, (), scripts)
    usage = classify_usage(inventory, {"d.js"}, protected=protected)

    assert protected == {"img/x y.png"}
    assert [entry.path for entry in usage.unused] == ["e.png", "a.js"]


def test_recommendations():
    unused = [
        _entry("assets/images/hero.jpg", 200 * 1024),
        _entry("assets/images/icon.png", 2 * 1024),
        _entry("assets/fonts/a.woff2", 20 * 1024),
    ]
    messages = recommend(unused, waste_ratio=0.45, console_error_count=2)
    assert len(messages) == 4
    assert "review asset collection" in messages[0]
    assert messages[1].startswith("1 large unused images")
    assert "conditional font loading" in messages[2]
    assert "JavaScript integrity" in messages[3]
    assert recommend([], waste_ratio=0.1, console_error_count=0) == []


def test_inventory_walks_recursively(tmp_path):
    _write(tmp_path, "index.html", "<html></html>")
    _write(tmp_path, "assets/css/site.css", "body{}")
    _write(tmp_path, "assets/images/a.PNG", b"1234")

    entries = inventory_files(tmp_path)

    assert [e.path for e in entries] == [
        "index.html",
        "assets/css/site.css",
        "assets/images/a.PNG",
    ]
    png = next(e for e in entries if e.path.endswith(".PNG"))
    assert (png.size, png.extension) == (4, ".png")


def test_inventory_of_missing_root_is_fatal(tmp_path):
    with pytest.raises(DirectoryWalkError):
        inventory_files(tmp_path / "nope")


def test_static_evidence_follows_local_css_and_js(tmp_path):
    _write(
        tmp_path,
        "index.html",
        '<html><head><link rel="stylesheet" href="./assets/css/site.css">'
        '<script src="./assets/js/app.js"></script></head>'
        '<body><img src="https://cdn.example.net/remote.png"></body></html>',
    )
    _write(tmp_path, "assets/css/site.css", "@import 'extra.css'; body{background:url(../img/bg.png)}")
    _write(tmp_path, "assets/css/extra.css", ".x{background:url('../img/x%20y.png')}")
    _write(tmp_path, "assets/js/app.js", 'import "./chunk.js"; const a = "assets/img/lazy.webp";')
    _write(tmp_path, "assets/js/chunk.js", "console.log(1)")

    assets = static_evidence(tmp_path, "index.html", SERVER)
    local = {asset.local_path for asset in assets.values() if asset.local_path}

    assert local == {
        "assets/css/site.css",
        "assets/css/extra.css",
        "assets/img/bg.png",
        "assets/img/x y.png",
        "assets/js/app.js",
        "assets/js/chunk.js",
        "assets/img/lazy.webp",
    }
    assert assets["https://cdn.example.net/remote.png"].local_path is None


def test_static_evidence_requires_entry(tmp_path):
    with pytest.raises(EntryDocumentMissing):
        static_evidence(tmp_path, "index.html", SERVER)


def test_report_shape_and_plan(scenario_inventory):
    usage = classify_usage(scenario_inventory, {"a.css", "b.js", "c.png", "d.woff2"})
    report = build_audit_report(
        usage,
        source_url="https://example.com/",
        export_dir="dist",
        console_errors=[ConsoleMessage("boom", "mobile")],
        network_request_count=7,
        viewports=["mobile", "desktop"],
        largest_limit=10,
        audit_date="2026-01-01T00:00:00+00:00",
    )

    summary = report["summary"]
    assert summary["unused_files"] == 1
    assert summary["unused_size_bytes"] == 6000
    assert summary["waste_percentage"] == round(6000 / 21000 * 100, 2)
    assert report["largest_unused_files"] == [
        {"path": "e.png", "size": 6000, "sizeKB": 6, "extension": ".png"}
    ]
    assert report["unused_files_by_type"] == {".png": {"count": 1, "total_size_kb": 5.86}}
    assert report["console_errors"] == ["boom"]
    assert report["viewports_tested"] == ["mobile", "desktop"]
    assert unused_paths(report) == ["e.png"]
    assert unused_paths({"largest_unused_files": [{"path": "x.png"}]}) == ["x.png"]


def test_audit_mirror_writes_reports(tmp_path, monkeypatch):
    mirror = tmp_path / "dist"
    _write(
        mirror,
        "index.html",
        '<html><head><link rel="stylesheet" href="./assets/css/site.css"></head>'
        '<body><script src="./assets/js/app.js"></script></body></html>',
    )
    _write(mirror, "assets/css/site.css", "body{color:red}")
    _write(mirror, "assets/js/app.js", 'fetch("data/" + "feed.json")')
    _write(mirror, "assets/img/lazy.png", b"x" * 2048)
    _write(mirror, "assets/img/orphan.png", b"x" * 4096)
    _write(mirror, "assets/data/feed.json", "{}")
    _write(mirror, "manifest.json", json.dumps({"exported_at": "2026-01-01T00:00:00+00:00"}))

    seen_urls = []

    async def fake_run_capture(url, config):
        seen_urls.append(url)
        origin = "{0.scheme}://{0.netloc}/".format(urlsplit(url))
        return [
            CapturePassResult(
                viewport=vp,
                final_url=url,
                html="<html></html>",
                network_requests=[
                    NetworkRequest(origin + "assets/img/lazy.png", "image", "GET", vp.label)
                ] if vp.label == "desktop" else [],
                console_errors=[ConsoleMessage("oops", vp.label)] if vp.label == "mobile" else [],
            )
            for vp in config.viewports
        ]

    monkeypatch.setattr(audit_module, "run_capture", fake_run_capture)
    config = AuditConfig(
        export_dir=mirror, screenshots=False, keep_patterns=("assets/data/*",)
    )

    result = asyncio.run(audit_mirror(config))

    assert seen_urls[0].endswith("/index.html")
    assert [entry.path for entry in result.usage.unused] == ["assets/img/orphan.png"]
    assert "manifest.json" in result.usage.essential
    assert result.usage.assets_by_viewport["desktop"] == 1

    report_dir = result.report_path.parent
    assert report_dir.name == "audit"
    report = json.loads((report_dir / "audit-report.json").read_text(encoding="utf-8"))
    assert report["summary"]["unused_files"] == 1
    assert report["protected_files"] == ["assets/data/feed.json", "manifest.json"]
    assert any("JavaScript integrity" in r for r in report["recommendations"])
    graph = json.loads((report_dir / "asset-graph.json").read_text(encoding="utf-8"))
    assert "assets/img/lazy.png" in graph["runtime_assets"]
    network = json.loads((report_dir / "network-log.json").read_text(encoding="utf-8"))
    assert network[0]["viewport"] == "desktop"
    errors = json.loads((report_dir / "console-errors.json").read_text(encoding="utf-8"))
    assert errors == [{"text": "oops", "viewport": "mobile"}]


def test_audit_mirror_combines_markup_styles_and_network(tmp_path, monkeypatch):
    mirror = tmp_path / "dist"
    _write(
        mirror,
        "index.html",
        '<html><head><style>@font-face{font-family:F;src:url(c.woff2)}</style></head>'
        '<body><img src="a.png" srcset="a.png 1x, b.png 2x"></body></html>',
    )
    sizes = {"a.png": 1000, "b.png": 2000, "c.woff2": 3000, "d.js": 4000, "e.png": 5000}
    for name, size in sizes.items():
        _write(mirror, name, b"x" * size)

    async def fake_run_capture(url, config):
        origin = "{0.scheme}://{0.netloc}/".format(urlsplit(url))
        return [
            CapturePassResult(
                viewport=vp,
                final_url=url,
                html="<html></html>",
                network_requests=[NetworkRequest(origin + "d.js", "script", "GET", vp.label)],
            )
            for vp in config.viewports
        ]

    monkeypatch.setattr(audit_module, "run_capture", fake_run_capture)

    result = asyncio.run(audit_mirror(AuditConfig(export_dir=mirror, screenshots=False)))

    assert result.usage.essential == {"index.html", "a.png", "b.png", "c.woff2", "d.js"}
    assert [entry.path for entry in result.usage.unused] == ["e.png"]
    assert result.usage.unused_bytes == 5000
    assert result.report["summary"]["unused_files"] == 1


def test_audit_mirror_without_entry_fails(tmp_path):
    (tmp_path / "dist").mkdir()
    with pytest.raises(EntryDocumentMissing):
        asyncio.run(audit_mirror(AuditConfig(export_dir=tmp_path / "dist", screenshots=False)))
