"""Local static server used to re-test a mirror over HTTP."""

from __future__ import annotations

import functools
import logging
import threading
from contextlib import contextmanager
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Iterator

logger = logging.getLogger("page_mirror")


class MirrorRequestHandler(SimpleHTTPRequestHandler):
    """Serve files without caching and with permissive CORS for local testing."""

    extensions_map = {
        **SimpleHTTPRequestHandler.extensions_map,
        ".mjs": "text/javascript",
        ".js": "text/javascript",
        ".woff": "font/woff",
        ".woff2": "font/woff2",
        ".webp": "image/webp",
        ".avif": "image/avif",
        ".svg": "image/svg+xml",
    }

    def end_headers(self) -> None:
        self.send_header("Cache-Control", "no-cache")
        self.send_header("Access-Control-Allow-Origin", "*")
        super().end_headers()

    def log_message(self, format: str, *args) -> None:  # noqa: A002 - stdlib signature
        logger.debug("%s - %s", self.address_string(), format % args)


def _make_server(root: Path, host: str, port: int) -> ThreadingHTTPServer:
    if not root.is_dir():
        raise FileNotFoundError(f"Directory does not exist: {root}")
    handler = functools.partial(MirrorRequestHandler, directory=str(root))
    return ThreadingHTTPServer((host, port), handler)


@contextmanager
def serve_directory(root: Path, host: str = "127.0.0.1", port: int = 0) -> Iterator[str]:
    """Serve ``root`` on a background thread and yield its base URL."""
    server = _make_server(Path(root), host, port)
    thread = threading.Thread(
        target=server.serve_forever, name="page-mirror-server", daemon=True
    )
    thread.start()
    bound_host, bound_port = server.server_address[:2]
    base_url = f"http://{bound_host}:{bound_port}/"
    logger.info("Serving %s at %s", root, base_url)
    try:
        yield base_url
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5)


def serve_forever(root: Path, host: str = "127.0.0.1", port: int = 8080) -> None:
    """Serve ``root`` in the foreground until interrupted."""
    server = _make_server(Path(root), host, port)
    logger.info("Serving %s at http://%s:%d/ (Ctrl+C to stop)", root, host, port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Server stopped")
    finally:
        server.server_close()
