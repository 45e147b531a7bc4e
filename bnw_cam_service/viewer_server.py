import json
import logging
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable
from urllib.parse import unquote

from artifact_store import ArtifactDirectory

CONTENT_TYPES = {
    ".webp": "image/webp",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
}


class ViewerHandler(BaseHTTPRequestHandler):
    store: ArtifactDirectory | None = None
    describe: Callable[[], str] = staticmethod(lambda: "")

    def log_message(self, format, *args):
        logging.debug("viewer %s - %s", self.address_string(), format % args)

    def _send(self, status: int, content_type: str, body: bytes) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        path = self.path.split("?", 1)[0]
        if path == "/latest.json":
            self.latest_json()
        elif path == "/debug":
            self.debug()
        elif path.startswith("/images/"):
            self.image(unquote(path[len("/images/"):]))
        else:
            self.send_error(404)

    @property
    def mode(self) -> str:
        return self.describe()

    def latest_json(self):
        entry = self.store.latest()
        if entry is None:
            payload = {"ok": False, "mode": self.mode}
        else:
            payload = {"ok": True, "filename": entry.name, "bytes": entry.size, "mode": self.mode}
        self._send(200, "application/json", json.dumps(payload).encode())

    def debug(self):
        entries = self.store.list_images()
        lines = [f"MODE: {self.mode}", f"IMAGES_DIR: {self.store.base_dir}", f"COUNT: {len(entries)}"]
        for e in entries:
            ts = datetime.fromtimestamp(e.mtime, tz=timezone.utc).isoformat(timespec="milliseconds")
            lines.append(f"{ts}  {e.size / 1024:.1f} KB  {e.name}")
        self._send(200, "text/plain; charset=utf-8", "\n".join(lines).encode())

    def image(self, name: str):
        path = self.store.resolve(name)
        if path is None:
            self.send_error(404)
            return
        self._send(200, CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream"), path.read_bytes())


class ViewerServer(threading.Thread):
    """Read-only HTTP view of the artifact directory."""

    def __init__(self, port: int, store: ArtifactDirectory, mode: str | Callable[[], str] = "", host: str = ""):
        super().__init__(daemon=True, name="viewer-server")
        # a callable mode is re-read per request so runtime config changes show up
        describe = mode if callable(mode) else (lambda: mode)
        handler = type("BoundViewerHandler", (ViewerHandler,), {"store": store, "describe": staticmethod(describe)})
        self.server = ThreadingHTTPServer((host, port), handler)
        self.port = self.server.server_address[1]

    def run(self):
        logging.info("Viewer listening on port %d", self.port)
        self.server.serve_forever()

    def stop(self):
        self.server.shutdown()
        self.server.server_close()
