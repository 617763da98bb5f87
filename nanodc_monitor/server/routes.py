"""HTTP request handlers for the monitor API.

Provides endpoints for the resolved slot board, controller status, site
selection and configuration.
"""

from __future__ import annotations

import json
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler
from typing import Any, Dict, Optional, TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

if TYPE_CHECKING:
    from .workers import DisplayState, RefreshController
    from ..data.mapping import MappingRegistry
    from ..data.persistence import DataStore


MAX_BODY_BYTES = 64 * 1024
MAX_HISTORY_LIMIT = 1000


class MonitorRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the monitor.

    Serves:
    - GET  /api/slots    resolved slot board
    - GET  /api/status   controller and board status
    - GET  /api/sites    known sites
    - GET  /api/config   configuration summary
    - GET  /api/history  recent cycle outcomes of the selected site
    - POST /api/site     change the selected site
    - POST /api/refresh  fetch the current site now
    - POST /api/cache/clear  drop cached catalogs
    """

    # Saved selection, board and controller must switch together
    _site_change_lock = threading.Lock()

    # These will be set by the server
    display_state: Optional["DisplayState"] = None
    controller: Optional["RefreshController"] = None
    registry: Optional["MappingRegistry"] = None
    data_store: Optional["DataStore"] = None
    url_prefix: str = ""
    config: Optional[Dict] = None

    def do_GET(self):
        path = self._route_path()
        if path is None:
            self.send_error(HTTPStatus.NOT_FOUND, "Invalid prefix")
            return

        if path == "/api/slots":
            return self._handle_slots()
        if path == "/api/status":
            return self._handle_status()
        if path == "/api/sites":
            return self._handle_sites()
        if path == "/api/config":
            return self._handle_config()
        if path == "/api/history":
            return self._handle_history()
        self.send_error(HTTPStatus.NOT_FOUND, "Unknown endpoint")

    def do_OPTIONS(self):
        path = self._route_path()
        if path in {
            "/api/slots", "/api/status", "/api/sites", "/api/site",
            "/api/refresh", "/api/config", "/api/history", "/api/cache/clear",
        }:
            self.send_response(HTTPStatus.NO_CONTENT)
            self._send_cors_headers()
            self.send_header("Access-Control-Allow-Methods", "GET,POST,OPTIONS")
            self.send_header("Access-Control-Allow-Headers", "Content-Type")
            self.end_headers()
            return
        self.send_error(HTTPStatus.NOT_FOUND, "Unknown endpoint")

    def do_POST(self):
        path = self._route_path()
        if path is None:
            self.send_error(HTTPStatus.NOT_FOUND, "Invalid prefix")
            return
        if path == "/api/site":
            return self._handle_change_site()
        if path == "/api/refresh":
            return self._handle_refresh()
        if path == "/api/cache/clear":
            return self._handle_clear_cache()
        self.send_error(HTTPStatus.NOT_FOUND, "Unknown endpoint")

    def log_message(self, format, *args):
        print(f"[server] {self.address_string()} {format % args}", flush=True)

    # --- API Handlers ---

    def _handle_slots(self):
        state = self.display_state
        if not state:
            self.send_error(HTTPStatus.SERVICE_UNAVAILABLE, "Server not initialized.")
            return
        payload = state.get_status()
        if not state.is_ready():
            self._send_json(payload, status_code=HTTPStatus.SERVICE_UNAVAILABLE)
            return
        self._send_json(payload)

    def _handle_status(self):
        if not self.controller or not self.display_state:
            self.send_error(HTTPStatus.SERVICE_UNAVAILABLE, "Server not initialized.")
            return
        board = self.display_state.get_status()
        site_id = board["meta"]["site_id"]
        cache_age = self.data_store.get_cache_age(site_id) if self.data_store and site_id else None
        self._send_json({
            "controller": self.controller.get_status(),
            "collector": self.controller.collector.get_status(),
            "display": board["meta"],
            "cache_age_seconds": cache_age,
        })

    def _handle_history(self):
        if not self.data_store or not self.display_state:
            self.send_error(HTTPStatus.SERVICE_UNAVAILABLE, "Server not initialized.")
            return
        query = parse_qs(urlparse(self.path).query)
        site_id = (query.get("site_id") or [self.display_state.site_id])[0]
        try:
            limit = int((query.get("limit") or ["100"])[0])
        except ValueError:
            self._send_json({"ok": False, "detail": "'limit' must be an integer."}, status_code=HTTPStatus.BAD_REQUEST)
            return
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        if not site_id:
            self._send_json({"site_id": None, "latest": None, "cycles": []})
            return
        self._send_json({
            "site_id": site_id,
            "latest": self.data_store.get_latest_snapshot(site_id),
            "cycles": self.data_store.get_cycle_history(site_id, limit=limit),
        })

    def _handle_sites(self):
        registry = self.registry
        if not registry:
            self.send_error(HTTPStatus.SERVICE_UNAVAILABLE, "Server not initialized.")
            return
        selected = self.display_state.site_id if self.display_state else None
        sites = []
        for site_id in registry.site_ids():
            site = registry.get(site_id)
            sites.append({
                "site_id": site_id,
                "display_name": site.display_name if site else site_id,
                "mapped_slots": sorted(site.rules) if site else [],
                "selected": site_id == selected,
            })
        self._send_json({"sites": sites, "selected": selected})

    def _handle_config(self):
        self._send_json(self.config or {})

    def _handle_change_site(self):
        if not self.controller or not self.display_state:
            self.send_error(HTTPStatus.SERVICE_UNAVAILABLE, "Server not initialized.")
            return
        body = self._read_json_body()
        if body is None:
            return
        site_id = body.get("site_id") if isinstance(body, dict) else None
        if not isinstance(site_id, str) or not site_id.strip():
            self._send_json({"ok": False, "detail": "Missing 'site_id'."}, status_code=HTTPStatus.BAD_REQUEST)
            return
        site_id = site_id.strip()
        if self.registry is not None and site_id not in self.registry:
            self._send_json(
                {"ok": False, "detail": f"Unknown site '{site_id}'."},
                status_code=HTTPStatus.NOT_FOUND,
            )
            return

        with self._site_change_lock:
            if self.data_store:
                self.data_store.save_selected_site(site_id)
            self.display_state.select_site(site_id)
            self.controller.change_site(site_id)
        self._send_json({"ok": True, "site_id": site_id})

    def _handle_refresh(self):
        if not self.controller:
            self.send_error(HTTPStatus.SERVICE_UNAVAILABLE, "Server not initialized.")
            return
        ok = self.controller.restart()
        status = HTTPStatus.OK if ok else HTTPStatus.SERVICE_UNAVAILABLE
        detail = "Refresh restarted." if ok else "Refresh loop is not running."
        self._send_json({"ok": ok, "detail": detail}, status_code=status)

    def _handle_clear_cache(self):
        if not self.data_store:
            self.send_error(HTTPStatus.SERVICE_UNAVAILABLE, "Server not initialized.")
            return
        body = self._read_json_body()
        if body is None:
            return
        site_id = body.get("site_id") if isinstance(body, dict) else None
        if site_id is not None and (not isinstance(site_id, str) or not site_id.strip()):
            self._send_json({"ok": False, "detail": "'site_id' must be a site id."}, status_code=HTTPStatus.BAD_REQUEST)
            return
        site_id = site_id.strip() if site_id else None
        self.data_store.clear_cache(site_id)
        self._send_json({"ok": True, "site_id": site_id})

    # --- Helpers ---

    def _read_json_body(self) -> Optional[Any]:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            length = -1
        if length < 0 or length > MAX_BODY_BYTES:
            self._send_json({"ok": False, "detail": "Invalid request body."}, status_code=HTTPStatus.BAD_REQUEST)
            return None
        raw = self.rfile.read(length) if length else b""
        try:
            return json.loads(raw.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            self._send_json({"ok": False, "detail": "Body must be JSON."}, status_code=HTTPStatus.BAD_REQUEST)
            return None

    def _route_path(self) -> Optional[str]:
        return self._strip_prefix(urlparse(self.path).path)

    def _send_json(self, data: Any, *, status_code: HTTPStatus = HTTPStatus.OK):
        body = json.dumps(data).encode("utf-8")
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store, max-age=0")
        self._send_cors_headers()
        self.end_headers()
        self.wfile.write(body)

    def _send_cors_headers(self):
        self.send_header("Access-Control-Allow-Origin", "*")

    def _strip_prefix(self, path: str) -> Optional[str]:
        norm_prefix = (self.url_prefix or "").rstrip("/")
        if not norm_prefix:
            return path or "/"
        if not norm_prefix.startswith("/"):
            norm_prefix = f"/{norm_prefix}"
        if not path.startswith(norm_prefix):
            return None
        stripped = path[len(norm_prefix):] or "/"
        if not stripped.startswith("/"):
            stripped = "/" + stripped
        return stripped
