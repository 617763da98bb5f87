#!/usr/bin/env python3
"""
NanoDC Monitor - Main entry point.

Builds the collector, refresh controller and display state, then serves the
resolved slot board over HTTP while the controller refreshes in the background.
"""

from __future__ import annotations

import argparse
import json
import os
import threading
from datetime import timedelta
from http.server import ThreadingHTTPServer
from pathlib import Path
from typing import List, Optional

from .config import Config
from .routes import MonitorRequestHandler
from .workers import DisplayState, RefreshController
from ..collectors.nanodc import NanoDCCollector
from ..data.models import ResolvedSlot
from ..data.persistence import DataStore


def _log(msg: str) -> None:
    print(msg, flush=True)


def build_collector(config: Config) -> NanoDCCollector:
    return NanoDCCollector(
        base_url=config.api.base_url,
        timeout=config.api.timeout,
        nodes_path=config.api.nodes_path,
        verify=config.api.verify,
        ca_bundle=config.api.ca_bundle,
        cancel_grace=config.api.cancel_grace,
    )


def resolve_selected_site(config: Config, store: DataStore, override: Optional[str] = None) -> str:
    """Pick the site to monitor: CLI override, then saved selection, then config default."""
    if override:
        store.save_selected_site(override)
        return override
    return store.load_selected_site() or config.default_site


def log_board(site_id: str, slots: List[ResolvedSlot]) -> None:
    """Presenter that prints one line per node-bearing slot."""
    for slot in slots:
        if not slot.display_name and not slot.entity:
            continue
        state = "ok" if slot.entity else "--"
        _log(
            f"[board] {site_id} #{slot.slot.slot_index:>2} {slot.slot.image_type.value:<12} "
            f"{state} {slot.display_name or ''}"
        )


def apply_overrides(config: Config, args) -> None:
    """Override config with CLI args and environment."""
    api_url = args.api_url or os.environ.get("NANODC_API_URL")
    if api_url:
        config.api.base_url = api_url
    if args.timeout:
        config.api.timeout = args.timeout
    if args.insecure:
        config.api.verify = False
    if args.ca_bundle:
        config.api.ca_bundle = args.ca_bundle
    if args.refresh_interval:
        config.refresh.interval = args.refresh_interval
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    if args.url_prefix:
        config.server.url_prefix = args.url_prefix


def run_once(config: Config, store: DataStore, site_id: str) -> int:
    """Fetch one cycle, print the resolved board as JSON and exit."""
    registry = config.build_registry()
    display = DisplayState(registry, config.build_layout(), store)
    display.select_site(site_id)

    collector = build_collector(config)
    controller = RefreshController(collector, interval=config.refresh.interval)
    delivered = threading.Event()

    def on_cycle(result):
        display.on_cycle(result)
        delivered.set()

    controller.subscribe(on_cycle)
    controller.start(site_id)
    try:
        delivered.wait(config.api.timeout + config.api.cancel_grace + 1)
    finally:
        controller.stop()
        collector.close()

    print(json.dumps(display.get_status(), indent=2))
    return 0 if display.is_ready() and not display.get_status()["meta"]["stale"] else 1


def run_server(config: Config, store: DataStore, site_id: str) -> None:
    """Run the refresh loop and the monitor API server."""
    registry = config.build_registry()
    layout = config.build_layout()

    display = DisplayState(
        registry,
        layout,
        store,
        cache_max_age=timedelta(hours=config.refresh.cache_max_age_hours),
        history_days=config.refresh.history_days,
    )
    display.add_presenter(log_board)
    display.select_site(site_id)

    collector = build_collector(config)
    controller = RefreshController(
        collector,
        interval=config.refresh.interval,
        quiescence_delay=config.refresh.quiescence_delay,
        stop_timeout=config.refresh.stop_timeout,
    )
    controller.subscribe(display.on_cycle)
    controller.on_state_change(lambda state, site: _log(f"[refresh] State -> {state.value} ({site})"))
    controller.start(site_id)

    # Configure the request handler
    MonitorRequestHandler.display_state = display
    MonitorRequestHandler.controller = controller
    MonitorRequestHandler.registry = registry
    MonitorRequestHandler.data_store = store
    MonitorRequestHandler.url_prefix = config.server.url_prefix
    MonitorRequestHandler.config = config.to_dict()

    server = ThreadingHTTPServer((config.server.host, config.server.port), MonitorRequestHandler)

    _log(f"[server] Serving on http://{config.server.host}:{config.server.port}")
    if config.server.url_prefix:
        _log(f"[server] URL prefix: {config.server.url_prefix}")
    _log(f"[server] Data directory: {store.data_dir}")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        _log("\n[server] Shutting down...")
    finally:
        controller.stop()
        collector.close()
        server.server_close()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="NanoDC data-center node monitor",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("--config", type=str, help="Path to config YAML file")
    parser.add_argument("--site", type=str, help="Site identifier to monitor (saved as the selection)")
    parser.add_argument("--once", action="store_true", help="Fetch one cycle, print the board and exit")

    # API options
    parser.add_argument("--api-url", default=None, help="NanoDC API base URL")
    parser.add_argument("--timeout", type=float, default=None, help="HTTP timeout in seconds")
    parser.add_argument("--insecure", action="store_true", help="Skip TLS verification")
    parser.add_argument("--ca-bundle", type=str, help="Path to a custom CA bundle")

    # Refresh options
    parser.add_argument(
        "--refresh-interval",
        type=float,
        default=None,
        help="Seconds between the end of one fetch and the start of the next",
    )

    # Server options
    parser.add_argument("--host", default=None, help="Bind address")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    parser.add_argument("--url-prefix", default="", help="Path prefix for reverse proxy setup")

    return parser.parse_args(argv)


def main(argv=None):
    """Entry point for the nanodc-monitor command."""
    args = parse_args(argv)
    config = Config.load(args.config)
    apply_overrides(config, args)
    _log(f"[config] Loaded: deployment={config.deployment_name!r}, api={config.api.base_url!r}")

    store = DataStore(Path(config.data_dir) if config.data_dir else None)
    site_id = resolve_selected_site(config, store, args.site)
    _log(f"[config] Selected site: {site_id}")

    if args.once:
        return run_once(config, store, site_id)
    run_server(config, store, site_id)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
