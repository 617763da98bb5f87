"""Configuration management for the NanoDC monitor.

Supports YAML-based configuration with per-site mapping tables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..data.board import DEFAULT_LAYOUT_TYPES, parse_layout
from ..data.mapping import MappingRegistry
from ..data.models import SlotDescriptor


@dataclass
class ApiConfig:
    """NanoDC API connection settings."""

    base_url: str = "http://127.0.0.1:8000"
    nodes_path: str = "/api/nodes/{site_id}"
    timeout: float = 10  # seconds
    cancel_grace: float = 1.0  # seconds past timeout before giving up
    verify: bool = True
    ca_bundle: Optional[str] = None


@dataclass
class RefreshConfig:
    """Refresh loop timing."""

    interval: float = 20.0  # seconds between end of one cycle and start of the next
    quiescence_delay: float = 0.1  # pause between stop and start on site change
    stop_timeout: float = 5.0  # max wait for the worker to end on stop
    cache_max_age_hours: int = 24
    history_days: int = 30


@dataclass
class ServerConfig:
    """Server configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    url_prefix: str = ""


@dataclass
class Config:
    """Main configuration container."""

    deployment_name: str = "NanoDC Monitor"
    default_site: str = "bc02"

    api: ApiConfig = field(default_factory=ApiConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    # Site rule tables merged over the built-in ones
    sites: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    layout: List[str] = field(default_factory=lambda: [t.value for t in DEFAULT_LAYOUT_TYPES])

    # Data directory override
    data_dir: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        deployment = data.get("deployment", {})

        api_data = data.get("api", {})
        api = ApiConfig(
            base_url=api_data.get("base_url", ApiConfig.base_url),
            nodes_path=api_data.get("nodes_path", ApiConfig.nodes_path),
            timeout=api_data.get("timeout", 10),
            cancel_grace=api_data.get("cancel_grace", 1.0),
            verify=api_data.get("verify", True),
            ca_bundle=api_data.get("ca_bundle"),
        )

        refresh_data = data.get("refresh", {})
        refresh = RefreshConfig(
            interval=refresh_data.get("interval", 20.0),
            quiescence_delay=refresh_data.get("quiescence_delay", 0.1),
            stop_timeout=refresh_data.get("stop_timeout", 5.0),
            cache_max_age_hours=refresh_data.get("cache_max_age_hours", 24),
            history_days=refresh_data.get("history_days", 30),
        )

        server_data = data.get("server", {})
        server = ServerConfig(
            host=server_data.get("host", "0.0.0.0"),
            port=server_data.get("port", 8080),
            url_prefix=server_data.get("url_prefix", ""),
        )

        sites = {}
        for site_id, site_data in (data.get("sites") or {}).items():
            if isinstance(site_data, dict):
                sites[str(site_id)] = site_data

        return cls(
            deployment_name=deployment.get("name", "NanoDC Monitor"),
            default_site=str(deployment.get("default_site", "bc02")),
            api=api,
            refresh=refresh,
            server=server,
            sites=sites,
            layout=data.get("layout") or [t.value for t in DEFAULT_LAYOUT_TYPES],
            data_dir=data.get("data_dir"),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Load config from YAML file."""
        if not path.exists():
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "Config":
        """Load config from path or defaults.

        Checks in order:
        1. Provided path
        2. NANODC_MONITOR_CONFIG env var
        3. ./configs/config.yaml
        4. ./config.yaml
        5. ~/.nanodc_monitor/config.yaml
        6. Default config
        """
        paths_to_try = []

        if config_path:
            paths_to_try.append(Path(config_path))

        if env_path := os.environ.get("NANODC_MONITOR_CONFIG"):
            paths_to_try.append(Path(env_path))

        paths_to_try.extend([
            Path("./configs/config.yaml"),
            Path("./config.yaml"),
            Path.home() / ".nanodc_monitor" / "config.yaml",
        ])

        for path in paths_to_try:
            if path.exists():
                return cls.from_yaml(path)

        return cls()

    def build_registry(self) -> MappingRegistry:
        """Build the site rule registry (built-in tables plus configured sites)."""
        return MappingRegistry.from_dict(self.sites)

    def build_layout(self) -> List[SlotDescriptor]:
        return parse_layout(self.layout)

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        return {
            "deployment": {
                "name": self.deployment_name,
                "default_site": self.default_site,
            },
            "api": {
                "base_url": self.api.base_url,
                "nodes_path": self.api.nodes_path,
                "timeout": self.api.timeout,
            },
            "refresh": {
                "interval": self.refresh.interval,
                "quiescence_delay": self.refresh.quiescence_delay,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "url_prefix": self.server.url_prefix,
            },
            "sites": sorted(self.build_registry().site_ids()),
            "layout": list(self.layout),
        }
