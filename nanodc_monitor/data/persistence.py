"""Data persistence layer for NanoDC monitor state.

Provides JSON files for the selected site and the last-known catalog of each
site, and SQLite for cycle history.
All data is stored in ~/.nanodc_monitor/ to survive restarts.
"""

from __future__ import annotations

import json
import os
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import Entity, EntityCatalog


def get_data_dir() -> Path:
    """Get user-persistent data directory.

    Returns ~/.nanodc_monitor/ by default, or NANODC_MONITOR_DATA_DIR env var.
    Creates subdirectories if they don't exist.
    """
    data_dir = Path(os.environ.get("NANODC_MONITOR_DATA_DIR", Path.home() / ".nanodc_monitor"))

    for subdir in ["cache", "user_data"]:
        (data_dir / subdir).mkdir(parents=True, exist_ok=True)

    return data_dir


class DataStore:
    """Persistent storage for monitor state.

    Provides two storage mechanisms:
    - JSON files for the site selection and per-site catalog cache
    - SQLite database for cycle history
    """

    def __init__(self, data_dir: Optional[Path] = None):
        self.data_dir = data_dir or get_data_dir()
        self.cache_dir = self.data_dir / "cache"
        self.user_data_dir = self.data_dir / "user_data"
        for directory in (self.cache_dir, self.user_data_dir):
            directory.mkdir(parents=True, exist_ok=True)
        self.db_path = self.data_dir / "monitor.db"
        self._init_db()

    # --- Site selection ---

    def save_selected_site(self, site_id: str) -> None:
        """Persist the currently selected data-center site."""
        self.save_user_data("selected_site", {
            "site_id": site_id,
            "selected_at": datetime.utcnow().isoformat(),
        })

    def load_selected_site(self) -> Optional[str]:
        data = self.load_user_data("selected_site")
        if not data:
            return None
        site_id = data.get("site_id")
        return site_id if isinstance(site_id, str) and site_id else None

    def save_user_data(self, name: str, data: Dict[str, Any]) -> None:
        user_file = self.user_data_dir / f"{name}.json"
        user_file.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")

    def load_user_data(self, name: str) -> Optional[Dict[str, Any]]:
        user_file = self.user_data_dir / f"{name}.json"
        if not user_file.exists():
            return None
        try:
            return json.loads(user_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    # --- Catalog cache (fast startup) ---

    def _cache_file(self, site_id: str) -> Path:
        safe = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in site_id)
        return self.cache_dir / f"catalog_{safe}.json"

    def save_catalog(self, site_id: str, catalog: EntityCatalog) -> None:
        """Save the last successful catalog for a site."""
        payload = {
            "site_id": site_id,
            "saved_at": datetime.utcnow().isoformat(),
            "nodes": [entity.to_dict() for entity in catalog],
        }
        self._cache_file(site_id).write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")

    def load_catalog(self, site_id: str, max_age: Optional[timedelta] = None) -> Optional[EntityCatalog]:
        """Load the cached catalog for a site.

        Args:
            site_id: Site identifier
            max_age: Maximum age of cache to accept (None = any age)

        Returns:
            Cached catalog or None if not found/expired/unreadable
        """
        cache_file = self._cache_file(site_id)
        if not cache_file.exists():
            return None

        if max_age:
            mtime = datetime.fromtimestamp(cache_file.stat().st_mtime)
            if datetime.now() - mtime > max_age:
                return None

        try:
            data = json.loads(cache_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None
        nodes = data.get("nodes") if isinstance(data, dict) else None
        if not isinstance(nodes, list):
            return None
        entities = (Entity.from_dict(node) for node in nodes)
        return tuple(entity for entity in entities if entity is not None)

    def get_cache_age(self, site_id: str) -> Optional[float]:
        """Get age of a site's cache in seconds.

        Returns None if cache doesn't exist.
        """
        cache_file = self._cache_file(site_id)
        if not cache_file.exists():
            return None
        mtime = datetime.fromtimestamp(cache_file.stat().st_mtime)
        return (datetime.now() - mtime).total_seconds()

    def clear_cache(self, site_id: Optional[str] = None) -> None:
        """Clear cache file(s).

        Args:
            site_id: Specific site cache to clear, or None for all
        """
        if site_id:
            cache_file = self._cache_file(site_id)
            if cache_file.exists():
                cache_file.unlink()
        else:
            for cache_file in self.cache_dir.glob("catalog_*.json"):
                cache_file.unlink()

    # --- SQLite (cycle history) ---

    def _init_db(self) -> None:
        """Create database tables if they don't exist."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS cycles (
                    id INTEGER PRIMARY KEY,
                    site_id TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    failure TEXT,
                    entity_count INTEGER NOT NULL,
                    data JSON NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_site_timestamp
                ON cycles(site_id, timestamp DESC)
            """)

    def save_snapshot(self, site_id: str, data: Dict[str, Any], *, failure: Optional[str] = None) -> None:
        """Record one delivered cycle.

        Args:
            site_id: Site the cycle was fetched for
            data: Snapshot data (cycle summary and resolved slots)
            failure: Failure kind name, if the cycle failed
        """
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO cycles (site_id, timestamp, failure, entity_count, data) VALUES (?, ?, ?, ?, ?)",
                (
                    site_id,
                    datetime.utcnow().isoformat(),
                    failure,
                    int(data.get("entity_count", 0)),
                    json.dumps(data, default=str),
                ),
            )

    def get_latest_snapshot(
        self, site_id: str, max_age: Optional[timedelta] = None
    ) -> Optional[Dict[str, Any]]:
        """Get most recent cycle snapshot for a site, optionally filtered by age."""
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT data, timestamp FROM cycles
                WHERE site_id = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (site_id,),
            ).fetchone()

            if row:
                data, ts = row
                if max_age:
                    if datetime.utcnow() - datetime.fromisoformat(ts) > max_age:
                        return None
                return json.loads(data)
        return None

    def get_cycle_history(self, site_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Get recent cycle outcomes for a site, most recent first."""
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT timestamp, failure, entity_count FROM cycles
                WHERE site_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (site_id, limit),
            ).fetchall()

        return [
            {"timestamp": ts, "failure": failure, "entity_count": count}
            for ts, failure, count in rows
        ]

    def cleanup_old_data(self, days: int = 30) -> int:
        """Remove cycle history older than specified days.

        Returns number of rows deleted.
        """
        cutoff = (datetime.utcnow() - timedelta(days=days)).isoformat()
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM cycles WHERE timestamp < ?", (cutoff,))
            return cursor.rowcount
