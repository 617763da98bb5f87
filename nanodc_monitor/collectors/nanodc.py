"""NanoDC telemetry API collector.

Fetches the node list of one data-center site from the NanoDC API and parses
it into an entity catalog.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional, TypeVar
from urllib.parse import quote

import requests
import urllib3
from requests.adapters import HTTPAdapter

from ..data.models import Entity, EntityCatalog
from .base import (
    BaseCollector,
    FetchCancelled,
    FetchError,
    FetchTimeout,
    MalformedResponseFailure,
    NetworkFailure,
)

try:
    import certifi
    DEFAULT_CA_BUNDLE = certifi.where()
except Exception:
    DEFAULT_CA_BUNDLE = True


DEFAULT_BASE_URL = "http://127.0.0.1:8000"
DEFAULT_NODES_PATH = "/api/nodes/{site_id}"

# Keys under which an object response may carry the node list
NODE_LIST_KEYS = ("nodes", "data")

T = TypeVar("T")


def _log(msg: str) -> None:
    print(msg, flush=True)


class NanoDCCollector(BaseCollector):
    """Collector for the NanoDC node telemetry API.

    The HTTP request runs on a helper thread while the caller waits on the
    cancellation event in short slices, so a cancelled fetch returns within
    ``poll_interval`` instead of running to its own timeout.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10,
        nodes_path: str = DEFAULT_NODES_PATH,
        verify: bool = True,
        ca_bundle: Optional[str] = None,
        cancel_grace: float = 1.0,
        poll_interval: float = 0.05,
    ):
        self.base_url = base_url.rstrip("/")
        self.nodes_path = nodes_path
        self.timeout = timeout
        self.cancel_grace = cancel_grace
        self.poll_interval = poll_interval
        self._verify = self._determine_verify(verify, ca_bundle)
        self._session: Optional[requests.Session] = None
        self._session_lock = threading.Lock()

        if self._verify is False:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @property
    def name(self) -> str:
        return "nanodc"

    @property
    def display_name(self) -> str:
        return "NanoDC Node Telemetry"

    def is_available(self) -> bool:
        """NanoDC collector is available if the API host answers."""
        try:
            resp = self._get_session().head(self.base_url, timeout=5)
            return resp.status_code < 500
        except Exception:
            return False

    def build_url(self, site_id: str) -> str:
        return self.base_url + self.nodes_path.format(site_id=quote(site_id, safe=""))

    def fetch(self, site_id: str, cancel_event: Optional[threading.Event] = None) -> EntityCatalog:
        """Fetch and parse the node list for a site.

        Returns:
            Ordered tuple of entities.

        Raises:
            FetchError: One of NetworkFailure, MalformedResponseFailure, FetchTimeout.
            FetchCancelled: If ``cancel_event`` was set first.
        """
        url = self.build_url(site_id)
        try:
            resp = self._run_cancellable(lambda: self._request(url), cancel_event)
        except (FetchError, FetchCancelled):
            raise
        except requests.exceptions.Timeout as e:
            raise FetchTimeout(self.name, f"Request to {url} timed out after {self.timeout}s", e)
        except requests.exceptions.SSLError as e:
            raise NetworkFailure(
                self.name,
                "TLS/SSL error: certificate verify failed. Consider using --insecure or --ca-bundle.",
                e,
            )
        except requests.exceptions.RequestException as e:
            raise NetworkFailure(self.name, str(e), e)
        except Exception as e:
            raise NetworkFailure(self.name, str(e), e)

        try:
            payload = resp.json()
        except ValueError as e:
            raise MalformedResponseFailure(self.name, f"Response from {url} is not JSON", e)
        return self._parse_catalog(payload)

    def _determine_verify(self, verify: bool, ca_bundle: Optional[str]):
        """Determine SSL verification setting."""
        if not verify:
            return False
        if ca_bundle:
            return ca_bundle
        return DEFAULT_CA_BUNDLE

    def _get_session(self) -> requests.Session:
        """Get or create the shared requests session.

        The adapter never retries: each fetch is exactly one request.
        """
        with self._session_lock:
            if self._session is None:
                session = requests.Session()
                adapter = HTTPAdapter(max_retries=0, pool_connections=2, pool_maxsize=4)
                session.mount("https://", adapter)
                session.mount("http://", adapter)
                session.verify = self._verify
                session.headers.update({
                    "User-Agent": "nanodc-monitor/1.0",
                    "Accept": "application/json",
                })
                self._session = session
            return self._session

    def close(self) -> None:
        """Close the session and release resources."""
        with self._session_lock:
            if self._session is not None:
                try:
                    self._session.close()
                except Exception:
                    pass
                self._session = None

    def _request(self, url: str) -> requests.Response:
        resp = self._get_session().get(url, timeout=self.timeout)
        resp.raise_for_status()
        return resp

    def _run_cancellable(self, func: Callable[[], T], cancel_event: Optional[threading.Event]) -> T:
        """Run a blocking call on a helper thread, giving up on cancellation.

        The helper thread is abandoned, not killed; its late result is dropped.

        Raises:
            FetchCancelled: If ``cancel_event`` is set before ``func`` returns.
            FetchTimeout: If ``func`` has not returned within timeout + grace.
        """
        if cancel_event is not None and cancel_event.is_set():
            raise FetchCancelled(f"[{self.name}] cancelled before request")

        outcome: Dict[str, Any] = {}
        done = threading.Event()

        def target() -> None:
            try:
                outcome["value"] = func()
            except BaseException as exc:
                outcome["error"] = exc
            finally:
                done.set()

        threading.Thread(target=target, name=f"{self.name}-request", daemon=True).start()

        deadline = time.monotonic() + self.timeout + self.cancel_grace
        while not done.wait(self.poll_interval):
            if cancel_event is not None and cancel_event.is_set():
                raise FetchCancelled(f"[{self.name}] cancelled during request")
            if time.monotonic() >= deadline:
                raise FetchTimeout(self.name, f"No response within {self.timeout}s")

        if "error" in outcome:
            raise outcome["error"]
        return outcome["value"]

    def _parse_catalog(self, payload: Any) -> EntityCatalog:
        """Turn a decoded JSON body into an entity catalog.

        Accepts a bare list of node records or an object holding the list under
        one of NODE_LIST_KEYS. Records without a usable name are skipped.
        """
        nodes: Optional[List[Any]] = None
        if isinstance(payload, list):
            nodes = payload
        elif isinstance(payload, dict):
            for key in NODE_LIST_KEYS:
                if isinstance(payload.get(key), list):
                    nodes = payload[key]
                    break
        if nodes is None:
            raise MalformedResponseFailure(
                self.name,
                f"Expected a node list, got {type(payload).__name__}",
            )

        entities = []
        skipped = 0
        for record in nodes:
            entity = Entity.from_dict(record)
            if entity is None:
                skipped += 1
                continue
            entities.append(entity)

        if skipped:
            _log(f"[{self.name}] Skipped {skipped} node record(s) without a name")
        return tuple(entities)
