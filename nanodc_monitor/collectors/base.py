"""Base fetch client interface and failure types."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ..data.models import EntityCatalog, FailureKind


class BaseCollector(ABC):
    """Abstract base class for telemetry fetch clients.

    A collector performs exactly one request per ``fetch`` call and never
    retries; scheduling and retry policy belong to the refresh controller.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this collector (e.g., 'nanodc')."""
        pass

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable name for UI display."""
        pass

    @abstractmethod
    def fetch(self, site_id: str, cancel_event: Optional[threading.Event] = None) -> EntityCatalog:
        """Fetch the current node catalog for one site.

        Args:
            site_id: Data-center site identifier
            cancel_event: Set by the caller to abandon the fetch

        Returns:
            Ordered tuple of entities reported by the API.

        Raises:
            NetworkFailure: Connectivity or HTTP error.
            MalformedResponseFailure: Payload does not have the expected shape.
            FetchTimeout: The request exceeded its time bound.
            FetchCancelled: ``cancel_event`` was set before the fetch finished.
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this collector can reach its source."""
        pass

    def close(self) -> None:
        """Release any held resources."""

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "available": self.is_available(),
        }


class FetchError(Exception):
    """Exception raised when a fetch fails."""

    kind: FailureKind = FailureKind.NETWORK

    def __init__(self, collector_name: str, message: str, cause: Optional[Exception] = None):
        self.collector_name = collector_name
        self.cause = cause
        super().__init__(f"[{collector_name}] {message}")


class NetworkFailure(FetchError):
    kind = FailureKind.NETWORK


class MalformedResponseFailure(FetchError):
    kind = FailureKind.MALFORMED


class FetchTimeout(FetchError):
    kind = FailureKind.TIMEOUT


class FetchCancelled(Exception):
    """Raised when a fetch is abandoned because cancellation was requested."""
