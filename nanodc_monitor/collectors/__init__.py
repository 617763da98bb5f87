"""Telemetry fetch clients."""

from .base import (
    BaseCollector,
    FetchCancelled,
    FetchError,
    FetchTimeout,
    MalformedResponseFailure,
    NetworkFailure,
)
from .nanodc import NanoDCCollector

__all__ = [
    "BaseCollector",
    "FetchCancelled",
    "FetchError",
    "FetchTimeout",
    "MalformedResponseFailure",
    "NetworkFailure",
    "NanoDCCollector",
]
