"""Data models for NanoDC node monitoring.

This module defines the core data structures that flow through one refresh
cycle, following these principles:

1. ENTITIES ARE TRANSIENT
   - Every fetch builds fresh Entity objects; nothing is carried across
     cycles except by re-matching on name.
   - A catalog is an ordered tuple owned by the cycle that produced it.

2. SLOTS ARE STATIC
   - The layout (ordered SlotDescriptors) is configuration, never derived
     from API data.

3. RULES ARE DATA
   - Mapping rules live in per-site tables keyed by slot index.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


# =============================================================================
# Enumerations
# =============================================================================


class ImageType(str, Enum):
    """Kind of image drawn in a display slot."""

    LOGO = "LOGO"
    SWITCH = "SWITCH"
    UPS = "UPS"
    SUPERMICRO = "SUPERMICRO"
    LONOVO_POST = "LONOVO_POST"  # Compute node family
    STORAGE_1 = "STORAGE_1"  # Storage/NAS node family
    FOOTER = "FOOTER"


# Node families: the only image types that can hold an entity.
COMPUTE_FAMILY = frozenset({ImageType.LONOVO_POST})
STORAGE_FAMILY = frozenset({ImageType.STORAGE_1})
NODE_FAMILIES = COMPUTE_FAMILY | STORAGE_FAMILY


class MatchMode(str, Enum):
    """How a rule combines its keyword terms."""

    ALL = "ALL"  # Every term must appear in the name
    ANY = "ANY"  # At least one term must appear in the name


class FailureKind(str, Enum):
    """Why a fetch cycle failed."""

    NETWORK = "NETWORK"  # Connectivity or HTTP error
    MALFORMED = "MALFORMED"  # Payload did not match the expected shape
    TIMEOUT = "TIMEOUT"  # Fetch exceeded its bound


# =============================================================================
# Entities
# =============================================================================

NAME_KEYS = ("name", "node_name", "nodeName")


@dataclass(frozen=True)
class Entity:
    """One monitored node as reported by the API.

    Only ``name`` is used for slot matching; ``metrics`` holds every other
    field of the node record untouched.
    """

    name: str
    metrics: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["Entity"]:
        """Build an entity from a raw node record.

        Returns None if the record carries no usable name.
        """
        if not isinstance(data, dict):
            return None
        for key in NAME_KEYS:
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                metrics = {k: v for k, v in data.items() if k not in NAME_KEYS}
                return cls(name=value.strip(), metrics=metrics)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, **self.metrics}


EntityCatalog = Tuple[Entity, ...]


# =============================================================================
# Slots and rules
# =============================================================================


@dataclass(frozen=True)
class SlotDescriptor:
    """One fixed visual position: image kind plus its index in the layout."""

    image_type: ImageType
    slot_index: int

    def to_dict(self) -> Dict[str, Any]:
        return {"image_type": self.image_type.value, "slot_index": self.slot_index}


@dataclass(frozen=True)
class MappingRule:
    """Selects which entity fills one site-mapped slot.

    ``keyword`` is the node-name key used by storage slots. ``terms`` and
    ``match`` form the predicate used by compute slots.
    """

    keyword: str
    display_name: str
    terms: Tuple[str, ...] = ()
    match: MatchMode = MatchMode.ALL

    def __post_init__(self):
        if not self.terms:
            object.__setattr__(self, "terms", (self.keyword,))

    def matches_terms(self, name: str) -> bool:
        lowered = name.lower()
        hits = (term.lower() in lowered for term in self.terms)
        if self.match == MatchMode.ANY:
            return any(hits)
        return all(hits)

    def matches_keyword(self, name: str) -> bool:
        return self.keyword.lower() in name.lower()


@dataclass(frozen=True)
class SiteMapping:
    """Rule table for one data-center site, keyed by slot index."""

    site_id: str
    display_name: str
    rules: Dict[int, MappingRule] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedSlot:
    """Output unit for presentation: a slot and whatever fills it."""

    slot: SlotDescriptor
    entity: Optional[Entity] = None
    display_name: Optional[str] = None
    site_mapped: bool = False

    @property
    def resolved(self) -> bool:
        return self.entity is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.slot.to_dict(),
            "display_name": self.display_name,
            "site_mapped": self.site_mapped,
            "entity": self.entity.to_dict() if self.entity else None,
        }


# =============================================================================
# Cycle results
# =============================================================================


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one fetch cycle, tagged with the site it was fetched for."""

    site_id: str
    generation: int
    cycle: int
    catalog: EntityCatalog = ()
    failure: Optional[FailureKind] = None
    error: Optional[str] = None
    completed_at: float = field(default_factory=time.time)

    @property
    def ok(self) -> bool:
        return self.failure is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "site_id": self.site_id,
            "generation": self.generation,
            "cycle": self.cycle,
            "entity_count": len(self.catalog),
            "failure": self.failure.value if self.failure else None,
            "error": self.error,
            "completed_at": self.completed_at,
        }
