"""Data layer - models, slot mapping, layout resolution and persistence."""

from .persistence import DataStore, get_data_dir
from .models import (
    CycleResult,
    Entity,
    EntityCatalog,
    FailureKind,
    ImageType,
    MappingRule,
    MatchMode,
    ResolvedSlot,
    SiteMapping,
    SlotDescriptor,
)
from .mapping import BUILTIN_SITES, MappingRegistry, SlotMapper
from .board import default_layout, parse_layout, resolve_layout

__all__ = [
    "DataStore",
    "get_data_dir",
    "CycleResult",
    "Entity",
    "EntityCatalog",
    "FailureKind",
    "ImageType",
    "MappingRule",
    "MatchMode",
    "ResolvedSlot",
    "SiteMapping",
    "SlotDescriptor",
    "BUILTIN_SITES",
    "MappingRegistry",
    "SlotMapper",
    "default_layout",
    "parse_layout",
    "resolve_layout",
]
