"""Layout resolution: turns one catalog into the full ordered slot list."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Sequence

from .mapping import SlotMapper
from .models import NODE_FAMILIES, Entity, ImageType, ResolvedSlot, SlotDescriptor


# Reference rack layout, top to bottom.
DEFAULT_LAYOUT_TYPES = [
    ImageType.LOGO,
    ImageType.SWITCH,
    ImageType.UPS,
    ImageType.SUPERMICRO,
    ImageType.LONOVO_POST,
    ImageType.LONOVO_POST,
    ImageType.LONOVO_POST,
    ImageType.SUPERMICRO,
    ImageType.UPS,
    ImageType.STORAGE_1,
    ImageType.STORAGE_1,
    ImageType.STORAGE_1,
    ImageType.STORAGE_1,
    ImageType.STORAGE_1,
    ImageType.FOOTER,
]


def default_layout() -> List[SlotDescriptor]:
    return [SlotDescriptor(image_type, index) for index, image_type in enumerate(DEFAULT_LAYOUT_TYPES)]


def parse_layout(items: Iterable[Any]) -> List[SlotDescriptor]:
    """Build a layout from image type names.

    The slot index is the position in the list.

    Raises:
        ValueError: If an image type name is unknown.
    """
    layout = []
    for index, item in enumerate(items):
        name = str(item).strip().upper()
        try:
            image_type = ImageType(name)
        except ValueError:
            raise ValueError(f"Unknown image type {item!r} at slot {index}")
        layout.append(SlotDescriptor(image_type, index))
    return layout


def resolve_layout(
    mapper: SlotMapper,
    layout: Sequence[SlotDescriptor],
    catalog: Sequence[Entity],
) -> List[ResolvedSlot]:
    """Resolve every slot of the layout against one catalog.

    Site-mapped slots go through the mapper and keep their label even when
    nothing matches. Unmapped node-family slots take the entities no
    site-mapped slot claimed, in catalog order. Other slots stay empty.
    """
    resolved: Dict[int, ResolvedSlot] = {}
    claimed = set()

    for slot in layout:
        if not mapper.is_mapped_slot(slot.slot_index):
            continue
        entity = mapper.resolve(slot.image_type, slot.slot_index, catalog)
        if entity is not None:
            claimed.add(id(entity))
        resolved[slot.slot_index] = ResolvedSlot(
            slot=slot,
            entity=entity,
            display_name=mapper.get_display_name(slot.image_type, slot.slot_index),
            site_mapped=True,
        )

    leftovers = iter([entity for entity in catalog if id(entity) not in claimed])
    for slot in layout:
        if slot.slot_index in resolved:
            continue
        entity = next(leftovers, None) if slot.image_type in NODE_FAMILIES else None
        resolved[slot.slot_index] = ResolvedSlot(
            slot=slot,
            entity=entity,
            display_name=entity.name if entity else None,
        )

    return [resolved[slot.slot_index] for slot in layout]
