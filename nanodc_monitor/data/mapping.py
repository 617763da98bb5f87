"""Site-specific node-to-slot mapping.

Resolves an API-supplied list of named nodes onto the fixed display slots
using per-site keyword rules. Matching is case-insensitive substring
containment; the first entity in catalog order that satisfies a rule wins and
later matches are ignored.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from .models import (
    COMPUTE_FAMILY,
    STORAGE_FAMILY,
    Entity,
    ImageType,
    MappingRule,
    MatchMode,
    SiteMapping,
)


# Built-in rule tables, keyed by site id.
BUILTIN_SITES: Dict[str, Dict[str, Any]] = {
    "bc02": {
        "display_name": "BC02",
        "rules": {
            # LONOVO_POST slots
            4: {"keyword": "Filecoin Miner", "terms": ["Filecoin", "Miner"], "match": "all",
                "display_name": "BC02 Filecoin Miner"},
            5: {"keyword": "3080Ti GPU Worker", "terms": ["3080Ti", "GPU Worker"], "match": "any",
                "display_name": "BC02 3080Ti GPU Worker"},
            6: {"keyword": "Post Worker", "display_name": "BC02 Post Worker"},
            # STORAGE_1 slots
            9: {"keyword": "NAS1", "display_name": "BC02 NAS1"},
            10: {"keyword": "NAS2", "display_name": "BC02 NAS2"},
            11: {"keyword": "NAS3", "display_name": "BC02 NAS3"},
            12: {"keyword": "NAS4", "display_name": "BC02 NAS4"},
            13: {"keyword": "NAS5", "display_name": "BC02 NAS5"},
        },
    },
}


def build_rule(data: Dict[str, Any]) -> MappingRule:
    """Build a mapping rule from a config dictionary.

    Raises:
        ValueError: If the keyword is missing or the match mode is unknown.
    """
    keyword = str(data.get("keyword") or "").strip()
    if not keyword:
        raise ValueError("Mapping rule requires a 'keyword'")
    try:
        match = MatchMode(str(data.get("match", "all")).upper())
    except ValueError:
        raise ValueError(f"Unknown match mode {data.get('match')!r} for rule {keyword!r}")
    terms = tuple(str(t) for t in data.get("terms") or ())
    return MappingRule(
        keyword=keyword,
        display_name=str(data.get("display_name") or keyword),
        terms=terms,
        match=match,
    )


def build_site_mapping(site_id: str, data: Dict[str, Any]) -> SiteMapping:
    """Build a site rule table from a config dictionary."""
    rules: Dict[int, MappingRule] = {}
    for index, rule_data in (data.get("rules") or {}).items():
        rules[int(index)] = build_rule(rule_data or {})
    return SiteMapping(
        site_id=site_id,
        display_name=str(data.get("display_name") or site_id),
        rules=rules,
    )


class SlotMapper:
    """Resolves display slots to entities for one site.

    A mapper built for a site without a table treats every slot as not
    site-mapped.
    """

    def __init__(self, site: SiteMapping):
        self.site = site

    @property
    def site_id(self) -> str:
        return self.site.site_id

    def resolve(
        self,
        image_type: ImageType,
        slot_index: int,
        catalog: Iterable[Entity],
    ) -> Optional[Entity]:
        """Find the entity for a slot.

        Args:
            image_type: Image kind of the slot
            slot_index: Position of the slot in the layout
            catalog: Entities from the current cycle, in API order

        Returns:
            The first matching entity, or None if the slot is not site-mapped,
            its image type belongs to no node family, or nothing matches.
        """
        rule = self.site.rules.get(slot_index)
        if rule is None:
            return None

        if image_type in COMPUTE_FAMILY:
            predicate = rule.matches_terms
        elif image_type in STORAGE_FAMILY:
            predicate = rule.matches_keyword
        else:
            return None

        for entity in catalog:
            if predicate(entity.name):
                return entity
        return None

    def get_display_name(self, image_type: ImageType, slot_index: int) -> Optional[str]:
        """Label for a site-mapped slot, independent of any catalog."""
        rule = self.site.rules.get(slot_index)
        return rule.display_name if rule else None

    def is_mapped_slot(self, slot_index: int) -> bool:
        return slot_index in self.site.rules

    def describe(self) -> List[str]:
        """Human-readable summary of the rule table."""
        lines = []
        for index in sorted(self.site.rules):
            rule = self.site.rules[index]
            joiner = " AND " if rule.match == MatchMode.ALL else " OR "
            lines.append(
                f"slot {index}: {joiner.join(rule.terms)} (key {rule.keyword!r}) -> {rule.display_name}"
            )
        return lines


class MappingRegistry:
    """Rule tables for every known site."""

    def __init__(self, sites: Optional[Dict[str, SiteMapping]] = None):
        self._sites: Dict[str, SiteMapping] = dict(sites or {})

    @classmethod
    def from_dict(cls, data: Dict[str, Dict[str, Any]], *, include_builtin: bool = True) -> "MappingRegistry":
        """Build a registry from site dictionaries.

        Config entries replace built-in entries with the same site id.
        """
        merged: Dict[str, Dict[str, Any]] = {}
        if include_builtin:
            merged.update(BUILTIN_SITES)
        merged.update(data or {})
        return cls({site_id: build_site_mapping(site_id, site_data or {})
                    for site_id, site_data in merged.items()})

    def get(self, site_id: str) -> Optional[SiteMapping]:
        return self._sites.get(site_id)

    def mapper_for(self, site_id: str) -> SlotMapper:
        site = self._sites.get(site_id) or SiteMapping(site_id=site_id, display_name=site_id)
        return SlotMapper(site)

    def site_ids(self) -> List[str]:
        return list(self._sites)

    def __contains__(self, site_id: str) -> bool:
        return site_id in self._sites
