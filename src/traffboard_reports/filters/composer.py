"""Builder for report filter definitions."""
from __future__ import annotations
import sys
from typing import Dict, List
from traffboard_reports.types import FilterDefinition, FilterOption, FilterType

COMMON_FILTERS: Dict[str, FilterDefinition] = {
    "DATE_RANGE": FilterDefinition(
        id="dateRange", label="Date Range", type=FilterType.DATERANGE, group="time", order=0,
    ),
    "PARTNER_ID": FilterDefinition(
        id="partnerId", label="Partner", type=FilterType.SELECT, group="general", order=10,
        options=[FilterOption("Partner A", "partner_a"), FilterOption("Partner B", "partner_b")],
    ),
    "SEARCH": FilterDefinition(
        id="search", label="Search", type=FilterType.TEXT, group="general", order=20,
        placeholder="Search...",
    ),
    "TRAFFIC_SOURCE": FilterDefinition(
        id="trafficSource", label="Traffic Source", type=FilterType.SELECT, group="analytics", order=30,
        options=[
            FilterOption("Organic", "organic"),
            FilterOption("Direct", "direct"),
            FilterOption("Referral", "referral"),
            FilterOption("Social", "social"),
        ],
    ),
}


class FilterComposer:
    """Fluent builder; adding an existing filter id replaces it in place."""

    def __init__(self):
        self._filters: List[FilterDefinition] = []

    def add(self, definition: FilterDefinition) -> "FilterComposer":
        for index, existing in enumerate(self._filters):
            if existing.id == definition.id:
                self._filters[index] = definition
                return self
        self._filters.append(definition)
        return self

    def add_all(self, definitions: List[FilterDefinition]) -> "FilterComposer":
        for definition in definitions:
            self.add(definition)
        return self

    def add_common(self, name: str) -> "FilterComposer":
        common = COMMON_FILTERS.get(name)
        if common is not None:
            self.add(common)
        return self

    def build(self) -> List[FilterDefinition]:
        """Definitions sorted by group (ungrouped last), then order within group."""
        return sorted(
            self._filters,
            key=lambda f: (f.group if f.group is not None else "zzz",
                           f.order if f.order is not None else sys.maxsize),
        )

    def reset(self) -> "FilterComposer":
        self._filters = []
        return self


def create_filter_composer() -> FilterComposer:
    return FilterComposer()
