from .composer import COMMON_FILTERS, FilterComposer, create_filter_composer
from .validation import (
    validate_filter_value, validate_filters, create_applied_filter, filters_to_mapping
)

__all__ = [
    "COMMON_FILTERS",
    "FilterComposer",
    "create_filter_composer",
    "validate_filter_value",
    "validate_filters",
    "create_applied_filter",
    "filters_to_mapping",
]
