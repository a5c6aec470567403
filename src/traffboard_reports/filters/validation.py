"""Validation of applied filter values against their definitions."""
from __future__ import annotations
import re
from typing import Dict, List, Optional, Tuple
from traffboard_reports.types import AppliedFilter, FilterDefinition, FilterValidationRule, FilterValue


def _validate_custom_rule(value: FilterValue, validation: FilterValidationRule) -> Optional[str]:
    if validation.custom:
        return validation.custom(value) or None
    return None


def _validate_text_pattern(value: FilterValue, validation: FilterValidationRule, label: str) -> Optional[str]:
    if validation.pattern and isinstance(value, str):
        try:
            regex = re.compile(validation.pattern)
        except re.error:
            return f"{label} format validation error"
        if not regex.search(value):
            return f"{label} format is invalid"
    return None


def _validate_number_range(value: FilterValue, validation: FilterValidationRule, label: str) -> Optional[str]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if validation.min is not None and value < validation.min:
            return f"{label} must be at least {validation.min:g}"
        if validation.max is not None and value > validation.max:
            return f"{label} must be at most {validation.max:g}"
    return None


def validate_filter_value(value: FilterValue, definition: FilterDefinition) -> Tuple[bool, Optional[str]]:
    """Return ``(valid, error)`` for a single value; empty optional values pass."""
    if definition.required and (value is None or value == ""):
        return False, f"{definition.label} is required"

    if value is None:
        return True, None

    if definition.validation:
        for error in (
            _validate_custom_rule(value, definition.validation),
            _validate_text_pattern(value, definition.validation, definition.label),
            _validate_number_range(value, definition.validation, definition.label),
        ):
            if error:
                return False, error

    return True, None


def validate_filters(filters: Dict[str, FilterValue],
                     definitions: List[FilterDefinition]) -> Tuple[bool, Dict[str, str]]:
    """Validate every definition, collecting one error per failing filter id."""
    errors: Dict[str, str] = {}
    for definition in definitions:
        valid, error = validate_filter_value(filters.get(definition.id), definition)
        if not valid and error:
            errors[definition.id] = error
    return not errors, errors


def create_applied_filter(definition: FilterDefinition, value: FilterValue) -> AppliedFilter:
    return AppliedFilter(id=definition.id, value=value, label=definition.label)


def filters_to_mapping(filters: Optional[List[AppliedFilter]]) -> Dict[str, FilterValue]:
    return {f.id: f.value for f in (filters or [])}
