import pytest

from traffboard_reports.filters import (
    COMMON_FILTERS, create_applied_filter, create_filter_composer, filters_to_mapping, validate_filter_value,
    validate_filters,
)
from traffboard_reports.types import FilterDefinition, FilterType, FilterValidationRule


def definition(id_, group=None, order=None, required=False, validation=None, type_=FilterType.TEXT):
    return FilterDefinition(id=id_, label=id_.title(), type=type_, required=required, group=group, order=order,
                            validation=validation)


class TestComposer:
    def test_build_sorts_by_group_then_order(self):
        built = (
            create_filter_composer()
            .add(definition("loose"))
            .add(definition("late", group="general", order=20))
            .add(definition("early", group="general", order=5))
            .add(definition("unordered", group="analytics"))
            .add(definition("time", group="analytics", order=1))
            .build()
        )
        assert [f.id for f in built] == ["time", "unordered", "early", "late", "loose"]

    def test_same_id_replaces_in_place(self):
        composer = create_filter_composer()
        composer.add(definition("a", group="g", order=1)).add(definition("b", group="g", order=2))
        composer.add(FilterDefinition(id="a", label="Replaced", type=FilterType.NUMBER, group="g", order=1))
        built = composer.build()
        assert [f.id for f in built] == ["a", "b"]
        assert built[0].label == "Replaced"

    def test_add_common_and_reset(self):
        composer = create_filter_composer().add_common("DATE_RANGE").add_common("SEARCH").add_common("MISSING")
        assert [f.id for f in composer.build()] == ["search", "dateRange"]
        assert composer.build()[1] is COMMON_FILTERS["DATE_RANGE"]
        assert composer.reset().build() == []

    def test_add_all(self):
        built = create_filter_composer().add_all([definition("x"), definition("y")]).build()
        assert [f.id for f in built] == ["x", "y"]


class TestValidateFilterValue:
    @pytest.mark.parametrize("value", [None, ""])
    def test_required_missing(self, value):
        assert validate_filter_value(value, definition("partner", required=True)) == (False, "Partner is required")

    def test_optional_missing_passes(self):
        rule = FilterValidationRule(pattern=r"^\d+$")
        assert validate_filter_value(None, definition("code", validation=rule)) == (True, None)

    def test_custom_rule_runs_first(self):
        rule = FilterValidationRule(pattern=r"^x", custom=lambda v: "custom says no" if v == "bad" else None)
        assert validate_filter_value("bad", definition("name", validation=rule)) == (False, "custom says no")

    def test_pattern(self):
        rule = FilterValidationRule(pattern=r"^[A-Z]{2}$")
        assert validate_filter_value("DE", definition("country", validation=rule)) == (True, None)
        assert validate_filter_value("de", definition("country", validation=rule)) == (
            False, "Country format is invalid")

    def test_invalid_pattern(self):
        rule = FilterValidationRule(pattern="([")
        assert validate_filter_value("x", definition("country", validation=rule)) == (
            False, "Country format validation error")

    def test_number_range(self):
        rule = FilterValidationRule(min=1, max=10)
        limit_filter = definition("limit", validation=rule, type_=FilterType.NUMBER)
        assert validate_filter_value(0, limit_filter) == (False, "Limit must be at least 1")
        assert validate_filter_value(11, limit_filter) == (False, "Limit must be at most 10")
        assert validate_filter_value(5, limit_filter) == (True, None)


class TestValidateFilters:
    def test_collects_errors_by_id(self):
        definitions = [
            definition("partner", required=True),
            definition("limit", validation=FilterValidationRule(max=5), type_=FilterType.NUMBER),
            definition("search"),
        ]
        valid, errors = validate_filters({"limit": 9, "search": "x"}, definitions)
        assert not valid
        assert errors == {"partner": "Partner is required", "limit": "Limit must be at most 5"}

    def test_all_valid(self):
        assert validate_filters({"partner": "p1"}, [definition("partner", required=True)]) == (True, {})


def test_applied_filter_helpers():
    applied = create_applied_filter(COMMON_FILTERS["PARTNER_ID"], "partner_a")
    assert applied.id == "partnerId"
    assert applied.label == "Partner"
    assert filters_to_mapping([applied]) == {"partnerId": "partner_a"}
    assert filters_to_mapping(None) == {}
