"""
Cohort Metrics Calculation

The four cohort business metrics:
- DEP2COST: (cumulative_deposits / initial_costs) * 100
- ROAS: (cumulative_ngr / initial_costs) * 100
- AVG DEPOSIT SUM: cumulative_deposit_sum / cohort_size
- RETENTION RATE: active_players / initial_cohort_size * 100

An undefined metric (zero or negative denominator) is a normal data state and
yields ``value=None`` rather than an exception.
"""

from __future__ import annotations
from typing import Dict, List, Union

from traffboard_reports.exceptions import UnknownMetricError
from traffboard_reports.types import CohortMetric, MetricCalculationInput, MetricInput, MetricResult, ValidationResult

UNDEFINED_DISPLAY = "—"


def _undefined() -> MetricResult:
    return MetricResult(value=None, raw_value=0, formatted=UNDEFINED_DISPLAY, is_valid=False)


def _percentage(raw_value: float) -> MetricResult:
    return MetricResult(value=raw_value, raw_value=raw_value, formatted=f"{raw_value:.1f}%", is_valid=True)


def _currency(raw_value: float) -> MetricResult:
    return MetricResult(value=raw_value, raw_value=raw_value, formatted=f"${raw_value:.2f}", is_valid=True)


def calculate_dep2cost(deposit_sum: float, cost_sum: float) -> MetricResult:
    if cost_sum <= 0:
        return _undefined()
    return _percentage((deposit_sum / cost_sum) * 100)


def calculate_roas(ngr_sum: float, cost_sum: float) -> MetricResult:
    """Return on Ad Spend."""
    if cost_sum <= 0:
        return _undefined()
    return _percentage((ngr_sum / cost_sum) * 100)


def calculate_avg_deposit_sum(deposit_sum: float, cohort_size: float) -> MetricResult:
    if cohort_size <= 0:
        return _undefined()
    return _currency(deposit_sum / cohort_size)


def calculate_retention_rate(active_players: float, cohort_size: float) -> MetricResult:
    if cohort_size <= 0:
        return _undefined()
    return _percentage((active_players / cohort_size) * 100)


def _coerce_metric(metric: Union[CohortMetric, str]) -> CohortMetric:
    if isinstance(metric, CohortMetric):
        return metric
    try:
        return CohortMetric(metric)
    except ValueError:
        raise UnknownMetricError(metric) from None


def calculate_detailed_metric(data: MetricCalculationInput) -> MetricResult:
    metric = _coerce_metric(data.metric)
    if metric is CohortMetric.DEP2COST:
        return calculate_dep2cost(data.deposit_sum, data.cost_sum)
    if metric is CohortMetric.ROAS:
        return calculate_roas(data.ngr_sum, data.cost_sum)
    if metric is CohortMetric.AVG_DEPOSIT_SUM:
        return calculate_avg_deposit_sum(data.deposit_sum, data.cohort_size)
    if metric is CohortMetric.RETENTION_RATE:
        return calculate_retention_rate(data.active_players, data.cohort_size)
    raise UnknownMetricError(metric)


def calculate_cohort_metrics(data: MetricCalculationInput) -> float | None:
    return calculate_detailed_metric(data).value


def calculate_all_metrics(data: MetricInput) -> Dict[CohortMetric, MetricResult]:
    return {
        CohortMetric.DEP2COST: calculate_dep2cost(data.deposit_sum, data.cost_sum),
        CohortMetric.ROAS: calculate_roas(data.ngr_sum, data.cost_sum),
        CohortMetric.AVG_DEPOSIT_SUM: calculate_avg_deposit_sum(data.deposit_sum, data.cohort_size),
        CohortMetric.RETENTION_RATE: calculate_retention_rate(data.active_players, data.cohort_size),
    }


METRIC_DISPLAY_NAMES = {
    CohortMetric.DEP2COST: "DEP2COST",
    CohortMetric.ROAS: "ROAS",
    CohortMetric.AVG_DEPOSIT_SUM: "AVG DEPOSIT SUM",
    CohortMetric.RETENTION_RATE: "RETENTION RATE",
}

METRIC_DESCRIPTIONS = {
    CohortMetric.DEP2COST: "Ratio of cumulative deposits to acquisition cost",
    CohortMetric.ROAS: "Return on Ad Spend - net gaming revenue against acquisition cost",
    CohortMetric.AVG_DEPOSIT_SUM: "Average cumulative deposit sum per cohort player",
    CohortMetric.RETENTION_RATE: "Share of the cohort still active at the breakpoint",
}

METRIC_UNITS = {
    CohortMetric.DEP2COST: "%",
    CohortMetric.ROAS: "%",
    CohortMetric.AVG_DEPOSIT_SUM: "$",
    CohortMetric.RETENTION_RATE: "%",
}


def get_metric_display_name(metric: Union[CohortMetric, str]) -> str:
    return METRIC_DISPLAY_NAMES[_coerce_metric(metric)]


def get_metric_description(metric: Union[CohortMetric, str]) -> str:
    return METRIC_DESCRIPTIONS[_coerce_metric(metric)]


def get_metric_unit(metric: Union[CohortMetric, str]) -> str:
    return METRIC_UNITS[_coerce_metric(metric)]


def validate_metric_input(data: MetricInput) -> ValidationResult:
    """Check input quantities, reporting every violated rule."""
    errors: List[str] = []

    if data.cohort_size < 0:
        errors.append("Cohort size cannot be negative")
    if data.active_players < 0:
        errors.append("Active players cannot be negative")
    if data.active_players > data.cohort_size:
        errors.append("Active players cannot exceed cohort size")
    if data.deposit_sum < 0:
        errors.append("Deposit sum cannot be negative")
    if data.cost_sum < 0:
        errors.append("Cost sum cannot be negative")
    if data.ngr_sum < 0:
        errors.append("NGR sum cannot be negative")

    return ValidationResult(valid=not errors, errors=errors)
