from __future__ import annotations
from typing import Any, Dict, List, Optional, Union

from traffboard_reports.cohort.metrics import UNDEFINED_DISPLAY, get_metric_unit
from traffboard_reports.types import CohortData, CohortMetric, CohortMode


def breakpoint_label(breakpoint: int, mode: Union[CohortMode, str] = CohortMode.DAY) -> str:
    if CohortMode(mode) is CohortMode.WEEK:
        return f"Week {breakpoint // 7}"
    return f"Day {breakpoint}"


def breakpoint_labels(breakpoints: List[int], mode: Union[CohortMode, str] = CohortMode.DAY) -> Dict[int, str]:
    return {bp: breakpoint_label(bp, mode) for bp in breakpoints}


def format_metric_value(value: Optional[float], metric: Union[CohortMetric, str]) -> str:
    if value is None:
        return UNDEFINED_DISPLAY
    if get_metric_unit(metric) == "$":
        return f"${value:.2f}"
    return f"{value:.1f}%"


def format_cohort_results(data: List[CohortData], breakpoints: List[int],
                          max_cohorts: Optional[int] = None) -> List[CohortData]:
    """Re-key every row on the full configured breakpoint set, in configured order."""
    rows = data[:max_cohorts] if max_cohorts else data
    formatted = []
    for row in rows:
        values = {bp: row.breakpoint_values.get(bp) for bp in breakpoints}
        formatted.append(CohortData(
            cohort_date=row.cohort_date,
            ftd_count=row.ftd_count,
            breakpoint_values=values,
            weighted_average=row.weighted_average,
        ))
    return formatted


def cohort_rows_to_records(data: List[CohortData], metric: Union[CohortMetric, str],
                           mode: Union[CohortMode, str] = CohortMode.DAY) -> List[Dict[str, Any]]:
    """JSON-ready rows with labelled breakpoint cells kept in configured order."""
    records = []
    for row in data:
        records.append({
            "cohortDate": row.cohort_date,
            "ftdCount": row.ftd_count,
            "breakpoints": [
                {
                    "breakpoint": bp,
                    "label": breakpoint_label(bp, mode),
                    "value": value,
                    "formatted": format_metric_value(value, metric),
                }
                for bp, value in row.breakpoint_values.items()
            ],
            "weightedAverage": row.weighted_average,
        })
    return records
