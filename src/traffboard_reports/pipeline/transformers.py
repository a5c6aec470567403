"""Row transforms applied by data pipelines in ascending step order."""
from __future__ import annotations
import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

import pandas as pd
from prometheus_client import Counter

from traffboard_reports.exceptions import TransformError
from traffboard_reports.types import AppliedFilter, DataTransformStep, TransformType

logger = logging.getLogger(__name__)

TRANSFORMS_APPLIED = Counter('report_transforms_applied_total', 'Transform steps applied', ['transform_type', 'result'])

Row = Dict[str, Any]
CustomTransform = Callable[[List[Row], Dict[str, Any], List[AppliedFilter]], List[Row]]

AGGREGATE_FUNCTIONS = {
    "sum": "sum",
    "avg": "mean",
    "mean": "mean",
    "count": "count",
    "min": "min",
    "max": "max",
}

COHORT_TIMEFRAMES = {"daily": "day", "weekly": "week", "monthly": "month"}

def _matches(value: Any, expected: Any) -> bool:
    if isinstance(expected, (list, tuple, set)):
        return value in expected
    if isinstance(expected, dict) and ("min" in expected or "max" in expected):
        if value is None:
            return False
        if expected.get("min") is not None and value < expected["min"]:
            return False
        if expected.get("max") is not None and value > expected["max"]:
            return False
        return True
    return value == expected


def filter_rows(rows: List[Row], config: Dict[str, Any], filters: List[AppliedFilter]) -> List[Row]:
    """Keep rows matching every config condition and every applied filter naming a row field."""
    conditions = dict(config)
    if rows:
        for f in filters:
            if f.value is not None and f.id in rows[0] and f.id not in conditions:
                conditions[f.id] = f.value
    if not conditions:
        return list(rows)
    return [row for row in rows if all(_matches(row.get(k), v) for k, v in conditions.items())]


def aggregate_rows(rows: List[Row], config: Dict[str, Any]) -> List[Row]:
    group_by = config.get("group_by") or config.get("groupBy") or []
    aggregates = config.get("aggregates") or {}
    if not rows:
        return []

    df = pd.DataFrame(rows)
    missing = [col for col in group_by if col not in df.columns]
    if not group_by or missing:
        logger.debug(f"Aggregate skipped, missing group columns: {missing or group_by}")
        return list(rows)

    grouped = df.groupby(group_by, dropna=False, sort=True)
    result = grouped.size().to_frame("_size")
    for column, func_name in aggregates.items():
        func = AGGREGATE_FUNCTIONS.get(func_name)
        if func is None:
            raise ValueError(f"Unsupported aggregate function '{func_name}' for column '{column}'")
        if column in df.columns:
            result[column] = grouped[column].agg(func)
        elif func == "count":
            # counting a virtual column counts the rows of the group
            result[column] = result["_size"]
    result = result.drop(columns="_size").reset_index()
    return result.to_dict(orient="records")


def _to_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return pd.Timestamp(value).date()


def _bucket(value: date, unit: str) -> str:
    if unit == "day":
        return value.isoformat()
    if unit == "week":
        iso = value.isocalendar()
        return f"{iso[0]}-W{iso[1]:02d}"
    return value.strftime("%Y-%m")


def _period(cohort_start: date, activity: date, unit: str) -> int:
    if unit == "day":
        return (activity - cohort_start).days
    if unit == "week":
        return (activity - cohort_start).days // 7
    return (activity.year - cohort_start.year) * 12 + activity.month - cohort_start.month


def cohort_rows(rows: List[Row], config: Dict[str, Any]) -> List[Row]:
    """Tag rows with their cohort bucket and the period offset of the activity date."""
    timeframe = config.get("timeframe", "monthly")
    unit = COHORT_TIMEFRAMES.get(timeframe)
    if unit is None:
        raise ValueError(f"Unsupported cohort timeframe '{timeframe}'")
    cohort_field = config.get("cohort_field", "first_deposit_date")
    date_field = config.get("date_field", "date")
    output_field = config.get("output_field", f"cohort_{unit}")

    result = []
    for row in rows:
        activity = _to_date(row.get(date_field))
        cohort_start = _to_date(row.get(cohort_field)) or activity
        tagged = dict(row)
        if cohort_start is None:
            tagged[output_field] = None
            tagged["period"] = None
        else:
            tagged[output_field] = _bucket(cohort_start, unit)
            tagged["period"] = _period(cohort_start, activity, unit) if activity else 0
        result.append(tagged)
    return result


def custom_rows(rows: List[Row], step: DataTransformStep, filters: List[AppliedFilter],
                custom_transforms: Mapping[str, CustomTransform]) -> List[Row]:
    name = step.config.get("function", step.id)
    func = custom_transforms.get(name)
    if func is None:
        raise ValueError(f"No custom transform registered as '{name}'")
    return list(func(rows, step.config, filters))


def apply_transform(rows: List[Row], step: DataTransformStep,
                    filters: Optional[List[AppliedFilter]] = None,
                    custom_transforms: Optional[Mapping[str, CustomTransform]] = None) -> List[Row]:
    filters = filters or []
    transform_type = str(getattr(step.type, "value", step.type))
    try:
        if transform_type == TransformType.FILTER.value:
            result = filter_rows(rows, step.config, filters)
        elif transform_type == TransformType.AGGREGATE.value:
            result = aggregate_rows(rows, step.config)
        elif transform_type == TransformType.COHORT.value:
            result = cohort_rows(rows, step.config)
        elif transform_type == TransformType.CUSTOM.value:
            result = custom_rows(rows, step, filters, custom_transforms or {})
        else:
            raise ValueError(f"Unknown transform type '{transform_type}'")
    except Exception as e:
        TRANSFORMS_APPLIED.labels(transform_type=transform_type, result='error').inc()
        logger.error(f"Transform {step.id} ({transform_type}) failed: {e}")
        raise TransformError(step.id, str(e)) from e

    TRANSFORMS_APPLIED.labels(transform_type=transform_type, result='success').inc()
    return result
