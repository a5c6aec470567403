from __future__ import annotations
from typing import Any, Dict, List
from traffboard_reports.types import DataTransformStep, TransformType


class TransformBuilder:
    """Chains transform steps, numbering ``order`` from 1 in call sequence."""

    def __init__(self):
        self._transforms: List[DataTransformStep] = []
        self._current_order = 1

    def _append(self, step_id: str, step_type: TransformType, config: Dict[str, Any]) -> "TransformBuilder":
        self._transforms.append(DataTransformStep(
            id=step_id, type=step_type, order=self._current_order, config=config,
        ))
        self._current_order += 1
        return self

    def filter(self, config: Dict[str, Any]) -> "TransformBuilder":
        return self._append(f"filter_{self._current_order}", TransformType.FILTER, config)

    def aggregate(self, group_by: List[str], aggregates: Dict[str, str]) -> "TransformBuilder":
        return self._append(
            f"aggregate_{self._current_order}", TransformType.AGGREGATE,
            {"group_by": list(group_by), "aggregates": dict(aggregates)},
        )

    def cohort(self, config: Dict[str, Any]) -> "TransformBuilder":
        return self._append(f"cohort_{self._current_order}", TransformType.COHORT, config)

    def custom(self, step_id: str, config: Dict[str, Any]) -> "TransformBuilder":
        return self._append(step_id, TransformType.CUSTOM, config)

    def build(self) -> List[DataTransformStep]:
        return list(self._transforms)

    def reset(self) -> "TransformBuilder":
        self._transforms = []
        self._current_order = 1
        return self


def create_transform_builder() -> TransformBuilder:
    return TransformBuilder()
