from .metrics import (
    calculate_cohort_metrics, calculate_detailed_metric, calculate_all_metrics, validate_metric_input,
    get_metric_display_name, get_metric_description, get_metric_unit,
)
from .sql import build_cohort_query, get_cohort_base_data
from .formatting import breakpoint_label, format_cohort_results, cohort_rows_to_records
from .batching import CohortPipelineProcessor, create_pipeline_processor
from .processor import (
    CohortProcessor, CohortProcessingOptions, CohortProcessingResult, create_cohort_processor,
    process_cohort_analysis,
)

__all__ = [
    "calculate_cohort_metrics",
    "calculate_detailed_metric",
    "calculate_all_metrics",
    "validate_metric_input",
    "get_metric_display_name",
    "get_metric_description",
    "get_metric_unit",
    "build_cohort_query",
    "get_cohort_base_data",
    "breakpoint_label",
    "format_cohort_results",
    "cohort_rows_to_records",
    "CohortPipelineProcessor",
    "create_pipeline_processor",
    "CohortProcessor",
    "CohortProcessingOptions",
    "CohortProcessingResult",
    "create_cohort_processor",
    "process_cohort_analysis",
]
