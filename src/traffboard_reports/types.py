"""
Report Factory record types

Shared dataclasses and enums used by the pipeline, cohort engine and plugin
registry. ``ReportData`` is the uniform output contract returned by every
pipeline execution and every plugin data processor.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union


class ReportType(str, Enum):
    CONVERSION = "conversion"
    COHORT = "cohort"
    PLAYER = "player"
    TRAFFIC = "traffic"
    CUSTOM = "custom"


class FilterType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    SELECT = "select"
    MULTISELECT = "multiselect"
    DATE = "date"
    DATERANGE = "daterange"
    BOOLEAN = "boolean"


class SourceType(str, Enum):
    DATABASE = "database"
    API = "api"
    FILE = "file"
    MEMORY = "memory"


class TransformType(str, Enum):
    FILTER = "filter"
    AGGREGATE = "aggregate"
    COHORT = "cohort"
    CUSTOM = "custom"


class CacheStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    PARTIAL = "partial"


class CohortMode(str, Enum):
    DAY = "day"
    WEEK = "week"


class CohortMetric(str, Enum):
    DEP2COST = "dep2cost"
    ROAS = "roas"
    AVG_DEPOSIT_SUM = "avg_deposit_sum"
    RETENTION_RATE = "retention_rate"


# Week breakpoints are expressed in days so both modes share the day{N}_* columns
COHORT_BREAKPOINTS: Dict[CohortMode, List[int]] = {
    CohortMode.DAY: [1, 3, 5, 7, 14, 17, 21, 24, 27, 30],
    CohortMode.WEEK: [7, 14, 21, 28, 35, 42],
}

FilterValue = Any


# =============================================================================
# FILTERS
# =============================================================================

@dataclass
class FilterOption:
    label: str
    value: Any


@dataclass
class FilterValidationRule:
    pattern: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    custom: Optional[Callable[[FilterValue], Optional[str]]] = None


@dataclass
class FilterDefinition:
    id: str
    label: str
    type: FilterType
    required: bool = False
    group: Optional[str] = None
    order: Optional[int] = None
    options: List[FilterOption] = field(default_factory=list)
    placeholder: Optional[str] = None
    default_value: FilterValue = None
    validation: Optional[FilterValidationRule] = None


@dataclass
class AppliedFilter:
    id: str
    value: FilterValue
    operator: str = "eq"
    label: Optional[str] = None


# =============================================================================
# PIPELINE
# =============================================================================

@dataclass
class DataSourceConfig:
    id: str
    type: Union[SourceType, str]
    connection_string: str = ""
    query: Optional[str] = None  # table name, endpoint path or file path
    timeout: int = 30_000  # milliseconds
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DataTransformStep:
    id: str
    type: Union[TransformType, str]
    order: int
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CacheConfig:
    enabled: bool = True
    ttl: int = 300  # seconds
    strategy: str = "memory"
    invalidation_rules: List[str] = field(default_factory=list)


@dataclass
class OutputConfig:
    format: str = "json"
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DataPipeline:
    id: str
    source: Optional[DataSourceConfig]
    transforms: List[DataTransformStep]
    cache: CacheConfig
    output: OutputConfig = field(default_factory=OutputConfig)


@dataclass
class PipelineExecutionOptions:
    skip_cache: bool = False
    timeout: Optional[int] = None  # milliseconds
    max_rows: Optional[int] = None


@dataclass
class ReportMetadata:
    execution_time: float  # milliseconds
    data_version: str
    cache_status: CacheStatus
    last_refresh: datetime
    query_hash: str
    filters: List[FilterValue] = field(default_factory=list)


@dataclass
class ReportData:
    rows: List[Any]
    total_count: int
    metadata: ReportMetadata


@dataclass
class CacheEntry:
    data: Any
    expires: float  # epoch seconds


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str]

    @property
    def is_valid(self) -> bool:
        return self.valid


# =============================================================================
# PLUGINS
# =============================================================================

@dataclass
class ExportFormat:
    id: str
    name: str
    extension: str
    mime_type: str
    supports: List[str] = field(default_factory=list)


@dataclass
class BaseReportConfig:
    id: str
    title: str
    type: ReportType
    description: Optional[str] = None


DataProcessor = Callable[[List[Any], BaseReportConfig, List[AppliedFilter]], Awaitable[ReportData]]


@dataclass
class ReportPlugin:
    id: str
    name: str
    version: str
    type: ReportType
    component: Any
    config_schema: List[FilterDefinition]
    data_processor: DataProcessor
    export_formats: List[ExportFormat]
    dependencies: Optional[List[str]] = None
    description: Optional[str] = None


# =============================================================================
# COHORTS
# =============================================================================

@dataclass
class DateRange:
    start: date
    end: date

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(f"Date range end {self.end} is before start {self.start}")

    @property
    def days(self) -> int:
        return (self.end - self.start).days


@dataclass
class CohortConfig:
    mode: CohortMode
    metric: CohortMetric
    breakpoints: List[int]
    date_range: DateRange
    filters: Dict[str, FilterValue] = field(default_factory=dict)


@dataclass
class CohortData:
    cohort_date: str
    ftd_count: int
    breakpoint_values: Dict[int, Optional[float]]
    weighted_average: Optional[float] = None  # plain mean of defined breakpoint values


@dataclass
class MetricInput:
    active_players: float
    deposit_sum: float
    ngr_sum: float
    cost_sum: float
    cohort_size: float


@dataclass
class MetricCalculationInput(MetricInput):
    metric: Union[CohortMetric, str] = CohortMetric.DEP2COST


@dataclass
class MetricResult:
    value: Optional[float]
    raw_value: float
    formatted: str
    is_valid: bool
