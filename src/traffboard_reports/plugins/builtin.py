"""Built-in conversion and cohort report plugins."""
from __future__ import annotations
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from traffboard_reports.cohort.formatting import cohort_rows_to_records
from traffboard_reports.filters.composer import COMMON_FILTERS, create_filter_composer
from traffboard_reports.plugins.registry import (
    DEFAULT_EXPORT_FORMATS, PluginRegistry, create_report_plugin, default_data_processor,
)
from traffboard_reports.types import (
    AppliedFilter, BaseReportConfig, CohortData, CohortMetric, CohortMode, DateRange, FilterDefinition,
    FilterOption, FilterType, ReportData, ReportPlugin, ReportType,
)

logger = logging.getLogger(__name__)

CONVERSION_PLUGIN_ID = "conversion-report"
COHORT_PLUGIN_ID = "cohort-report"


@dataclass
class CohortReportConfig(BaseReportConfig):
    mode: CohortMode = CohortMode.DAY
    metric: CohortMetric = CohortMetric.DEP2COST
    date_range: Optional[DateRange] = None


def _rate(numerator: Any, denominator: Any, scale: float = 100.0) -> Optional[float]:
    numerator = float(numerator or 0)
    denominator = float(denominator or 0)
    if denominator == 0:
        return None
    return round(numerator / denominator * scale, 2)


def conversion_rates(row: Dict[str, Any]) -> Dict[str, Optional[float]]:
    """Funnel rates derived from click/registration/FTD/deposit counts (percent)."""
    return {
        "cr": _rate(row.get("registrations_count"), row.get("unique_clicks")),
        "cftd": _rate(row.get("ftd_count"), row.get("registrations_count")),
        "cd": _rate(row.get("deposits_count"), row.get("unique_clicks")),
        "rftd": _rate(row.get("ftd_count"), row.get("unique_clicks")),
    }


async def conversion_data_processor(raw_data: List[Dict[str, Any]], config: BaseReportConfig,
                                    filters: List[AppliedFilter]) -> ReportData:
    rows = [{**row, **conversion_rates(row)} for row in raw_data]
    report = await default_data_processor(rows, config, filters)
    logger.debug(f"Conversion report {config.id}: {report.total_count} rows")
    return report


async def cohort_data_processor(raw_data: List[CohortData], config: BaseReportConfig,
                                filters: List[AppliedFilter]) -> ReportData:
    mode = getattr(config, "mode", CohortMode.DAY)
    metric = getattr(config, "metric", CohortMetric.DEP2COST)
    report = await default_data_processor(raw_data, config, filters)
    return replace(report, rows=cohort_rows_to_records(raw_data, metric, mode))


def conversion_config_schema() -> List[FilterDefinition]:
    return (
        create_filter_composer()
        .add_common("DATE_RANGE")
        .add_common("PARTNER_ID")
        .add_common("TRAFFIC_SOURCE")
        .add(FilterDefinition(id="country", label="Country", type=FilterType.TEXT, group="general", order=40,
                              placeholder="ISO country code"))
        .build()
    )


def cohort_config_schema() -> List[FilterDefinition]:
    return (
        create_filter_composer()
        .add(COMMON_FILTERS["DATE_RANGE"])
        .add(FilterDefinition(
            id="cohortMode", label="Cohort Mode", type=FilterType.SELECT, group="analytics", order=0,
            required=True, default_value=CohortMode.DAY.value,
            options=[FilterOption("Daily", CohortMode.DAY.value), FilterOption("Weekly", CohortMode.WEEK.value)],
        ))
        .add(FilterDefinition(
            id="cohortMetric", label="Metric", type=FilterType.SELECT, group="analytics", order=1,
            required=True, default_value=CohortMetric.DEP2COST.value,
            options=[FilterOption(m.value.replace("_", " ").title(), m.value) for m in CohortMetric],
        ))
        .add_common("PARTNER_ID")
        .build()
    )


def create_conversion_plugin() -> ReportPlugin:
    return create_report_plugin(
        id=CONVERSION_PLUGIN_ID,
        name="Conversion Report",
        version="1.0.0",
        type=ReportType.CONVERSION,
        component="ConversionReport",
        config_schema=conversion_config_schema(),
        data_processor=conversion_data_processor,
        export_formats=[DEFAULT_EXPORT_FORMATS.CSV, DEFAULT_EXPORT_FORMATS.EXCEL, DEFAULT_EXPORT_FORMATS.JSON],
        description="Traffic funnel with click, registration and FTD conversion rates",
    )


def create_cohort_plugin() -> ReportPlugin:
    return create_report_plugin(
        id=COHORT_PLUGIN_ID,
        name="Cohort Analysis",
        version="1.0.0",
        type=ReportType.COHORT,
        component="CohortHeatmap",
        config_schema=cohort_config_schema(),
        data_processor=cohort_data_processor,
        export_formats=[DEFAULT_EXPORT_FORMATS.CSV, DEFAULT_EXPORT_FORMATS.JSON, DEFAULT_EXPORT_FORMATS.PNG],
        description="Day/week cohort retention and monetization breakpoints",
    )


def register_builtin_plugins(registry: PluginRegistry) -> None:
    for plugin in (create_conversion_plugin(), create_cohort_plugin()):
        if not registry.has_plugin(plugin.id):
            registry.register(plugin)
