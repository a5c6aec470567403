import base64
import json
from datetime import date

import pytest

from traffboard_reports import create_report_engine
from traffboard_reports.config import Settings
from traffboard_reports.exceptions import ConfigurationError
from traffboard_reports.infrastructure import db
from traffboard_reports.models.tables import TrafficReport
from traffboard_reports.plugins.builtin import CohortReportConfig, conversion_rates
from traffboard_reports.types import (
    AppliedFilter, BaseReportConfig, CacheStatus, CohortMetric, CohortMode, DateRange, PipelineExecutionOptions,
    ReportType,
)


@pytest.fixture
def traffic(sqlite_db):
    with db.SessionLocal() as s:
        s.add_all([
            TrafficReport(date=date(2024, 1, 1), foreign_brand_id="b1", foreign_partner_id="p1",
                          foreign_campaign_id="c1", traffic_source="seo", device_type="mobile", country="DE",
                          all_clicks=250, unique_clicks=200, registrations_count=20, ftd_count=5, deposits_count=8),
            TrafficReport(date=date(2024, 1, 1), foreign_brand_id="b1", foreign_partner_id="p2",
                          foreign_campaign_id="c1", traffic_source="seo", device_type="mobile", country="FR",
                          all_clicks=0, unique_clicks=0, registrations_count=0, ftd_count=0, deposits_count=0),
        ])
        s.commit()


async def fake_cohort_base_data(config, filters):
    return [{
        "cohortDate": "2024-01-01", "cohortSize": 4,
        "day1_active_players": 2, "day1_deposit_sum": 50.0, "day1_ngr_sum": 10.0, "day1_cost_sum": 100.0,
    }]


class TestCreateReportEngine:
    def test_registers_defaults(self):
        engine = create_report_engine(fetch_cohort_base_data=fake_cohort_base_data)
        assert {p.id for p in engine.pipeline_manager.list_pipelines()} == {"conversion_default", "cohort_default"}
        assert engine.plugin_registry.get_stats()["total_plugins"] == 2
        assert engine.plugin_registry.get_export_format("excel") is not None

    def test_passed_settings_reach_default_pipelines(self):
        settings = Settings(CONVERSION_CACHE_TTL_SECONDS=10, COHORT_CACHE_TTL_SECONDS=20)
        engine = create_report_engine(settings, fetch_cohort_base_data=fake_cohort_base_data)
        assert engine.pipeline_manager.settings is settings
        assert engine.pipeline_manager.get_pipeline("conversion_default").cache.ttl == 10
        assert engine.pipeline_manager.get_pipeline("cohort_default").cache.ttl == 20


class TestConversionReport:
    @pytest.mark.asyncio
    async def test_rows_carry_conversion_rates(self, traffic):
        engine = create_report_engine()
        config = BaseReportConfig(id="conv", title="Conversions", type=ReportType.CONVERSION)

        report = await engine.generate_report(config, [AppliedFilter("country", "DE")])

        assert report.total_count == 1
        row = report.rows[0]
        assert row["foreign_partner_id"] == "p1"
        assert (row["cr"], row["cftd"], row["cd"], row["rftd"]) == (10.0, 25.0, 4.0, 2.5)
        assert report.metadata.cache_status is CacheStatus.MISS

        again = await engine.generate_report(config, [AppliedFilter("country", "DE")])
        assert again.metadata.cache_status is CacheStatus.HIT

    @pytest.mark.asyncio
    async def test_max_rows_keeps_total(self, traffic):
        engine = create_report_engine()
        config = BaseReportConfig(id="conv", title="Conversions", type=ReportType.CONVERSION)
        report = await engine.generate_report(config, options=PipelineExecutionOptions(max_rows=1))
        assert len(report.rows) == 1
        assert report.total_count == 2

    @pytest.mark.asyncio
    async def test_partner_filter_narrows_rows(self, traffic):
        engine = create_report_engine()
        config = BaseReportConfig(id="conv", title="Conversions", type=ReportType.CONVERSION)
        report = await engine.generate_report(config, [AppliedFilter("partnerId", "p2")])
        assert report.total_count == 1
        assert report.rows[0]["foreign_partner_id"] == "p2"

    def test_zero_denominators(self):
        assert conversion_rates({"unique_clicks": 0, "registrations_count": 0}) == {
            "cr": None, "cftd": None, "cd": None, "rftd": None,
        }


class TestCohortReport:
    @pytest.mark.asyncio
    async def test_cohort_records(self):
        engine = create_report_engine(fetch_cohort_base_data=fake_cohort_base_data)
        config = CohortReportConfig(id="coh", title="Cohorts", type=ReportType.COHORT, mode=CohortMode.DAY,
                                    metric=CohortMetric.DEP2COST,
                                    date_range=DateRange(date(2024, 1, 1), date(2024, 1, 31)))

        report = await engine.generate_report(config)

        assert report.total_count == 1
        record = report.rows[0]
        assert record["cohortDate"] == "2024-01-01"
        assert record["breakpoints"][0]["value"] == 50.0
        decoded = json.loads(base64.b64decode(report.metadata.query_hash))
        assert decoded["config"]["mode"] == "day"

    @pytest.mark.asyncio
    async def test_passed_settings_choose_pipelined_mode(self):
        windows = []

        async def fetch(config, filters):
            windows.append(config.date_range)
            if config.date_range.start <= date(2024, 1, 1) <= config.date_range.end:
                return await fake_cohort_base_data(config, filters)
            return []

        settings = Settings(COHORT_PIPELINE_THRESHOLD_DAYS=5, COHORT_BATCH_SIZE=10)
        engine = create_report_engine(settings, fetch_cohort_base_data=fetch)
        config = CohortReportConfig(id="coh", title="Cohorts", type=ReportType.COHORT, mode=CohortMode.DAY,
                                    metric=CohortMetric.DEP2COST,
                                    date_range=DateRange(date(2024, 1, 1), date(2024, 1, 31)))

        report = await engine.generate_report(config)

        assert len(windows) == 4
        assert report.total_count == 1
        assert report.rows[0]["breakpoints"][0]["value"] == 50.0

    @pytest.mark.asyncio
    async def test_requires_date_range(self):
        engine = create_report_engine(fetch_cohort_base_data=fake_cohort_base_data)
        with pytest.raises(ConfigurationError):
            await engine.generate_report(BaseReportConfig(id="coh", title="Cohorts", type=ReportType.COHORT))
