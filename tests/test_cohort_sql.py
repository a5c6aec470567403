from datetime import date

import pytest

from traffboard_reports.cohort.processor import CohortProcessingOptions, create_cohort_processor
from traffboard_reports.cohort.sql import get_cohort_base_data
from traffboard_reports.infrastructure import db
from traffboard_reports.models.tables import PlayerData
from traffboard_reports.types import AppliedFilter, CohortConfig, CohortMetric, CohortMode, DateRange


def activity(player, ftd, day, deposits_count=0, deposits_sum=0.0, ngr=0.0, cost=0.0, partner="p1"):
    return PlayerData(
        player_id=player, original_player_id=player, first_deposit_date=ftd, partner_id=partner,
        company_name="Acme", campaign_id="c1", date=day, currency="USD",
        deposits_count=deposits_count, deposits_sum=deposits_sum, casino_real_ngr=ngr, fixed_per_player=cost,
    )


@pytest.fixture
def players(sqlite_db):
    jan1, jan2 = date(2024, 1, 1), date(2024, 1, 2)
    with db.SessionLocal() as s:
        s.add_all([
            activity("A", jan1, jan1, 1, 100.0, 20.0, 50.0),
            activity("A", jan1, date(2024, 1, 3), 1, 30.0, 5.0),
            activity("B", jan1, jan1, 1, 50.0, 10.0, 50.0),
            activity("B", jan1, date(2024, 1, 10), 2, 70.0),
            activity("C", jan2, jan2, 1, 20.0, 0.0, 40.0, partner="p2"),
            # activity before the first deposit is ignored
            activity("C", jan2, date(2023, 12, 31), 1, 999.0, 999.0, 999.0, partner="p2"),
            # outside the requested range
            activity("D", date(2024, 3, 1), date(2024, 3, 1), 1, 10.0, 0.0, 10.0),
        ])
        s.commit()


def cohort_config(**filters):
    return CohortConfig(
        mode=CohortMode.DAY,
        metric=CohortMetric.DEP2COST,
        breakpoints=[1, 3, 14],
        date_range=DateRange(date(2024, 1, 1), date(2024, 1, 31)),
        filters=filters,
    )


class TestBaseData:
    @pytest.mark.asyncio
    async def test_one_row_per_cohort_date(self, players):
        rows = await get_cohort_base_data(cohort_config())
        assert [r["cohortDate"] for r in rows] == ["2024-01-01", "2024-01-02"]

        jan1 = rows[0]
        assert jan1["cohortSize"] == 2
        assert jan1["day1_active_players"] == 0
        assert jan1["day1_deposit_sum"] == 150.0
        assert jan1["day1_ngr_sum"] == 30.0
        assert jan1["day1_cost_sum"] == 100.0
        assert jan1["day3_active_players"] == 1
        assert jan1["day3_deposit_sum"] == 180.0
        assert jan1["day14_active_players"] == 2
        assert jan1["day14_deposit_sum"] == 250.0

        jan2 = rows[1]
        assert jan2["cohortSize"] == 1
        assert jan2["day14_deposit_sum"] == 20.0
        assert jan2["day14_cost_sum"] == 40.0

    @pytest.mark.asyncio
    async def test_applied_filters_restrict_players(self, players):
        rows = await get_cohort_base_data(cohort_config(), [AppliedFilter("partnerId", "p2")])
        assert [r["cohortDate"] for r in rows] == ["2024-01-02"]

    @pytest.mark.asyncio
    async def test_config_filters(self, players):
        rows = await get_cohort_base_data(cohort_config(partnerId=["p1"]))
        assert [r["cohortDate"] for r in rows] == ["2024-01-01"]


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_processor_over_sqlite(self, players):
        processor = create_cohort_processor(
            CohortMode.DAY, CohortMetric.DEP2COST, (date(2024, 1, 1), date(2024, 1, 31)),
            options=CohortProcessingOptions(use_pipeline_mode=False),
        )
        result = await processor.process_cohorts()
        jan1 = result.data[0]
        assert jan1.ftd_count == 2
        assert jan1.breakpoint_values[1] == 150.0
        assert jan1.breakpoint_values[14] == 250.0
        assert jan1.breakpoint_values[30] == 250.0

    @pytest.mark.asyncio
    async def test_pipelined_matches_standard(self, players):
        date_range = (date(2024, 1, 1), date(2024, 1, 31))
        standard = create_cohort_processor("day", "roas", date_range,
                                           options=CohortProcessingOptions(use_pipeline_mode=False))
        pipelined = create_cohort_processor("day", "roas", date_range,
                                            options=CohortProcessingOptions(use_pipeline_mode=True, batch_size=7,
                                                                            max_concurrency=1))
        expected = await standard.process_cohorts()
        result = await pipelined.process_cohorts()
        assert result.data == expected.data
        assert result.metadata.pipeline_metrics["batches_processed"] == 5
