import asyncio
import base64
import json
from datetime import date

import pytest

from traffboard_reports.cohort.batching import create_pipeline_processor, split_date_range
from traffboard_reports.cohort.formatting import cohort_rows_to_records, format_cohort_results
from traffboard_reports.cohort.processor import (
    CohortProcessingOptions, CohortProcessor, create_cohort_processor,
)
from traffboard_reports.config import Settings
from traffboard_reports.exceptions import CohortProcessingError
from traffboard_reports.types import (
    COHORT_BREAKPOINTS, AppliedFilter, CohortConfig, CohortData, CohortMetric, CohortMode, DateRange,
)


def base_row(cohort_date, size, **breakpoints):
    row = {"cohortDate": cohort_date, "cohortSize": size}
    for bp, (active, deposit, ngr, cost) in breakpoints.items():
        prefix = bp
        row.update({
            f"{prefix}_active_players": active,
            f"{prefix}_deposit_sum": deposit,
            f"{prefix}_ngr_sum": ngr,
            f"{prefix}_cost_sum": cost,
        })
    return row


class RecordingFetcher:
    def __init__(self, rows=None, fail_on=None, delay=0.0):
        self.rows = rows or []
        self.fail_on = fail_on
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.peak = 0

    async def __call__(self, config, filters):
        self.calls.append(config.date_range)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.fail_on is not None and config.date_range.start == self.fail_on:
                raise RuntimeError("store unavailable")
            return [dict(r) for r in self.rows if config.date_range.start.isoformat() <= r["cohortDate"]
                    <= config.date_range.end.isoformat()]
        finally:
            self.in_flight -= 1


def config(mode=CohortMode.DAY, metric=CohortMetric.DEP2COST, breakpoints=None,
           start=date(2024, 1, 1), end=date(2024, 1, 31)):
    return CohortConfig(
        mode=mode,
        metric=metric,
        breakpoints=breakpoints or list(COHORT_BREAKPOINTS[mode]),
        date_range=DateRange(start, end),
    )


class TestWeightedAverage:
    def test_mean_of_defined_values(self):
        assert CohortProcessor.calculate_weighted_average({7: 20.0, 14: None, 30: 40.0}) == 30.0

    def test_none_when_nothing_defined(self):
        assert CohortProcessor.calculate_weighted_average({7: None, 14: None}) is None


class TestStandardMode:
    @pytest.mark.asyncio
    async def test_rollup_and_metric_values(self):
        rows = [
            base_row("2024-01-01", 10, day1=(2, 100, 50, 200), day3=(4, 300, 90, 200)),
            base_row("2024-01-01", 5, day1=(1, 100, 10, 0), day3=(1, 100, 10, 100)),
            base_row("2024-01-02", 0, day1=(0, 0, 0, 0)),
        ]
        fetcher = RecordingFetcher(rows)
        processor = CohortProcessor(config(breakpoints=[1, 3]), CohortProcessingOptions(use_pipeline_mode=False),
                                    fetch_base_data=fetcher)

        result = await processor.process_cohorts()

        first, second = result.data
        assert first.cohort_date == "2024-01-01"
        assert first.ftd_count == 15
        # day1: deposits 200 / cost 200; day3: deposits 400 / cost 300
        assert first.breakpoint_values == {1: 100.0, 3: pytest.approx(133.333, rel=1e-3)}
        assert first.weighted_average == pytest.approx((100.0 + 133.3333) / 2, rel=1e-3)
        # zero cost, missing day3 columns
        assert second.breakpoint_values == {1: None, 3: None}
        assert second.weighted_average is None
        assert len(fetcher.calls) == 1

    @pytest.mark.asyncio
    async def test_explicit_ftd_count_column_is_summed(self):
        rows = [
            {**base_row("2024-01-01", 10, day7=(1, 10, 1, 10)), "ftdCount": 3},
            {**base_row("2024-01-01", 10, day7=(1, 10, 1, 10)), "ftdCount": 4},
        ]
        processor = CohortProcessor(config(breakpoints=[7]), fetch_base_data=RecordingFetcher(rows))
        result = await processor.process_cohorts()
        assert result.data[0].ftd_count == 7

    @pytest.mark.asyncio
    async def test_breakpoint_order_and_metadata(self, clock):
        rows = [base_row("2024-01-03", 4, day14=(1, 1, 1, 1), day7=(2, 2, 2, 2))]
        processor = CohortProcessor(config(CohortMode.WEEK, CohortMetric.RETENTION_RATE),
                                    fetch_base_data=RecordingFetcher(rows), clock=clock)
        result = await processor.process_cohorts([AppliedFilter("partnerId", "p1")])

        assert list(result.data[0].breakpoint_values) == [7, 14, 21, 28, 35, 42]
        assert result.data[0].breakpoint_values[7] == 50.0
        assert result.data[0].breakpoint_values[21] == 0.0
        assert result.metadata.total_cohorts == 1
        assert result.metadata.breakpoints_used == [7, 14, 21, 28, 35, 42]
        assert result.metadata.breakpoint_labels[14] == "Week 2"
        assert result.metadata.pipeline_metrics is None

        decoded = json.loads(base64.b64decode(result.metadata.query_hash))
        assert decoded["filters"] == [{"id": "partnerId", "value": "p1"}]
        assert decoded["timestamp"] == int(clock.now // 300)
        assert decoded["config"]["metric"] == "retention_rate"

    @pytest.mark.asyncio
    async def test_query_hash_stable_within_bucket(self, clock):
        processor = CohortProcessor(config(), fetch_base_data=RecordingFetcher(), clock=clock)
        clock.now = 3000.0
        first = processor.generate_query_hash([])
        clock.advance(299)
        assert processor.generate_query_hash([]) == first
        clock.advance(1)
        assert processor.generate_query_hash([]) != first

    @pytest.mark.asyncio
    async def test_max_cohorts(self):
        rows = [base_row(f"2024-01-{d:02d}", 1) for d in range(1, 6)]
        processor = CohortProcessor(config(), CohortProcessingOptions(max_cohorts=3),
                                    fetch_base_data=RecordingFetcher(rows))
        result = await processor.process_cohorts()
        assert [r.cohort_date for r in result.data] == ["2024-01-01", "2024-01-02", "2024-01-03"]

    @pytest.mark.asyncio
    async def test_empty_base_data(self):
        processor = CohortProcessor(config(), fetch_base_data=RecordingFetcher([]))
        result = await processor.process_cohorts()
        assert result.data == []
        assert result.metadata.total_cohorts == 0

    @pytest.mark.asyncio
    async def test_fetch_failure_wrapped(self):
        async def broken(cfg, filters):
            raise RuntimeError("connection refused")

        processor = CohortProcessor(config(), fetch_base_data=broken)
        with pytest.raises(CohortProcessingError) as exc:
            await processor.process_cohorts()
        assert str(exc.value) == "Cohort processing failed: connection refused"


class TestPipelinedMode:
    def test_auto_selected_for_long_ranges(self):
        long_range = create_cohort_processor("day", "roas", (date(2024, 1, 1), date(2024, 6, 1)),
                                             fetch_base_data=RecordingFetcher())
        short_range = create_cohort_processor("day", "roas", (date(2024, 1, 1), date(2024, 2, 1)),
                                              fetch_base_data=RecordingFetcher())
        assert long_range.mode == "pipelined"
        assert short_range.mode == "standard"

    def test_explicit_override(self):
        processor = create_cohort_processor(
            CohortMode.DAY, CohortMetric.ROAS, DateRange(date(2024, 1, 1), date(2024, 1, 10)),
            options=CohortProcessingOptions(use_pipeline_mode=True), fetch_base_data=RecordingFetcher(),
        )
        assert processor.mode == "pipelined"

    def test_threshold_from_settings(self, monkeypatch):
        monkeypatch.setenv("COHORT_PIPELINE_THRESHOLD_DAYS", "5")
        from traffboard_reports.config import reset_settings
        reset_settings()
        processor = create_cohort_processor("day", "roas", (date(2024, 1, 1), date(2024, 1, 10)),
                                            fetch_base_data=RecordingFetcher())
        assert processor.mode == "pipelined"

    def test_shared_options_are_not_mutated(self):
        shared = CohortProcessingOptions(batch_size=7)
        long_range = create_cohort_processor("day", "roas", (date(2024, 1, 1), date(2024, 12, 31)),
                                             options=shared, fetch_base_data=RecordingFetcher())
        short_range = create_cohort_processor("day", "roas", (date(2024, 1, 1), date(2024, 1, 10)),
                                              options=shared, fetch_base_data=RecordingFetcher())

        assert long_range.mode == "pipelined"
        assert short_range.mode == "standard"
        assert shared == CohortProcessingOptions(batch_size=7)
        assert short_range.options.batch_size == 7
        assert short_range.options.max_cohorts == 100

    def test_processor_resolves_defaults_on_a_copy(self):
        options = CohortProcessingOptions()
        processor = CohortProcessor(config(), options, fetch_base_data=RecordingFetcher())
        assert processor.options.max_concurrency == 4
        assert options.max_concurrency is None
        assert options.use_pipeline_mode is None

    def test_injected_settings_drive_threshold_and_defaults(self):
        settings = Settings(COHORT_PIPELINE_THRESHOLD_DAYS=5, COHORT_BATCH_SIZE=3, COHORT_MAX_COHORTS=2)
        processor = create_cohort_processor("day", "roas", (date(2024, 1, 1), date(2024, 1, 10)),
                                            fetch_base_data=RecordingFetcher(), settings=settings)
        assert processor.mode == "pipelined"
        assert processor.options.batch_size == 3
        assert processor.options.max_cohorts == 2

    @pytest.mark.asyncio
    async def test_batches_merge_into_same_result(self):
        rows = [base_row(f"2024-01-{d:02d}", 2, day1=(1, 10, 5, 10)) for d in range(1, 11)]
        options = CohortProcessingOptions(use_pipeline_mode=True, batch_size=3, max_concurrency=2)

        standard = CohortProcessor(config(breakpoints=[1], end=date(2024, 1, 10)),
                                   fetch_base_data=RecordingFetcher(rows))
        fetcher = RecordingFetcher(rows)
        pipelined = CohortProcessor(config(breakpoints=[1], end=date(2024, 1, 10)), options,
                                    fetch_base_data=fetcher)

        expected = await standard.process_cohorts()
        result = await pipelined.process_cohorts()

        assert result.data == expected.data
        assert len(fetcher.calls) == 4
        assert result.metadata.pipeline_metrics["batches_processed"] == 4
        assert result.metadata.pipeline_metrics["total_rows"] == 10
        assert result.metadata.processing_time == result.metadata.pipeline_metrics["processing_time_ms"]

    @pytest.mark.asyncio
    async def test_batch_failure_propagates(self):
        options = CohortProcessingOptions(use_pipeline_mode=True, batch_size=5)
        fetcher = RecordingFetcher(fail_on=date(2024, 1, 6))
        processor = CohortProcessor(config(end=date(2024, 1, 20)), options, fetch_base_data=fetcher)
        with pytest.raises(CohortProcessingError) as exc:
            await processor.process_cohorts()
        assert "store unavailable" in str(exc.value)


class TestBatchProcessor:
    def test_split_date_range(self):
        windows = split_date_range(DateRange(date(2024, 1, 1), date(2024, 1, 7)), 3)
        assert [(w.start.day, w.end.day) for w in windows] == [(1, 3), (4, 6), (7, 7)]

    def test_split_rejects_non_positive_batch(self):
        with pytest.raises(ValueError):
            split_date_range(DateRange(date(2024, 1, 1), date(2024, 1, 7)), 0)

    @pytest.mark.asyncio
    async def test_concurrency_cap(self):
        fetcher = RecordingFetcher(delay=0.01)
        processor = create_pipeline_processor(batch_size=1, max_concurrency=3, fetch_base_data=fetcher)
        result = await processor.process_cohort_batches([config(end=date(2024, 1, 12))])
        assert result.metadata["batches_processed"] == 12
        assert fetcher.peak <= 3
        assert fetcher.peak > 1

    @pytest.mark.asyncio
    async def test_pipelining_disabled_runs_sequentially(self):
        fetcher = RecordingFetcher(delay=0.005)
        processor = create_pipeline_processor(batch_size=2, max_concurrency=4, enable_pipelining=False,
                                              fetch_base_data=fetcher)
        result = await processor.process_cohort_batches([config(end=date(2024, 1, 8))])
        assert fetcher.peak == 1
        assert result.metadata["max_concurrency"] == 1


class TestRecords:
    def test_format_rekeys_on_configured_breakpoints(self):
        data = [
            CohortData(cohort_date="2024-01-01", ftd_count=3, breakpoint_values={3: 20.0, 1: 10.0},
                       weighted_average=15.0),
            CohortData(cohort_date="2024-01-02", ftd_count=1, breakpoint_values={1: 5.0}, weighted_average=5.0),
        ]
        formatted = format_cohort_results(data, [1, 3, 7], max_cohorts=1)
        assert len(formatted) == 1
        assert list(formatted[0].breakpoint_values.items()) == [(1, 10.0), (3, 20.0), (7, None)]
        assert formatted[0].weighted_average == 15.0

    def test_json_records(self):
        processor = CohortProcessor(config(breakpoints=[1, 3]), fetch_base_data=RecordingFetcher())
        data = processor.process_base_data([base_row("2024-01-01", 10, day1=(2, 50, 5, 100))])
        records = cohort_rows_to_records(data, CohortMetric.DEP2COST)
        assert records[0]["cohortDate"] == "2024-01-01"
        assert records[0]["breakpoints"][0] == {"breakpoint": 1, "label": "Day 1", "value": 50.0,
                                               "formatted": "50.0%"}
        assert records[0]["breakpoints"][1]["formatted"] == "—"
