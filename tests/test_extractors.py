import asyncio
from datetime import date
from unittest.mock import MagicMock, patch

import pytest

from traffboard_reports.exceptions import ExtractionError
from traffboard_reports.infrastructure import db
from traffboard_reports.models.tables import TrafficReport
from traffboard_reports.pipeline.extractors import DEFAULT_EXTRACTORS, extract_data
from traffboard_reports.types import AppliedFilter, DataSourceConfig, SourceType


def traffic_row(day, partner, country, clicks):
    return TrafficReport(
        date=day, foreign_brand_id="b1", foreign_partner_id=partner, foreign_campaign_id="c1",
        traffic_source="organic", device_type="mobile", country=country,
        all_clicks=clicks, unique_clicks=clicks, registrations_count=1, ftd_count=1, deposits_count=1,
    )


@pytest.fixture
def traffic(sqlite_db):
    with db.SessionLocal() as s:
        s.add_all([
            traffic_row(date(2024, 1, 1), "p1", "DE", 10),
            traffic_row(date(2024, 1, 5), "p2", "FR", 20),
            traffic_row(date(2024, 2, 1), "p1", "FR", 30),
        ])
        s.commit()


class TestDatabaseExtractor:
    @pytest.mark.asyncio
    async def test_filters_become_where_clauses(self, traffic):
        source = DataSourceConfig(id="db", type=SourceType.DATABASE, query="traffic_reports")
        rows = await extract_data(source, [
            AppliedFilter("foreignPartnerId", "p1"),
            AppliedFilter("dateRange", {"start": "2024-01-01", "end": "2024-01-31"}),
        ])
        assert [(r["foreign_partner_id"], r["all_clicks"]) for r in rows] == [("p1", 10)]

    @pytest.mark.asyncio
    async def test_report_filter_ids_map_to_foreign_columns(self, traffic):
        source = DataSourceConfig(id="db", type=SourceType.DATABASE, query="traffic_reports")
        rows = await extract_data(source, [AppliedFilter("partnerId", "p2")])
        assert [(r["foreign_partner_id"], r["country"]) for r in rows] == [("p2", "FR")]

        rows = await extract_data(source, [AppliedFilter("partnerId", ["p1"]), AppliedFilter("country", "FR")])
        assert [r["all_clicks"] for r in rows] == [30]

    @pytest.mark.asyncio
    async def test_unknown_filter_id_is_ignored(self, traffic):
        source = DataSourceConfig(id="db", type=SourceType.DATABASE, query="traffic_reports")
        rows = await extract_data(source, [AppliedFilter("search", "anything")])
        assert len(rows) == 3

    @pytest.mark.asyncio
    async def test_list_filter_and_limit(self, traffic):
        source = DataSourceConfig(id="db", type=SourceType.DATABASE, query="traffic_reports", options={"limit": 1})
        rows = await extract_data(source, [AppliedFilter("country", ["DE", "FR"])])
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_unknown_table(self, sqlite_db):
        source = DataSourceConfig(id="db", type=SourceType.DATABASE, query="nope")
        with pytest.raises(ExtractionError) as exc:
            await extract_data(source)
        assert exc.value.source_id == "db"


class TestOtherExtractors:
    @pytest.mark.asyncio
    async def test_memory_rows_are_copied(self):
        rows = [{"a": 1}]
        source = DataSourceConfig(id="m", type=SourceType.MEMORY, options={"rows": rows})
        result = await extract_data(source)
        result[0]["a"] = 2
        assert rows == [{"a": 1}]

    @pytest.mark.asyncio
    async def test_file_source(self, tmp_path):
        path = tmp_path / "traffic.csv"
        path.write_text("partner,clicks\np1,10\np2,\n")
        source = DataSourceConfig(id="f", type=SourceType.FILE, query=str(path))
        rows = await extract_data(source)
        assert rows == [{"partner": "p1", "clicks": 10.0}, {"partner": "p2", "clicks": None}]

    @pytest.mark.asyncio
    async def test_api_source_unwraps_data_envelope(self):
        response = MagicMock()
        response.json.return_value = {"data": [{"id": 1}]}
        source = DataSourceConfig(id="api", type=SourceType.API, connection_string="https://example.test/r",
                                  timeout=5000)
        with patch("traffboard_reports.pipeline.extractors.requests.get", return_value=response) as get:
            rows = await extract_data(source, [AppliedFilter("country", "DE")])
        assert rows == [{"id": 1}]
        get.assert_called_once_with("https://example.test/r", params={"country": "DE"}, headers={}, timeout=5.0)

    @pytest.mark.asyncio
    async def test_unsupported_source_type(self):
        with pytest.raises(ExtractionError):
            await extract_data(DataSourceConfig(id="x", type="ftp"))

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(source, filters):
            await asyncio.sleep(1)
            return []

        with pytest.raises(ExtractionError) as exc:
            await extract_data(DataSourceConfig(id="s", type="slow", timeout=10), extractors={"slow": slow})
        assert "timed out" in str(exc.value)

    @pytest.mark.asyncio
    async def test_custom_extractor(self):
        async def fixed(source, filters):
            return [{"n": len(filters)}]

        extractors = {**DEFAULT_EXTRACTORS, "fixed": fixed}
        rows = await extract_data(DataSourceConfig(id="c", type="fixed"), [AppliedFilter("a", 1)], extractors)
        assert rows == [{"n": 1}]
        assert "fixed" not in DEFAULT_EXTRACTORS
