"""Data extractors: pull raw rows for a pipeline source.

Each source type maps to an async extractor ``(source, filters) -> rows``.
Blocking I/O (SQLAlchemy, requests, pandas) runs in the default executor so
pipeline execution only suspends at the extraction boundary.
"""
from __future__ import annotations
import asyncio
import logging
import re
import time
from datetime import date, datetime
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import pandas as pd
import requests
from prometheus_client import Counter, Histogram
from sqlalchemy import select

from traffboard_reports.exceptions import ExtractionError
from traffboard_reports.infrastructure import db
from traffboard_reports.models.tables import FILTER_COLUMNS, TABLES
from traffboard_reports.types import AppliedFilter, DataSourceConfig, SourceType

logger = logging.getLogger(__name__)

EXTRACTOR_CALLS = Counter('report_extractor_calls_total', 'Extractor invocations', ['source_type', 'result'])
EXTRACTOR_ROWS = Counter('report_extractor_rows_total', 'Rows returned by extractors', ['source_type'])
EXTRACTOR_LATENCY = Histogram('report_extractor_latency_seconds', 'Extractor latency', ['source_type'],
                              buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60))

Row = Dict[str, Any]
Extractor = Callable[[DataSourceConfig, List[AppliedFilter]], Awaitable[List[Row]]]

def source_type_key(source_type: Any) -> str:
    return str(getattr(source_type, "value", source_type))


def _camel_to_snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _as_date(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    return value


def _date_bounds(value: Any):
    if isinstance(value, dict):
        return _as_date(value.get("start")), _as_date(value.get("end"))
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return _as_date(value[0]), _as_date(value[1])
    start = getattr(value, "start", None)
    end = getattr(value, "end", None)
    return _as_date(start), _as_date(end)


async def _run_blocking(func: Callable[[], Any]) -> Any:
    return await asyncio.get_event_loop().run_in_executor(None, func)


# =============================================================================
# BUILT-IN EXTRACTORS
# =============================================================================

def _query_table(source: DataSourceConfig, filters: List[AppliedFilter]) -> List[Row]:
    table = TABLES.get(source.query or "")
    if table is None:
        raise ValueError(f"Unknown table '{source.query}'")

    columns = table.__table__.columns
    aliases = FILTER_COLUMNS.get(table.__tablename__, {})
    stmt = select(table)
    for f in filters:
        if f.value is None:
            continue
        if f.id == "dateRange":
            start, end = _date_bounds(f.value)
            if start is not None:
                stmt = stmt.where(table.date >= start)
            if end is not None:
                stmt = stmt.where(table.date <= end)
            continue
        column_name = aliases.get(f.id) or (f.id if f.id in columns else _camel_to_snake(f.id))
        if column_name not in columns:
            logger.debug(f"Filter {f.id} has no column on {table.__tablename__}; skipped")
            continue
        column = getattr(table, column_name)
        if isinstance(f.value, (list, tuple, set)):
            stmt = stmt.where(column.in_(list(f.value)))
        else:
            stmt = stmt.where(column == f.value)

    limit = source.options.get("limit")
    if limit:
        stmt = stmt.limit(int(limit))

    session = db.SessionLocal()
    try:
        records = session.execute(stmt).scalars().all()
        return [{c.name: getattr(record, c.name) for c in columns} for record in records]
    finally:
        session.close()


async def extract_from_database(source: DataSourceConfig, filters: List[AppliedFilter]) -> List[Row]:
    return await _run_blocking(lambda: _query_table(source, filters))


def _fetch_api(source: DataSourceConfig, filters: List[AppliedFilter]) -> List[Row]:
    params = {f.id: f.value for f in filters if isinstance(f.value, (str, int, float, bool))}
    headers = source.options.get("headers") or {}
    resp = requests.get(source.connection_string, params=params, headers=headers,
                        timeout=max(source.timeout, 1) / 1000)
    resp.raise_for_status()
    payload = resp.json()
    if isinstance(payload, dict):
        payload = payload.get("data", [])
    if not isinstance(payload, list):
        raise ValueError("API response is not a list of records")
    return payload


async def extract_from_api(source: DataSourceConfig, filters: List[AppliedFilter]) -> List[Row]:
    return await _run_blocking(lambda: _fetch_api(source, filters))


def _read_file(source: DataSourceConfig) -> List[Row]:
    df = pd.read_csv(source.query or source.connection_string)
    df = df.astype(object).where(df.notna(), None)
    return df.to_dict(orient="records")


async def extract_from_file(source: DataSourceConfig, filters: List[AppliedFilter]) -> List[Row]:
    return await _run_blocking(lambda: _read_file(source))


async def extract_from_memory(source: DataSourceConfig, filters: List[AppliedFilter]) -> List[Row]:
    rows = source.options.get("rows", [])
    if callable(rows):
        rows = rows(filters)
    return [dict(row) for row in rows]


# Read-only; each DataPipelineManager copies these into its own registry.
DEFAULT_EXTRACTORS: Mapping[str, Extractor] = MappingProxyType({
    SourceType.DATABASE.value: extract_from_database,
    SourceType.API.value: extract_from_api,
    SourceType.FILE.value: extract_from_file,
    SourceType.MEMORY.value: extract_from_memory,
})


# =============================================================================
# PUBLIC API
# =============================================================================

async def extract_data(source: DataSourceConfig, filters: Optional[List[AppliedFilter]] = None,
                       extractors: Optional[Mapping[str, Extractor]] = None) -> List[Row]:
    """Extract raw rows for ``source``, bounded by ``source.timeout`` milliseconds.

    ``extractors`` maps source type to extractor; the built-in set is used
    when omitted.
    """
    filters = filters or []
    source_type = source_type_key(source.type)
    extractor = (DEFAULT_EXTRACTORS if extractors is None else extractors).get(source_type)
    if extractor is None:
        raise ExtractionError(source.id, f"Unsupported source type: {source_type}")

    start = time.time()
    try:
        if source.timeout and source.timeout > 0:
            rows = await asyncio.wait_for(extractor(source, filters), timeout=source.timeout / 1000)
        else:
            rows = await extractor(source, filters)
    except ExtractionError:
        EXTRACTOR_CALLS.labels(source_type=source_type, result='error').inc()
        raise
    except asyncio.TimeoutError:
        EXTRACTOR_CALLS.labels(source_type=source_type, result='timeout').inc()
        raise ExtractionError(source.id, f"timed out after {source.timeout}ms")
    except Exception as e:
        EXTRACTOR_CALLS.labels(source_type=source_type, result='error').inc()
        logger.error(f"Extraction from {source.id} ({source_type}) failed: {e}")
        raise ExtractionError(source.id, str(e)) from e
    finally:
        EXTRACTOR_LATENCY.labels(source_type=source_type).observe(time.time() - start)

    EXTRACTOR_CALLS.labels(source_type=source_type, result='success').inc()
    EXTRACTOR_ROWS.labels(source_type=source_type).inc(len(rows))
    logger.debug(f"Extracted {len(rows)} rows from {source.id}")
    return rows
