"""Cohort base-data query.

The store does the heavy lifting: one row per first-deposit date with
cumulative per-breakpoint sums, so in-process data stays at
cohort dates x breakpoints.

Column convention per breakpoint ``N`` (days since first deposit):
``dayN_active_players``, ``dayN_deposit_sum``, ``dayN_ngr_sum``,
``dayN_cost_sum``; plus ``cohortDate`` and ``cohortSize``.
"""
from __future__ import annotations
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from prometheus_client import Histogram
from sqlalchemy import and_, case, distinct, func, select

from traffboard_reports.infrastructure import db
from traffboard_reports.models.tables import PlayerData
from traffboard_reports.types import AppliedFilter, CohortConfig

logger = logging.getLogger(__name__)

COHORT_QUERY_LATENCY = Histogram('report_cohort_query_seconds', 'Cohort base-data query latency',
                                 buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60))

# filter id -> player_data column
FILTER_COLUMNS = {
    "partnerId": "partner_id",
    "partner_id": "partner_id",
    "campaignId": "campaign_id",
    "campaign_id": "campaign_id",
    "country": "player_country",
    "playerCountry": "player_country",
    "trafficSource": "tag_source",
    "currency": "currency",
}


def _day_offset(dialect_name: str):
    if dialect_name == "sqlite":
        return func.julianday(PlayerData.date) - func.julianday(PlayerData.first_deposit_date)
    # postgres: date - date yields an integer day count
    return PlayerData.date - PlayerData.first_deposit_date


def _merge_filters(config: CohortConfig, filters: Optional[List[AppliedFilter]]) -> Dict[str, Any]:
    merged = dict(config.filters or {})
    for f in filters or []:
        merged[f.id] = f.value
    return merged


def build_cohort_query(config: CohortConfig, filters: Optional[List[AppliedFilter]] = None,
                       dialect_name: str = "postgresql"):
    offset = _day_offset(dialect_name)
    columns = [
        PlayerData.first_deposit_date.label("cohortDate"),
        func.count(distinct(PlayerData.player_id)).label("cohortSize"),
    ]
    for breakpoint in config.breakpoints:
        within = offset <= breakpoint
        prefix = f"day{breakpoint}"
        columns.extend([
            func.count(distinct(case(
                (and_(offset > 0, within, PlayerData.deposits_count > 0), PlayerData.player_id),
            ))).label(f"{prefix}_active_players"),
            func.coalesce(func.sum(case((within, PlayerData.deposits_sum), else_=0)), 0).label(f"{prefix}_deposit_sum"),
            func.coalesce(func.sum(case((within, PlayerData.casino_real_ngr), else_=0)), 0).label(f"{prefix}_ngr_sum"),
            func.coalesce(func.sum(case((within, PlayerData.fixed_per_player), else_=0)), 0).label(f"{prefix}_cost_sum"),
        ])

    stmt = (
        select(*columns)
        .where(PlayerData.first_deposit_date.is_not(None))
        .where(PlayerData.first_deposit_date >= config.date_range.start)
        .where(PlayerData.first_deposit_date <= config.date_range.end)
        .where(offset >= 0)
    )

    for filter_id, value in _merge_filters(config, filters).items():
        column_name = FILTER_COLUMNS.get(filter_id)
        if column_name is None or value is None or value == "":
            continue
        column = getattr(PlayerData, column_name)
        if isinstance(value, (list, tuple, set)):
            stmt = stmt.where(column.in_(list(value)))
        else:
            stmt = stmt.where(column == value)

    return stmt.group_by(PlayerData.first_deposit_date).order_by(PlayerData.first_deposit_date)


def _normalize_row(mapping: Dict[str, Any]) -> Dict[str, Any]:
    row: Dict[str, Any] = {}
    for key, value in mapping.items():
        if key == "cohortDate":
            row[key] = value.isoformat() if hasattr(value, "isoformat") else str(value)
        elif key == "cohortSize" or key.endswith("_active_players"):
            row[key] = int(value or 0)
        else:
            row[key] = float(value or 0)
    return row


def _run_query(config: CohortConfig, filters: Optional[List[AppliedFilter]]) -> List[Dict[str, Any]]:
    session = db.SessionLocal()
    try:
        dialect_name = session.get_bind().dialect.name
        stmt = build_cohort_query(config, filters, dialect_name)
        return [_normalize_row(dict(r._mapping)) for r in session.execute(stmt)]
    finally:
        session.close()


async def get_cohort_base_data(config: CohortConfig,
                               filters: Optional[List[AppliedFilter]] = None) -> List[Dict[str, Any]]:
    start = time.time()
    rows = await asyncio.get_event_loop().run_in_executor(None, lambda: _run_query(config, filters))
    elapsed = time.time() - start
    COHORT_QUERY_LATENCY.observe(elapsed)
    logger.debug(
        f"Cohort base query {config.date_range.start}..{config.date_range.end} "
        f"returned {len(rows)} cohort dates in {elapsed:.3f}s"
    )
    return rows
