"""CSV ingestion for partner player exports and traffic/conversion exports.

Parsing never raises on bad rows: each problem becomes a row-numbered error
string and the row is skipped. Database writes do raise. Imports upsert on
each table's natural key, so re-importing a file updates rows in place.
"""
from __future__ import annotations
import io
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence

import pandas as pd
from prometheus_client import Counter
from sqlalchemy.dialects import postgresql, sqlite

from traffboard_reports.config import get_settings
from traffboard_reports.exceptions import ConfigurationError
from traffboard_reports.infrastructure import db
from traffboard_reports.models.tables import CONVERSION_UNIQUE_KEY, PLAYER_UNIQUE_KEY, PlayerData, TrafficReport

logger = logging.getLogger(__name__)

CSV_ROWS_PARSED = Counter('report_csv_rows_total', 'CSV rows parsed', ['file_type', 'result'])
CSV_ROWS_IMPORTED = Counter('report_csv_rows_imported_total', 'Rows written to the data store', ['table'])

PLAYER_REQUIRED_FIELDS = ["Player ID", "Partner ID", "Campaign ID", "Date", "Currency"]
CONVERSION_REQUIRED_FIELDS = [
    "date", "foreign_brand_id", "foreign_partner_id", "foreign_campaign_id", "device_type", "country",
]
PLAYER_DATE_FIELDS = ["Date", "Sign up date", "First deposit date"]
CONVERSION_DATE_FIELDS = ["date"]

TRUE_VALUES = {"true", "1", "yes", "y", "t"}

# dialects with INSERT .. ON CONFLICT DO UPDATE
UPSERT_DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


@dataclass
class DataProcessingResult:
    success: bool
    processed_count: int
    error_count: int
    errors: List[str] = field(default_factory=list)
    data: List[Dict[str, Any]] = field(default_factory=list)


# =============================================================================
# SAFE PARSERS
# =============================================================================

def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def safe_parse_number(value: Any) -> int:
    text = _clean(value).replace(",", "")
    if not text:
        return 0
    try:
        return int(float(text))
    except ValueError:
        return 0


def safe_parse_decimal(value: Any) -> float:
    text = _clean(value).replace(",", "").replace("$", "")
    if not text:
        return 0.0
    try:
        return round(float(text), 2)
    except ValueError:
        return 0.0


def safe_parse_boolean(value: Any) -> bool:
    return _clean(value).lower() in TRUE_VALUES


def safe_parse_date(value: Any) -> Optional[date]:
    text = _clean(value)
    if not text:
        return None
    parsed = pd.to_datetime(text, errors="coerce")
    if pd.isna(parsed):
        return None
    return parsed.date()


def _optional(value: Any) -> Optional[str]:
    return _clean(value) or None


# =============================================================================
# PARSING / VALIDATION
# =============================================================================

def parse_csv(content: str) -> tuple[List[Dict[str, str]], List[str]]:
    """Rows as string dicts keyed by header, plus parse-level errors."""
    if not content or not content.strip():
        return [], ["CSV content is empty"]
    try:
        frame = pd.read_csv(io.StringIO(content), dtype=str, keep_default_na=False, skipinitialspace=True)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        return [], [f"CSV parse error: {e}"]
    frame.columns = [str(c).strip() for c in frame.columns]
    return frame.to_dict(orient="records"), []


def validate_row(row: Dict[str, str], row_number: int, required: List[str], date_fields: List[str]) -> List[str]:
    errors = []
    for name in required:
        if not _clean(row.get(name)):
            errors.append(f"Row {row_number}: Missing required field '{name}'")
    for name in date_fields:
        text = _clean(row.get(name))
        if text and safe_parse_date(text) is None:
            errors.append(f"Row {row_number}: Invalid date in '{name}': {text}")
    return errors


def transform_player_row(row: Dict[str, str]) -> Dict[str, Any]:
    # "Partners email" is dropped on import
    return {
        "player_id": _clean(row.get("Player ID")),
        "original_player_id": _clean(row.get("Original player ID")),
        "sign_up_date": safe_parse_date(row.get("Sign up date")),
        "first_deposit_date": safe_parse_date(row.get("First deposit date")),
        "partner_id": _clean(row.get("Partner ID")),
        "company_name": _clean(row.get("Company name")),
        "partner_tags": _optional(row.get("Partner tags")),
        "campaign_id": _clean(row.get("Campaign ID")),
        "campaign_name": _optional(row.get("Campaign name")),
        "promo_id": _optional(row.get("Promo ID")),
        "promo_code": _optional(row.get("Promo code")),
        "player_country": _optional(row.get("Player country")),
        "tag_clickid": _optional(row.get("Tag: clickid")),
        "tag_os": _optional(row.get("Tag: os")),
        "tag_source": _optional(row.get("Tag: source")),
        "tag_sub2": _optional(row.get("Tag: sub2")),
        "tag_web_id": _optional(row.get("Tag: webID")),
        "date": safe_parse_date(row.get("Date")) or date.today(),
        "prequalified": safe_parse_boolean(row.get("Prequalified")),
        "duplicate": safe_parse_boolean(row.get("Duplicate")),
        "self_excluded": safe_parse_boolean(row.get("Self-excluded")),
        "disabled": safe_parse_boolean(row.get("Disabled")),
        "currency": _clean(row.get("Currency")),
        "ftd_count": safe_parse_number(row.get("FTD count")),
        "ftd_sum": safe_parse_decimal(row.get("FTD sum")),
        "deposits_count": safe_parse_number(row.get("Deposits count")),
        "deposits_sum": safe_parse_decimal(row.get("Deposits sum")),
        "cashouts_count": safe_parse_number(row.get("Cashouts count")),
        "cashouts_sum": safe_parse_decimal(row.get("Cashouts sum")),
        "casino_bets_count": safe_parse_number(row.get("Casino bets count")),
        "casino_real_ngr": safe_parse_decimal(row.get("Casino Real NGR")),
        "fixed_per_player": safe_parse_decimal(row.get("Fixed per player")),
        "casino_bets_sum": safe_parse_decimal(row.get("Casino bets sum")),
        "casino_wins_sum": safe_parse_decimal(row.get("Casino wins sum")),
    }


def transform_conversion_row(row: Dict[str, str]) -> Dict[str, Any]:
    # stored rows carry raw counts only; rates are derived at report time
    return {
        "date": safe_parse_date(row.get("date")) or date.today(),
        "foreign_brand_id": _clean(row.get("foreign_brand_id")),
        "foreign_partner_id": _clean(row.get("foreign_partner_id")),
        "foreign_campaign_id": _clean(row.get("foreign_campaign_id")),
        "foreign_landing_id": _optional(row.get("foreign_landing_id")),
        "traffic_source": _clean(row.get("traffic_source")) or "unknown",
        "device_type": _clean(row.get("device_type")),
        "user_agent_family": _optional(row.get("user_agent_family")),
        "os_family": _optional(row.get("os_family")),
        "country": _clean(row.get("country")),
        "all_clicks": safe_parse_number(row.get("all_clicks")),
        "unique_clicks": safe_parse_number(row.get("unique_clicks")),
        "registrations_count": safe_parse_number(row.get("registrations_count")),
        "ftd_count": safe_parse_number(row.get("ftd_count")),
        "deposits_count": safe_parse_number(row.get("deposits_count")),
    }


def _process_csv(content: str, file_type: str, required: List[str], date_fields: List[str],
                 transform: Callable[[Dict[str, str]], Dict[str, Any]]) -> DataProcessingResult:
    rows, errors = parse_csv(content)
    data: List[Dict[str, Any]] = []

    for index, row in enumerate(rows):
        row_number = index + 1
        row_errors = validate_row(row, row_number, required, date_fields)
        if row_errors:
            errors.extend(row_errors)
            CSV_ROWS_PARSED.labels(file_type=file_type, result='rejected').inc()
            continue
        try:
            data.append(transform(row))
        except Exception as e:
            errors.append(f"Row {row_number}: Transformation error - {e}")
            CSV_ROWS_PARSED.labels(file_type=file_type, result='rejected').inc()
            continue
        CSV_ROWS_PARSED.labels(file_type=file_type, result='accepted').inc()

    if errors:
        logger.warning(f"{file_type} CSV: {len(data)} rows accepted, {len(errors)} errors (first: {errors[0]})")
    return DataProcessingResult(
        success=not errors,
        processed_count=len(data),
        error_count=len(errors),
        errors=errors,
        data=data,
    )


def process_player_data_csv(content: str) -> DataProcessingResult:
    return _process_csv(content, "player", PLAYER_REQUIRED_FIELDS, PLAYER_DATE_FIELDS, transform_player_row)


def process_conversion_data_csv(content: str) -> DataProcessingResult:
    return _process_csv(content, "conversion", CONVERSION_REQUIRED_FIELDS, CONVERSION_DATE_FIELDS,
                        transform_conversion_row)


# =============================================================================
# IMPORT
# =============================================================================

def _upsert_statement(session, model, key: Sequence[str]):
    dialect = session.get_bind().dialect.name
    insert = UPSERT_DIALECTS.get(dialect)
    if insert is None:
        raise ConfigurationError(f"CSV import upsert is not supported on {dialect}")
    table = model.__table__
    stmt = insert(table)
    updates = {
        c.name: stmt.excluded[c.name]
        for c in table.columns
        if c.name not in key and not c.primary_key and c.name != "created_at"
    }
    return stmt.on_conflict_do_update(index_elements=list(key), set_=updates)


def _bulk_upsert(model, rows: List[Dict[str, Any]], key: Sequence[str], batch_size: Optional[int] = None) -> int:
    if not rows:
        return 0
    batch_size = batch_size or get_settings().ingest_batch_upsert_size
    # a later row in the same file wins over an earlier one with the same key
    unique_rows = list({tuple(r.get(k) for k in key): r for r in rows}.values())
    written = 0
    with db.SessionLocal() as s:
        stmt = _upsert_statement(s, model, key)
        for start in range(0, len(unique_rows), batch_size):
            chunk = unique_rows[start:start + batch_size]
            try:
                s.execute(stmt, chunk)
                s.commit()
            except Exception:
                s.rollback()
                logger.error(f"Upsert into {model.__tablename__} failed after {written} rows")
                raise
            written += len(chunk)
    CSV_ROWS_IMPORTED.labels(table=model.__tablename__).inc(written)
    logger.info(f"Upserted {written} rows into {model.__tablename__}")
    return written


def create_players_from_import(rows: List[Dict[str, Any]], batch_size: Optional[int] = None) -> int:
    return _bulk_upsert(PlayerData, rows, PLAYER_UNIQUE_KEY, batch_size)


def create_conversions_from_import(rows: List[Dict[str, Any]], batch_size: Optional[int] = None) -> int:
    return _bulk_upsert(TrafficReport, rows, CONVERSION_UNIQUE_KEY, batch_size)


def process_csv_import(content: str, file_type: str) -> Dict[str, Any]:
    """Parse and import in one step; valid rows are imported even when other rows fail."""
    if file_type == "player":
        result = process_player_data_csv(content)
        count = create_players_from_import(result.data)
    else:
        result = process_conversion_data_csv(content)
        count = create_conversions_from_import(result.data)

    if result.errors:
        return {
            "success": False,
            "processed_count": count,
            "errors": result.errors,
            "message": "Processing completed with errors",
        }
    return {"success": True, "processed_count": count, "errors": [], "message": "File processed successfully"}


def validate_csv_content(content: str, file_type: str) -> Dict[str, Any]:
    """Dry run: errors, a short preview and the number of importable records."""
    try:
        if file_type == "player":
            result = process_player_data_csv(content)
        else:
            result = process_conversion_data_csv(content)
    except Exception as e:
        logger.warning(f"CSV validation failed: {e}")
        return {"is_valid": False, "errors": [str(e) or "Validation failed"], "preview_data": [],
                "estimated_records": 0}

    return {
        "is_valid": not result.errors,
        "errors": result.errors,
        "preview_data": result.data[:get_settings().csv_preview_rows],
        "estimated_records": len(result.data),
    }
