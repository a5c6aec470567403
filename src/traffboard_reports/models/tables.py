from __future__ import annotations
import datetime as dt
from sqlalchemy import String, Integer, Date, DateTime, Boolean, Float, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from traffboard_reports.infrastructure.db import Base

# Natural keys; CSV re-imports update the row matching these columns.
CONVERSION_UNIQUE_KEY = (
    "date", "foreign_brand_id", "foreign_partner_id", "foreign_campaign_id",
    "traffic_source", "device_type", "country",
)
PLAYER_UNIQUE_KEY = ("player_id", "date")


class TrafficReport(Base):
    """Daily conversion/traffic aggregates imported from partner CSV exports."""
    __tablename__ = "traffic_reports"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date, index=True)
    foreign_brand_id: Mapped[str] = mapped_column(String(64), index=True)
    foreign_partner_id: Mapped[str] = mapped_column(String(64), index=True)
    foreign_campaign_id: Mapped[str] = mapped_column(String(64), index=True)
    foreign_landing_id: Mapped[str | None] = mapped_column(String(64), default=None)
    traffic_source: Mapped[str] = mapped_column(String(64), index=True, default="unknown")
    device_type: Mapped[str] = mapped_column(String(32))
    user_agent_family: Mapped[str | None] = mapped_column(String(64), default=None)
    os_family: Mapped[str | None] = mapped_column(String(64), default=None)
    country: Mapped[str] = mapped_column(String(8), index=True)
    all_clicks: Mapped[int] = mapped_column(Integer, default=0)
    unique_clicks: Mapped[int] = mapped_column(Integer, default=0)
    registrations_count: Mapped[int] = mapped_column(Integer, default=0)
    ftd_count: Mapped[int] = mapped_column(Integer, default=0)
    deposits_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow, index=True)

    __table_args__ = (
        Index("ix_traffic_partner_date", "foreign_partner_id", "date"),
        Index("ix_traffic_campaign_date", "foreign_campaign_id", "date"),
        UniqueConstraint(*CONVERSION_UNIQUE_KEY, name="conversion_unique"),
    )


class PlayerData(Base):
    """Per-player daily activity rows; the cohort base query aggregates these."""
    __tablename__ = "player_data"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    player_id: Mapped[str] = mapped_column(String(64), index=True)
    original_player_id: Mapped[str] = mapped_column(String(64))
    sign_up_date: Mapped[dt.date | None] = mapped_column(Date, default=None)
    first_deposit_date: Mapped[dt.date | None] = mapped_column(Date, index=True, default=None)
    partner_id: Mapped[str] = mapped_column(String(64), index=True)
    company_name: Mapped[str] = mapped_column(String(128))
    partner_tags: Mapped[str | None] = mapped_column(String(256), default=None)
    campaign_id: Mapped[str] = mapped_column(String(64), index=True)
    campaign_name: Mapped[str | None] = mapped_column(String(256), default=None)
    promo_id: Mapped[str | None] = mapped_column(String(64), default=None)
    promo_code: Mapped[str | None] = mapped_column(String(64), default=None)
    player_country: Mapped[str | None] = mapped_column(String(8), index=True, default=None)
    tag_clickid: Mapped[str | None] = mapped_column(String(128), default=None)
    tag_os: Mapped[str | None] = mapped_column(String(64), default=None)
    tag_source: Mapped[str | None] = mapped_column(String(64), index=True, default=None)
    tag_sub2: Mapped[str | None] = mapped_column(String(128), default=None)
    tag_web_id: Mapped[str | None] = mapped_column(String(128), default=None)
    date: Mapped[dt.date] = mapped_column(Date, index=True)
    prequalified: Mapped[bool] = mapped_column(Boolean, default=False)
    duplicate: Mapped[bool] = mapped_column(Boolean, default=False)
    self_excluded: Mapped[bool] = mapped_column(Boolean, default=False)
    disabled: Mapped[bool] = mapped_column(Boolean, default=False)
    currency: Mapped[str] = mapped_column(String(8))
    ftd_count: Mapped[int] = mapped_column(Integer, default=0)
    ftd_sum: Mapped[float] = mapped_column(Float, default=0.0)
    deposits_count: Mapped[int] = mapped_column(Integer, default=0)
    deposits_sum: Mapped[float] = mapped_column(Float, default=0.0)
    cashouts_count: Mapped[int] = mapped_column(Integer, default=0)
    cashouts_sum: Mapped[float] = mapped_column(Float, default=0.0)
    casino_bets_count: Mapped[int] = mapped_column(Integer, default=0)
    casino_real_ngr: Mapped[float] = mapped_column(Float, default=0.0)
    fixed_per_player: Mapped[float] = mapped_column(Float, default=0.0)
    casino_bets_sum: Mapped[float] = mapped_column(Float, default=0.0)
    casino_wins_sum: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow, index=True)

    __table_args__ = (
        Index("ix_player_ftd_date", "first_deposit_date", "date"),
        Index("ix_player_partner_date", "partner_id", "date"),
        UniqueConstraint(*PLAYER_UNIQUE_KEY, name="player_daily_unique"),
    )


TABLES = {
    TrafficReport.__tablename__: TrafficReport,
    PlayerData.__tablename__: PlayerData,
}

# Report filter ids whose column name differs from the snake_case form of the id.
FILTER_COLUMNS = {
    TrafficReport.__tablename__: {
        "partnerId": "foreign_partner_id",
        "brandId": "foreign_brand_id",
        "campaignId": "foreign_campaign_id",
        "landingId": "foreign_landing_id",
    },
    PlayerData.__tablename__: {
        "country": "player_country",
        "trafficSource": "tag_source",
    },
}
