"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

LISTING_STATUSES = ("available", "sold", "expired")
VALIDATION_ACTIONS = ("accept", "flag", "reject")
CANDIDATE_STATUSES = ("pending", "approved", "rejected")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Component(Base):
    """Curated catalog entry (read-only to the pipeline)."""

    __tablename__ = "components"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    brand: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    price_new: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    price_used_min: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    price_used_max: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    specs: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # impedance, driver_type, ...


class ListingColumns:
    """Columns shared by live and archived listings."""

    url: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    segment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Bundle segment text
    price: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    condition: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    seller: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    seller_reputation: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="available", nullable=False)

    # Bundle linkage
    is_bundle: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    bundle_group_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    bundle_position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    bundle_component_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    bundle_total_price: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Match / validation
    match_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    match_ambiguous: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    validation_action: Mapped[str] = mapped_column(String(16), default="accept", nullable=False)
    validation_flags: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    posted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Listing(ListingColumns, Base):
    """One row per (listing URL, matched component)."""

    __tablename__ = "listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    component_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("components.id"), nullable=True
    )  # NULL for unresolved candidates

    __table_args__ = (
        UniqueConstraint("url", "component_id", name="uq_listing_url_component"),
        CheckConstraint("status IN ('available', 'sold', 'expired')", name="ck_listing_status"),
        CheckConstraint(
            "validation_action IN ('accept', 'flag', 'reject')", name="ck_listing_validation_action"
        ),
        Index("ix_listings_source_url", "source", "url"),
        Index("ix_listings_bundle_group", "bundle_group_id"),
    )


class ListingArchive(ListingColumns, Base):
    """Listings moved out of the live table past the retention window."""

    __tablename__ = "listings_archive"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    original_id: Mapped[int] = mapped_column(Integer, nullable=False)
    component_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    archived_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class ComponentCandidate(Base):
    """Heuristically extracted brand/model not yet in the catalog."""

    __tablename__ = "component_candidates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    brand: Mapped[str] = mapped_column(String(128), nullable=False)
    model: Mapped[str] = mapped_column(String(128), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    price_observed_min: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    price_observed_max: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    price_estimate_new: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    price_used_min: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    price_used_max: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    listing_ids: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    listing_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quality_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    specs: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("brand", "model", name="uq_candidate_brand_model"),
        CheckConstraint("status IN ('pending', 'approved', 'rejected')", name="ck_candidate_status"),
    )


class AggregationRun(Base):
    """Append-only record of one aggregation run."""

    __tablename__ = "aggregation_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    trigger: Mapped[str] = mapped_column(String(16), nullable=False)  # scheduled | manual
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # done | failed
    dry_run: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    source_stats: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    listings_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    listings_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    candidates_recorded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    revalidated_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duplicates_removed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expired_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    archived_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
