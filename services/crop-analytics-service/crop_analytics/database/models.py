from sqlalchemy import Boolean, Column, Date, Float, Integer, String, UniqueConstraint

from .connection import Base
from ..utils.string_utils import (
    generate_field_sample_id,
    generate_capture_summary_id,
    generate_yield_observation_id,
    get_current_timestamp,
)


class FieldSampleRecord(Base):
    """One (field, date) NDVI observation."""

    __tablename__ = "field_samples"
    __table_args__ = (UniqueConstraint("field_id", "sample_date", name="uq_field_sample_date"),)

    id = Column(String(15), primary_key=True, default=generate_field_sample_id)
    field_id = Column(String(64), nullable=False, index=True)
    sample_date = Column(Date, nullable=False)
    capture_id = Column(String(128))

    # Aggregated statistics
    mean_ndvi = Column(Float, nullable=False)
    coverage_fraction = Column(Float, nullable=False)
    valid_pixels = Column(Integer, nullable=False)
    total_pixels = Column(Integer, nullable=False)
    ndvi_std = Column(Float)
    ndvi_min = Column(Float)
    ndvi_max = Column(Float)

    # Classification
    low_confidence = Column(Boolean, default=False, nullable=False)
    health = Column(String(20))  # "Excellent" .. "Critical"
    growth_stage = Column(String(30))

    # Timestamps (Unix seconds for easier comparison)
    created_at = Column(Integer, default=get_current_timestamp, nullable=False)
    updated_at = Column(Integer, default=get_current_timestamp, onupdate=get_current_timestamp, nullable=False)


class CaptureSummaryRecord(Base):
    """Scene-level statistics of an ingested capture."""

    __tablename__ = "capture_summaries"

    id = Column(String(15), primary_key=True, default=generate_capture_summary_id)
    capture_id = Column(String(128), nullable=False, unique=True)
    aoi_id = Column(String(64), nullable=False, index=True)
    capture_date = Column(Date, nullable=False)

    resolution = Column(Float, nullable=False)  # meters per pixel
    cloud_cover = Column(Float, nullable=False)  # percent (0-100)
    avg_ndvi = Column(Float)
    vegetation_coverage = Column(Float, nullable=False)
    healthy_vegetation = Column(Float, nullable=False)
    stressed_areas = Column(Float, nullable=False)

    created_at = Column(Integer, default=get_current_timestamp, nullable=False)
    updated_at = Column(Integer, default=get_current_timestamp, onupdate=get_current_timestamp, nullable=False)


class YieldObservationRecord(Base):
    """Historical ground-truth yield for a crop season."""

    __tablename__ = "yield_observations"

    id = Column(String(15), primary_key=True, default=generate_yield_observation_id)
    crop_type = Column(String(64), nullable=False, index=True)
    season = Column(String(32))

    peak_ndvi = Column(Float, nullable=False)
    mean_ndvi = Column(Float, nullable=False)
    trend_slope = Column(Float, nullable=False)
    grain_fill_days = Column(Float, nullable=False)
    observed_yield = Column(Float, nullable=False)  # tons per hectare

    created_at = Column(Integer, default=get_current_timestamp, nullable=False)
