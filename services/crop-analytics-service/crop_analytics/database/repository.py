"""
Persistence of the durable analytics state.

Samples and capture summaries are upserted by their natural keys
(field/date and capture id), which works identically on PostgreSQL and
SQLite.
"""

import logging
from typing import List, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crop_analytics.database.models import (
    CaptureSummaryRecord,
    FieldSampleRecord,
    YieldObservationRecord,
)
from crop_analytics.models.domain import (
    CaptureSummary,
    FieldSample,
    GrowthStage,
    HealthCategory,
    YieldObservation,
)

logger = logging.getLogger(__name__)

SAMPLE_COLUMNS = (
    "capture_id",
    "mean_ndvi",
    "coverage_fraction",
    "valid_pixels",
    "total_pixels",
    "ndvi_std",
    "ndvi_min",
    "ndvi_max",
    "low_confidence",
)

SUMMARY_COLUMNS = (
    "aoi_id",
    "capture_date",
    "resolution",
    "cloud_cover",
    "avg_ndvi",
    "vegetation_coverage",
    "healthy_vegetation",
    "stressed_areas",
)


def _sample_to_domain(record: FieldSampleRecord) -> FieldSample:
    return FieldSample(
        field_id=record.field_id,
        sample_date=record.sample_date,
        mean_ndvi=record.mean_ndvi,
        coverage_fraction=record.coverage_fraction,
        valid_pixels=record.valid_pixels,
        total_pixels=record.total_pixels,
        ndvi_std=record.ndvi_std or 0.0,
        ndvi_min=record.ndvi_min or 0.0,
        ndvi_max=record.ndvi_max or 0.0,
        low_confidence=record.low_confidence,
        health=HealthCategory(record.health) if record.health else None,
        growth_stage=GrowthStage(record.growth_stage) if record.growth_stage else None,
        capture_id=record.capture_id,
    )


def _summary_to_domain(record: CaptureSummaryRecord) -> CaptureSummary:
    return CaptureSummary(
        capture_id=record.capture_id,
        aoi_id=record.aoi_id,
        capture_date=record.capture_date,
        resolution=record.resolution,
        cloud_cover=record.cloud_cover,
        avg_ndvi=record.avg_ndvi,
        vegetation_coverage=record.vegetation_coverage,
        healthy_vegetation=record.healthy_vegetation,
        stressed_areas=record.stressed_areas,
    )


class AnalyticsRepository:
    """Async repository over the analytics tables."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def save_samples(self, samples: Sequence[FieldSample]):
        if not samples:
            return
        async with self.session_factory() as session:
            async with session.begin():
                for sample in samples:
                    await self._upsert_sample(session, sample)
        logger.debug(f"Persisted {len(samples)} field samples")

    async def _upsert_sample(self, session: AsyncSession, sample: FieldSample):
        result = await session.execute(
            select(FieldSampleRecord).where(
                FieldSampleRecord.field_id == sample.field_id,
                FieldSampleRecord.sample_date == sample.sample_date,
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            record = FieldSampleRecord(field_id=sample.field_id, sample_date=sample.sample_date)
            session.add(record)
        for column in SAMPLE_COLUMNS:
            setattr(record, column, getattr(sample, column))
        record.health = sample.health.value if sample.health else None
        record.growth_stage = sample.growth_stage.value if sample.growth_stage else None

    async def load_samples(self) -> List[FieldSample]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FieldSampleRecord).order_by(
                    FieldSampleRecord.field_id, FieldSampleRecord.sample_date
                )
            )
            return [_sample_to_domain(r) for r in result.scalars().all()]

    async def save_capture_summary(self, summary: CaptureSummary):
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(CaptureSummaryRecord).where(
                        CaptureSummaryRecord.capture_id == summary.capture_id
                    )
                )
                record = result.scalar_one_or_none()
                if record is None:
                    record = CaptureSummaryRecord(capture_id=summary.capture_id)
                    session.add(record)
                for column in SUMMARY_COLUMNS:
                    setattr(record, column, getattr(summary, column))

    async def load_capture_summaries(self) -> List[CaptureSummary]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CaptureSummaryRecord).order_by(CaptureSummaryRecord.capture_date)
            )
            return [_summary_to_domain(r) for r in result.scalars().all()]

    async def save_yield_observation(self, observation: YieldObservation):
        async with self.session_factory() as session:
            async with session.begin():
                session.add(
                    YieldObservationRecord(
                        crop_type=observation.crop_type,
                        season=observation.season,
                        peak_ndvi=observation.peak_ndvi,
                        mean_ndvi=observation.mean_ndvi,
                        trend_slope=observation.trend_slope,
                        grain_fill_days=observation.grain_fill_days,
                        observed_yield=observation.observed_yield,
                    )
                )

    async def load_yield_observations(self) -> List[YieldObservation]:
        async with self.session_factory() as session:
            result = await session.execute(select(YieldObservationRecord))
            return [
                YieldObservation(
                    crop_type=r.crop_type,
                    season=r.season or "",
                    peak_ndvi=r.peak_ndvi,
                    mean_ndvi=r.mean_ndvi,
                    trend_slope=r.trend_slope,
                    grain_fill_days=r.grain_fill_days,
                    observed_yield=r.observed_yield,
                )
                for r in result.scalars().all()
            ]
