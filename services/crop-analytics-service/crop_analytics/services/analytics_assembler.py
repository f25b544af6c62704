"""
Pure transformations from analytics results to the dashboard payloads.

One field's failure never blocks the others: failed stages become per-field
error markers next to the successful fields.
"""

from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Sequence

from crop_analytics.core.exceptions import AnalyticsError
from crop_analytics.models.domain import (
    CaptureSummary,
    FieldReport,
    HarvestWindow,
    HealthCategory,
    YieldForecast,
)
from crop_analytics.models.responses import (
    CropAnalysisResponse,
    FieldErrorMarker,
    FieldSummary,
    NDVISeries,
    SatelliteImageSummary,
    YieldPrediction,
)


def error_marker(stage: str, error: Exception) -> FieldErrorMarker:
    if isinstance(error, AnalyticsError):
        return FieldErrorMarker(
            code=error.error_code,
            stage=stage,
            message=error.message,
            retryable=error.retryable,
        )
    return FieldErrorMarker(code=type(error).__name__, stage=stage, message=str(error))


def _prediction(
    estimated_yield: float,
    confidence: float,
    window: HarvestWindow,
    model: Optional[str] = None,
    fields_included: Optional[int] = None,
) -> YieldPrediction:
    return YieldPrediction(
        estimated_yield=round(estimated_yield, 2),
        confidence=round(100.0 * confidence, 1),
        harvest_window=str(window),
        harvest_window_start=window.start.isoformat(),
        harvest_window_end=window.end.isoformat(),
        model=model,
        fields_included=fields_included,
    )


def _field_summary(report: FieldReport) -> FieldSummary:
    boundary = report.boundary
    latest = report.latest
    summary = FieldSummary(
        id=boundary.field_id,
        name=boundary.name,
        area=boundary.area_ha,
        crop_type=boundary.crop_type,
        errors=[error_marker(stage, error) for stage, error in report.errors],
    )
    if latest is not None:
        summary.health = latest.health.value if latest.health else None
        summary.current_ndvi = round(latest.mean_ndvi, 3)
        summary.growth_stage = latest.growth_stage.value if latest.growth_stage else None
        summary.last_updated = latest.sample_date.isoformat()
        summary.coverage = round(latest.coverage_fraction, 3)
        summary.low_confidence = latest.low_confidence
    if report.trend is not None:
        summary.trend = round(report.trend, 5)
    if report.forecast is not None:
        f = report.forecast
        summary.yield_prediction = _prediction(
            f.estimated_yield, f.confidence, f.harvest_window, f.model
        )
    return summary


def _ndvi_series(reports: Sequence[FieldReport]) -> NDVISeries:
    """Area-weighted mean NDVI per date across the reported fields."""
    weighted: Dict[date, float] = defaultdict(float)
    weights: Dict[date, float] = defaultdict(float)
    for report in reports:
        area = report.boundary.area_ha
        for sample in report.series.samples:
            weighted[sample.sample_date] += area * sample.mean_ndvi
            weights[sample.sample_date] += area

    dates = sorted(weights)
    return NDVISeries(
        timestamps=[d.isoformat() for d in dates],
        values=[round(weighted[d] / weights[d], 4) for d in dates],
    )


def _health_distribution(reports: Sequence[FieldReport]) -> List[float]:
    """Area-weighted percentages in order Excellent, Good, Fair, Poor, Critical."""
    areas = {category: 0.0 for category in HealthCategory.ordered()}
    for report in reports:
        latest = report.latest
        if latest is not None and latest.health is not None:
            areas[latest.health] += report.boundary.area_ha

    total = sum(areas.values())
    if total == 0:
        return [0.0] * len(areas)
    return [round(100.0 * areas[c] / total, 1) for c in HealthCategory.ordered()]


def _aggregate_prediction(reports: Sequence[FieldReport]) -> Optional[YieldPrediction]:
    forecasts: List[tuple] = [
        (r.boundary.area_ha, r.forecast) for r in reports if r.forecast is not None
    ]
    if not forecasts:
        return None

    total_area = sum(area for area, _ in forecasts)
    estimated = sum(area * f.estimated_yield for area, f in forecasts) / total_area
    confidence = sum(area * f.confidence for area, f in forecasts) / total_area
    window = HarvestWindow(
        min(f.harvest_window.start for _, f in forecasts),
        max(f.harvest_window.end for _, f in forecasts),
    )
    models = {f.model for _, f in forecasts}
    model = models.pop() if len(models) == 1 else "mixed"
    return _prediction(estimated, confidence, window, model, len(forecasts))


def assemble_crop_analysis(
    reports: Sequence[FieldReport], generated_at: Optional[datetime] = None
) -> CropAnalysisResponse:
    """Build the ``GET /api/crop-analysis`` payload."""
    ordered = sorted(reports, key=lambda r: r.boundary.field_id)
    generated_at = generated_at or datetime.now(timezone.utc)
    return CropAnalysisResponse(
        ndvi=_ndvi_series(ordered),
        health_distribution=_health_distribution(ordered),
        fields=[_field_summary(r) for r in ordered],
        yield_prediction=_aggregate_prediction(ordered),
        generated_at=generated_at.isoformat(),
    )


def forecast_prediction(forecast: YieldForecast) -> YieldPrediction:
    return _prediction(
        forecast.estimated_yield, forecast.confidence, forecast.harvest_window, forecast.model
    )


def assemble_satellite_images(
    summaries: Sequence[CaptureSummary],
    asset_urls: Optional[Dict[str, Dict[str, Optional[str]]]] = None,
) -> List[SatelliteImageSummary]:
    """
    Build the ``GET /api/satellite-images`` payload, newest capture first.

    Args:
        summaries: Capture summaries
        asset_urls: capture_id -> {"ndvi", "rgb", "nir", "thumbnail"} URLs
    """
    asset_urls = asset_urls or {}
    ordered = sorted(summaries, key=lambda s: (s.capture_date, s.capture_id), reverse=True)
    images = []
    for summary in ordered:
        urls = asset_urls.get(summary.capture_id, {})
        images.append(
            SatelliteImageSummary(
                id=summary.capture_id,
                capture_date=summary.capture_date.isoformat(),
                resolution=summary.resolution,
                cloud_cover=summary.cloud_cover,
                ndvi=urls.get("ndvi"),
                rgb=urls.get("rgb"),
                nir=urls.get("nir"),
                thumbnail=urls.get("thumbnail"),
                avg_ndvi=summary.avg_ndvi,
                vegetation_coverage=summary.vegetation_coverage,
                healthy_vegetation=summary.healthy_vegetation,
                stressed_areas=summary.stressed_areas,
            )
        )
    return images
