import logging
from dataclasses import dataclass
from typing import Dict, Optional

from crop_analytics.models.domain import FieldSample, GrowthStage, HealthCategory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthAssessment:
    category: HealthCategory
    absolute_category: HealthCategory
    demoted: bool
    low_confidence: bool


class HealthClassifier:
    """Maps mean NDVI plus short-term trend to a HealthCategory."""

    def __init__(
        self,
        thresholds: Dict[str, float],
        min_coverage_fraction: float = 0.5,
        demotion_slope: float = -0.005,
    ):
        self.thresholds = thresholds
        self.min_coverage_fraction = min_coverage_fraction
        self.demotion_slope = demotion_slope

    def absolute_category(self, mean_ndvi: float) -> HealthCategory:
        if mean_ndvi >= self.thresholds["excellent"]:
            return HealthCategory.EXCELLENT
        if mean_ndvi >= self.thresholds["good"]:
            return HealthCategory.GOOD
        if mean_ndvi >= self.thresholds["fair"]:
            return HealthCategory.FAIR
        if mean_ndvi >= self.thresholds["poor"]:
            return HealthCategory.POOR
        return HealthCategory.CRITICAL

    def classify(self, sample: FieldSample, recent_trend: Optional[float]) -> HealthAssessment:
        """
        Classify a sample.

        Args:
            sample: Aggregated field sample
            recent_trend: Trailing NDVI slope per day, or None when unknown.
                An unknown trend never demotes.

        Returns:
            HealthAssessment; demoted at most one category, never promoted
        """
        absolute = self.absolute_category(sample.mean_ndvi)
        demoted = recent_trend is not None and recent_trend <= self.demotion_slope
        category = absolute.demoted() if demoted else absolute
        low_confidence = (
            sample.low_confidence or sample.coverage_fraction < self.min_coverage_fraction
        )

        if demoted:
            logger.info(
                f"Field {sample.field_id} demoted {absolute.value} -> {category.value} "
                f"(trend {recent_trend:+.4f}/day)"
            )
        return HealthAssessment(
            category=category,
            absolute_category=absolute,
            demoted=demoted and category != absolute,
            low_confidence=low_confidence,
        )


def estimate_growth_stage(
    mean_ndvi: float,
    trend: Optional[float],
    maturity_threshold: float,
    slope_tolerance: float = 0.002,
    canopy_ndvi: float = 0.5,
    bare_ndvi: float = 0.2,
) -> GrowthStage:
    """
    Label the phenological stage from NDVI level and trailing slope.

    Rising canopy is Vegetative, a high plateau is Reproductive, a declining
    canopy is Maturity until NDVI drops to the crop's maturity threshold,
    after which it is Harvest Ready.
    """
    if trend is None:
        if mean_ndvi < bare_ndvi:
            return GrowthStage.EMERGENCE
        if mean_ndvi >= canopy_ndvi:
            return GrowthStage.REPRODUCTIVE
        return GrowthStage.VEGETATIVE

    if trend > slope_tolerance:
        return GrowthStage.EMERGENCE if mean_ndvi < bare_ndvi else GrowthStage.VEGETATIVE
    if trend < -slope_tolerance:
        return GrowthStage.HARVEST_READY if mean_ndvi <= maturity_threshold else GrowthStage.MATURITY
    if mean_ndvi >= canopy_ndvi:
        return GrowthStage.REPRODUCTIVE
    if mean_ndvi < bare_ndvi:
        return GrowthStage.EMERGENCE
    return GrowthStage.VEGETATIVE
