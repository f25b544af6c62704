from typing import List, Optional
from datetime import date
from pydantic import BaseModel, Field, field_validator, model_validator

from crop_analytics.models.domain import FieldBoundary, YieldObservation
from crop_analytics.utils.validation import (
    validate_date_range,
    validate_identifier,
    validate_polygon_coordinates,
)


def _check_identifier(v: str) -> str:
    is_valid, error_msg = validate_identifier(v)
    if not is_valid:
        raise ValueError(error_msg)
    return v


class FieldBoundaryRequest(BaseModel):
    """A field boundary as supplied by the field registry."""

    id: str = Field(..., description="Stable field identifier")
    name: str = Field(..., min_length=1, max_length=255)
    area: float = Field(..., gt=0, description="Area in hectares")
    crop_type: str = Field(..., alias="cropType", min_length=1)
    coordinates: List[List[float]] = Field(
        ..., description="Polygon ring [[x, y], ...] in the capture coordinate system"
    )

    model_config = {"populate_by_name": True}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v):
        return _check_identifier(v)

    @field_validator("coordinates")
    @classmethod
    def validate_coordinates(cls, v):
        is_valid, error_msg = validate_polygon_coordinates(v)
        if not is_valid:
            raise ValueError(error_msg)
        return v

    def to_domain(self) -> FieldBoundary:
        return FieldBoundary.from_coordinates(
            self.id, self.name, self.area, self.crop_type, self.coordinates
        )


class IngestCaptureRequest(BaseModel):
    aoi_id: str = Field(..., alias="aoiId")
    capture_date: date = Field(..., alias="captureDate")
    field_ids: Optional[List[str]] = Field(default=None, alias="fieldIds")

    model_config = {"populate_by_name": True}

    @field_validator("aoi_id")
    @classmethod
    def validate_aoi(cls, v):
        return _check_identifier(v)


class BackfillRequest(BaseModel):
    aoi_id: str = Field(..., alias="aoiId")
    dates: Optional[List[date]] = None
    start_date: Optional[date] = Field(default=None, alias="startDate")
    end_date: Optional[date] = Field(default=None, alias="endDate")
    field_ids: Optional[List[str]] = Field(default=None, alias="fieldIds")

    model_config = {"populate_by_name": True}

    @field_validator("aoi_id")
    @classmethod
    def validate_aoi(cls, v):
        return _check_identifier(v)

    @model_validator(mode="after")
    def validate_range(self):
        is_valid, error_msg = validate_date_range(self.start_date, self.end_date)
        if not is_valid:
            raise ValueError(error_msg)
        return self


class YieldObservationRequest(BaseModel):
    crop_type: str = Field(..., alias="cropType", min_length=1)
    season: str = Field(default="")
    peak_ndvi: float = Field(..., alias="peakNDVI", ge=-1, le=1)
    mean_ndvi: float = Field(..., alias="meanNDVI", ge=-1, le=1)
    trend_slope: float = Field(..., alias="trendSlope")
    grain_fill_days: float = Field(..., alias="grainFillDays", ge=0)
    observed_yield: float = Field(..., alias="observedYield", ge=0)

    model_config = {"populate_by_name": True}

    def to_domain(self) -> YieldObservation:
        return YieldObservation(
            crop_type=self.crop_type,
            season=self.season,
            peak_ndvi=self.peak_ndvi,
            mean_ndvi=self.mean_ndvi,
            trend_slope=self.trend_slope,
            grain_fill_days=self.grain_fill_days,
            observed_yield=self.observed_yield,
        )
