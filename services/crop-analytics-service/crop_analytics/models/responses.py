from typing import Optional, Dict, Any, List
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone


class CamelModel(BaseModel):
    """Payload model serialized with the dashboard's camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)


class NDVISeries(CamelModel):
    timestamps: List[str] = Field(default_factory=list)
    values: List[float] = Field(default_factory=list)


class FieldErrorMarker(CamelModel):
    """Per-field failure reported alongside successful fields."""

    code: str
    stage: str  # "aggregation", "trend", "forecast"
    message: str
    retryable: bool = False


class YieldPrediction(CamelModel):
    estimated_yield: float = Field(alias="estimatedYield")  # tons per hectare
    confidence: float  # percent
    harvest_window: str = Field(alias="harvestWindow")
    harvest_window_start: str = Field(alias="harvestWindowStart")
    harvest_window_end: str = Field(alias="harvestWindowEnd")
    model: Optional[str] = None
    fields_included: Optional[int] = Field(default=None, alias="fieldsIncluded")


class FieldSummary(CamelModel):
    id: str
    name: str
    area: float
    crop_type: str = Field(alias="cropType")
    health: Optional[str] = None
    current_ndvi: Optional[float] = Field(default=None, alias="currentNDVI")
    growth_stage: Optional[str] = Field(default=None, alias="growthStage")
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    coverage: Optional[float] = None
    low_confidence: bool = Field(default=False, alias="lowConfidence")
    trend: Optional[float] = None
    yield_prediction: Optional[YieldPrediction] = Field(default=None, alias="yieldPrediction")
    errors: List[FieldErrorMarker] = Field(default_factory=list)


class CropAnalysisResponse(CamelModel):
    ndvi: NDVISeries
    health_distribution: List[float] = Field(alias="healthDistribution")
    fields: List[FieldSummary]
    yield_prediction: Optional[YieldPrediction] = Field(default=None, alias="yieldPrediction")
    generated_at: str = Field(alias="generatedAt")


class SatelliteImageSummary(CamelModel):
    id: str
    capture_date: str = Field(alias="captureDate")
    resolution: float
    cloud_cover: float = Field(alias="cloudCover")  # percent
    ndvi: Optional[str] = None
    rgb: Optional[str] = None
    nir: Optional[str] = None
    thumbnail: Optional[str] = None
    avg_ndvi: Optional[float] = Field(default=None, alias="avgNDVI")
    vegetation_coverage: float = Field(alias="vegetationCoverage")
    healthy_vegetation: float = Field(alias="healthyVegetation")
    stressed_areas: float = Field(alias="stressedAreas")


class FieldSampleResponse(CamelModel):
    date: str
    mean_ndvi: float = Field(alias="meanNDVI")
    coverage: float
    valid_pixels: int = Field(alias="validPixels")
    total_pixels: int = Field(alias="totalPixels")
    low_confidence: bool = Field(alias="lowConfidence")
    health: Optional[str] = None
    growth_stage: Optional[str] = Field(default=None, alias="growthStage")


class FieldHistoryResponse(CamelModel):
    field_id: str = Field(alias="fieldId")
    samples: List[FieldSampleResponse]


class IngestionResponse(CamelModel):
    success: bool
    aoi_id: str = Field(alias="aoiId")
    run_id: str = Field(alias="runId")
    capture_dates: List[str] = Field(alias="captureDates")
    recorded: Dict[str, List[str]] = Field(default_factory=dict)  # fieldId -> dates
    errors: Dict[str, List[FieldErrorMarker]] = Field(default_factory=dict)
    capture_errors: Dict[str, FieldErrorMarker] = Field(default_factory=dict, alias="captureErrors")
    cancelled: List[str] = Field(default_factory=list)


class FieldIndexStats(CamelModel):
    field_id: str = Field(alias="fieldId")
    mean: float
    std: float
    coverage: float
    valid_pixels: int = Field(alias="validPixels")
    total_pixels: int = Field(alias="totalPixels")
    low_confidence: bool = Field(alias="lowConfidence")


class IndexStatisticsResponse(CamelModel):
    aoi_id: str = Field(alias="aoiId")
    capture_date: str = Field(alias="captureDate")
    index: str
    fields: List[FieldIndexStats] = Field(default_factory=list)
    errors: Dict[str, FieldErrorMarker] = Field(default_factory=dict)
    cancelled: List[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Standard error response model."""

    success: bool = False
    error_code: str
    message: str
    retryable: bool = False
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class HealthCheckResponse(BaseModel):
    """Health check response model."""

    status: str
    service: str
    version: str
    timestamp: datetime
    dependencies: Dict[str, str]  # service_name -> status
