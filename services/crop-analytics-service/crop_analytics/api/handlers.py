from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from typing import Dict, Any, List, Optional
from datetime import date
import logging

from crop_analytics.core.exceptions import AnalyticsError
from crop_analytics.models.domain import FieldSample
from crop_analytics.models.requests import (
    BackfillRequest,
    FieldBoundaryRequest,
    IngestCaptureRequest,
    YieldObservationRequest,
)
from crop_analytics.models.responses import (
    CropAnalysisResponse,
    ErrorResponse,
    FieldHistoryResponse,
    FieldSampleResponse,
    FieldIndexStats,
    IndexStatisticsResponse,
    IngestionResponse,
    SatelliteImageSummary,
    YieldPrediction,
)
from crop_analytics.services.analytics_assembler import error_marker, forecast_prediction
from crop_analytics.services.analytics_service import AnalyticsService, IngestionReport
from crop_analytics.utils.async_helpers import run_in_executor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["crop-analytics"])


def get_analytics_service(request: Request) -> AnalyticsService:
    return request.app.state.analytics_service


def _ingestion_response(report: IngestionReport) -> IngestionResponse:
    return IngestionResponse(
        success=report.success,
        aoi_id=report.aoi_id,
        run_id=report.run_id,
        capture_dates=[d.isoformat() for d in report.capture_dates],
        recorded={
            field_id: [d.isoformat() for d in dates]
            for field_id, dates in report.recorded.items()
        },
        errors={
            field_id: [error_marker(stage, e) for stage, e in errors]
            for field_id, errors in report.errors.items()
        },
        capture_errors={
            d.isoformat(): error_marker("capture", e) for d, e in report.capture_errors.items()
        },
        cancelled=report.cancelled,
    )


def _sample_response(sample: FieldSample) -> FieldSampleResponse:
    return FieldSampleResponse(
        date=sample.sample_date.isoformat(),
        mean_ndvi=round(sample.mean_ndvi, 4),
        coverage=round(sample.coverage_fraction, 4),
        valid_pixels=sample.valid_pixels,
        total_pixels=sample.total_pixels,
        low_confidence=sample.low_confidence,
        health=sample.health.value if sample.health else None,
        growth_stage=sample.growth_stage.value if sample.growth_stage else None,
    )


@router.get("/crop-analysis", response_model=CropAnalysisResponse)
async def get_crop_analysis(
    field_id: Optional[List[str]] = Query(None, description="Restrict to these field ids"),
    service: AnalyticsService = Depends(get_analytics_service),
) -> CropAnalysisResponse:
    """
    Crop-health analytics for the dashboard.

    Fields that failed aggregation, trend or forecast carry per-field error
    markers; the other fields are reported in full.
    """
    try:
        return await run_in_executor(service.crop_analysis, field_id)
    except AnalyticsError:
        raise
    except Exception as e:
        logger.error(f"Crop analysis failed: {e}")
        raise HTTPException(status_code=500, detail=f"Crop analysis failed: {str(e)}")


@router.get("/satellite-images", response_model=List[SatelliteImageSummary])
async def get_satellite_images(
    aoi_id: Optional[str] = Query(None, description="Area of interest"),
    service: AnalyticsService = Depends(get_analytics_service),
) -> List[SatelliteImageSummary]:
    """Ingested captures with scene-level vegetation statistics, newest first."""
    try:
        return service.satellite_images(aoi_id)
    except Exception as e:
        logger.error(f"Listing satellite images failed: {e}")
        raise HTTPException(
            status_code=500, detail=f"Listing satellite images failed: {str(e)}"
        )


@router.post("/fields")
async def register_fields(
    fields: List[FieldBoundaryRequest],
    service: AnalyticsService = Depends(get_analytics_service),
) -> Dict[str, Any]:
    """Register or update field boundaries from the field registry."""
    try:
        boundaries = [f.to_domain() for f in fields]
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    service.register_fields(boundaries)
    return {"success": True, "registered": [b.field_id for b in boundaries]}


@router.get("/fields")
async def list_fields(
    service: AnalyticsService = Depends(get_analytics_service),
) -> List[Dict[str, Any]]:
    return [
        {
            "id": b.field_id,
            "name": b.name,
            "area": b.area_ha,
            "cropType": b.crop_type,
            "coordinates": b.coordinates,
        }
        for b in service.list_fields()
    ]


@router.post("/captures/ingest", response_model=IngestionResponse)
async def ingest_capture(
    request: IngestCaptureRequest,
    service: AnalyticsService = Depends(get_analytics_service),
) -> IngestionResponse:
    """Ingest one capture; a corrupt or missing capture is reported, not raised."""
    logger.info(f"Ingest request for {request.aoi_id} {request.capture_date}")
    try:
        report = await service.ingest_capture(
            request.aoi_id, request.capture_date, request.field_ids
        )
    except AnalyticsError:
        raise
    except Exception as e:
        logger.error(f"Capture ingestion failed: {e}")
        raise HTTPException(status_code=500, detail=f"Capture ingestion failed: {str(e)}")
    return _ingestion_response(report)


@router.post("/captures/backfill", response_model=IngestionResponse)
async def backfill_captures(
    request: BackfillRequest,
    service: AnalyticsService = Depends(get_analytics_service),
) -> IngestionResponse:
    try:
        report = await service.backfill(
            request.aoi_id,
            dates=request.dates,
            start=request.start_date,
            end=request.end_date,
            field_ids=request.field_ids,
        )
    except AnalyticsError:
        raise
    except Exception as e:
        logger.error(f"Backfill of {request.aoi_id} failed: {e}")
        raise HTTPException(status_code=500, detail=f"Backfill failed: {str(e)}")
    return _ingestion_response(report)


@router.post("/captures/cancel")
async def cancel_ingestion(
    run_id: Optional[str] = Query(None, description="Cancel only this run"),
    service: AnalyticsService = Depends(get_analytics_service),
) -> Dict[str, Any]:
    """Signal running ingestions to stop before their pending fields."""
    cancelled = service.cancel_ingestion(run_id)
    return {
        "success": True,
        "message": f"Cancellation requested for {len(cancelled)} run(s)",
        "cancelledRuns": cancelled,
        "activeRuns": service.active_runs(),
    }


@router.get(
    "/captures/{aoi_id}/{capture_date}/indices/{index_name}",
    response_model=IndexStatisticsResponse,
)
async def get_index_statistics(
    aoi_id: str,
    capture_date: date,
    index_name: str,
    field_id: Optional[List[str]] = Query(None, description="Restrict to these field ids"),
    service: AnalyticsService = Depends(get_analytics_service),
) -> IndexStatisticsResponse:
    """Per-field NDVI, SAVI, EVI or NDMI statistics for one capture, without recording."""
    try:
        batch = await service.index_statistics(aoi_id, capture_date, index_name, field_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return IndexStatisticsResponse(
        aoi_id=aoi_id,
        capture_date=capture_date.isoformat(),
        index=index_name.upper(),
        fields=[
            FieldIndexStats(
                field_id=fid,
                mean=round(sample.mean_ndvi, 4),
                std=round(sample.ndvi_std, 4),
                coverage=round(sample.coverage_fraction, 4),
                valid_pixels=sample.valid_pixels,
                total_pixels=sample.total_pixels,
                low_confidence=sample.low_confidence,
            )
            for fid, sample in sorted(batch.samples.items())
        ],
        errors={
            fid: error_marker("aggregation", e) for fid, e in batch.errors.items()
        },
        cancelled=batch.cancelled,
    )


@router.get("/fields/{field_id}/history", response_model=FieldHistoryResponse)
async def get_field_history(
    field_id: str,
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    service: AnalyticsService = Depends(get_analytics_service),
) -> FieldHistoryResponse:
    samples = service.field_history(field_id, start_date, end_date)
    return FieldHistoryResponse(
        field_id=field_id, samples=[_sample_response(s) for s in samples]
    )


@router.get("/fields/{field_id}/forecast", response_model=YieldPrediction)
async def get_field_forecast(
    field_id: str,
    service: AnalyticsService = Depends(get_analytics_service),
) -> YieldPrediction:
    """Yield forecast for one field; refuses to extrapolate past the horizon."""
    forecast = await run_in_executor(service.field_forecast, field_id)
    return forecast_prediction(forecast)


@router.post("/yield-history")
async def add_yield_observations(
    observations: List[YieldObservationRequest],
    service: AnalyticsService = Depends(get_analytics_service),
) -> Dict[str, Any]:
    """Add historical ground-truth yields used to fit the forecaster."""
    for observation in observations:
        await service.add_yield_observation(observation.to_domain())
    return {"success": True, "added": len(observations)}


@router.websocket("/crop-analysis/stream")
async def stream_changes(websocket: WebSocket):
    """Push change notifications so clients need not poll on a fixed cadence."""
    service: AnalyticsService = websocket.app.state.analytics_service
    await websocket.accept()
    subscription = service.notifier.subscribe()
    try:
        while True:
            event = await subscription.get()
            await websocket.send_json(event)
    except WebSocketDisconnect:
        logger.info("Change stream client disconnected")
    finally:
        subscription.close()


async def analytics_error_handler(request: Request, exc: AnalyticsError):
    """Translate analytics errors into the standard error body."""
    logger.warning(f"{exc.error_code} on {request.url.path}: {exc.message}")
    body = ErrorResponse(
        error_code=exc.error_code,
        message=exc.message,
        retryable=exc.retryable,
        details=exc.details or None,
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))
