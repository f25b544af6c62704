"""
Orchestration of the analytics pipeline.

Band Reader -> Index Calculator -> Field Aggregator -> {Health Classifier,
Time-Series Store} -> Yield Forecaster -> Assembler.

CPU-bound stages run on the shared thread pool. Per-field failures are
isolated and reported; only capture-level failures (CorruptInput,
DataUnavailable) abort the run for that capture.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from crop_analytics.config.settings import Settings
from crop_analytics.core.exceptions import (
    AnalyticsError,
    CorruptInput,
    DataUnavailable,
    InsufficientHistory,
    UnknownField,
)
from crop_analytics.core.notifications import ChangeNotifier
from crop_analytics.database.repository import AnalyticsRepository
from crop_analytics.models.domain import (
    CaptureSummary,
    FieldBoundary,
    FieldReport,
    FieldSample,
    YieldForecast,
    YieldObservation,
)
from crop_analytics.models.responses import CropAnalysisResponse, SatelliteImageSummary
from crop_analytics.services.analytics_assembler import (
    assemble_crop_analysis,
    assemble_satellite_images,
)
from crop_analytics.services.band_reader import (
    BandReader,
    LocalCaptureSource,
    MinIOCaptureSource,
)
from crop_analytics.services.field_aggregator import (
    BatchAggregation,
    FieldAggregator,
    summarize_capture,
)
from crop_analytics.services.health_classifier import HealthClassifier, estimate_growth_stage
from crop_analytics.services.index_calculator import INDEX_FUNCTIONS, compute_index, compute_ndvi
from crop_analytics.services.timeseries_store import TimeSeriesStore, least_squares_slope
from crop_analytics.services.yield_forecaster import YieldForecaster, YieldHistory
from crop_analytics.storage.minio_client import MinIOClient, get_minio_client
from crop_analytics.utils.async_helpers import gather_with_limit, run_in_executor
from crop_analytics.utils.string_utils import generate_ingestion_run_id

logger = logging.getLogger(__name__)

ASSET_KINDS = ("ndvi", "rgb", "nir", "thumbnail")


@dataclass
class IngestionReport:
    aoi_id: str
    run_id: str = ""
    capture_dates: List[date] = field(default_factory=list)
    recorded: Dict[str, List[date]] = field(default_factory=dict)
    errors: Dict[str, List[Tuple[str, AnalyticsError]]] = field(default_factory=dict)
    capture_errors: Dict[date, AnalyticsError] = field(default_factory=dict)
    cancelled: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.capture_errors

    def add_error(self, field_id: str, stage: str, error: AnalyticsError):
        self.errors.setdefault(field_id, []).append((stage, error))


class FieldRegistry:
    """Field boundaries supplied by the external field registry."""

    def __init__(self):
        self._lock = threading.Lock()
        self._fields: Dict[str, FieldBoundary] = {}

    def register(self, boundaries: Sequence[FieldBoundary]):
        with self._lock:
            for boundary in boundaries:
                self._fields[boundary.field_id] = boundary

    def get(self, field_id: str) -> FieldBoundary:
        with self._lock:
            boundary = self._fields.get(field_id)
        if boundary is None:
            raise UnknownField(f"Field {field_id} is not registered")
        return boundary

    def resolve(self, field_ids: Optional[Sequence[str]] = None) -> List[FieldBoundary]:
        if field_ids is None:
            with self._lock:
                return sorted(self._fields.values(), key=lambda b: b.field_id)
        return [self.get(fid) for fid in field_ids]


class AnalyticsService:
    """Business logic service for crop analytics."""

    def __init__(
        self,
        settings: Settings,
        band_reader: BandReader,
        repository: Optional[AnalyticsRepository] = None,
        notifier: Optional[ChangeNotifier] = None,
        minio: Optional[MinIOClient] = None,
    ):
        self.settings = settings
        self.band_reader = band_reader
        self.repository = repository
        self.notifier = notifier or ChangeNotifier()
        self.minio = minio
        self.registry = FieldRegistry()
        self.store = TimeSeriesStore(self.notifier)
        self.aggregator = FieldAggregator(settings.min_coverage_fraction, settings.max_workers)
        self.classifier = HealthClassifier(
            settings.health_thresholds,
            settings.min_coverage_fraction,
            settings.trend_demotion_slope,
        )
        self.yield_history = YieldHistory()
        self.forecaster = YieldForecaster(settings, self.yield_history)

        self._summaries: Dict[str, CaptureSummary] = {}
        self._summaries_lock = threading.Lock()
        self._field_errors: Dict[str, Tuple[str, AnalyticsError]] = {}
        self._field_errors_lock = threading.Lock()
        self._runs: Dict[str, threading.Event] = {}
        self._runs_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Start-up
    # ------------------------------------------------------------------

    async def hydrate(self):
        """Restore durable state from the database and the yield history file."""
        if self.repository is not None:
            self.store.load(await self.repository.load_samples())
            summaries = await self.repository.load_capture_summaries()
            with self._summaries_lock:
                self._summaries.update({s.capture_id: s for s in summaries})
            self.yield_history.extend(await self.repository.load_yield_observations())

        if self.settings.yield_history_path:
            await run_in_executor(self.yield_history.load_json, self.settings.yield_history_path)

    # ------------------------------------------------------------------
    # Field registry
    # ------------------------------------------------------------------

    def register_fields(self, boundaries: Sequence[FieldBoundary]):
        self.registry.register(boundaries)
        logger.info(f"Registered {len(boundaries)} field boundaries")

    def list_fields(self) -> List[FieldBoundary]:
        return self.registry.resolve()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def cancel_ingestion(self, run_id: Optional[str] = None) -> List[str]:
        """
        Request cooperative cancellation of one run, or of every active run.

        Fields already in progress finish. Runs started afterwards are not
        affected.

        Returns:
            Ids of the runs that were signalled
        """
        with self._runs_lock:
            if run_id is None:
                targets = dict(self._runs)
            else:
                targets = {run_id: self._runs[run_id]} if run_id in self._runs else {}
            for event in targets.values():
                event.set()
        logger.info(f"Ingestion cancellation requested for runs {sorted(targets)}")
        return sorted(targets)

    def active_runs(self) -> List[str]:
        with self._runs_lock:
            return sorted(self._runs)

    def _begin_run(self) -> Tuple[str, threading.Event]:
        run_id = generate_ingestion_run_id()
        cancel_event = threading.Event()
        with self._runs_lock:
            self._runs[run_id] = cancel_event
        return run_id, cancel_event

    def _end_run(self, run_id: str):
        with self._runs_lock:
            self._runs.pop(run_id, None)

    async def _process_capture(
        self,
        aoi_id: str,
        capture_date: date,
        boundaries: Sequence[FieldBoundary],
        cancel_event: threading.Event,
    ) -> Tuple[CaptureSummary, BatchAggregation]:
        capture = await run_in_executor(self.band_reader.load, aoi_id, capture_date)
        grid = await run_in_executor(compute_ndvi, capture)
        summary = summarize_capture(grid, self.settings.health_thresholds)
        batch = await run_in_executor(
            self.aggregator.aggregate_many, grid, boundaries, cancel_event
        )
        return summary, batch

    def _classify_and_append(self, boundary: FieldBoundary, raw: FieldSample) -> FieldSample:
        field_id = boundary.field_id
        with self.store.field_lock(field_id):
            prior = [s for s in self.store.history(field_id) if s.sample_date < raw.sample_date]
            window = (prior + [raw])[-self.settings.trend_window_size:]
            trend = None
            if len(window) >= 2:
                trend, _ = least_squares_slope(
                    [s.sample_date for s in window], [s.mean_ndvi for s in window]
                )

            assessment = self.classifier.classify(raw, trend)
            stage = estimate_growth_stage(
                raw.mean_ndvi,
                trend,
                self.settings.maturity_threshold_for(boundary.crop_type),
                self.settings.growth_stage_slope_tolerance,
                canopy_ndvi=self.settings.health_thresholds["good"],
                bare_ndvi=self.settings.health_thresholds["poor"],
            )
            sample = replace(
                raw,
                health=assessment.category,
                growth_stage=stage,
                low_confidence=assessment.low_confidence,
            )
            self.store.append(field_id, sample)
        return sample

    def _set_field_error(self, field_id: str, stage: str, error: Optional[AnalyticsError]):
        with self._field_errors_lock:
            if error is None:
                self._field_errors.pop(field_id, None)
            else:
                self._field_errors[field_id] = (stage, error)

    async def _record(
        self,
        report: IngestionReport,
        capture_date: date,
        summary: CaptureSummary,
        batch: BatchAggregation,
        boundaries: Sequence[FieldBoundary],
    ):
        recorded: List[FieldSample] = []
        for boundary in boundaries:
            field_id = boundary.field_id
            if field_id in batch.errors:
                error = batch.errors[field_id]
                report.add_error(field_id, "aggregation", error)
                self._set_field_error(field_id, "aggregation", error)
                continue
            raw = batch.samples.get(field_id)
            if raw is None:
                continue
            try:
                sample = self._classify_and_append(boundary, raw)
            except AnalyticsError as e:
                logger.warning(f"Could not record sample for {field_id} {capture_date}: {e.message}")
                report.add_error(field_id, "ingestion", e)
                self._set_field_error(field_id, "ingestion", e)
                continue
            self._set_field_error(field_id, "aggregation", None)
            report.recorded.setdefault(field_id, []).append(capture_date)
            recorded.append(sample)

        for field_id in batch.cancelled:
            if field_id not in report.cancelled:
                report.cancelled.append(field_id)

        with self._summaries_lock:
            self._summaries[summary.capture_id] = summary
        if self.repository is not None:
            await self.repository.save_samples(recorded)
            await self.repository.save_capture_summary(summary)

        self.notifier.publish(
            {
                "type": "capture_ingested",
                "captureId": summary.capture_id,
                "aoiId": summary.aoi_id,
                "date": capture_date.isoformat(),
                "fields": sorted(f.field_id for f in recorded),
            }
        )

    async def ingest_capture(
        self, aoi_id: str, capture_date: date, field_ids: Optional[Sequence[str]] = None
    ) -> IngestionReport:
        """
        Ingest one capture for the given (or all registered) fields.

        Raises:
            UnknownField: A requested field is not registered
        """
        boundaries = self.registry.resolve(field_ids)
        run_id, cancel_event = self._begin_run()
        report = IngestionReport(aoi_id=aoi_id, run_id=run_id, capture_dates=[capture_date])

        logger.info(
            f"Run {run_id}: ingesting capture {aoi_id} {capture_date} for {len(boundaries)} fields"
        )
        try:
            summary, batch = await self._process_capture(
                aoi_id, capture_date, boundaries, cancel_event
            )
        except (CorruptInput, DataUnavailable) as e:
            logger.error(f"Ingestion of {aoi_id} {capture_date} aborted: {e.message}")
            report.capture_errors[capture_date] = e
            return report
        else:
            await self._record(report, capture_date, summary, batch, boundaries)
        finally:
            self._end_run(run_id)

        logger.info(
            f"Capture {summary.capture_id}: {len(report.recorded)} recorded, "
            f"{len(report.errors)} failed, {len(report.cancelled)} cancelled"
        )
        return report

    async def backfill(
        self,
        aoi_id: str,
        dates: Optional[Sequence[date]] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        field_ids: Optional[Sequence[str]] = None,
    ) -> IngestionReport:
        """
        Ingest historical captures.

        Captures are loaded and aggregated concurrently; samples are appended
        in ascending date order so each field's series stays monotonic.
        """
        boundaries = self.registry.resolve(field_ids)
        if dates is None:
            dates = await run_in_executor(self.band_reader.available_dates, aoi_id)
        ordered = sorted(
            {d for d in dates if (start is None or d >= start) and (end is None or d <= end)}
        )
        run_id, cancel_event = self._begin_run()
        report = IngestionReport(aoi_id=aoi_id, run_id=run_id, capture_dates=list(ordered))
        logger.info(f"Run {run_id}: backfilling {len(ordered)} captures for {aoi_id}")

        try:
            results = await gather_with_limit(
                *(self._process_capture(aoi_id, d, boundaries, cancel_event) for d in ordered),
                limit=self.settings.max_concurrent_captures,
                return_exceptions=True,
            )
            for capture_date, result in zip(ordered, results):
                if isinstance(result, (CorruptInput, DataUnavailable)):
                    logger.error(
                        f"Backfill capture {aoi_id} {capture_date} failed: {result.message}"
                    )
                    report.capture_errors[capture_date] = result
                    continue
                if isinstance(result, BaseException):
                    raise result
                summary, batch = result
                await self._record(report, capture_date, summary, batch, boundaries)
        finally:
            self._end_run(run_id)
        return report

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def field_history(
        self, field_id: str, start: Optional[date] = None, end: Optional[date] = None
    ) -> Tuple[FieldSample, ...]:
        self.registry.get(field_id)
        return self.store.history(field_id, start, end)

    def field_forecast(self, field_id: str) -> YieldForecast:
        boundary = self.registry.get(field_id)
        return self.forecaster.forecast(self.store.snapshot(field_id), boundary.crop_type)

    def field_report(self, boundary: FieldBoundary) -> FieldReport:
        field_id = boundary.field_id
        report = FieldReport(boundary=boundary, series=self.store.snapshot(field_id))

        with self._field_errors_lock:
            recorded_error = self._field_errors.get(field_id)
        if recorded_error is not None:
            report.errors.append(recorded_error)

        if not report.series.samples:
            if recorded_error is None:
                report.errors.append(
                    ("history", DataUnavailable(f"No samples recorded for field {field_id}"))
                )
            return report

        try:
            report.trend = self.store.trend(field_id, self.settings.trend_window_size)
        except InsufficientHistory as e:
            report.errors.append(("trend", e))

        try:
            report.forecast = self.forecaster.forecast(report.series, boundary.crop_type)
        except AnalyticsError as e:
            report.errors.append(("forecast", e))
        return report

    def crop_analysis(self, field_ids: Optional[Sequence[str]] = None) -> CropAnalysisResponse:
        reports = [self.field_report(b) for b in self.registry.resolve(field_ids)]
        return assemble_crop_analysis(reports)

    def _asset_urls(self, summary: CaptureSummary) -> Dict[str, Optional[str]]:
        base = f"{summary.aoi_id}/{summary.capture_date.isoformat()}"
        if self.minio is not None:
            expires = timedelta(hours=self.settings.asset_url_expiry_hours)
            prefix = self.settings.capture_prefix.rstrip("/")
            return {
                kind: self.minio.get_presigned_url(f"{prefix}/{base}/{kind}.png", expires)
                for kind in ASSET_KINDS
            }
        root = self.settings.asset_base_url.rstrip("/")
        return {kind: f"{root}/{base}/{kind}.png" for kind in ASSET_KINDS}

    def satellite_images(self, aoi_id: Optional[str] = None) -> List[SatelliteImageSummary]:
        with self._summaries_lock:
            summaries = [
                s for s in self._summaries.values() if aoi_id is None or s.aoi_id == aoi_id
            ]
        urls = {s.capture_id: self._asset_urls(s) for s in summaries}
        return assemble_satellite_images(summaries, urls)

    async def index_statistics(
        self,
        aoi_id: str,
        capture_date: date,
        index_name: str,
        field_ids: Optional[Sequence[str]] = None,
    ) -> BatchAggregation:
        """
        Per-field statistics of any supported vegetation index for one capture.

        Nothing is recorded; only NDVI feeds the stored histories.

        Raises:
            ValueError: Unsupported index name
            UnknownField: A requested field is not registered
            DataUnavailable: The capture cannot be found
            CorruptInput: The capture is unreadable or lacks a band the index needs
        """
        if index_name.lower() not in INDEX_FUNCTIONS:
            raise ValueError(
                f"Unsupported index type: {index_name} (choose from {sorted(INDEX_FUNCTIONS)})"
            )
        boundaries = self.registry.resolve(field_ids)
        capture = await run_in_executor(self.band_reader.load, aoi_id, capture_date)
        grid = await run_in_executor(compute_index, capture, index_name)
        return await run_in_executor(self.aggregator.aggregate_many, grid, boundaries)

    async def add_yield_observation(self, observation: YieldObservation):
        self.yield_history.add(observation)
        if self.repository is not None:
            await self.repository.save_yield_observation(observation)


def build_analytics_service(
    settings: Settings, repository: Optional[AnalyticsRepository] = None
) -> AnalyticsService:
    """Wire the service from configuration."""
    minio = None
    if settings.capture_source == "minio":
        minio = get_minio_client()
        minio.ensure_bucket_exists()
        source = MinIOCaptureSource(minio, settings.capture_prefix)
    else:
        source = LocalCaptureSource(settings.capture_dir)

    band_reader = BandReader(source, settings.band_reader_timeout_seconds)
    return AnalyticsService(settings, band_reader, repository=repository, minio=minio)
