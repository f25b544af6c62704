"""
Yield forecasting from a field's NDVI time series.

Feature vector (one row per season):
    peak NDVI, season mean NDVI, trailing trend slope (NDVI per 30 days),
    grain-fill length (peak to maturity crossing, in 30-day units)

Target: observed yield relative to the crop's baseline yield. A Ridge
regression is fitted per crop type on historical ground truth; when too few
observations exist a baseline model ``baseline * peak / reference_peak`` is
used instead, with a lower confidence.
"""

import json
import logging
import math
import threading
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from sklearn.linear_model import Ridge

from crop_analytics.config.settings import Settings
from crop_analytics.core.exceptions import ForecastHorizonExceeded, InsufficientHistory
from crop_analytics.models.domain import (
    HarvestWindow,
    TimeSeries,
    YieldForecast,
    YieldObservation,
)
from crop_analytics.services.timeseries_store import least_squares_slope

logger = logging.getLogger(__name__)

BASELINE_FIT_QUALITY = 0.5
VOLATILITY_WEIGHT = 10.0


class YieldHistory:
    """Thread-safe collection of historical yield observations."""

    def __init__(self, observations: Sequence[YieldObservation] = ()):
        self._lock = threading.Lock()
        self._observations: List[YieldObservation] = list(observations)
        self.version = 0

    def add(self, observation: YieldObservation):
        with self._lock:
            self._observations.append(observation)
            self.version += 1

    def extend(self, observations: Sequence[YieldObservation]):
        with self._lock:
            self._observations.extend(observations)
            self.version += 1

    def for_crop(self, crop_type: str) -> List[YieldObservation]:
        crop = crop_type.lower()
        with self._lock:
            return [o for o in self._observations if o.crop_type.lower() == crop]

    def __len__(self) -> int:
        with self._lock:
            return len(self._observations)

    def load_json(self, path: str) -> int:
        """
        Load observations from a JSON list of objects with YieldObservation keys.

        Returns:
            Number of observations loaded
        """
        with open(path, "r", encoding="utf-8") as fh:
            records = json.load(fh)
        observations = [
            YieldObservation(
                crop_type=str(r["crop_type"]),
                season=str(r.get("season", "")),
                peak_ndvi=float(r["peak_ndvi"]),
                mean_ndvi=float(r["mean_ndvi"]),
                trend_slope=float(r["trend_slope"]),
                grain_fill_days=float(r["grain_fill_days"]),
                observed_yield=float(r["observed_yield"]),
            )
            for r in records
        ]
        self.extend(observations)
        logger.info(f"Loaded {len(observations)} yield observations from {path}")
        return len(observations)


def feature_vector(
    peak_ndvi: float, mean_ndvi: float, trend_slope: float, grain_fill_days: float
) -> List[float]:
    return [peak_ndvi, mean_ndvi, trend_slope * 30.0, grain_fill_days / 30.0]


class _FittedModel:
    def __init__(self, model: Ridge, rmse: float, n: int):
        self.model = model
        self.rmse = rmse
        self.n = n


class YieldForecaster:
    """Produces YieldForecasts from TimeSeries snapshots."""

    def __init__(self, settings: Settings, history: Optional[YieldHistory] = None):
        self.settings = settings
        self.history = history or YieldHistory()
        self._models: Dict[str, Tuple[int, Optional[_FittedModel]]] = {}
        self._models_lock = threading.Lock()

    def harvest_window(self, series: TimeSeries, crop_type: str) -> Tuple[HarvestWindow, date]:
        """
        Date range in which NDVI reaches the crop's maturity threshold.

        Returns:
            (window, central maturity date)

        Raises:
            InsufficientHistory: Fewer than two samples
            ForecastHorizonExceeded: NDVI never rose above the threshold, is
                not declining, or the projected crossing lies beyond the
                configured horizon
        """
        samples = series.samples
        if len(samples) < 2:
            raise InsufficientHistory(
                f"Harvest window for {series.field_id} needs at least 2 samples"
            )

        threshold = self.settings.maturity_threshold_for(crop_type)
        margin = timedelta(days=self.settings.harvest_window_margin_days)
        values = [s.mean_ndvi for s in samples]
        peak_idx = int(np.argmax(values))
        if values[peak_idx] <= threshold:
            raise ForecastHorizonExceeded(
                f"Peak NDVI for {series.field_id} ({values[peak_idx]:.3f}) has not risen above "
                f"the {crop_type} maturity threshold {threshold}; no downward crossing yet",
                details={"peak_ndvi": values[peak_idx], "threshold": threshold},
            )

        # already crossed after the peak: interpolate the crossing date
        for i in range(peak_idx + 1, len(samples)):
            if values[i] <= threshold:
                v0, v1 = values[i - 1], values[i]
                d0, d1 = samples[i - 1].sample_date, samples[i].sample_date
                fraction = (v0 - threshold) / (v0 - v1) if v0 != v1 else 1.0
                crossing = d0 + timedelta(days=round(fraction * (d1 - d0).days))
                return HarvestWindow(crossing - margin, crossing + margin), crossing

        window = samples[-self.settings.trend_window_size:]
        slope, stderr = least_squares_slope(
            [s.sample_date for s in window], [s.mean_ndvi for s in window]
        )
        latest = samples[-1]
        horizon = self.settings.forecast_horizon_days

        if slope >= 0 or peak_idx == len(samples) - 1:
            raise ForecastHorizonExceeded(
                f"NDVI for {series.field_id} is not declining toward maturity "
                f"({slope:+.4f}/day); no crossing within {horizon} days",
                details={"slope": slope, "horizon_days": horizon},
            )

        days = (latest.mean_ndvi - threshold) / -slope
        if days > horizon:
            raise ForecastHorizonExceeded(
                f"Maturity for {series.field_id} projected {days:.0f} days out, "
                f"beyond the {horizon}-day horizon",
                details={"projected_days": days, "horizon_days": horizon},
            )

        early_days = (latest.mean_ndvi - threshold) / -(slope - stderr)
        late_slope = slope + stderr
        late_days = (latest.mean_ndvi - threshold) / -late_slope if late_slope < 0 else horizon

        start_offset = max(0.0, min(early_days, days - margin.days))
        end_offset = min(float(horizon), max(late_days, days + margin.days))
        crossing = latest.sample_date + timedelta(days=round(days))
        window_range = HarvestWindow(
            latest.sample_date + timedelta(days=round(start_offset)),
            latest.sample_date + timedelta(days=round(end_offset)),
        )
        return window_range, crossing

    def _fitted_model(self, crop_type: str) -> Optional[_FittedModel]:
        key = crop_type.lower()
        with self._models_lock:
            cached = self._models.get(key)
            if cached is not None and cached[0] == self.history.version:
                return cached[1]

            version = self.history.version
            observations = self.history.for_crop(crop_type)
            fitted = None
            if len(observations) >= self.settings.min_training_observations:
                baseline = self.settings.baseline_yield_for(crop_type)
                X = np.array(
                    [
                        feature_vector(o.peak_ndvi, o.mean_ndvi, o.trend_slope, o.grain_fill_days)
                        for o in observations
                    ]
                )
                y = np.array([o.observed_yield / baseline for o in observations])
                model = Ridge(alpha=0.1).fit(X, y)
                residuals = y - model.predict(X)
                rmse = float(np.sqrt(np.mean(residuals ** 2)))
                fitted = _FittedModel(model, rmse, len(observations))
                logger.info(
                    f"Fitted yield model for {crop_type} on {len(observations)} "
                    f"observations (relative RMSE {rmse:.3f})"
                )
            self._models[key] = (version, fitted)
            return fitted

    def forecast(self, series: TimeSeries, crop_type: str) -> YieldForecast:
        """
        Forecast yield, confidence and harvest window for one field.

        Raises:
            InsufficientHistory: Fewer than ``forecast_min_samples`` samples
            ForecastHorizonExceeded: Harvest window cannot be projected
        """
        samples = series.samples
        if len(samples) < self.settings.forecast_min_samples:
            raise InsufficientHistory(
                f"Forecast for {series.field_id} needs {self.settings.forecast_min_samples} "
                f"samples, has {len(samples)}",
                details={"samples": len(samples)},
            )

        window, maturity_date = self.harvest_window(series, crop_type)

        values = [s.mean_ndvi for s in samples]
        peak_idx = int(np.argmax(values))
        peak_ndvi = values[peak_idx]
        mean_ndvi = math.fsum(values) / len(values)
        trailing = samples[-self.settings.trend_window_size:]
        slope, _ = least_squares_slope(
            [s.sample_date for s in trailing], [s.mean_ndvi for s in trailing]
        )
        grain_fill_days = max(0, (maturity_date - samples[peak_idx].sample_date).days)

        baseline = self.settings.baseline_yield_for(crop_type)
        fitted = self._fitted_model(crop_type)
        if fitted is not None:
            x = np.array([feature_vector(peak_ndvi, mean_ndvi, slope, grain_fill_days)])
            ratio = float(fitted.model.predict(x)[0])
            fit_quality = max(0.0, 1.0 - fitted.rmse)
            n_training = fitted.n
            model_name = "regression"
        else:
            ratio = peak_ndvi / self.settings.reference_peak_ndvi
            fit_quality = BASELINE_FIT_QUALITY
            n_training = 0
            model_name = "baseline"

        volatility = float(np.std(np.diff(values)))
        sample_factor = (n_training + 1) / (n_training + 6)
        volatility_factor = 1.0 / (1.0 + VOLATILITY_WEIGHT * volatility)
        confidence = min(1.0, max(0.0, fit_quality * sample_factor * volatility_factor))

        forecast = YieldForecast(
            field_id=series.field_id,
            estimated_yield=max(0.0, baseline * ratio),
            confidence=confidence,
            harvest_window=window,
            model=model_name,
            training_samples=n_training,
        )
        logger.debug(
            f"Forecast {series.field_id}: {forecast.estimated_yield:.2f} t/ha "
            f"({model_name}, confidence {confidence:.2f}), harvest {window}"
        )
        return forecast
