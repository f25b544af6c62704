import json
from datetime import timedelta

import pytest

from crop_analytics.core.exceptions import ForecastHorizonExceeded, InsufficientHistory
from crop_analytics.models.domain import FieldSample, TimeSeries, YieldObservation
from crop_analytics.services.yield_forecaster import (
    YieldForecaster,
    YieldHistory,
    feature_vector,
)

from conftest import START_DATE, season_dates


def _series(values, field_id="f1", spacing_days=10) -> TimeSeries:
    dates = season_dates(len(values), spacing_days)
    return TimeSeries(
        field_id=field_id,
        samples=tuple(
            FieldSample(
                field_id=field_id,
                sample_date=d,
                mean_ndvi=v,
                coverage_fraction=1.0,
                valid_pixels=100,
                total_pixels=100,
            )
            for d, v in zip(dates, values)
        ),
    )


SEASONS = [
    # peak, mean, slope per day, grain-fill days
    (0.62, 0.45, -0.005, 30),
    (0.70, 0.55, -0.008, 45),
    (0.78, 0.60, -0.006, 38),
    (0.66, 0.50, -0.009, 50),
    (0.74, 0.58, -0.007, 35),
    (0.82, 0.62, -0.010, 42),
]


def _observations(crop="wheat", count=6):
    return [
        YieldObservation(
            crop_type=crop,
            season=f"{2018 + i}",
            peak_ndvi=peak,
            mean_ndvi=mean,
            trend_slope=slope,
            grain_fill_days=days,
            observed_yield=3.5 * (0.2 + peak),
        )
        for i, (peak, mean, slope, days) in enumerate(SEASONS[:count])
    ]


@pytest.fixture
def forecaster(settings):
    return YieldForecaster(settings)


DECLINING = [0.72, 0.64, 0.56, 0.48]


def test_harvest_window_from_declining_trend(forecaster):
    window, crossing = forecaster.harvest_window(_series(DECLINING), "wheat")
    latest = START_DATE + timedelta(days=30)

    # (0.48 - 0.35) / 0.008 = 16.25 days past the latest sample
    assert crossing == latest + timedelta(days=16)
    assert window.start == latest + timedelta(days=11)
    assert window.end == latest + timedelta(days=21)
    assert str(window) == "2026-07-12 to 2026-07-22"


def test_harvest_window_when_threshold_already_crossed(forecaster):
    window, crossing = forecaster.harvest_window(_series([0.5, 0.7, 0.6, 0.3]), "wheat")

    # crossing of 0.35 between day 20 (0.6) and day 30 (0.3)
    assert crossing == START_DATE + timedelta(days=28)
    assert window.start == START_DATE + timedelta(days=23)
    assert window.end == START_DATE + timedelta(days=33)


def test_peak_below_threshold_has_no_crossing(forecaster):
    with pytest.raises(ForecastHorizonExceeded) as excinfo:
        forecaster.harvest_window(_series([0.20, 0.30, 0.25]), "wheat")
    assert excinfo.value.details == {"peak_ndvi": 0.30, "threshold": 0.35}

    with pytest.raises(ForecastHorizonExceeded):
        forecaster.harvest_window(_series([0.30, 0.35, 0.20]), "wheat")


def test_rising_ndvi_exceeds_horizon(forecaster):
    with pytest.raises(ForecastHorizonExceeded):
        forecaster.harvest_window(_series([0.3, 0.4, 0.5, 0.6]), "wheat")


def test_slow_decline_exceeds_horizon(forecaster):
    with pytest.raises(ForecastHorizonExceeded) as excinfo:
        forecaster.harvest_window(_series([0.80, 0.79, 0.78]), "wheat")
    assert excinfo.value.details["projected_days"] > 60


def test_crop_threshold_changes_the_window(forecaster):
    _, wheat = forecaster.harvest_window(_series(DECLINING), "wheat")
    _, rice = forecaster.harvest_window(_series(DECLINING), "Rice")
    assert rice < wheat


def test_forecast_needs_minimum_samples(forecaster):
    with pytest.raises(InsufficientHistory):
        forecaster.forecast(_series([0.7, 0.6]), "wheat")


def test_baseline_forecast(forecaster):
    forecast = forecaster.forecast(_series(DECLINING), "wheat")

    assert forecast.model == "baseline"
    assert forecast.training_samples == 0
    # 3.5 t/ha * 0.72 / 0.8
    assert forecast.estimated_yield == pytest.approx(3.15)
    # fit 0.5 * (0 + 1) / (0 + 6), no volatility
    assert forecast.confidence == pytest.approx(0.5 / 6, rel=1e-6)


def test_volatile_series_lowers_confidence(forecaster):
    steady = forecaster.forecast(_series([0.70, 0.62, 0.54, 0.46]), "wheat")
    jumpy = forecaster.forecast(_series([0.70, 0.50, 0.58, 0.46]), "wheat")
    assert jumpy.confidence < steady.confidence


def test_regression_forecast(settings):
    history = YieldHistory(_observations())
    forecaster = YieldForecaster(settings, history)
    forecast = forecaster.forecast(_series(DECLINING), "wheat")

    assert forecast.model == "regression"
    assert forecast.training_samples == 6
    assert 2.0 < forecast.estimated_yield < 4.5
    assert 0.0 <= forecast.confidence <= 1.0


def test_regression_is_per_crop(settings):
    forecaster = YieldForecaster(settings, YieldHistory(_observations(crop="corn")))
    assert forecaster.forecast(_series(DECLINING), "wheat").model == "baseline"
    assert forecaster.forecast(_series(DECLINING), "corn").model == "regression"


def test_model_cache_follows_history(settings):
    history = YieldHistory(_observations())
    forecaster = YieldForecaster(settings, history)

    first = forecaster._fitted_model("wheat")
    assert forecaster._fitted_model("WHEAT") is first

    history.add(_observations(count=1)[0])
    refitted = forecaster._fitted_model("wheat")
    assert refitted is not first
    assert refitted.n == 7


def test_feature_vector_scaling():
    assert feature_vector(0.8, 0.5, -0.01, 30) == pytest.approx([0.8, 0.5, -0.3, 1.0])


def test_history_load_json(tmp_path):
    path = tmp_path / "yields.json"
    path.write_text(
        json.dumps(
            [
                {
                    "crop_type": "wheat",
                    "season": "2024",
                    "peak_ndvi": 0.78,
                    "mean_ndvi": 0.52,
                    "trend_slope": -0.007,
                    "grain_fill_days": 24,
                    "observed_yield": 3.9,
                }
            ]
        )
    )
    history = YieldHistory()
    assert history.load_json(str(path)) == 1
    assert len(history) == 1
    assert history.for_crop("WHEAT")[0].observed_yield == 3.9
    assert history.version == 1
