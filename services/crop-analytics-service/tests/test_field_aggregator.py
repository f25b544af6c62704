import threading

import numpy as np
import pytest

from crop_analytics.core.exceptions import DataUnavailable, FieldTooSmall
from crop_analytics.models.domain import FieldBoundary, HealthCategory
from crop_analytics.services.field_aggregator import (
    FieldAggregator,
    select_pixels,
    summarize_capture,
)
from crop_analytics.services.health_classifier import HealthClassifier
from crop_analytics.services.index_calculator import compute_ndvi

from conftest import GRID_SIZE, bands_for_ndvi, make_capture, split_grid, square_field


def _grid(ndvi=None, cloud_mask=None, red=None, nir=None):
    if red is None:
        red, nir = bands_for_ndvi(ndvi)
    return compute_ndvi(make_capture(red, nir, cloud_mask))


def test_uniform_field_scenario(settings, fields):
    # Red 0.1, NIR 0.4 over a 100-pixel field
    grid = _grid(red=np.full((GRID_SIZE, GRID_SIZE), 0.1), nir=np.full((GRID_SIZE, GRID_SIZE), 0.4))
    sample = FieldAggregator().aggregate(grid, fields["west"])

    assert sample.total_pixels == 100
    assert sample.valid_pixels == 100
    assert sample.coverage_fraction == 1.0
    assert sample.mean_ndvi == pytest.approx(0.6)
    assert sample.ndvi_std == pytest.approx(0.0, abs=1e-12)
    assert not sample.low_confidence

    classifier = HealthClassifier(settings.health_thresholds)
    assert classifier.classify(sample, None).category == HealthCategory.EXCELLENT


def test_pixel_selection_uses_centres(fields):
    grid = _grid(split_grid(0.7, 0.3))
    rows, cols = select_pixels(grid, fields["west"])

    assert rows.size == 100
    assert rows.min() == 0 and rows.max() == 9
    assert cols.min() == 0 and cols.max() == 9


def test_centres_on_the_boundary_are_excluded():
    grid = _grid(np.full((GRID_SIZE, GRID_SIZE), 0.5))
    # hypotenuse x + y = 200 passes through a diagonal of pixel centres
    triangle = FieldBoundary.from_coordinates(
        "tri", "Triangle", 0.5, "corn", [[0, 100], [100, 100], [0, 200], [0, 100]]
    )
    rows, _ = select_pixels(grid, triangle)
    assert rows.size == 45


def test_mean_matches_the_field_half(fields):
    grid = _grid(split_grid(0.7, 0.3))
    aggregator = FieldAggregator()

    assert aggregator.aggregate(grid, fields["west"]).mean_ndvi == pytest.approx(0.7)
    assert aggregator.aggregate(grid, fields["east"]).mean_ndvi == pytest.approx(0.3)


def test_aggregation_is_deterministic(fields):
    rng = np.random.default_rng(11)
    grid = _grid(rng.uniform(-0.2, 0.9, (GRID_SIZE, GRID_SIZE)))
    aggregator = FieldAggregator()

    first = aggregator.aggregate(grid, fields["west"])
    second = aggregator.aggregate(grid, fields["west"])
    assert first.mean_ndvi == second.mean_ndvi
    assert first.ndvi_std == second.ndvi_std


def test_partial_cloud_lowers_coverage(fields):
    mask = np.zeros((GRID_SIZE, GRID_SIZE), dtype=bool)
    mask[:6, :10] = True
    grid = _grid(np.full((GRID_SIZE, GRID_SIZE), 0.6), cloud_mask=mask)
    sample = FieldAggregator(min_coverage_fraction=0.5).aggregate(grid, fields["west"])

    assert sample.total_pixels == 100
    assert sample.valid_pixels == 40
    assert sample.coverage_fraction == pytest.approx(0.4)
    assert sample.low_confidence


def test_fully_clouded_field_is_unavailable(fields):
    mask = np.zeros((GRID_SIZE, GRID_SIZE), dtype=bool)
    mask[:10, :10] = True
    grid = _grid(np.full((GRID_SIZE, GRID_SIZE), 0.6), cloud_mask=mask)

    with pytest.raises(DataUnavailable):
        FieldAggregator().aggregate(grid, fields["west"])


def test_negative_reflectance_stays_out_of_the_mean(fields):
    red = np.full((GRID_SIZE, GRID_SIZE), 0.1)
    nir = np.full((GRID_SIZE, GRID_SIZE), 0.4)
    red[:5, :10] = 0.3
    nir[:5, :10] = -0.1
    sample = FieldAggregator().aggregate(_grid(red=red, nir=nir), fields["west"])

    assert sample.valid_pixels == 50
    assert sample.mean_ndvi == pytest.approx(0.6)

    all_negative = nir.copy()
    all_negative[:10, :10] = -0.1
    with pytest.raises(DataUnavailable):
        FieldAggregator().aggregate(_grid(red=red.copy(), nir=all_negative), fields["west"])


def test_field_smaller_than_a_pixel(fields):
    grid = _grid(np.full((GRID_SIZE, GRID_SIZE), 0.6))
    with pytest.raises(FieldTooSmall):
        FieldAggregator().aggregate(grid, fields["tiny"])


def test_field_outside_the_grid(fields):
    grid = _grid(np.full((GRID_SIZE, GRID_SIZE), 0.6))
    far = square_field("far", 5000.0, 5000.0, 100.0)
    with pytest.raises(FieldTooSmall):
        FieldAggregator().aggregate(grid, far)


def test_batch_isolates_failing_fields(fields):
    grid = _grid(split_grid(0.7, 0.3))
    result = FieldAggregator(max_workers=3).aggregate_many(grid, list(fields.values()))

    assert set(result.samples) == {"west", "east"}
    assert set(result.errors) == {"tiny"}
    assert isinstance(result.errors["tiny"], FieldTooSmall)
    assert result.cancelled == []


def test_batch_matches_sequential_results(fields):
    rng = np.random.default_rng(3)
    grid = _grid(rng.uniform(0.0, 0.9, (GRID_SIZE, GRID_SIZE)))
    aggregator = FieldAggregator(max_workers=4)
    boundaries = [fields["west"], fields["east"]]

    parallel = aggregator.aggregate_many(grid, boundaries)
    for boundary in boundaries:
        assert parallel.samples[boundary.field_id] == aggregator.aggregate(grid, boundary)


def test_cancelled_batch_skips_pending_fields(fields):
    grid = _grid(split_grid(0.7, 0.3))
    cancel = threading.Event()
    cancel.set()

    result = FieldAggregator().aggregate_many(grid, list(fields.values()), cancel_event=cancel)
    assert result.samples == {}
    assert result.cancelled == ["east", "tiny", "west"]


def test_summarize_capture(settings):
    mask = np.zeros((GRID_SIZE, GRID_SIZE), dtype=bool)
    mask[0, :] = True
    grid = _grid(split_grid(0.7, 0.25), cloud_mask=mask)
    summary = summarize_capture(grid, settings.health_thresholds)

    assert summary.cloud_cover == 5.0
    assert summary.avg_ndvi == pytest.approx(0.475)
    assert summary.vegetation_coverage == 100.0
    assert summary.healthy_vegetation == 50.0
    assert summary.stressed_areas == 50.0


def test_summarize_fully_clouded_capture(settings):
    mask = np.ones((4, 4), dtype=bool)
    grid = _grid(np.full((4, 4), 0.6), cloud_mask=mask)
    summary = summarize_capture(grid, settings.health_thresholds)

    assert summary.cloud_cover == 100.0
    assert summary.avg_ndvi is None
    assert summary.vegetation_coverage == 0.0
