import asyncio
import os
import threading

import numpy as np
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from crop_analytics.core.exceptions import CorruptInput, UnknownField
from crop_analytics.database.connection import Base
from crop_analytics.database.models import FieldSampleRecord  # noqa: F401
from crop_analytics.database.repository import AnalyticsRepository
from crop_analytics.models.domain import GrowthStage, HealthCategory, YieldObservation
from crop_analytics.services.analytics_service import AnalyticsService
from crop_analytics.services.band_reader import capture_object_name

from conftest import GRID_SIZE, season_dates, split_grid, write_capture

AOI = "farm-1"
WEST = [0.72, 0.64, 0.56, 0.48]
EAST = [0.30, 0.42, 0.54, 0.66]


def _write_season(root, west=WEST, east=EAST):
    dates = season_dates(len(west))
    for d, w, e in zip(dates, west, east):
        write_capture(root, AOI, d, split_grid(w, e))
    return dates


@pytest.fixture
def registered(service, fields):
    service.register_fields(list(fields.values()))
    return service


def test_season_round_trip(registered, capture_root):
    dates = _write_season(capture_root)
    report = asyncio.run(registered.backfill(AOI))

    assert report.success
    assert report.capture_dates == dates
    assert report.recorded["west"] == dates
    assert report.recorded["east"] == dates
    assert [stage for stage, _ in report.errors["tiny"]] == ["aggregation"] * 4

    payload = registered.crop_analysis()
    by_id = {f.id: f for f in payload.fields}
    assert list(by_id) == ["east", "tiny", "west"]

    west = by_id["west"]
    assert west.current_ndvi == pytest.approx(0.48)
    assert west.health == HealthCategory.POOR.value  # Fair, demoted by the decline
    assert west.growth_stage == GrowthStage.MATURITY.value
    assert west.trend == pytest.approx(-0.008)
    assert west.yield_prediction.model == "baseline"
    assert west.yield_prediction.estimated_yield == pytest.approx(3.15)
    assert west.yield_prediction.harvest_window == "2026-07-12 to 2026-07-22"
    assert west.errors == []

    east = by_id["east"]
    assert east.health == HealthCategory.EXCELLENT.value
    assert east.yield_prediction is None
    assert [(e.stage, e.code) for e in east.errors] == [("forecast", "ForecastHorizonExceeded")]

    tiny = by_id["tiny"]
    assert tiny.current_ndvi is None
    assert [(e.stage, e.code) for e in tiny.errors] == [("aggregation", "FieldTooSmall")]

    assert payload.health_distribution == [50.0, 0.0, 0.0, 50.0, 0.0]
    assert payload.ndvi.timestamps == [d.isoformat() for d in dates]
    assert payload.ndvi.values == pytest.approx([0.51, 0.53, 0.55, 0.57])
    assert payload.yield_prediction.fields_included == 1


def test_single_capture_has_unknown_trend(registered, capture_root):
    dates = _write_season(capture_root)
    asyncio.run(registered.ingest_capture(AOI, dates[0], ["west"]))

    report = registered.field_report(registered.registry.get("west"))
    assert report.trend is None
    assert report.latest.health == HealthCategory.EXCELLENT
    assert {(stage, type(e).__name__) for stage, e in report.errors} == {
        ("trend", "InsufficientHistory"),
        ("forecast", "InsufficientHistory"),
    }


def test_unrecorded_field_reports_missing_history(registered):
    report = registered.field_report(registered.registry.get("east"))
    assert [(stage, type(e).__name__) for stage, e in report.errors] == [
        ("history", "DataUnavailable")
    ]


def test_missing_capture_is_a_capture_error(registered):
    report = asyncio.run(registered.ingest_capture(AOI, season_dates(1)[0]))

    assert not report.success
    assert report.recorded == {}
    assert type(report.capture_errors[season_dates(1)[0]]).__name__ == "DataUnavailable"


def test_corrupt_capture_is_a_capture_error(registered, capture_root):
    capture_date = season_dates(1)[0]
    path = os.path.join(capture_root, capture_object_name(AOI, capture_date))
    os.makedirs(os.path.dirname(path))
    with open(path, "wb") as fh:
        fh.write(b"\x00garbage")

    report = asyncio.run(registered.ingest_capture(AOI, capture_date))
    assert type(report.capture_errors[capture_date]).__name__ == "CorruptInput"


def test_clouded_field_fails_alone(registered, capture_root):
    capture_date = season_dates(1)[0]
    mask = np.zeros((GRID_SIZE, GRID_SIZE), dtype=bool)
    mask[:10, :10] = True  # the whole western field
    write_capture(capture_root, AOI, capture_date, split_grid(0.7, 0.5), cloud_mask=mask)

    report = asyncio.run(registered.ingest_capture(AOI, capture_date, ["west", "east"]))
    assert report.success
    assert list(report.recorded) == ["east"]
    assert [(s, e.error_code) for s, e in report.errors["west"]] == [
        ("aggregation", "DataUnavailable")
    ]


def test_same_date_reingest_replaces(registered, capture_root):
    dates = _write_season(capture_root)
    asyncio.run(registered.ingest_capture(AOI, dates[0], ["west"]))
    asyncio.run(registered.ingest_capture(AOI, dates[0], ["west"]))
    assert len(registered.field_history("west")) == 1


def test_out_of_order_capture_is_rejected(registered, capture_root):
    dates = _write_season(capture_root)
    asyncio.run(registered.ingest_capture(AOI, dates[2], ["west"]))
    report = asyncio.run(registered.ingest_capture(AOI, dates[0], ["west"]))

    assert [(s, e.error_code) for s, e in report.errors["west"]] == [
        ("ingestion", "OutOfOrderSample")
    ]
    assert [s.sample_date for s in registered.field_history("west")] == [dates[2]]


def test_backfill_date_range(registered, capture_root):
    dates = _write_season(capture_root)
    report = asyncio.run(
        registered.backfill(AOI, start=dates[1], end=dates[2], field_ids=["west"])
    )
    assert report.capture_dates == dates[1:3]
    assert [s.sample_date for s in registered.field_history("west")] == dates[1:3]


def test_unknown_field(registered):
    with pytest.raises(UnknownField):
        asyncio.run(registered.ingest_capture(AOI, season_dates(1)[0], ["nope"]))
    with pytest.raises(UnknownField):
        registered.field_forecast("nope")


def test_cancellation_skips_pending_fields(registered, capture_root, monkeypatch):
    capture_date = _write_season(capture_root)[0]
    load = registered.band_reader.load

    def load_then_cancel(aoi_id, d):
        capture = load(aoi_id, d)
        registered.cancel_ingestion()
        return capture

    monkeypatch.setattr(registered.band_reader, "load", load_then_cancel)
    report = asyncio.run(registered.ingest_capture(AOI, capture_date))

    assert report.recorded == {}
    assert report.cancelled == ["east", "tiny", "west"]
    assert registered.active_runs() == []


def test_cancel_is_not_undone_by_a_later_run(registered, capture_root, monkeypatch):
    dates = _write_season(capture_root)
    load = registered.band_reader.load
    first_loading = threading.Event()
    second_started = threading.Event()

    def gated_load(aoi_id, d):
        if d == dates[0]:
            first_loading.set()
            second_started.wait(timeout=5)
        return load(aoi_id, d)

    monkeypatch.setattr(registered.band_reader, "load", gated_load)

    async def scenario():
        first = asyncio.ensure_future(registered.ingest_capture(AOI, dates[0], ["west"]))
        await asyncio.get_running_loop().run_in_executor(None, first_loading.wait, 5)
        signalled = registered.cancel_ingestion()

        second = asyncio.ensure_future(registered.ingest_capture(AOI, dates[1], ["east"]))
        await asyncio.sleep(0)
        running = registered.active_runs()
        second_started.set()
        return signalled, running, await first, await second

    signalled, running, first, second = asyncio.run(scenario())

    assert signalled == [first.run_id]
    assert sorted(running) == sorted([first.run_id, second.run_id])
    assert first.recorded == {}
    assert first.cancelled == ["west"]
    assert second.recorded == {"east": [dates[1]]}
    assert second.cancelled == []
    assert registered.active_runs() == []


def test_cancel_targets_a_single_run(registered):
    run_a, _ = registered._begin_run()
    run_b, event_b = registered._begin_run()
    try:
        assert registered.cancel_ingestion(run_a) == [run_a]
        assert not event_b.is_set()
        assert registered.cancel_ingestion("IR_unknown") == []
    finally:
        registered._end_run(run_a)
        registered._end_run(run_b)
    assert registered.cancel_ingestion() == []


def test_satellite_images_after_ingestion(registered, capture_root, settings):
    dates = _write_season(capture_root)
    asyncio.run(registered.backfill(AOI, dates=dates[:2]))

    images = registered.satellite_images(AOI)
    assert [i.capture_date for i in images] == [dates[1].isoformat(), dates[0].isoformat()]
    assert images[0].id == f"{AOI}-{dates[1]:%Y%m%d}"
    assert images[0].cloud_cover == 0.0
    assert images[0].ndvi == f"{settings.asset_base_url}/{AOI}/{dates[1].isoformat()}/ndvi.png"
    assert registered.satellite_images("elsewhere") == []


def test_ingestion_publishes_changes(registered, capture_root):
    capture_date = _write_season(capture_root)[0]

    async def scenario():
        subscription = registered.notifier.subscribe()
        try:
            await registered.ingest_capture(AOI, capture_date, ["west", "east"])
            events = []
            while not events or events[-1]["type"] != "capture_ingested":
                events.append(await subscription.get(timeout=2))
            return events
        finally:
            subscription.close()

    events = asyncio.run(scenario())
    assert sorted(e["fieldId"] for e in events if e["type"] == "sample_recorded") == [
        "east",
        "west",
    ]
    assert events[-1]["fields"] == ["east", "west"]
    assert registered.notifier.subscriber_count == 0


def test_state_survives_restart(registered, capture_root, fields, settings, tmp_path):
    dates = _write_season(capture_root)
    observation = YieldObservation("wheat", "2025", 0.78, 0.55, -0.007, 30, 3.8)

    async def scenario():
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        repository = AnalyticsRepository(async_sessionmaker(engine, expire_on_commit=False))
        try:
            registered.repository = repository
            await registered.backfill(AOI, dates=dates[:3])
            # re-ingesting a date upserts rather than duplicating
            await registered.ingest_capture(AOI, dates[2])
            await registered.add_yield_observation(observation)

            restarted = AnalyticsService(settings, registered.band_reader, repository=repository)
            await restarted.hydrate()
            return restarted
        finally:
            await engine.dispose()

    restarted = asyncio.run(scenario())
    restarted.register_fields(list(fields.values()))

    assert restarted.store.field_ids() == ["east", "west"]
    assert restarted.field_history("west") == registered.field_history("west")
    assert len(restarted.satellite_images(AOI)) == 3
    assert len(restarted.yield_history) == 1
    assert restarted.yield_history.for_crop("wheat")[0] == observation


def test_index_statistics_for_other_indices(registered, capture_root):
    capture_date = _write_season(capture_root)[0]
    batch = asyncio.run(registered.index_statistics(AOI, capture_date, "SAVI", ["west", "east"]))

    def savi(ndvi):
        nir = 0.1 * (1 + ndvi) / (1 - ndvi)
        return 1.5 * (nir - 0.1) / (nir + 0.1 + 0.5)

    assert batch.samples["west"].mean_ndvi == pytest.approx(savi(WEST[0]))
    assert batch.samples["east"].mean_ndvi == pytest.approx(savi(EAST[0]))
    # nothing is recorded
    assert len(registered.field_history("west")) == 0

    with pytest.raises(CorruptInput, match="blue"):
        asyncio.run(registered.index_statistics(AOI, capture_date, "evi"))
    with pytest.raises(ValueError, match="Unsupported index"):
        asyncio.run(registered.index_statistics(AOI, capture_date, "gndvi"))
