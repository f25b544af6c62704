"""
Per-pixel vegetation indices.

Cells are marked invalid (NaN in ``values``, False in ``valid``) when the
cloud mask flags them, when any input band is non-finite or negative, or when
the index denominator is zero. Invalid cells are never coerced to a number.
"""

import logging
from typing import Optional

import numpy as np

from crop_analytics.core.exceptions import CorruptInput
from crop_analytics.models.domain import Capture, NDVIGrid

logger = logging.getLogger(__name__)


def _finalize(
    capture: Capture,
    numerator: np.ndarray,
    denominator: np.ndarray,
    index_name: str,
    *bands: np.ndarray,
) -> NDVIGrid:
    valid = ~capture.cloud_mask & (denominator != 0)
    with np.errstate(invalid="ignore"):
        for band in bands:
            # negative reflectance is invalid
            valid &= np.isfinite(band) & (band >= 0)

    values = np.full(capture.shape, np.nan, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        np.divide(numerator, denominator, out=values, where=valid)
    valid &= np.isfinite(values)
    values[~valid] = np.nan

    if values.shape != capture.shape or valid.shape != capture.shape:
        raise CorruptInput(
            f"{index_name} grid {values.shape} does not match capture {capture.shape}"
        )

    logger.debug(
        f"{index_name} for {capture.capture_id}: {int(valid.sum())}/{valid.size} valid cells"
    )
    return NDVIGrid.from_capture(capture, values, valid, index_name=index_name)


def compute_ndvi(capture: Capture) -> NDVIGrid:
    """NDVI = (NIR - Red) / (NIR + Red)."""
    red, nir = capture.red, capture.nir
    return _finalize(capture, nir - red, nir + red, "NDVI", red, nir)


def compute_savi(capture: Capture, soil_factor: float = 0.5) -> NDVIGrid:
    """SAVI = (1 + L) * (NIR - Red) / (NIR + Red + L)."""
    red, nir = capture.red, capture.nir
    return _finalize(
        capture, (1.0 + soil_factor) * (nir - red), nir + red + soil_factor, "SAVI", red, nir
    )


def compute_evi(capture: Capture) -> NDVIGrid:
    """EVI = 2.5 * (NIR - Red) / (NIR + 6 Red - 7.5 Blue + 1)."""
    blue = _require_band(capture, capture.blue, "blue", "EVI")
    red, nir = capture.red, capture.nir
    return _finalize(
        capture, 2.5 * (nir - red), nir + 6.0 * red - 7.5 * blue + 1.0, "EVI", red, nir, blue
    )


def compute_ndmi(capture: Capture) -> NDVIGrid:
    """NDMI = (NIR - SWIR) / (NIR + SWIR)."""
    swir = _require_band(capture, capture.swir, "swir", "NDMI")
    nir = capture.nir
    return _finalize(capture, nir - swir, nir + swir, "NDMI", nir, swir)


def _require_band(
    capture: Capture, band: Optional[np.ndarray], name: str, index_name: str
) -> np.ndarray:
    if band is None:
        raise CorruptInput(f"{index_name} needs the {name} band, absent in {capture.capture_id}")
    return band


INDEX_FUNCTIONS = {
    "ndvi": compute_ndvi,
    "savi": compute_savi,
    "evi": compute_evi,
    "ndmi": compute_ndmi,
}


def compute_index(capture: Capture, index_name: str) -> NDVIGrid:
    try:
        func = INDEX_FUNCTIONS[index_name.lower()]
    except KeyError:
        raise ValueError(f"Unsupported index type: {index_name}")
    return func(capture)
