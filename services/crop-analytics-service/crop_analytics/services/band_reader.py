"""
Band reader: loads one capture's spectral bands and cloud mask.

Captures are stored as ``.npz`` archives, one per area of interest and date,
either on local disk or in a MinIO bucket:

    <root or prefix>/<aoi_id>/<YYYY-MM-DD>.npz

Archive members: ``red``, ``nir``, optional ``swir``, optional ``blue``,
optional ``cloud_mask`` and ``metadata`` (a JSON string carrying
``resolution``, ``origin_x``, ``origin_y`` and optionally ``cloud_cover`` and
``capture_id``).
"""

import io
import json
import logging
import os
import zipfile
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import numpy as np
from minio.error import S3Error

from crop_analytics.core.exceptions import CorruptInput, DataUnavailable
from crop_analytics.models.domain import Capture
from crop_analytics.storage.minio_client import MinIOClient
from crop_analytics.utils.validation import validate_identifier

logger = logging.getLogger(__name__)

REQUIRED_BANDS = ("red", "nir")
OPTIONAL_BANDS = ("swir", "blue")
ARCHIVE_SUFFIX = ".npz"


def capture_object_name(aoi_id: str, capture_date: date, prefix: str = "") -> str:
    name = f"{aoi_id}/{capture_date.isoformat()}{ARCHIVE_SUFFIX}"
    return f"{prefix.rstrip('/')}/{name}" if prefix else name


def _parse_archive_date(name: str) -> Optional[date]:
    stem = os.path.basename(name)
    if not stem.endswith(ARCHIVE_SUFFIX):
        return None
    try:
        return datetime.strptime(stem[: -len(ARCHIVE_SUFFIX)], "%Y-%m-%d").date()
    except ValueError:
        return None


class CaptureSource(ABC):
    """Where capture archives come from."""

    @abstractmethod
    def fetch(self, aoi_id: str, capture_date: date) -> Optional[bytes]:
        """Return the raw archive, or None when no capture exists."""

    @abstractmethod
    def list_dates(self, aoi_id: str) -> List[date]:
        """Dates for which a capture exists, ascending."""


class LocalCaptureSource(CaptureSource):
    def __init__(self, root: str):
        self.root = root

    def fetch(self, aoi_id: str, capture_date: date) -> Optional[bytes]:
        path = os.path.join(self.root, capture_object_name(aoi_id, capture_date))
        if not os.path.isfile(path):
            return None
        try:
            with open(path, "rb") as fh:
                return fh.read()
        except OSError as e:
            raise DataUnavailable(f"Failed to read capture {path}: {e}") from e

    def list_dates(self, aoi_id: str) -> List[date]:
        directory = os.path.join(self.root, aoi_id)
        if not os.path.isdir(directory):
            return []
        dates = (_parse_archive_date(name) for name in os.listdir(directory))
        return sorted(d for d in dates if d is not None)


class MinIOCaptureSource(CaptureSource):
    def __init__(self, client: MinIOClient, prefix: str = "captures"):
        self.client = client
        self.prefix = prefix

    def fetch(self, aoi_id: str, capture_date: date) -> Optional[bytes]:
        object_name = capture_object_name(aoi_id, capture_date, self.prefix)
        try:
            return self.client.download_file(object_name)
        except S3Error as e:
            raise DataUnavailable(f"Object storage error for {object_name}: {e}") from e

    def list_dates(self, aoi_id: str) -> List[date]:
        prefix = f"{self.prefix.rstrip('/')}/{aoi_id}/" if self.prefix else f"{aoi_id}/"
        try:
            names = self.client.list_files(prefix)
        except S3Error as e:
            raise DataUnavailable(f"Object storage error listing {prefix}: {e}") from e
        dates = (_parse_archive_date(name) for name in names)
        return sorted(d for d in dates if d is not None)


def encode_capture(
    red: np.ndarray,
    nir: np.ndarray,
    resolution: float,
    origin_x: float,
    origin_y: float,
    cloud_mask: Optional[np.ndarray] = None,
    swir: Optional[np.ndarray] = None,
    blue: Optional[np.ndarray] = None,
    cloud_cover: Optional[float] = None,
    capture_id: Optional[str] = None,
) -> bytes:
    """Serialize bands into the archive format understood by ``decode_capture``."""
    metadata: Dict[str, Any] = {
        "resolution": resolution,
        "origin_x": origin_x,
        "origin_y": origin_y,
    }
    if cloud_cover is not None:
        metadata["cloud_cover"] = cloud_cover
    if capture_id is not None:
        metadata["capture_id"] = capture_id

    arrays = {"red": red, "nir": nir, "metadata": np.array(json.dumps(metadata))}
    for name, band in (("cloud_mask", cloud_mask), ("swir", swir), ("blue", blue)):
        if band is not None:
            arrays[name] = band

    buffer = io.BytesIO()
    np.savez_compressed(buffer, **arrays)
    return buffer.getvalue()


def _as_grid(name: str, array: np.ndarray) -> np.ndarray:
    if array.ndim != 2:
        raise CorruptInput(f"Band '{name}' must be 2-D, got {array.ndim} dimensions")
    if not np.issubdtype(array.dtype, np.number):
        raise CorruptInput(f"Band '{name}' is not numeric ({array.dtype})")
    return np.array(array, dtype=np.float64)


def _as_mask(array: np.ndarray) -> np.ndarray:
    if array.dtype == np.bool_:
        return np.array(array)
    if np.issubdtype(array.dtype, np.integer) and np.isin(array, (0, 1)).all():
        return array.astype(bool)
    raise CorruptInput("Cloud mask must be boolean or 0/1 integers")


def decode_capture(payload: bytes, aoi_id: str, capture_date: date) -> Capture:
    """Parse and validate a capture archive."""
    try:
        archive = np.load(io.BytesIO(payload), allow_pickle=False)
    except (ValueError, OSError, zipfile.BadZipFile) as e:
        raise CorruptInput(f"Unreadable capture archive for {aoi_id} {capture_date}: {e}") from e

    with archive:
        members = set(archive.files)
        missing = [b for b in REQUIRED_BANDS + ("metadata",) if b not in members]
        if missing:
            raise CorruptInput(f"Capture archive missing members: {', '.join(missing)}")

        try:
            metadata = json.loads(str(archive["metadata"]))
            resolution = float(metadata["resolution"])
            origin_x = float(metadata["origin_x"])
            origin_y = float(metadata["origin_y"])
        except (ValueError, KeyError, TypeError) as e:
            raise CorruptInput(f"Invalid capture metadata: {e}") from e
        if resolution <= 0:
            raise CorruptInput(f"Resolution must be positive, got {resolution}")

        bands = {name: _as_grid(name, archive[name]) for name in REQUIRED_BANDS}
        for name in OPTIONAL_BANDS:
            if name in members:
                bands[name] = _as_grid(name, archive[name])

        shape = bands["red"].shape
        mismatched = [name for name, band in bands.items() if band.shape != shape]
        if mismatched:
            raise CorruptInput(
                f"Band dimensions mismatch: expected {shape}, "
                f"got {', '.join(f'{n}={bands[n].shape}' for n in mismatched)}"
            )

        if "cloud_mask" in members:
            cloud_mask = _as_mask(archive["cloud_mask"])
            if cloud_mask.shape != shape:
                raise CorruptInput(
                    f"Cloud mask {cloud_mask.shape} does not align with bands {shape}"
                )
        else:
            cloud_mask = np.zeros(shape, dtype=bool)

    cloud_cover = metadata.get("cloud_cover")
    if cloud_cover is None:
        cloud_cover = float(cloud_mask.mean()) if cloud_mask.size else 0.0
    cloud_cover = float(cloud_cover)
    if not 0.0 <= cloud_cover <= 1.0:
        raise CorruptInput(f"cloud_cover must be a fraction in [0, 1], got {cloud_cover}")

    return Capture(
        capture_id=metadata.get("capture_id") or f"{aoi_id}-{capture_date:%Y%m%d}",
        aoi_id=aoi_id,
        capture_date=capture_date,
        resolution=resolution,
        origin_x=origin_x,
        origin_y=origin_y,
        cloud_cover=cloud_cover,
        red=bands["red"],
        nir=bands["nir"],
        swir=bands.get("swir"),
        blue=bands.get("blue"),
        cloud_mask=cloud_mask,
    )


class BandReader:
    """Loads captures from a source, bounded by a timeout."""

    def __init__(
        self,
        source: CaptureSource,
        timeout_seconds: float = 30.0,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.source = source
        self.timeout_seconds = timeout_seconds
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="band_reader_"
        )

    def load(self, aoi_id: str, capture_date: date) -> Capture:
        """
        Load the capture for an area of interest and date.

        Raises:
            DataUnavailable: No capture exists, or the source timed out
            CorruptInput: Bands or mask are malformed or misaligned
        """
        is_valid, error_msg = validate_identifier(aoi_id)
        if not is_valid:
            raise DataUnavailable(f"Invalid area of interest: {error_msg}")

        future = self._executor.submit(self.source.fetch, aoi_id, capture_date)
        try:
            payload = future.result(timeout=self.timeout_seconds)
        except FuturesTimeout as e:
            future.cancel()
            logger.warning(
                f"Capture fetch for {aoi_id} {capture_date} timed out after {self.timeout_seconds}s"
            )
            raise DataUnavailable(
                f"Timed out loading capture for {aoi_id} on {capture_date}"
            ) from e

        if payload is None:
            raise DataUnavailable(f"No capture for {aoi_id} on {capture_date}")

        capture = decode_capture(payload, aoi_id, capture_date)
        logger.info(
            f"Loaded capture {capture.capture_id} {capture.shape[0]}x{capture.shape[1]} "
            f"@ {capture.resolution}m, cloud cover {capture.cloud_cover:.1%}"
        )
        return capture

    def available_dates(self, aoi_id: str) -> List[date]:
        is_valid, error_msg = validate_identifier(aoi_id)
        if not is_valid:
            raise DataUnavailable(f"Invalid area of interest: {error_msg}")
        return self.source.list_dates(aoi_id)

    def shutdown(self):
        self._executor.shutdown(wait=False)
