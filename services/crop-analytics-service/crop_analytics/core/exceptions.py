"""
Error taxonomy for the analytics core.

Every failure carries a stable ``error_code`` (used in per-field error markers
and HTTP error bodies) and a ``retryable`` hint for callers.
"""

from typing import Any, Dict, Optional


class AnalyticsError(Exception):
    """Base class for all analytics pipeline failures."""

    error_code = "AnalyticsError"
    retryable = False
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class DataUnavailable(AnalyticsError):
    """No usable capture (or no usable pixels) for the requested area/date."""

    error_code = "DataUnavailable"
    retryable = True
    status_code = 404


class CorruptInput(AnalyticsError):
    """Malformed or misaligned band / mask data."""

    error_code = "CorruptInput"
    status_code = 422


class FieldTooSmall(AnalyticsError):
    """No pixel centre falls inside the field polygon."""

    error_code = "FieldTooSmall"
    status_code = 422


class InsufficientHistory(AnalyticsError):
    """Not enough samples for a trend or forecast; the result is unknown."""

    error_code = "InsufficientHistory"
    retryable = True
    status_code = 409


class ForecastHorizonExceeded(AnalyticsError):
    """Harvest window would need extrapolation past the configured horizon."""

    error_code = "ForecastHorizonExceeded"
    retryable = True
    status_code = 409


class OutOfOrderSample(AnalyticsError):
    """Sample is older than the latest stored sample and matches no stored date."""

    error_code = "OutOfOrderSample"
    status_code = 409


class UnknownField(AnalyticsError):
    error_code = "UnknownField"
    status_code = 404
