import secrets
from datetime import datetime, timezone


# Character set for random string generation
CHARSET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ123456789"


def generate_random_string(length: int = 8) -> str:
    """
    Generate a cryptographically secure random string of specified length.

    Args:
        length: Length of the random string to generate

    Returns:
        Random string using alphanumeric characters
    """
    return "".join(secrets.choice(CHARSET) for _ in range(length))


def generate_model_id(prefix: str, random_length: int = 8) -> str:
    """
    Generate a model ID with prefix and random suffix.

    Args:
        prefix: 2-letter prefix (e.g., 'FS', 'CS')
        random_length: Length of random suffix

    Returns:
        Formatted ID string (e.g., 'FS_Ab3dE2k9')

    Raises:
        ValueError: If prefix is not exactly 2 alphabetic characters
    """
    if len(prefix) != 2:
        raise ValueError("Prefix must be exactly 2 characters")

    if not prefix.isalpha():
        raise ValueError("Prefix must contain only alphabetic characters")

    return f"{prefix.upper()}_{generate_random_string(random_length)}"


def get_current_timestamp() -> int:
    """
    Get current timestamp in seconds since Unix epoch.

    Returns:
        Current timestamp as integer seconds
    """
    return int(datetime.now(timezone.utc).timestamp())


def generate_field_sample_id() -> str:
    """Generate ID for FieldSampleRecord (FS_xxxxxxxx)."""
    return generate_model_id("FS")


def generate_capture_summary_id() -> str:
    """Generate ID for CaptureSummaryRecord (CS_xxxxxxxx)."""
    return generate_model_id("CS")


def generate_yield_observation_id() -> str:
    """Generate ID for YieldObservationRecord (YO_xxxxxxxx)."""
    return generate_model_id("YO")


def generate_ingestion_run_id() -> str:
    """Generate ID for an ingestion run (IR_xxxxxxxx)."""
    return generate_model_id("IR")
