import re
from datetime import date
from typing import List, Optional, Sequence, Tuple

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")


def validate_identifier(identifier: str) -> Tuple[bool, Optional[str]]:
    """
    Validate a field or area-of-interest identifier.

    Identifiers double as storage path segments, so only letters, digits,
    ``_``, ``-`` and ``.`` are allowed and ``..`` is rejected.

    Args:
        identifier: Identifier to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(identifier, str) or not IDENTIFIER_PATTERN.match(identifier):
        return False, f"Identifier must match {IDENTIFIER_PATTERN.pattern}, got {identifier!r}"

    if ".." in identifier:
        return False, "Identifier must not contain '..'"

    return True, None


def validate_date_range(start: Optional[date], end: Optional[date]) -> Tuple[bool, Optional[str]]:
    if start is not None and end is not None and start > end:
        return False, f"Start date {start} is after end date {end}"
    return True, None


def validate_polygon_coordinates(
    coordinates: Sequence[Sequence[float]],
) -> Tuple[bool, Optional[str]]:
    """
    Validate a polygon ring given as [[x, y], ...].

    Args:
        coordinates: Polygon vertices; closing vertex optional

    Returns:
        Tuple of (is_valid, error_message)
    """
    points: List[Tuple[float, float]] = []
    for vertex in coordinates:
        if len(vertex) != 2:
            return False, f"Each vertex must be [x, y], got {list(vertex)}"
        points.append((float(vertex[0]), float(vertex[1])))

    if len(points) > 1 and points[0] == points[-1]:
        points = points[:-1]

    if len(set(points)) < 3:
        return False, "Polygon needs at least 3 distinct vertices"

    return True, None
