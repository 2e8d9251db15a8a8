"""Structural and coordinate-range checks for a single feature.

A failed check never raises: the feature is dropped by the caller and the
rejection is logged.
"""

from __future__ import annotations

import math
from numbers import Real

from loguru import logger

from citylayers.layers.layer import Feature

_ARRAY_TYPES = ("Polygon", "MultiPolygon", "LineString", "MultiLineString")


def _is_number(value) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _reject(index: int, reason: str, detail) -> bool:
    logger.warning(f"Invalid feature at index {index}: {reason} ({detail!r})")
    return False


def validate_feature(feature: Feature | dict | None, index: int = 0) -> bool:
    """Accept or reject one feature.

    Args:
        feature: A canonical Feature or a raw GeoJSON Feature dict.
        index: Position of the feature in its batch, used in diagnostics.

    Returns:
        True if the feature may enter the authoring state.
    """
    if isinstance(feature, Feature):
        feature = feature.to_geojson()

    if not isinstance(feature, dict) or feature.get("type") != "Feature":
        return _reject(index, "missing or invalid type", feature)

    geometry = feature.get("geometry")
    if (
        not isinstance(geometry, dict)
        or not geometry.get("type")
        or geometry.get("coordinates") is None
    ):
        return _reject(index, "invalid geometry", geometry)

    geom_type = geometry["type"]
    coords = geometry["coordinates"]

    if geom_type == "Point":
        if not isinstance(coords, (list, tuple)) or len(coords) != 2:
            return _reject(index, "point must be a [lon, lat] pair", coords)
        lon, lat = coords
        if not _is_number(lon) or not _is_number(lat):
            return _reject(index, "non-numeric point coordinates", coords)
        if math.isnan(lon) or math.isnan(lat):
            return _reject(index, "NaN point coordinates", coords)
        if lon < -180 or lon > 180 or lat < -90 or lat > 90:
            return _reject(index, "point coordinates out of range", coords)
    elif geom_type in _ARRAY_TYPES:
        if not isinstance(coords, (list, tuple)) or len(coords) == 0:
            return _reject(index, f"empty coordinates for {geom_type}", coords)

    return True


def filter_valid(features: list[Feature], start_index: int = 0) -> tuple[list[Feature], int]:
    """Split features into the valid ones and a count of rejects."""
    kept = [f for i, f in enumerate(features) if validate_feature(f, start_index + i)]
    return kept, len(features) - len(kept)
