"""Parse GeoJSON (RFC 7946) uploads into raw rows using stdlib json.

Handles FeatureCollection and single Feature documents. Anything else is
passed through as one row so the validator can reject it with a diagnostic.
Coordinates are already in [lng, lat] order.
"""

from __future__ import annotations

import json

from citylayers.errors import ParseFailure, ParseFailureReason
from citylayers.layers.normalizer import RawRow


def parse_geojson(content: bytes | str, filename: str = "upload.geojson") -> list[RawRow]:
    """Parse GeoJSON content into a flat list of raw rows.

    Args:
        content: Raw file bytes or decoded text.
        filename: Used in error messages.

    Returns:
        One RawRow per feature.

    Raises:
        ParseFailure: The document is not valid JSON.
    """
    try:
        if isinstance(content, bytes):
            content = content.decode("utf-8-sig")
        data = json.loads(content)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseFailure(
            f"Invalid file format: {filename} is not valid JSON ({e})",
            reason=ParseFailureReason.MALFORMED,
            filename=filename,
        ) from e

    if isinstance(data, dict) and data.get("type") == "FeatureCollection":
        raw_features = data.get("features") or []
        if not isinstance(raw_features, list):
            raw_features = []
    else:
        raw_features = [data]

    return [_row_from_feature(raw) for raw in raw_features]


def _row_from_feature(raw) -> RawRow:
    """Wrap one GeoJSON object, keeping its declared type for validation."""
    if not isinstance(raw, dict):
        return RawRow(geometry=None, attributes={}, kind="")

    properties = raw.get("properties") or {}
    if not isinstance(properties, dict):
        properties = {}

    geometry = raw.get("geometry")
    if not isinstance(geometry, dict):
        geometry = None

    return RawRow(
        geometry=geometry,
        attributes=dict(properties),
        kind=raw.get("type", ""),
    )
