"""Coordinate-exact deduplication and append/replace merging."""

from __future__ import annotations

import json

from citylayers.layers.layer import Feature


def geometry_signature(feature: Feature) -> str:
    """Serialized coordinates; equal strings mean duplicate features."""
    geometry = feature.geometry or {}
    return json.dumps(geometry.get("coordinates"), separators=(",", ":"))


def dedupe_features(features: list[Feature]) -> list[Feature]:
    """Drop features whose coordinates repeat an earlier one. Order-preserving."""
    seen: set[str] = set()
    unique: list[Feature] = []
    for feature in features:
        signature = geometry_signature(feature)
        if signature in seen:
            continue
        seen.add(signature)
        unique.append(feature)
    return unique


def merge_features(existing: list[Feature], incoming: list[Feature], append_mode: bool) -> list[Feature]:
    """Combine a new batch with the current feature set.

    Append keeps existing features first, so on a collision the existing one
    wins. Replace discards the existing set entirely.
    """
    if append_mode:
        return dedupe_features(list(existing) + list(incoming))
    return dedupe_features(list(incoming))


def _rounded(coords, precision: int):
    if isinstance(coords, (list, tuple)):
        return [_rounded(c, precision) for c in coords]
    if isinstance(coords, (int, float)) and not isinstance(coords, bool):
        return round(float(coords), precision)
    return coords


def rounded_geometry_hash(geometry: dict | None, precision: int = 6) -> str | None:
    """Type plus coordinates rounded to ``precision`` decimals, or None."""
    if not isinstance(geometry, dict) or geometry.get("coordinates") is None:
        return None
    coords = _rounded(geometry["coordinates"], precision)
    return f"{geometry.get('type')}:{json.dumps(coords, separators=(',', ':'))}"


def drop_external_duplicates(
    features: list[Feature],
    others: list[dict],
    precision: int = 6,
) -> tuple[list[Feature], int]:
    """Remove features already present in other layers of the city.

    Args:
        features: The layer being saved.
        others: GeoJSON feature dicts from every other layer.
        precision: Decimal places used when comparing coordinates.

    Returns:
        (unique features, number of duplicates removed)
    """
    seen = {
        h for h in (rounded_geometry_hash(o.get("geometry"), precision) for o in others)
        if h is not None
    }
    unique: list[Feature] = []
    duplicates = 0
    for feature in features:
        h = rounded_geometry_hash(feature.geometry, precision)
        if h is not None and h in seen:
            duplicates += 1
            continue
        if h is not None:
            seen.add(h)
        unique.append(feature)
    return unique, duplicates
