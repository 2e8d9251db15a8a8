"""Turn parsed rows into canonical Features.

Parsers hand over ``RawRow`` objects: GeoJSON and Shapefile rows arrive with a
decoded geometry, CSV and Parquet rows arrive as flat attribute dicts whose
geometry is resolved here.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field

from loguru import logger

from citylayers.layers.geometry import to_py
from citylayers.layers.layer import Feature, canonical_properties, default_feature_name


@dataclass
class RawRow:
    """One parsed record before normalization.

    Attributes:
        geometry: Already-decoded GeoJSON geometry, or None for flat rows.
        attributes: Source properties / columns.
        kind: GeoJSON object type reported by the source ("Feature" for
            everything but malformed GeoJSON input).
        carry_attributes: Copy source attributes into the feature properties.
    """

    geometry: dict | None = None
    attributes: dict = field(default_factory=dict)
    kind: str = "Feature"
    carry_attributes: bool = True


def _is_blank(value) -> bool:
    value = to_py(value)
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and value.strip() == ""


def _to_float(value) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def resolve_geometry(attributes: dict, index: int = 0) -> dict | None:
    """Build a geometry for a flat row.

    Resolution order: a ``geometry_coordinates`` cell holding a JSON geometry
    literal, then ``longitude``/``latitude`` cells as a Point.
    """
    cell = attributes.get("geometry_coordinates")
    if not _is_blank(cell):
        if isinstance(cell, dict):
            return cell
        try:
            geometry = json.loads(cell)
        except (TypeError, ValueError) as e:
            logger.warning(f"Could not parse geometry_coordinates at row {index}: {e}")
        else:
            if isinstance(geometry, dict):
                return geometry
            logger.warning(f"geometry_coordinates at row {index} is not a geometry object")

    lon, lat = attributes.get("longitude"), attributes.get("latitude")
    if _is_blank(lon) or _is_blank(lat):
        return None
    lon, lat = _to_float(lon), _to_float(lat)
    if lon is None or lat is None:
        return None
    return {"type": "Point", "coordinates": [lon, lat]}


_FEATURE_NAME_KEYS = ("name", "feature_name")
_FLAT_ROW_NAME_KEYS = ("feature_name", "name")


def _source_name(attributes: dict, keys: tuple[str, ...] = _FEATURE_NAME_KEYS) -> str | None:
    for key in keys:
        value = attributes.get(key)
        if not _is_blank(value):
            return str(to_py(value))
    return None


def normalize_feature(raw: RawRow, index: int, layer_name: str, domain: str) -> Feature | None:
    """Convert a RawRow into a canonical Feature.

    Args:
        raw: The parsed record.
        index: 0-based position in the batch; drives the default name.
        layer_name: Stamped into ``layer_name``.
        domain: Stamped into ``domain_name``.

    Returns:
        The Feature, or None if no geometry could be built. Structural checks
        are left to the validator.
    """
    geometry = raw.geometry
    if geometry is None:
        geometry = resolve_geometry(raw.attributes, index)
    if geometry is None:
        return None

    # CSV and Parquet rows prefer feature_name over name
    keys = _FEATURE_NAME_KEYS if raw.carry_attributes else _FLAT_ROW_NAME_KEYS
    name = _source_name(raw.attributes, keys) or default_feature_name(index)
    properties = {}
    if raw.carry_attributes:
        properties = {key: to_py(value) for key, value in raw.attributes.items()}
    properties.update(canonical_properties(name, layer_name, domain))

    return Feature(geometry=geometry, properties=properties, kind=raw.kind)
