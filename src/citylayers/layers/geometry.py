"""Conversions between GeoJSON dicts, shapely geometries and plain Python values."""

from __future__ import annotations

import numpy as np
import pandas as pd
from shapely.geometry import GeometryCollection, mapping, shape
from shapely.geometry.base import BaseGeometry


def to_py(val):
    """Turn numpy/pandas scalars into JSON-friendly Python values."""
    if val is None or val is pd.NA or val is pd.NaT:
        return None
    if isinstance(val, np.integer):
        return int(val)
    if isinstance(val, np.floating):
        return None if np.isnan(val) else float(val)
    if isinstance(val, np.bool_):
        return bool(val)
    if isinstance(val, float) and np.isnan(val):
        return None
    if isinstance(val, (bytes, bytearray, memoryview)):
        return None
    if hasattr(val, "isoformat"):
        # pandas Timestamp / datetime / date
        return val.isoformat()
    if isinstance(val, np.ndarray):
        return [to_py(v) for v in val.tolist()]
    return val


def listify(coords):
    """Recursively convert coordinate tuples to lists."""
    if isinstance(coords, (list, tuple)):
        return [listify(c) for c in coords]
    return to_py(coords)


def geometry_to_geojson(geom: BaseGeometry) -> dict:
    """shapely geometry -> GeoJSON geometry dict with list coordinates."""
    data = mapping(geom)
    return {"type": data["type"], "coordinates": listify(data["coordinates"])}


def geojson_to_shape(geometry: dict) -> BaseGeometry:
    """GeoJSON geometry dict -> shapely geometry. Raises on malformed input."""
    return shape(geometry)


def bounds_of(geometries: list[dict]) -> tuple[float, float, float, float] | None:
    """(minx, miny, maxx, maxy) covering all given GeoJSON geometries.

    Geometries that shapely cannot read are skipped. Returns None when
    nothing usable is left.
    """
    shapes = []
    for geometry in geometries:
        try:
            geom = geojson_to_shape(geometry)
        except Exception:
            continue
        if not geom.is_empty:
            shapes.append(geom)
    if not shapes:
        return None
    return tuple(GeometryCollection(shapes).bounds)


def frame_records(frame: pd.DataFrame) -> list[dict]:
    """One dict per row, including frames with no columns left."""
    if len(frame.columns) == 0:
        return [{} for _ in range(len(frame))]
    return frame.to_dict(orient="records")
