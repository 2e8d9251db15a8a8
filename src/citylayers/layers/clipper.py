"""Clip features to the city boundary with shapely.

Per geometry type:
  - Point: kept iff the boundary covers it (edge points are inside).
  - LineString / MultiLineString: kept unmodified if they touch the boundary
    at all; lines are not cut.
  - Polygon / MultiPolygon: replaced by the polygonal part of the
    intersection. If the intersection fails or has no area, the original
    geometry is kept.

No boundary means no clipping. Geometry engine errors never propagate: the
feature is kept as it was.
"""

from __future__ import annotations

import dataclasses
import json

import shapely
from loguru import logger
from shapely.errors import ShapelyError
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry

from citylayers.layers.geometry import geojson_to_shape, geometry_to_geojson
from citylayers.layers.layer import Feature

_LINE_TYPES = ("LineString", "MultiLineString")
_POLYGON_TYPES = ("Polygon", "MultiPolygon")


def _boundary_geometry(boundary: dict | str) -> BaseGeometry | None:
    if isinstance(boundary, str):
        boundary = json.loads(boundary)
    if not isinstance(boundary, dict):
        raise ValueError(f"City boundary must be a GeoJSON object, got {type(boundary).__name__}")
    if boundary.get("type") == "FeatureCollection":
        geoms = [geojson_to_shape(f["geometry"]) for f in boundary.get("features", [])]
        return shapely.union_all(geoms) if geoms else None
    if boundary.get("type") == "Feature":
        return geojson_to_shape(boundary["geometry"])
    return geojson_to_shape(boundary)


def load_boundary(boundary: BaseGeometry | dict | str | None) -> BaseGeometry | None:
    """Normalize a boundary given as GeoJSON text, dict or shapely geometry.

    Feature and FeatureCollection wrappers are unwrapped. Invalid polygons are
    repaired with ``make_valid``.

    Raises:
        ValueError: The boundary is unreadable or not a Polygon or MultiPolygon.
    """
    if boundary is None:
        return None
    if isinstance(boundary, BaseGeometry):
        geom = boundary
    else:
        try:
            geom = _boundary_geometry(boundary)
        except (KeyError, TypeError, AttributeError, ShapelyError) as e:
            raise ValueError(f"Unreadable city boundary: {e!r}") from e

    if geom is None or geom.is_empty:
        return None
    if not geom.is_valid:
        geom = _polygonal_part(shapely.make_valid(geom))
    if not isinstance(geom, (Polygon, MultiPolygon)):
        kind = geom.geom_type if geom is not None else "no polygonal area"
        raise ValueError(f"City boundary must be a Polygon or MultiPolygon, got {kind}")
    shapely.prepare(geom)
    return geom


def _polygonal_part(geom: BaseGeometry) -> BaseGeometry | None:
    if isinstance(geom, (Polygon, MultiPolygon)):
        return geom
    parts = [g for g in getattr(geom, "geoms", []) if isinstance(g, (Polygon, MultiPolygon))]
    if not parts:
        return None
    return shapely.union_all(parts)


def clip_feature(feature: Feature, boundary: BaseGeometry | None) -> Feature | None:
    """Clip one feature to the boundary.

    Args:
        feature: A validated canonical Feature.
        boundary: Prepared Polygon/MultiPolygon from ``load_boundary``, or None.

    Returns:
        The feature (possibly with a clipped geometry), or None if it lies
        entirely outside the boundary.
    """
    if boundary is None:
        return feature

    try:
        geom = geojson_to_shape(feature.geometry)
    except Exception as e:
        logger.warning(f"Boundary check skipped for {feature.feature_id}: {e}")
        return feature

    geom_type = feature.geometry_type
    try:
        if geom_type == "Point":
            return feature if boundary.covers(geom) else None

        if not boundary.intersects(geom):
            return None

        if geom_type in _LINE_TYPES:
            return feature

        if geom_type in _POLYGON_TYPES:
            if boundary.covers(geom):
                return feature
            clipped = _polygonal_part(geom.intersection(boundary))
            if clipped is None or clipped.is_empty:
                logger.warning(f"Empty polygon intersection for {feature.feature_id}; keeping original")
                return feature
            return dataclasses.replace(feature, geometry=geometry_to_geojson(clipped))
    except Exception as e:
        logger.warning(f"Boundary clip failed for {feature.feature_id}; keeping original: {e}")
        return feature

    return feature


def clip_features(features: list[Feature], boundary: BaseGeometry | None) -> tuple[list[Feature], int]:
    """Clip a batch. Returns (kept features, number dropped as outside)."""
    kept: list[Feature] = []
    for feature in features:
        clipped = clip_feature(feature, boundary)
        if clipped is not None:
            kept.append(clipped)
    dropped = len(features) - len(kept)
    if dropped:
        logger.info(f"{dropped} features were outside the boundary and were removed")
    return kept, dropped
