"""Export a LayerRecord to a GeoJSON dict (RFC 7946 compliant).

Uses only stdlib json. GeoJSON coordinates are [lng, lat] (already the
internal storage convention).
"""

from __future__ import annotations

from citylayers.layers.layer import Feature, LayerRecord


def export_geojson(record: LayerRecord) -> dict:
    """Export a LayerRecord to a GeoJSON FeatureCollection dict.

    Layer identity (name, icon, domain) travels as foreign members so the
    file can be loaded back as the same layer.

    Args:
        record: The LayerRecord to export.

    Returns:
        Dict representing a valid GeoJSON FeatureCollection.
    """
    return {
        "type": "FeatureCollection",
        "name": record.name,
        "icon": record.icon,
        "domain": record.domain,
        "features": [_feature_to_geojson(f, record) for f in record.features],
    }


def _feature_to_geojson(feature: Feature, record: LayerRecord) -> dict:
    """Convert a Feature to a GeoJSON Feature dict stamped with the layer."""
    data = feature.to_geojson()
    data["properties"]["layer_name"] = record.name
    data["properties"]["domain_name"] = record.domain
    return data
