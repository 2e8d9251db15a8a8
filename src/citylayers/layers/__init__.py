"""Layer ingestion: parse, normalize, validate, clip and merge features.

Accepts GeoJSON, CSV, Parquet and Shapefile (single .shp, companion set or
zip). Tabular and GeoJSON decoding uses pandas/json; shapefiles go through
geopandas; clipping uses shapely.
"""

from citylayers.layers.layer import Feature, LayerIdentity, LayerRecord
from citylayers.layers.pipeline import IngestionPipeline, IngestResult

__all__ = [
    "Feature",
    "IngestResult",
    "IngestionPipeline",
    "LayerIdentity",
    "LayerRecord",
]
