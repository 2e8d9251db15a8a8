"""CityLayers: author named map layers for a city from files or drawings.

The ingestion pipeline turns GeoJSON, CSV, Parquet and Shapefile uploads into
canonical features, validates them, clips them to the city boundary and merges
them into the layer being authored. The authoring state machine sequences the
workflow and keeps the draw and review canvases in sync.
"""

__version__ = "0.1.0"
