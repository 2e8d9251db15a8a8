"""Parse ESRI Shapefiles into raw rows with geopandas.

Three entry points share one reader:
  - a zip archive holding one or more shapefiles
  - a group of companion files sharing a base name (.shp/.dbf/.shx/.prj)
  - a lone .shp, decoded best-effort without its attribute table

Layers with a .prj in another CRS are reprojected to EPSG:4326. Geometries
are forced to 2D so points stay [lng, lat] pairs.
"""

from __future__ import annotations

import io
import tempfile
import zipfile
from pathlib import Path

import geopandas as gpd
import pyogrio
import shapely
from loguru import logger

from citylayers.errors import ParseFailure, ParseFailureReason
from citylayers.layers.geometry import frame_records, geometry_to_geojson
from citylayers.layers.normalizer import RawRow

COMPANION_EXTENSIONS = ("shp", "dbf", "shx", "prj")

NO_LAYERS_MESSAGE = (
    "No valid geographic data found in the files. "
    "Please ensure the files contain valid shapefile or GeoJSON data."
)
SINGLE_SHP_WARNING = (
    "Single .shp file could not be processed completely. Geometry loaded but "
    "attributes may be missing. For full data, please upload a .zip file or "
    "select all components (.shp, .dbf, .shx, .prj) together."
)


def _read_layer(path: Path, **kwargs) -> gpd.GeoDataFrame:
    gdf = gpd.read_file(path, engine="pyogrio", **kwargs)
    if gdf.crs is not None and gdf.crs.to_epsg() != 4326:
        gdf = gdf.to_crs(epsg=4326)
    return gdf


def rows_from_geodataframe(gdf: gpd.GeoDataFrame) -> list[RawRow]:
    """One RawRow per record; missing/empty geometries become None."""
    geom_col = gdf.geometry.name
    records = frame_records(gdf.drop(columns=[geom_col]))
    rows: list[RawRow] = []
    for geom, record in zip(gdf.geometry, records):
        geometry = None
        if geom is not None and not geom.is_empty:
            geometry = geometry_to_geojson(shapely.force_2d(geom))
        rows.append(RawRow(geometry=geometry, attributes=record))
    return rows


def parse_shapefile_zip(content: bytes, filename: str = "upload.zip") -> list[RawRow]:
    """Parse every shapefile inside a zip archive.

    Raises:
        ParseFailure: Not a zip, no .shp inside, or a layer failed to decode.
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile as e:
        raise ParseFailure(
            f"Invalid file format: {filename} is not a valid zip archive",
            reason=ParseFailureReason.MALFORMED,
            filename=filename,
        ) from e

    with archive, tempfile.TemporaryDirectory(prefix="citylayers-zip-") as tmp:
        archive.extractall(tmp)
        shp_paths = sorted(
            p for p in Path(tmp).rglob("*")
            if p.is_file() and p.suffix.lower() == ".shp" and not p.name.startswith("._")
        )
        if not shp_paths:
            raise ParseFailure(NO_LAYERS_MESSAGE, reason=ParseFailureReason.NO_LAYERS, filename=filename)

        rows: list[RawRow] = []
        for shp_path in shp_paths:
            try:
                gdf = _read_layer(shp_path)
            except Exception as e:
                raise ParseFailure(
                    f"Error processing files: {shp_path.name} in {filename} ({e})",
                    reason=ParseFailureReason.GENERIC,
                    filename=filename,
                ) from e
            rows.extend(rows_from_geodataframe(gdf))
            logger.info(f"Read {len(gdf)} records from {shp_path.name} in {filename}")
    return rows


def parse_shapefile_group(base_name: str, parts: dict[str, bytes]) -> list[RawRow]:
    """Parse one set of companion files keyed by lowercase extension.

    Raises:
        ParseFailure: The .shp is missing or the set cannot be decoded.
    """
    if "shp" not in parts:
        raise ParseFailure(
            f'Shapefile set "{base_name}" has no .shp file',
            reason=ParseFailureReason.NO_LAYERS,
            filename=base_name,
        )

    with tempfile.TemporaryDirectory(prefix="citylayers-shp-") as tmp:
        for ext, data in parts.items():
            (Path(tmp) / f"{base_name}.{ext}").write_bytes(data)
        try:
            gdf = _read_layer(Path(tmp) / f"{base_name}.shp")
        except Exception as e:
            raise ParseFailure(
                f'Error processing shapefile set "{base_name}". Please ensure all '
                f"required files (.shp, .dbf, .shx, .prj) are uploaded together.",
                reason=ParseFailureReason.MALFORMED,
                filename=base_name,
            ) from e
        return rows_from_geodataframe(gdf)


def parse_single_shp(content: bytes, filename: str = "upload.shp") -> tuple[list[RawRow], list[str]]:
    """Best-effort decode of a .shp without its companions.

    The missing index is rebuilt by GDAL. If reading attributes fails the
    geometry is read alone and a warning is returned with the rows.

    Returns:
        (rows, warnings)

    Raises:
        ParseFailure: Even the geometry-only read failed.
    """
    base_name = Path(filename).stem or "upload"
    warnings: list[str] = []
    pyogrio.set_gdal_config_options({"SHAPE_RESTORE_SHX": "YES"})

    with tempfile.TemporaryDirectory(prefix="citylayers-shp-") as tmp:
        path = Path(tmp) / f"{base_name}.shp"
        path.write_bytes(content)
        try:
            gdf = _read_layer(path)
        except Exception as e:
            logger.warning(f"Single .shp attribute read failed for {filename}: {e}")
            warnings.append(SINGLE_SHP_WARNING)
            try:
                gdf = _read_layer(path, columns=[])
            except Exception as inner:
                raise ParseFailure(
                    f"Error processing files: {filename} could not be decoded ({inner})",
                    reason=ParseFailureReason.MALFORMED,
                    filename=filename,
                ) from inner
        return rows_from_geodataframe(gdf), warnings
