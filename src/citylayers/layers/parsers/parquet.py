"""Parse Parquet uploads into flat attribute rows.

The file is decoded into an in-memory columnar table with pandas/pyarrow and
row-materialized into the same shape as CSV rows, so the same geometry
resolution applies. A ``geometry`` column holding WKB (GeoParquet) is decoded
up front.
"""

from __future__ import annotations

import io

import pandas as pd
import pyarrow as pa
from loguru import logger
from shapely import wkb

from citylayers.errors import ParseFailure, ParseFailureReason
from citylayers.layers.geometry import frame_records, geometry_to_geojson
from citylayers.layers.normalizer import RawRow
from citylayers.layers.parsers.csv_import import rows_from_frame

_WKB_TYPES = (bytes, bytearray, memoryview)


def parse_parquet(content: bytes, filename: str = "upload.parquet") -> list[RawRow]:
    """Parse Parquet bytes into RawRows.

    Raises:
        ParseFailure: The columnar decode failed.
    """
    try:
        frame = pd.read_parquet(io.BytesIO(content), engine="pyarrow")
    except (pa.ArrowException, ValueError, OSError) as e:
        raise ParseFailure(
            f"Invalid file format: {filename} could not be read as Parquet ({e})",
            reason=ParseFailureReason.MALFORMED,
            filename=filename,
        ) from e

    if not _has_wkb_geometry(frame):
        return rows_from_frame(frame)

    attributes = frame.drop(columns=["geometry"])
    attributes.columns = [str(c).strip() for c in attributes.columns]
    return [
        RawRow(geometry=_decode_wkb(value, idx), attributes=record, carry_attributes=False)
        for idx, (record, value) in enumerate(
            zip(frame_records(attributes), frame["geometry"].tolist())
        )
    ]


def _has_wkb_geometry(frame: pd.DataFrame) -> bool:
    if "geometry" not in frame.columns:
        return False
    values = frame["geometry"].dropna()
    return not values.empty and isinstance(values.iloc[0], _WKB_TYPES)


def _decode_wkb(value, idx) -> dict | None:
    if not isinstance(value, _WKB_TYPES):
        return None
    try:
        geom = wkb.loads(bytes(value))
    except Exception as e:
        logger.warning(f"Could not decode WKB geometry at row {idx}: {e}")
        return None
    if geom.is_empty:
        return None
    return geometry_to_geojson(geom)
