"""Upload classification and per-format parser dispatch.

A file selection is first classified into ``SourceFile`` values, one variant
of ``SourceFormat`` each, then every source is handed to the parser
registered for its variant. The registry is checked against the enum at
import time so a new variant cannot ship without a parser.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath

from loguru import logger

from citylayers.errors import FormatUnsupported
from citylayers.layers.normalizer import RawRow
from citylayers.layers.parsers.csv_import import parse_csv
from citylayers.layers.parsers.geojson import parse_geojson
from citylayers.layers.parsers.parquet import parse_parquet
from citylayers.layers.parsers.shapefile import (
    COMPANION_EXTENSIONS,
    parse_shapefile_group,
    parse_shapefile_zip,
    parse_single_shp,
)

ACCEPTED_EXTENSIONS = (
    ".geojson", ".json", ".zip", ".shp", ".dbf", ".shx", ".prj", ".csv", ".parquet",
)

SINGLE_FILE_HELP = (
    "For single file upload, please use GeoJSON (.geojson, .json), CSV (.csv), "
    "Parquet (.parquet), Zipped Shapefile (.zip), or Shapefile (.shp). For complete "
    "shapefiles, select all files (.shp, .dbf, .shx, .prj) together."
)
MULTI_TABULAR_HELP = (
    "Multiple CSV or Parquet files are not supported for combining. "
    "Please upload one file at a time for these formats."
)


class SourceFormat(str, Enum):
    GEOJSON = "geojson"
    CSV = "csv"
    PARQUET = "parquet"
    SHAPEFILE_SINGLE = "shapefile_single"
    SHAPEFILE_BUNDLE = "shapefile_bundle"


@dataclass
class UploadedFile:
    """A file as selected by the operator."""

    name: str
    content: bytes

    @property
    def extension(self) -> str:
        return PurePath(self.name).suffix.lower().lstrip(".")

    @property
    def base_name(self) -> str:
        return PurePath(self.name).stem


@dataclass
class SourceFile:
    """One unit of parsing work.

    Attributes:
        format: Which parser handles it.
        label: File name, or shapefile base name for companion groups.
        content: File bytes (everything except companion groups).
        parts: Companion files by extension for a selected shapefile set.
    """

    format: SourceFormat
    label: str
    content: bytes | None = None
    parts: dict[str, bytes] = field(default_factory=dict)


@dataclass
class ParsedSource:
    label: str
    rows: list[RawRow]
    warnings: list[str] = field(default_factory=list)


_SINGLE_FILE_FORMATS = {
    "geojson": SourceFormat.GEOJSON,
    "json": SourceFormat.GEOJSON,
    "csv": SourceFormat.CSV,
    "parquet": SourceFormat.PARQUET,
    "zip": SourceFormat.SHAPEFILE_BUNDLE,
    "shp": SourceFormat.SHAPEFILE_SINGLE,
}


def classify_upload(files: list[UploadedFile]) -> tuple[list[SourceFile], list[str]]:
    """Turn a file selection into parse sources.

    A single file maps straight to its format. In a multi-file selection,
    shapefile companions are grouped by base name (a group without .shp is
    skipped with a warning), zips and GeoJSON files are parsed one by one,
    and CSV/Parquet are refused.

    Returns:
        (sources, warnings)

    Raises:
        FormatUnsupported: Unknown single-file extension, multiple tabular
            files, or nothing parseable in the selection.
    """
    if not files:
        raise FormatUnsupported("No files were selected.")

    if len(files) == 1:
        upload = files[0]
        fmt = _SINGLE_FILE_FORMATS.get(upload.extension)
        if fmt is None:
            raise FormatUnsupported(SINGLE_FILE_HELP)
        return [SourceFile(format=fmt, label=upload.name, content=upload.content)], []

    groups: dict[str, dict[str, bytes]] = {}
    zips: list[SourceFile] = []
    geojsons: list[SourceFile] = []
    warnings: list[str] = []

    for upload in files:
        ext = upload.extension
        if ext in COMPANION_EXTENSIONS:
            groups.setdefault(upload.base_name, {})[ext] = upload.content
        elif ext in ("geojson", "json"):
            geojsons.append(SourceFile(SourceFormat.GEOJSON, upload.name, upload.content))
        elif ext == "zip":
            zips.append(SourceFile(SourceFormat.SHAPEFILE_BUNDLE, upload.name, upload.content))
        elif ext in ("csv", "parquet"):
            raise FormatUnsupported(MULTI_TABULAR_HELP)
        else:
            logger.warning(f"Ignoring unsupported file in selection: {upload.name}")
            warnings.append(f"{upload.name} is not a supported file type and was ignored.")

    sources: list[SourceFile] = []
    for base_name, parts in groups.items():
        if "shp" not in parts:
            logger.warning(f"Shapefile set {base_name!r} has no .shp; skipping")
            warnings.append(f'Shapefile set "{base_name}" is missing its .shp file and was skipped.')
            continue
        sources.append(SourceFile(SourceFormat.SHAPEFILE_BUNDLE, base_name, parts=parts))
    sources.extend(zips)
    sources.extend(geojsons)

    if not sources:
        raise FormatUnsupported(SINGLE_FILE_HELP)
    return sources, warnings


def _parse_geojson(source: SourceFile) -> ParsedSource:
    return ParsedSource(source.label, parse_geojson(source.content, source.label))


def _parse_csv(source: SourceFile) -> ParsedSource:
    return ParsedSource(source.label, parse_csv(source.content, source.label))


def _parse_parquet(source: SourceFile) -> ParsedSource:
    return ParsedSource(source.label, parse_parquet(source.content, source.label))


def _parse_single_shp(source: SourceFile) -> ParsedSource:
    rows, warnings = parse_single_shp(source.content, source.label)
    return ParsedSource(source.label, rows, warnings)


def _parse_bundle(source: SourceFile) -> ParsedSource:
    if source.parts:
        return ParsedSource(source.label, parse_shapefile_group(source.label, source.parts))
    return ParsedSource(source.label, parse_shapefile_zip(source.content, source.label))


_PARSERS: dict[SourceFormat, Callable[[SourceFile], ParsedSource]] = {
    SourceFormat.GEOJSON: _parse_geojson,
    SourceFormat.CSV: _parse_csv,
    SourceFormat.PARQUET: _parse_parquet,
    SourceFormat.SHAPEFILE_SINGLE: _parse_single_shp,
    SourceFormat.SHAPEFILE_BUNDLE: _parse_bundle,
}

_missing = set(SourceFormat) - set(_PARSERS)
if _missing:
    raise RuntimeError(f"No parser registered for: {sorted(m.value for m in _missing)}")


def parse_source(source: SourceFile) -> ParsedSource:
    """Run the parser registered for the source's format."""
    return _PARSERS[source.format](source)
