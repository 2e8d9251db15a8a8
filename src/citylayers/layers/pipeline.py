"""Ingestion pipeline: uploaded files -> canonical, validated, clipped features.

    files -> classify -> parse (per source) -> normalize -> validate -> clip
          -> [split multi-geometries]

Per-row failures are counted and dropped. A source that fails to parse is
reported and skipped; the batch only fails as a whole when no source could be
parsed. Merging into the authoring state happens in the session.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field

from loguru import logger
from shapely.geometry.base import BaseGeometry

from citylayers.errors import ErrorKind, LayerAuthoringError, Notice
from citylayers.layers.clipper import clip_features, load_boundary
from citylayers.layers.formats import UploadedFile, classify_upload, parse_source
from citylayers.layers.layer import Feature, new_feature_id
from citylayers.layers.normalizer import normalize_feature
from citylayers.layers.validator import validate_feature


def plural(count: int, noun: str = "feature") -> str:
    """'1 feature was' / '3 features were'."""
    return f"{count} {noun} was" if count == 1 else f"{count} {noun}s were"


@dataclass
class IngestResult:
    """Outcome of one pipeline run.

    Attributes:
        features: Features that survived validation and clipping.
        parsed: Rows produced by the parsers.
        invalid: Rows dropped for missing or invalid geometry.
        outside: Features dropped by the boundary clipper.
        warnings: Non-fatal per-file messages.
        errors: Per-file failures that did not abort the batch.
    """

    features: list[Feature] = field(default_factory=list)
    parsed: int = 0
    invalid: int = 0
    outside: int = 0
    warnings: list[str] = field(default_factory=list)
    errors: list[LayerAuthoringError] = field(default_factory=list)

    @property
    def valid(self) -> int:
        return self.parsed - self.invalid

    def notices(self) -> list[Notice]:
        notices = [e.to_notice() for e in self.errors]
        notices.extend(Notice(ErrorKind.INFO, w) for w in self.warnings)
        if self.invalid:
            notices.append(Notice(
                ErrorKind.VALIDATION_REJECT,
                f"{plural(self.invalid)} skipped because of missing or invalid geometry.",
            ))
        if self.outside:
            notices.append(Notice(
                ErrorKind.BOUNDARY_REJECT,
                f"{plural(self.outside)} outside the city boundary and removed.",
            ))
        return notices


def split_multi_geometries(features: list[Feature]) -> list[Feature]:
    """Split MultiPolygon/MultiLineString features into one feature per part."""
    single_type = {"MultiPolygon": "Polygon", "MultiLineString": "LineString"}
    result: list[Feature] = []
    for feature in features:
        part_type = single_type.get(feature.geometry_type)
        if part_type is None:
            result.append(feature)
            continue
        for k, part in enumerate(feature.geometry["coordinates"], start=1):
            name = f"{feature.name} (Part {k})"
            properties = {**feature.properties, "name": name, "feature_name": name}
            result.append(dataclasses.replace(
                feature,
                geometry={"type": part_type, "coordinates": part},
                properties=properties,
                feature_id=new_feature_id(),
            ))
    return result


class IngestionPipeline:
    """Runs uploads through parsing, normalization, validation and clipping."""

    def __init__(
        self,
        boundary: BaseGeometry | dict | str | None = None,
        split_multi: bool = False,
    ) -> None:
        self.boundary = load_boundary(boundary)
        self.split_multi = split_multi

    def ingest(self, files: list[UploadedFile], layer_name: str, domain: str) -> IngestResult:
        """Process one file selection.

        Args:
            files: The selected files.
            layer_name: Stamped into every feature.
            domain: Stamped into every feature.

        Returns:
            The IngestResult. Its feature list may be empty.

        Raises:
            FormatUnsupported: The selection cannot be handled at all.
            ParseFailure: No source in the selection could be parsed.
        """
        sources, warnings = classify_upload(files)
        result = IngestResult(warnings=list(warnings))
        canonical: list[Feature] = []

        for source in sources:
            try:
                parsed = parse_source(source)
            except LayerAuthoringError as e:
                logger.warning(f"Failed to parse {source.label}: {e.message}")
                result.errors.append(e)
                continue

            result.warnings.extend(parsed.warnings)
            for raw in parsed.rows:
                index = result.parsed
                result.parsed += 1
                feature = normalize_feature(raw, index, layer_name, domain)
                if feature is None or not validate_feature(feature, index):
                    result.invalid += 1
                    continue
                canonical.append(feature)

        if result.errors and len(result.errors) == len(sources):
            raise result.errors[0]

        result.features, result.outside = clip_features(canonical, self.boundary)
        if self.split_multi:
            result.features = split_multi_geometries(result.features)

        logger.info(
            f"Ingested {len(result.features)} features from {len(sources)} sources "
            f"({result.invalid} invalid, {result.outside} outside boundary)"
        )
        return result
