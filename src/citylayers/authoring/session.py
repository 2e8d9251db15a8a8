"""Authoring state machine: the four-step layer workflow.

    1 Identity -> 2 SourceChoice -> 3 Acquire -> 4 Review -> save

Editing an existing layer enters a Loading pseudo-state, fetches the stored
features, then jumps straight to Acquire with the draw canvas.

The session's feature list is authoritative. Every accepted change goes
through ``_publish``, which pushes the full list to whichever canvas is
mounted. Canvas events come back as ``CanvasShape`` lists; edits and deletes
rebuild the whole list from them, matching shapes to features by id.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum, IntEnum

from loguru import logger
from shapely.geometry.base import BaseGeometry

from citylayers.authoring.canvas import (
    CanvasManager,
    CanvasRole,
    CanvasShape,
    FeatureSignal,
    InMemoryCanvas,
    MapCanvas,
)
from citylayers.authoring.catalog import find_predefined
from citylayers.authoring.naming import layer_name_error, validate_layer_name
from citylayers.config import Settings, settings as default_settings
from citylayers.errors import (
    EmptyFeatureSet,
    ErrorKind,
    InvalidTransition,
    LayerAuthoringError,
    Notice,
    PersistenceError,
    SessionBusy,
)
from citylayers.layers.clipper import clip_feature
from citylayers.layers.dedupe import drop_external_duplicates, merge_features
from citylayers.layers.formats import UploadedFile
from citylayers.layers.layer import (
    Feature,
    LayerIdentity,
    LayerRecord,
    canonical_properties,
    default_feature_name,
)
from citylayers.layers.normalizer import RawRow, normalize_feature
from citylayers.layers.pipeline import IngestionPipeline, plural
from citylayers.layers.store import LayerStore
from citylayers.layers.validator import validate_feature

OUTSIDE_DRAWN = "Feature is completely outside the city boundary and was not added."
CLIPPED_DRAWN = (
    "The feature you drew extends outside the city boundary. "
    "Only the portion inside the boundary has been kept."
)
INVALID_DRAWN = "The drawn feature has invalid geometry and was not added."
ALL_DUPLICATES = "No unique features to save. All features are duplicates."
EMPTY_SAVE = "Please add at least one feature before saving"


class Step(IntEnum):
    IDENTITY = 1
    SOURCE = 2
    ACQUIRE = 3
    REVIEW = 4


class DataSource(str, Enum):
    UPLOAD = "upload"
    DRAW = "draw"


@dataclass
class AuthoringSession:
    """In-memory state of one authoring workflow.

    Attributes:
        step: Current workflow step.
        identity: Layer name, icon and domain being authored.
        data_source: How features are acquired in step 3.
        features: Authoritative feature list.
        append_mode: Merge policy for the next upload.
        is_processing: An upload is being parsed.
        loading: Stored features are being fetched for editing.
        original: Identity of the layer when editing started, else None.
        notices: Messages from the most recent operation.
    """

    step: Step = Step.IDENTITY
    identity: LayerIdentity = field(default_factory=LayerIdentity)
    data_source: DataSource | None = None
    features: list[Feature] = field(default_factory=list)
    append_mode: bool = True
    is_processing: bool = False
    loading: bool = False
    original: LayerIdentity | None = None
    notices: list[Notice] = field(default_factory=list)

    @property
    def is_edit(self) -> bool:
        return self.original is not None

    def to_dict(self) -> dict:
        return {
            "step": int(self.step),
            "identity": {
                "name": self.identity.name,
                "icon": self.identity.icon,
                "domain": self.identity.domain,
                "custom": self.identity.custom,
            },
            "data_source": self.data_source.value if self.data_source else None,
            "append_mode": self.append_mode,
            "is_processing": self.is_processing,
            "loading": self.loading,
            "is_edit": self.is_edit,
            "features": [f.to_geojson(include_id=True) for f in self.features],
            "notices": [n.to_dict() for n in self.notices],
        }


class AuthoringStateMachine:
    """Drives one AuthoringSession for a city.

    Collaborators are injected: the layer store for edit loads and saves, the
    two canvases, and the city boundary used by every clip.
    """

    def __init__(
        self,
        city_name: str,
        store: LayerStore,
        boundary: BaseGeometry | dict | str | None = None,
        existing_layers: dict[str, list[str]] | None = None,
        draw_canvas: MapCanvas | None = None,
        review_canvas: MapCanvas | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the state machine.

        Args:
            city_name: City the layer belongs to.
            store: Persistence collaborator.
            boundary: City boundary (shapely, GeoJSON dict or JSON text), or
                None to disable clipping.
            existing_layers: Saved layer names per domain.
            draw_canvas: Canvas mounted in step 3 when drawing.
            review_canvas: Canvas mounted in step 4.
            settings: Overrides the module-level settings.
        """
        self.city_name = city_name
        self.store = store
        self.settings = settings or default_settings
        self.existing_layers = {d: list(names) for d, names in (existing_layers or {}).items()}
        self.pipeline = IngestionPipeline(boundary, split_multi=self.settings.split_multi_geometries)
        self.signal = FeatureSignal()
        self.canvases = CanvasManager(
            self.signal,
            draw=draw_canvas or InMemoryCanvas(CanvasRole.DRAW),
            review=review_canvas or InMemoryCanvas(CanvasRole.REVIEW),
        )
        self.session = self._fresh_session()

    @property
    def boundary(self) -> BaseGeometry | None:
        return self.pipeline.boundary

    def _fresh_session(self) -> AuthoringSession:
        return AuthoringSession(append_mode=self.settings.default_append_mode)

    # -- internal helpers --------------------------------------------------

    def _require(self, *steps: Step, action: str) -> None:
        if self.session.step not in steps:
            allowed = ", ".join(str(int(s)) for s in steps)
            raise InvalidTransition(f"Cannot {action} in step {int(self.session.step)} (allowed: {allowed})")

    def _ensure_idle(self) -> None:
        if self.session.is_processing:
            raise SessionBusy("Files are still being processed")
        if self.session.loading:
            raise SessionBusy("The layer is still loading")

    def _goto(self, step: Step) -> None:
        previous = self.session.step
        self.session.step = step
        self.canvases.activate(self._canvas_role())
        if previous != step:
            logger.debug(f"Authoring step {int(previous)} -> {int(step)}")

    def _canvas_role(self) -> CanvasRole | None:
        if self.session.step == Step.REVIEW:
            return CanvasRole.REVIEW
        if self.session.step == Step.ACQUIRE and self.session.data_source == DataSource.DRAW:
            return CanvasRole.DRAW
        return None

    def _publish(self, features: list[Feature]) -> None:
        self.session.features = list(features)
        self.signal.publish(self.session.features)

    def _siblings(self, domain: str) -> list[str]:
        return self.existing_layers.get(domain, [])

    def _editing_name(self) -> str | None:
        original = self.session.original
        if original is not None and original.domain == self.session.identity.domain:
            return original.name
        return None

    def _accept(self, feature: Feature | None, index: int) -> Feature | None:
        """Validate and clip one feature; None if either rejects it."""
        if feature is None or not validate_feature(feature, index):
            return None
        return clip_feature(feature, self.boundary)

    def _require_mounted(self, role: CanvasRole) -> None:
        if self.canvases.mounted != role:
            mounted = self.canvases.mounted.value if self.canvases.mounted else "none"
            raise InvalidTransition(f"The {role.value} canvas is not mounted (mounted: {mounted})")

    # -- step 1: identity --------------------------------------------------

    def set_identity(self, name: str, domain: str, icon: str | None = None, custom: bool = True) -> str | None:
        """Record the layer identity and return the inline name error, if any.

        Picking a predefined layer (``custom=False``) without an icon uses the
        official icon.
        """
        self._require(Step.IDENTITY, action="change the layer identity")
        if icon is None:
            predefined = None if custom else find_predefined(domain, name)
            icon = predefined.icon if predefined else self.settings.default_icon
        self.session.identity = LayerIdentity(name=name, icon=icon, domain=domain, custom=custom)
        return layer_name_error(self.session.identity, self._siblings(domain), self._editing_name())

    def confirm_identity(self) -> None:
        """1 -> 2. Raises NameConflict when the name is not usable."""
        self._require(Step.IDENTITY, action="confirm the layer identity")
        self._ensure_idle()
        identity = self.session.identity
        if not identity.domain:
            raise InvalidTransition("Select a domain before continuing")
        validate_layer_name(identity, self._siblings(identity.domain), self._editing_name())
        self._goto(Step.SOURCE)

    # -- step 2: source ----------------------------------------------------

    def choose_source(self, source: DataSource | str) -> None:
        """2 -> 3."""
        self._require(Step.SOURCE, action="choose a data source")
        self.session.data_source = DataSource(source)
        self._goto(Step.ACQUIRE)

    def set_append_mode(self, append_mode: bool) -> None:
        self.session.append_mode = append_mode

    # -- step 3: upload ----------------------------------------------------

    async def upload(self, files: list[UploadedFile]) -> list[Notice]:
        """Run a file selection through the pipeline and merge the result.

        A successful run moves to step 4. Anything short of that leaves the
        session's features exactly as they were. If the session is closed
        while the files are parsed, the result is dropped.

        Raises:
            SessionBusy: Another upload is still being processed.
            FormatUnsupported: The selection cannot be handled.
            ParseFailure: None of the selected files could be parsed.
        """
        self._require(Step.ACQUIRE, action="upload files")
        if self.session.data_source != DataSource.UPLOAD:
            raise InvalidTransition("Choose the upload source before uploading files")
        self._ensure_idle()

        session = self.session
        identity = session.identity
        session.is_processing = True
        try:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(
                None, self.pipeline.ingest, files, identity.name, identity.domain
            )
        except LayerAuthoringError as e:
            session.notices = [e.to_notice()]
            raise
        finally:
            session.is_processing = False

        if self.session is not session:
            logger.info(f"Session closed during upload; discarding {len(result.features)} features")
            return []

        notices = result.notices()
        incoming = result.features
        if not incoming:
            if result.outside and result.outside == result.valid:
                notices.append(Notice(
                    ErrorKind.BOUNDARY_REJECT,
                    f"All features in the uploaded file are outside the city boundary. "
                    f"{plural(result.valid)} found but none are within the city limits.",
                ))
            else:
                notices.append(Notice(
                    ErrorKind.EMPTY_FEATURE_SET,
                    "No features remain after filtering. Please ensure the files contain "
                    "valid geographic data.",
                ))
            self.session.notices = notices
            return notices

        current = self.session.features
        merged = merge_features(current, incoming, self.session.append_mode)
        considered = len(incoming) + (len(current) if self.session.append_mode else 0)
        duplicates = considered - len(merged)
        if duplicates:
            notices.append(Notice(ErrorKind.DUPLICATE, f"{plural(duplicates, 'duplicate feature')} found and removed."))

        self._publish(merged)
        self.session.notices = notices
        self._goto(Step.REVIEW)
        logger.info(f"Upload merged: {len(merged)} features in session ({duplicates} duplicates)")
        return notices

    # -- canvas events -----------------------------------------------------

    def feature_created(self, shape: CanvasShape, role: CanvasRole = CanvasRole.DRAW) -> list[Notice]:
        """A shape was drawn. Normalize, validate and clip it, then append."""
        self._require_mounted(role)
        index = len(self.session.features)
        identity = self.session.identity
        feature = normalize_feature(RawRow(geometry=shape.geometry), index, identity.name, identity.domain)

        notices: list[Notice] = []
        if feature is None or not validate_feature(feature, index):
            notices.append(Notice(ErrorKind.VALIDATION_REJECT, INVALID_DRAWN))
            self.canvases.remove_shape(role, shape.shape_id)
        else:
            clipped = clip_feature(feature, self.boundary)
            if clipped is None:
                notices.append(Notice(ErrorKind.BOUNDARY_REJECT, OUTSIDE_DRAWN))
                self.canvases.remove_shape(role, shape.shape_id)
            else:
                if clipped.geometry != feature.geometry:
                    notices.append(Notice(ErrorKind.BOUNDARY_REJECT, CLIPPED_DRAWN))
                self._publish(self.session.features + [clipped])

        self.session.notices = notices
        return notices

    def features_edited(self, shapes: list[CanvasShape], role: CanvasRole = CanvasRole.DRAW) -> list[Notice]:
        """The canvas changed geometry; ``shapes`` is everything it now holds."""
        self._require_mounted(role)
        return self._rebuild_from_canvas(shapes)

    def features_deleted(self, shapes: list[CanvasShape], role: CanvasRole = CanvasRole.DRAW) -> list[Notice]:
        """Shapes were removed; ``shapes`` is everything the canvas still holds."""
        self._require_mounted(role)
        return self._rebuild_from_canvas(shapes)

    def _rebuild_from_canvas(self, shapes: list[CanvasShape]) -> list[Notice]:
        previous = self.session.features
        by_id = {f.feature_id: f for f in previous}
        identity = self.session.identity

        rebuilt: list[Feature] = []
        rejected = 0
        for position, shape in enumerate(shapes):
            prior = by_id.get(shape.shape_id)
            if prior is not None:
                feature = Feature(
                    geometry=shape.geometry,
                    properties=dict(prior.properties),
                    feature_id=prior.feature_id,
                )
            else:
                # Unknown shape: borrow the name at the same position.
                fallback = previous[position] if position < len(previous) else None
                name = fallback.name if fallback else default_feature_name(position)
                feature = Feature(
                    geometry=shape.geometry,
                    properties=canonical_properties(name, identity.name, identity.domain),
                )
            accepted = self._accept(feature, position)
            if accepted is None:
                rejected += 1
                continue
            rebuilt.append(accepted)

        notices: list[Notice] = []
        if rejected:
            notices.append(Notice(
                ErrorKind.BOUNDARY_REJECT,
                f"{plural(rejected)} invalid or outside the city boundary and removed.",
            ))
        self._publish(merge_features([], rebuilt, append_mode=False))
        self.session.notices = notices
        return notices

    def rename_feature(self, feature_id: str, name: str) -> Feature:
        """Set a feature's display name (both ``name`` and ``feature_name``).

        Raises:
            KeyError: No feature has ``feature_id``.
        """
        self._require(Step.ACQUIRE, Step.REVIEW, action="rename a feature")
        name = name.strip()
        features = list(self.session.features)
        for i, feature in enumerate(features):
            if feature.feature_id != feature_id:
                continue
            if name:
                properties = {**feature.properties, "name": name, "feature_name": name}
                features[i] = Feature(
                    geometry=feature.geometry,
                    properties=properties,
                    feature_id=feature.feature_id,
                    kind=feature.kind,
                )
                self._publish(features)
            return features[i]
        raise KeyError(feature_id)

    # -- navigation --------------------------------------------------------

    def add_more_features(self) -> None:
        """4 -> 3 in upload mode, appending to the current features."""
        self._require(Step.REVIEW, action="add more features")
        self._ensure_idle()
        self.session.data_source = DataSource.UPLOAD
        self.session.append_mode = True
        self._goto(Step.ACQUIRE)

    def go_back(self) -> None:
        """Move one step back. Features are kept."""
        self._require(Step.SOURCE, Step.ACQUIRE, Step.REVIEW, action="go back")
        self._ensure_idle()
        self._goto(Step(self.session.step - 1))

    # -- edit mode ---------------------------------------------------------

    async def open_for_edit(self, domain: str, layer_name: str, icon: str | None = None) -> None:
        """Load a saved layer and continue in step 3 with the draw canvas.

        Raises:
            PersistenceError: The stored layer could not be loaded.
        """
        self._require(Step.IDENTITY, action="open a layer for editing")
        self._ensure_idle()

        session = self.session
        session.loading = True
        try:
            stored = await self.store.load_layer_for_editing(self.city_name, domain, layer_name)
            if icon is None:
                icon = await self.store.load_layer_icon(self.city_name, domain, layer_name)
        except Exception as e:
            logger.error(f"Failed to load {domain}/{layer_name} for editing: {e}")
            raise PersistenceError("Failed to load layer data for editing") from e
        finally:
            session.loading = False

        if self.session is not session:
            logger.info(f"Session closed while loading {domain}/{layer_name}; discarding")
            return

        predefined = find_predefined(domain, layer_name)
        icon = icon or (predefined.icon if predefined else self.settings.default_icon)
        custom = predefined is None or predefined.icon != icon
        identity = LayerIdentity(name=layer_name, icon=icon, domain=domain, custom=custom)

        features: list[Feature] = []
        for index, data in enumerate(stored):
            raw = RawRow(
                geometry=data.get("geometry"),
                attributes=data.get("properties") or {},
                kind=data.get("type", ""),
            )
            accepted = self._accept(normalize_feature(raw, index, layer_name, domain), index)
            if accepted is not None:
                features.append(accepted)

        self.session.identity = identity
        self.session.original = LayerIdentity(name=layer_name, icon=icon, domain=domain, custom=custom)
        self.session.data_source = DataSource.DRAW
        self._publish(features)
        self._goto(Step.ACQUIRE)
        logger.info(f"Editing {domain}/{layer_name}: {len(features)} of {len(stored)} stored features loaded")

    # -- terminal ----------------------------------------------------------

    async def save(self) -> tuple[LayerRecord, list[Notice]]:
        """Validate and persist the layer, then reset the session.

        Returns:
            The saved record and any notices (cross-layer duplicates).

        Raises:
            NameConflict: The layer name is no longer usable.
            EmptyFeatureSet: Nothing to save, or only duplicates.
            PersistenceError: The store rejected the save; the session stays
                open so the operator can retry.
        """
        if self.session.step != Step.REVIEW and not (
            self.session.step == Step.ACQUIRE and self.session.data_source == DataSource.DRAW
        ):
            raise InvalidTransition(f"Cannot save in step {int(self.session.step)}")
        self._ensure_idle()

        session = self.session
        identity = session.identity
        original = session.original
        validate_layer_name(identity, self._siblings(identity.domain), self._editing_name())
        if not session.features:
            raise EmptyFeatureSet(EMPTY_SAVE)

        features = session.features
        notices: list[Notice] = []
        if self.settings.check_cross_layer_duplicates:
            features, duplicates = await self._drop_cross_layer_duplicates(features)
            if duplicates:
                notices.append(Notice(
                    ErrorKind.DUPLICATE,
                    f"{plural(duplicates, 'duplicate feature')} found in other layers and skipped.",
                ))
            if not features:
                raise EmptyFeatureSet(ALL_DUPLICATES)

        record = LayerRecord(
            name=identity.name,
            icon=identity.icon,
            domain=identity.domain,
            features=features,
            is_edit=original is not None,
            original_name=original.name if original else "",
            original_domain=original.domain if original else "",
        )

        try:
            await self.store.save(record)
        except Exception as e:
            logger.error(f"Saving {identity.domain}/{identity.name} failed: {e}")
            session.notices = [Notice(ErrorKind.INFO, f"Error saving layer: {e}")]
            raise PersistenceError(f"Error saving layer: {e}") from e

        if record.layer_name_changed or record.domain_changed:
            siblings = self.existing_layers.get(record.original_domain, [])
            if record.original_name in siblings:
                siblings.remove(record.original_name)
        names = self.existing_layers.setdefault(record.domain, [])
        if record.name not in names:
            names.append(record.name)

        logger.info(f"Saved layer {record.domain}/{record.name} with {len(record.features)} features")
        if self.session is session:
            self.close()
        return record, notices

    async def _drop_cross_layer_duplicates(self, features: list[Feature]) -> tuple[list[Feature], int]:
        identity = self.session.identity
        original = self.session.original
        own = {(identity.domain, identity.name)}
        if original is not None:
            own.add((original.domain, original.name))

        try:
            stored = await self.store.get_all_features()
        except Exception as e:
            raise PersistenceError(f"Could not read existing layers: {e}") from e

        others = [
            f for f in stored
            if ((f.get("properties") or {}).get("domain_name"), (f.get("properties") or {}).get("layer_name"))
            not in own
        ]
        return drop_external_duplicates(features, others, self.settings.duplicate_precision)

    def close(self) -> None:
        """Release both canvases and discard the session."""
        self.canvases.release_all()
        self.session = self._fresh_session()
        self.signal.publish([])
