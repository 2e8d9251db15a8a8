"""Feature, LayerIdentity and LayerRecord dataclasses for the layer model.

All coordinates are stored in GeoJSON convention: [lng, lat].
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

GEOMETRY_TYPES = ("Point", "LineString", "Polygon", "MultiLineString", "MultiPolygon")


def new_feature_id() -> str:
    return f"feat-{uuid.uuid4().hex[:12]}"


def default_feature_name(index: int) -> str:
    """Display name for the feature at a 0-based position."""
    return f"Feature {index + 1}"


def canonical_properties(name: str, layer_name: str, domain: str) -> dict:
    """The four property keys every stored feature carries.

    ``name`` and ``feature_name`` always hold the same value; consumers may
    read either.
    """
    return {
        "name": name,
        "feature_name": name,
        "layer_name": layer_name,
        "domain_name": domain,
    }


@dataclass
class Feature:
    """A single feature (point, line, polygon) within a layer.

    Attributes:
        geometry: GeoJSON geometry dict with ``type`` and ``coordinates``.
            Point: [lng, lat]
            LineString: [[lng, lat], [lng, lat], ...]
            Polygon: [[[lng, lat], [lng, lat], ...]]  (list of rings)
            MultiLineString / MultiPolygon: lists of the above.
        properties: Canonical keys (name, feature_name, layer_name,
            domain_name) plus any attributes carried over from the source.
        feature_id: Opaque identifier assigned at creation. Canvases tag their
            shapes with it so edits can be matched back to features.
        kind: GeoJSON object type; anything but "Feature" fails validation.
    """

    geometry: dict | None
    properties: dict
    feature_id: str = field(default_factory=new_feature_id)
    kind: str = "Feature"

    @property
    def name(self) -> str:
        return self.properties.get("name") or self.properties.get("feature_name") or ""

    @property
    def geometry_type(self) -> str | None:
        if isinstance(self.geometry, dict):
            return self.geometry.get("type")
        return None

    def to_geojson(self, include_id: bool = False) -> dict:
        """Return the feature as a GeoJSON Feature dict."""
        data = {
            "type": self.kind,
            "geometry": self.geometry,
            "properties": dict(self.properties),
        }
        if include_id:
            data["id"] = self.feature_id
        return data

    @classmethod
    def from_geojson(cls, data: dict, feature_id: str | None = None) -> "Feature":
        """Build a Feature from a GeoJSON Feature dict without validating it."""
        properties = data.get("properties") if isinstance(data, dict) else None
        return cls(
            geometry=data.get("geometry") if isinstance(data, dict) else None,
            properties=dict(properties) if isinstance(properties, dict) else {},
            feature_id=feature_id or new_feature_id(),
            kind=data.get("type", "") if isinstance(data, dict) else "",
        )


@dataclass
class LayerIdentity:
    """Who the layer is: name, icon and owning domain.

    ``custom`` is False when the operator picked one of the predefined
    catalog layers, which pins the icon to the official one.
    """

    name: str = ""
    icon: str = ""
    domain: str = ""
    custom: bool = True


@dataclass
class LayerRecord:
    """The persisted unit handed to the layer store on save.

    Attributes:
        name: Lowercase + underscores, unique within the domain.
        icon: Icon class for the layer.
        domain: Thematic grouping that owns the layer.
        features: Complete feature list; saves always replace the whole list.
        is_edit: True when an existing layer was reopened for editing.
        original_name: Layer name at the time editing started.
        original_domain: Domain at the time editing started.
    """

    name: str
    icon: str
    domain: str
    features: list[Feature]
    is_edit: bool = False
    original_name: str = ""
    original_domain: str = ""

    @property
    def layer_name_changed(self) -> bool:
        return self.is_edit and self.name != self.original_name

    @property
    def domain_changed(self) -> bool:
        return self.is_edit and self.domain != self.original_domain

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "icon": self.icon,
            "domain": self.domain,
            "features": [f.to_geojson() for f in self.features],
            "is_edit": self.is_edit,
            "layer_name_changed": self.layer_name_changed,
            "domain_changed": self.domain_changed,
            "original_name": self.original_name,
            "original_domain": self.original_domain,
        }
