"""Map canvas boundary: the draw and review surfaces.

The authoring session owns the feature list and publishes it on a
``FeatureSignal``. Whichever canvas is mounted subscribes to the signal and
redraws from it; nothing else pushes geometry to a canvas. At most one canvas
is mounted at a time, and the previous one is released before the next mounts.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

from loguru import logger

from citylayers.layers.geometry import bounds_of
from citylayers.layers.layer import Feature


class CanvasRole(str, Enum):
    DRAW = "draw"
    REVIEW = "review"


@dataclass(frozen=True)
class CanvasShape:
    """A shape as reported by a canvas event.

    ``shape_id`` is the feature_id the shape was rendered with, or None for a
    freshly drawn shape the session has not seen yet.
    """

    shape_id: str | None
    geometry: dict


class MapCanvas(Protocol):
    """Rendering commands the session sends to a canvas."""

    def mount(self) -> None:
        ...

    def release(self) -> None:
        ...

    def render_feature(self, feature: Feature) -> None:
        ...

    def remove_shape(self, shape_id: str | None) -> None:
        ...

    def clear_all(self) -> None:
        ...

    def fit_bounds(self, bounds: tuple[float, float, float, float]) -> None:
        ...


FeatureListener = Callable[[list[Feature]], None]


class FeatureSignal:
    """Authoritative feature list with synchronous subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[FeatureListener] = []
        self._features: list[Feature] = []

    @property
    def features(self) -> list[Feature]:
        return list(self._features)

    def subscribe(self, listener: FeatureListener) -> FeatureListener:
        self._subscribers.append(listener)
        return listener

    def unsubscribe(self, listener: FeatureListener) -> None:
        try:
            self._subscribers.remove(listener)
        except ValueError:
            pass

    def publish(self, features: list[Feature]) -> None:
        self._features = list(features)
        for listener in list(self._subscribers):
            listener(self.features)


class CanvasManager:
    """Mounts the canvas that belongs to the current step, and only that one."""

    def __init__(self, signal: FeatureSignal, draw: MapCanvas, review: MapCanvas) -> None:
        self.signal = signal
        self._canvases: dict[CanvasRole, MapCanvas] = {
            CanvasRole.DRAW: draw,
            CanvasRole.REVIEW: review,
        }
        self.mounted: CanvasRole | None = None
        self._listener: FeatureListener | None = None

    def canvas(self, role: CanvasRole) -> MapCanvas:
        return self._canvases[role]

    def activate(self, role: CanvasRole | None) -> None:
        """Release the mounted canvas, then mount ``role`` and draw the current features."""
        if role == self.mounted:
            return
        self.release_all()
        if role is None:
            return

        canvas = self._canvases[role]
        canvas.mount()
        self.mounted = role
        self._listener = self.signal.subscribe(lambda features: _redraw(canvas, features))
        features = self.signal.features
        _redraw(canvas, features)
        bounds = bounds_of([f.geometry for f in features])
        if bounds is not None:
            canvas.fit_bounds(bounds)
        logger.debug(f"Mounted {role.value} canvas with {len(features)} features")

    def release_all(self) -> None:
        if self._listener is not None:
            self.signal.unsubscribe(self._listener)
            self._listener = None
        if self.mounted is not None:
            self._canvases[self.mounted].release()
            self.mounted = None

    def remove_shape(self, role: CanvasRole, shape_id: str | None) -> None:
        if self.mounted == role:
            self._canvases[role].remove_shape(shape_id)


def _redraw(canvas: MapCanvas, features: list[Feature]) -> None:
    canvas.clear_all()
    for feature in features:
        canvas.render_feature(feature)


class InMemoryCanvas:
    """Headless canvas that keeps its shapes in a dict.

    Used by the HTTP surface, where the browser owns the real map and reports
    its shapes back, and by tests.
    """

    _draft_ids = itertools.count(1)

    def __init__(self, role: CanvasRole) -> None:
        self.role = role
        self.is_mounted = False
        self.mount_count = 0
        self.release_count = 0
        self.bounds: tuple[float, float, float, float] | None = None
        self._shapes: dict[str, dict] = {}

    def mount(self) -> None:
        if self.is_mounted:
            raise RuntimeError(f"{self.role.value} canvas is already mounted")
        self.is_mounted = True
        self.mount_count += 1

    def release(self) -> None:
        self.is_mounted = False
        self.release_count += 1
        self._shapes.clear()
        self.bounds = None

    def render_feature(self, feature: Feature) -> None:
        self._shapes[feature.feature_id] = feature.geometry

    def remove_shape(self, shape_id: str | None) -> None:
        if shape_id is not None:
            self._shapes.pop(shape_id, None)

    def clear_all(self) -> None:
        self._shapes.clear()

    def fit_bounds(self, bounds: tuple[float, float, float, float]) -> None:
        self.bounds = bounds

    def draw(self, geometry: dict) -> CanvasShape:
        """Simulate the operator drawing a shape; returns the created-event payload."""
        shape_id = f"draft-{next(self._draft_ids)}"
        self._shapes[shape_id] = geometry
        return CanvasShape(shape_id=shape_id, geometry=geometry)

    def shapes(self) -> list[CanvasShape]:
        return [CanvasShape(shape_id=k, geometry=v) for k, v in self._shapes.items()]
