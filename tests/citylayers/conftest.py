"""Shared fixtures for citylayers tests."""

import pytest


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def boundary():
    """Square around Waterloo, ON: lon -81..-80, lat 43..44."""
    return {
        "type": "Polygon",
        "coordinates": [[[-81.0, 43.0], [-80.0, 43.0], [-80.0, 44.0], [-81.0, 44.0], [-81.0, 43.0]]],
    }


@pytest.fixture
def point_feature():
    """Factory for GeoJSON Point feature dicts."""
    def make(coords, **properties) -> dict:
        return {
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": list(coords)},
            "properties": properties,
        }
    return make
