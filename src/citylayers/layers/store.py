"""JSON-file layer store: the default persistence collaborator.

One GeoJSON FeatureCollection per layer, laid out as
``{storage_path}/{city}/{domain}/{layer}.geojson``. Saves always replace the
whole file.
"""

from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path
from typing import Protocol

from loguru import logger

from citylayers.layers.exporters.geojson import export_geojson
from citylayers.layers.layer import LayerRecord

_SAFE_SEGMENT = re.compile(r"[^A-Za-z0-9_\-]+")


class LayerStore(Protocol):
    """What the authoring session needs from persistence."""

    async def load_layer_for_editing(self, city_name: str, domain: str, layer_name: str) -> list[dict]:
        ...

    async def load_layer_icon(self, city_name: str, domain: str, layer_name: str) -> str | None:
        ...

    async def save(self, record: LayerRecord) -> None:
        ...

    async def get_all_features(self) -> list[dict]:
        ...


def _segment(value: str) -> str:
    cleaned = _SAFE_SEGMENT.sub("_", value.strip()).strip("_")
    if not cleaned:
        raise ValueError(f"Invalid path segment: {value!r}")
    return cleaned


class JsonLayerStore:
    """Stores the layers of one city as GeoJSON files."""

    def __init__(self, storage_path: Path, city_name: str) -> None:
        """Initialize the store.

        Args:
            storage_path: Root directory shared by all cities.
            city_name: City whose layers this store reads and writes.
        """
        self.storage_path = Path(storage_path)
        self.city_name = city_name
        self.city_dir = self.storage_path / _segment(city_name)
        self.city_dir.mkdir(parents=True, exist_ok=True)

    def _layer_path(self, domain: str, layer_name: str, city_name: str | None = None) -> Path:
        city_dir = self.storage_path / _segment(city_name) if city_name else self.city_dir
        return city_dir / _segment(domain) / f"{_segment(layer_name)}.geojson"

    def _read(self, path: Path) -> dict:
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def _write(self, record: LayerRecord) -> None:
        path = self._layer_path(record.domain, record.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(export_geojson(record), f, indent=2)

        if record.layer_name_changed or record.domain_changed:
            old = self._layer_path(record.original_domain, record.original_name)
            if old.exists() and old != path:
                old.unlink()
                logger.info(f"Removed {record.original_domain}/{record.original_name} after rename")

    def _collect(self) -> list[dict]:
        features: list[dict] = []
        for path in sorted(self.city_dir.glob("*/*.geojson")):
            try:
                features.extend(self._read(path).get("features", []))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping unreadable layer file {path}: {e}")
        return features

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def load_layer_for_editing(self, city_name: str, domain: str, layer_name: str) -> list[dict]:
        """Return the stored features of a layer.

        Raises:
            FileNotFoundError: The layer does not exist.
        """
        data = await self._run(self._read, self._layer_path(domain, layer_name, city_name))
        features = data.get("features", [])
        logger.info(f"Loaded {len(features)} features from {city_name}/{domain}/{layer_name}")
        return features

    async def load_layer_icon(self, city_name: str, domain: str, layer_name: str) -> str | None:
        """The icon a layer was saved with, or None if the file has none."""
        data = await self._run(self._read, self._layer_path(domain, layer_name, city_name))
        return data.get("icon") or None

    async def save(self, record: LayerRecord) -> None:
        """Write a layer, removing the old file when an edit renamed or moved it."""
        await self._run(self._write, record)
        logger.info(f"Saved layer {record.domain}/{record.name} ({len(record.features)} features)")

    async def get_all_features(self) -> list[dict]:
        """Every stored feature of the city, across all domains and layers."""
        return await self._run(self._collect)

    def list_layer_names(self, domain: str) -> list[str]:
        domain_dir = self.city_dir / _segment(domain)
        return sorted(p.stem for p in domain_dir.glob("*.geojson"))

    def existing_layers(self) -> dict[str, list[str]]:
        """Layer names per domain, for name uniqueness checks."""
        return {
            d.name: self.list_layer_names(d.name)
            for d in sorted(self.city_dir.iterdir())
            if d.is_dir()
        }
