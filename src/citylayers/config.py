"""Configuration management using Pydantic settings."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CITYLAYERS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "CityLayers"
    debug: bool = False

    # Layer store (one GeoJSON file per city/domain/layer)
    storage_path: Path = Path("./data/layers")

    # Authoring defaults
    default_icon: str = "fas fa-map-marker-alt"
    default_append_mode: bool = True

    # Split MultiPolygon / MultiLineString uploads into one feature per part
    split_multi_geometries: bool = False

    # Drop features that already exist in other layers of the city on save
    check_cross_layer_duplicates: bool = True
    duplicate_precision: int = 6  # decimal places, ~0.1 m at the equator

    # HTTP uploads
    max_upload_bytes: int = 200 * 1024 * 1024


settings = Settings()
