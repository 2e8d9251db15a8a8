"""Predefined layers per domain.

These names are reserved: they can only be used in their own domain, through
the predefined selector, with the official icon.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PredefinedLayer:
    name: str
    icon: str


PREDEFINED_LAYERS: dict[str, tuple[PredefinedLayer, ...]] = {
    "mobility": (
        PredefinedLayer("roads", "fas fa-road"),
        PredefinedLayer("sidewalks", "fas fa-walking"),
        PredefinedLayer("parking", "fas fa-parking"),
        PredefinedLayer("transit_stops", "fas fa-bus"),
        PredefinedLayer("subways", "fas fa-subway"),
        PredefinedLayer("railways", "fas fa-train"),
        PredefinedLayer("airports", "fas fa-plane"),
        PredefinedLayer("bicycle_parking", "fas fa-bicycle"),
    ),
    "governance": (
        PredefinedLayer("police", "fas fa-shield-alt"),
        PredefinedLayer("government_offices", "fas fa-landmark"),
        PredefinedLayer("fire_stations", "fas fa-fire-extinguisher"),
    ),
    "health": (
        PredefinedLayer("hospitals", "fas fa-hospital"),
        PredefinedLayer("doctor_offices", "fas fa-user-md"),
        PredefinedLayer("dentists", "fas fa-tooth"),
        PredefinedLayer("clinics", "fas fa-clinic-medical"),
        PredefinedLayer("pharmacies", "fas fa-pills"),
        PredefinedLayer("acupuncture", "fas fa-hand-holding-heart"),
    ),
    "economy": (
        PredefinedLayer("factories", "fas fa-industry"),
        PredefinedLayer("banks", "fas fa-university"),
        PredefinedLayer("shops", "fas fa-store"),
        PredefinedLayer("restaurants", "fas fa-utensils"),
    ),
    "environment": (
        PredefinedLayer("parks", "fas fa-tree"),
        PredefinedLayer("open_green_spaces", "fas fa-leaf"),
        PredefinedLayer("nature", "fas fa-mountain"),
        PredefinedLayer("waterways", "fas fa-water"),
        PredefinedLayer("lakes", "fas fa-tint"),
    ),
    "culture": (
        PredefinedLayer("tourist_attractions", "fas fa-camera"),
        PredefinedLayer("theme_parks", "fas fa-ticket"),
        PredefinedLayer("gyms", "fas fa-dumbbell"),
        PredefinedLayer("theatres", "fas fa-theater-masks"),
        PredefinedLayer("stadiums", "fas fa-futbol"),
        PredefinedLayer("places_of_worship", "fas fa-pray"),
    ),
    "education": (
        PredefinedLayer("schools", "fas fa-school"),
        PredefinedLayer("universities", "fas fa-university"),
        PredefinedLayer("colleges", "fas fa-graduation-cap"),
        PredefinedLayer("libraries", "fas fa-book"),
    ),
    "housing": (
        PredefinedLayer("houses", "fas fa-home"),
        PredefinedLayer("apartments", "fas fa-building"),
    ),
    "social": (
        PredefinedLayer("bars", "fas fa-wine-glass-alt"),
        PredefinedLayer("cafes", "fas fa-coffee"),
        PredefinedLayer("leisure_facilities", "fas fa-dice"),
    ),
}


def find_predefined(domain: str, name: str) -> PredefinedLayer | None:
    for layer in PREDEFINED_LAYERS.get(domain, ()):
        if layer.name == name:
            return layer
    return None


def predefined_domain_of(name: str) -> str | None:
    """First domain that reserves ``name``, if any."""
    for domain, layers in PREDEFINED_LAYERS.items():
        if any(layer.name == name for layer in layers):
            return domain
    return None


def available_predefined(domain: str, existing: list[str], editing_name: str | None = None) -> list[PredefinedLayer]:
    """Predefined layers of a domain not yet created, sorted by name."""
    taken = {n for n in existing if n != editing_name}
    layers = [layer for layer in PREDEFINED_LAYERS.get(domain, ()) if layer.name not in taken]
    return sorted(layers, key=lambda layer: layer.name)
