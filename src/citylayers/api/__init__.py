"""HTTP surface for layer authoring."""

from citylayers.api.router import router

__all__ = ["router"]
