"""Layer authoring workflow: identity, source choice, acquisition, review."""

from citylayers.authoring.canvas import CanvasRole, CanvasShape, InMemoryCanvas
from citylayers.authoring.session import AuthoringSession, AuthoringStateMachine, DataSource, Step

__all__ = [
    "AuthoringSession",
    "AuthoringStateMachine",
    "CanvasRole",
    "CanvasShape",
    "DataSource",
    "InMemoryCanvas",
    "Step",
]
