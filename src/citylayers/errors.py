"""Error taxonomy for layer ingestion and authoring.

Per-file and per-session failures are exceptions. Per-feature failures
(validation and boundary rejects) are never raised: they are counted by the
pipeline and reported to the operator as ``Notice`` records.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    """Classification of everything that can go wrong while authoring a layer."""
    FORMAT_UNSUPPORTED = "format_unsupported"
    PARSE_FAILURE = "parse_failure"
    VALIDATION_REJECT = "validation_reject"
    BOUNDARY_REJECT = "boundary_reject"
    NAME_CONFLICT = "name_conflict"
    EMPTY_FEATURE_SET = "empty_feature_set"
    DUPLICATE = "duplicate"
    INFO = "info"


class ParseFailureReason(str, Enum):
    NO_LAYERS = "no_layers"
    MALFORMED = "malformed"
    GENERIC = "generic"


@dataclass(frozen=True)
class Notice:
    """Operator-facing message produced by a batch or a canvas event."""
    kind: ErrorKind
    message: str

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}


class LayerAuthoringError(Exception):
    """Base class for errors surfaced to the operator."""

    kind: ErrorKind = ErrorKind.INFO

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_notice(self) -> Notice:
        return Notice(self.kind, self.message)


class FormatUnsupported(LayerAuthoringError):
    """Unrecognized extension or unsupported combination of files."""

    kind = ErrorKind.FORMAT_UNSUPPORTED


class ParseFailure(LayerAuthoringError):
    """A whole file could not be decoded."""

    kind = ErrorKind.PARSE_FAILURE

    def __init__(
        self,
        message: str,
        reason: ParseFailureReason = ParseFailureReason.GENERIC,
        filename: str | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.filename = filename


class NameConflict(LayerAuthoringError):
    """Layer name is malformed or collides with an existing/reserved layer."""

    kind = ErrorKind.NAME_CONFLICT


class EmptyFeatureSet(LayerAuthoringError):
    """Save attempted with nothing to save."""

    kind = ErrorKind.EMPTY_FEATURE_SET


class InvalidTransition(LayerAuthoringError):
    """Operation not allowed in the current authoring step."""


class SessionBusy(InvalidTransition):
    """An ingestion run is already in flight."""


class PersistenceError(LayerAuthoringError):
    """The persistence collaborator rejected a save."""
