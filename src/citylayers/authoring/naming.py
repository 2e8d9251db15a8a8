"""Layer name rules.

A name is lowercase letters and underscores, unique among the layers of its
domain, and must not borrow a predefined layer's name unless it *is* that
predefined layer (picked from the catalog, official icon).
"""

from __future__ import annotations

import re

from citylayers.authoring.catalog import find_predefined, predefined_domain_of
from citylayers.errors import NameConflict
from citylayers.layers.layer import LayerIdentity

LAYER_NAME_RE = re.compile(r"^[a-z_]+$")


def _pretty(name: str) -> str:
    return name.replace("_", " ")


def layer_name_error(
    identity: LayerIdentity,
    existing: list[str],
    editing_name: str | None = None,
) -> str | None:
    """Return the reason ``identity.name`` is unusable, or None if it is fine.

    Args:
        identity: Name, icon, domain and whether the name was typed freely.
        existing: Names of the layers already saved in ``identity.domain``.
        editing_name: Name of the layer being edited, which may keep its name.
    """
    name = identity.name
    if not name:
        return "Layer name is required"
    if not LAYER_NAME_RE.match(name):
        return "Layer name must contain only lowercase letters and underscores"

    if name in existing and name != editing_name:
        return f'A layer named "{name}" already exists in this domain'

    predefined = find_predefined(identity.domain, name)
    if predefined is not None:
        if identity.custom:
            return (
                f'Layer name "{name}" is reserved for the predefined '
                f'"{_pretty(name)}" layer in {identity.domain.capitalize()}'
            )
        if identity.icon != predefined.icon:
            return f'Layer name "{name}" is reserved for the official "{_pretty(name)}" layer'
        return None

    other_domain = predefined_domain_of(name)
    if other_domain is not None:
        return f'Layer name "{name}" conflicts with a predefined layer in the {other_domain.capitalize()} domain'
    return None


def validate_layer_name(
    identity: LayerIdentity,
    existing: list[str],
    editing_name: str | None = None,
) -> None:
    """Raise NameConflict when ``layer_name_error`` finds a problem."""
    error = layer_name_error(identity, existing, editing_name)
    if error:
        raise NameConflict(error)
