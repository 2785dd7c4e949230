"""
Environment-driven settings.

In production mode the well-known identifiers written to the wire (built-in
handler tags, the default wrapper tag, the default circular context key) are
replaced by short numeric strings to shrink payloads. Production mode is read
from the ``PYREVIVE_ENV`` environment variable, falling back to ``ENV``.

Both ends of an exchange must run in the same mode: a payload written in
production mode only revives with production tags, and the other way round.

    >>> import os
    >>> os.environ["PYREVIVE_ENV"] = "production"
    >>> short_tag("date")
    '0'
"""

from __future__ import annotations

import os
from typing import Mapping, Optional

ENV_VARIABLES = ("PYREVIVE_ENV", "ENV")
PRODUCTION = "production"

# Order is part of the wire format in production mode: append only.
_WELL_KNOWN_NAMES = (
    "date",
    "decimal",
    "url",
    "typedarray",
    "bytes",
    "array",
    "tuple",
    "set",
    "frozenset",
    "regex",
    "object",
    "@wrapper",
    "circular",
)

PRODUCTION_TAGS: dict[str, str] = {
    name: str(index) for index, name in enumerate(_WELL_KNOWN_NAMES)
}


def is_production(environ: Optional[Mapping[str, str]] = None) -> bool:
    """
    Check whether pyrevive runs in production mode.

    The first of PYREVIVE_ENV and ENV that is set decides.

    Args:
        environ: Mapping to read instead of os.environ.
    """
    if environ is None:
        environ = os.environ
    for name in ENV_VARIABLES:
        if name in environ:
            return environ[name] == PRODUCTION
    return False


def short_tag(name: str, production: Optional[bool] = None) -> str:
    """
    Return the identifier to write for a well-known name.

    Names outside the well-known table are returned unchanged.

    Args:
        name: The development-mode identifier.
        production: Force the mode; None reads the environment.
    """
    if production is None:
        production = is_production()
    if not production:
        return name
    return PRODUCTION_TAGS.get(name, name)
