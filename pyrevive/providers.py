"""
Data providers: encoders between abstract data and transmittable forms.

A provider exposes ``encode(tree)`` and an awaitable ``decode(data)``. Decoded
trees are validated so that only legal AbstractData reaches the engine.

- JsonDataProvider: JSON text. NaN and infinities, which JSON cannot carry,
  are written as ``{"@": "nan"}``, ``{"@": "inf"}`` and ``{"@": "-inf"}``.
- MsgpackDataProvider: MessagePack bytes, the tree stored under one named
  field of a map.
"""

from __future__ import annotations

import json
import math
from typing import Any

import msgpack

from pyrevive.errors import MalformedDataError
from pyrevive.stypes import AbstractData, validate_abstract_data

# Escape field used by JsonDataProvider for non-finite floats
ESCAPE_KEY = "@"

_ESCAPED = {"nan": math.nan, "inf": math.inf, "-inf": -math.inf}


class DataProvider:
    """
    Base class for data providers.

    Subclasses must implement:
    - encode(): AbstractData -> transmittable data
    - decode(): transmittable data -> AbstractData (coroutine)
    """

    def encode(self, data: AbstractData) -> Any:
        raise NotImplementedError

    async def decode(self, data: Any) -> AbstractData:
        raise NotImplementedError


# =============================================================================
# JSON
# =============================================================================


def _escape_non_finite(data: AbstractData) -> Any:
    if isinstance(data, float) and not math.isfinite(data):
        if math.isnan(data):
            return {ESCAPE_KEY: "nan"}
        return {ESCAPE_KEY: "-inf" if data < 0 else "inf"}
    if isinstance(data, (list, tuple)):
        return [_escape_non_finite(item) for item in data]
    return data


def _unescape_non_finite(obj: dict) -> Any:
    if len(obj) == 1 and obj.get(ESCAPE_KEY) in _ESCAPED:
        return _ESCAPED[obj[ESCAPE_KEY]]
    # Left as a dict, which validation rejects
    return obj


class JsonDataProvider(DataProvider):
    """
    Encode abstract data as JSON text.

    This is the default provider of a Reviver.

    Example:
        >>> JsonDataProvider().encode(["array", 1, float("inf")])
        '["array",1,{"@":"inf"}]'
    """

    def encode(self, data: AbstractData) -> str:
        return json.dumps(_escape_non_finite(data), separators=(",", ":"), allow_nan=False)

    async def decode(self, data: str) -> AbstractData:
        try:
            tree = json.loads(data, object_hook=_unescape_non_finite)
        except json.JSONDecodeError as exc:
            raise MalformedDataError(f"Invalid JSON data: {exc}", data) from exc
        return validate_abstract_data(tree)


# =============================================================================
# MessagePack
# =============================================================================


class MsgpackDataProvider(DataProvider):
    """
    Encode abstract data as a MessagePack map ``{storage_key: tree}``.

    Args:
        storage_key: Name of the field holding the tree.
    """

    def __init__(self, storage_key: str = "data"):
        self.storage_key = storage_key

    def encode(self, data: AbstractData) -> bytes:
        return msgpack.packb({self.storage_key: data}, use_bin_type=True)

    async def decode(self, data: bytes) -> AbstractData:
        try:
            document = msgpack.unpackb(data, raw=False)
        except (TypeError, ValueError, msgpack.UnpackException) as exc:
            raise MalformedDataError(f"Invalid MessagePack data: {exc}", data) from exc

        if not isinstance(document, dict) or self.storage_key not in document:
            raise MalformedDataError(
                f"MessagePack document has no '{self.storage_key}' field.", document
            )
        return validate_abstract_data(document[self.storage_key])
