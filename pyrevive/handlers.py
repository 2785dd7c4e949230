"""
Built-in type handlers.

Each built-in maps one Python type to a fixed-shape tagged sequence:

- DateTimeHandler: datetime.datetime -> ["date", iso_string]
- DecimalHandler: decimal.Decimal -> ["decimal", string]
- UrlHandler: pydantic AnyUrl -> ["url", string]
- TypedArrayHandler: array.array -> ["typedarray", typecode, *items]
- BytesHandler: bytes -> ["bytes", base64_string]
- ListHandler: list -> ["array", *items]
- TupleHandler: tuple -> ["tuple", *items]
- SetHandler: set -> ["set", *items]
- FrozenSetHandler: frozenset -> ["frozenset", *items]
- RegexHandler: re.Pattern -> ["regex", pattern, flags]
- DictHandler: dict -> ["object", k1, v1, k2, v2, ...]

Not installed by default:

- ModelHandler: pydantic models and dataclasses, through their declared
  fields. Register one per class.
- PickleHandler: anything cloudpickle can pickle. Only revive payloads from
  trusted sources with it.

Example:
    >>> reviver = Reviver()
    >>> reviver.plainify({1, 2, 3})
    ['set', 1, 2, 3]
    >>> reviver.plainify(array.array("h", [21, 31]))
    ['typedarray', 'h', 21, 31]
"""

from __future__ import annotations

import array
import base64
import dataclasses
import datetime
import decimal
import re
from typing import Optional

import cloudpickle
from pydantic import AnyUrl, BaseModel

from pyrevive.settings import is_production, short_tag
from pyrevive.stypes import TypeHandler


# =============================================================================
# Scalar Handlers
# =============================================================================


class DateTimeHandler(TypeHandler):
    """datetime.datetime as an ISO-8601 string, timezone included."""

    tag = "date"

    def can_apply(self, value):
        return isinstance(value, datetime.datetime)

    def get_arguments(self, value: datetime.datetime, contexts, reviver):
        return [value.isoformat()]

    def revive(self, args, contexts, reviver):
        return datetime.datetime.fromisoformat(args[0])


class DecimalHandler(TypeHandler):
    """decimal.Decimal as its exact string form."""

    tag = "decimal"

    def can_apply(self, value):
        return isinstance(value, decimal.Decimal)

    def get_arguments(self, value, contexts, reviver):
        return [str(value)]

    def revive(self, args, contexts, reviver):
        return decimal.Decimal(args[0])


class UrlHandler(TypeHandler):
    """pydantic URLs. Revived as AnyUrl whatever the original URL class."""

    tag = "url"

    def can_apply(self, value):
        return isinstance(value, AnyUrl)

    def get_arguments(self, value, contexts, reviver):
        return [str(value)]

    def revive(self, args, contexts, reviver):
        return AnyUrl(args[0])


class TypedArrayHandler(TypeHandler):
    """array.array, keeping its typecode."""

    tag = "typedarray"

    def can_apply(self, value):
        return isinstance(value, array.array)

    def get_arguments(self, value: array.array, contexts, reviver):
        return [value.typecode, *value.tolist()]

    def revive(self, args, contexts, reviver):
        typecode, *items = args
        return array.array(typecode, items)


class BytesHandler(TypeHandler):
    tag = "bytes"

    def can_apply(self, value):
        return isinstance(value, bytes)

    def get_arguments(self, value, contexts, reviver):
        return [base64.b64encode(value).decode("ascii")]

    def revive(self, args, contexts, reviver):
        return base64.b64decode(args[0])


class RegexHandler(TypeHandler):
    """Compiled regular expressions, pattern and flags."""

    tag = "regex"

    def can_apply(self, value):
        return isinstance(value, re.Pattern)

    def get_arguments(self, value: re.Pattern, contexts, reviver):
        return [value.pattern, value.flags]

    def revive(self, args, contexts, reviver):
        return re.compile(args[0], args[1])


# =============================================================================
# Collection Handlers
# =============================================================================


class ListHandler(TypeHandler):
    tag = "array"

    def can_apply(self, value):
        return isinstance(value, list)

    def get_arguments(self, value, contexts, reviver):
        return value

    def revive(self, args, contexts, reviver):
        return list(args)


class TupleHandler(TypeHandler):
    tag = "tuple"

    def can_apply(self, value):
        return isinstance(value, tuple)

    def get_arguments(self, value, contexts, reviver):
        return value

    def revive(self, args, contexts, reviver):
        return tuple(args)


class SetHandler(TypeHandler):
    tag = "set"

    def can_apply(self, value):
        return isinstance(value, set)

    def get_arguments(self, value, contexts, reviver):
        return list(value)

    def revive(self, args, contexts, reviver):
        return set(args)


class FrozenSetHandler(TypeHandler):
    tag = "frozenset"

    def can_apply(self, value):
        return isinstance(value, frozenset)

    def get_arguments(self, value, contexts, reviver):
        return list(value)

    def revive(self, args, contexts, reviver):
        return frozenset(args)


class DictHandler(TypeHandler):
    """
    Dictionaries as flattened key/value pairs.

    Keys go through the engine like values, so any revivable hashable key
    (int, tuple, ...) survives the round trip.
    """

    tag = "object"

    def can_apply(self, value):
        return isinstance(value, dict)

    def get_arguments(self, value: dict, contexts, reviver):
        args = []
        for key, item in value.items():
            args.extend((key, item))
        return args

    def revive(self, args, contexts, reviver):
        return dict(zip(args[::2], args[1::2]))


# =============================================================================
# Opt-in Handlers
# =============================================================================


class ModelHandler(TypeHandler):
    """
    Handler for one pydantic model or dataclass, through its declared fields.

    The arguments are the ordered ``(field_name, value)`` pairs of the
    declared fields, flattened; the value is rebuilt with
    ``cls(**fields)``. Subclasses need their own handler.

    Args:
        cls: A pydantic BaseModel subclass or a dataclass.
        tag: Type tag, the class name by default.

    Example:
        >>> class Point(BaseModel):
        ...     x: int
        ...     y: int
        >>> Reviver([ModelHandler(Point)]).plainify(Point(x=1, y=2))
        ['Point', 'x', 1, 'y', 2]
    """

    def __init__(self, cls: type, tag: Optional[str] = None):
        if isinstance(cls, type) and issubclass(cls, BaseModel):
            self.field_names = list(cls.model_fields)
        elif isinstance(cls, type) and dataclasses.is_dataclass(cls):
            self.field_names = [f.name for f in dataclasses.fields(cls) if f.init]
        else:
            raise TypeError(f"{cls!r} is neither a pydantic model nor a dataclass.")
        self.cls = cls
        super().__init__(tag if tag is not None else cls.__name__)

    def can_apply(self, value):
        return type(value) is self.cls

    def get_arguments(self, value, contexts, reviver):
        args = []
        for name in self.field_names:
            args.extend((name, getattr(value, name)))
        return args

    def revive(self, args, contexts, reviver):
        return self.cls(**dict(zip(args[::2], args[1::2])))


class PickleHandler(TypeHandler):
    """
    Last-resort handler pickling values with cloudpickle.

    Place it last among custom handlers. Reviving runs arbitrary code from
    the payload: only use it between trusted parties.

    Args:
        types: Restrict the handler to instances of these types. Any value
            is accepted if omitted.
        tag: Type tag, "pickle" by default.
    """

    tag = "pickle"

    def __init__(self, types: Optional[tuple] = None, tag: Optional[str] = None):
        super().__init__(tag)
        self.types = types

    def can_apply(self, value):
        return self.types is None or isinstance(value, self.types)

    def get_arguments(self, value, contexts, reviver):
        return [base64.b64encode(cloudpickle.dumps(value)).decode("ascii")]

    def revive(self, args, contexts, reviver):
        return cloudpickle.loads(base64.b64decode(args[0]))


# =============================================================================
# Defaults
# =============================================================================


def default_handlers(production: Optional[bool] = None) -> list[TypeHandler]:
    """
    Return fresh instances of the built-in handlers, in dispatch order.

    Args:
        production: Use production-mode tags; None reads the environment.
    """
    handlers: list[TypeHandler] = [
        DateTimeHandler(),
        DecimalHandler(),
        UrlHandler(),
        TypedArrayHandler(),
        BytesHandler(),
        ListHandler(),
        TupleHandler(),
        SetHandler(),
        FrozenSetHandler(),
        RegexHandler(),
        DictHandler(),
    ]

    if production is None:
        production = is_production()
    if production:
        for handler in handlers:
            handler.tag = short_tag(handler.tag, production=True)

    return handlers
