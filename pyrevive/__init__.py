"""
pyrevive - pluggable object-graph serialization to abstract data.

This library converts Python values into a restricted "abstract data" tree
(None, bools, numbers, strings, and lists starting with a string type tag)
and back, through an ordered list of type handlers. Built-in handlers cover:

- Collections (list, tuple, set, frozenset, dict)
- datetime, Decimal, bytes, array.array, compiled regexes, pydantic URLs

Handlers that need state shared across a whole operation use contexts: a
session-scoped side channel whose storages are written next to the value.
CircularContext, built on it, stores shared objects once and revives every
reference to them as the same instance.

Usage:
    >>> from pyrevive import plainify, revive, stringify, parse
    >>>
    >>> plainify({"key": [1, 2, 3]})
    ['object', 'key', ['array', 1, 2, 3]]
    >>> revive(['set', 1, 2])
    {1, 2}
    >>>
    >>> text = stringify({"key": (1, 2)})      # JSON text
    >>> value = asyncio.run(parse(text))

Custom handlers:
    >>> from pyrevive import Reviver, TypeHandler
    >>>
    >>> class PointHandler(TypeHandler):
    ...     tag = "point"
    ...     def can_apply(self, value):
    ...         return isinstance(value, Point)
    ...     def get_arguments(self, value, contexts, reviver):
    ...         return [value.x, value.y]
    ...     def revive(self, args, contexts, reviver):
    ...         return Point(*args)
    >>>
    >>> reviver = Reviver([PointHandler()])

Shared objects:
    >>> from pyrevive import CircularContext, circular_handlers
    >>>
    >>> circular = CircularContext()
    >>> reviver = Reviver([BoxHandler(), *circular_handlers(circular)])
    >>> data = reviver.plainify(circular.wrap_context(document))

Binary encoding:
    >>> from pyrevive import MsgpackDataProvider
    >>> reviver = Reviver(provider=MsgpackDataProvider("data"))
    >>> payload = reviver.stringify([1, 2, 3])   # bytes

For values no handler covers, PickleHandler falls back to cloudpickle. Objects
from your own modules are then pickled by reference unless registered:
    >>> from pyrevive import register_by_value
    >>> import mymodule
    >>> register_by_value(mymodule)
"""

from cloudpickle import register_pickle_by_value as register_by_value

from pyrevive.circular import (
    CircularContext,
    CircularWrap,
    CircularWrapHandler,
    circular_handlers,
)
from pyrevive.contexts import (
    ContextSide,
    ContextStorage,
    ContextsProvider,
    ContextsStoragesManager,
    ContextsWrapperHandler,
    PlainContext,
    ReviveContext,
)
from pyrevive.errors import (
    ConfigurationError,
    ContextNotFoundError,
    DuplicateContextError,
    DuplicateStorageError,
    HandlerConflictError,
    IgnoreMarkerError,
    MalformedDataError,
    NestedMarkerError,
    ReviveError,
    StorageCycleError,
    StorageNotFoundError,
    StructuralError,
    UnknownTagError,
    UnresolvableValueError,
)
from pyrevive.handlers import ModelHandler, PickleHandler, default_handlers
from pyrevive.providers import DataProvider, JsonDataProvider, MsgpackDataProvider
from pyrevive.serialize import Reviver, register_handler
from pyrevive.settings import is_production
from pyrevive.stypes import (
    AbstractData,
    ContextWrapper,
    Raw,
    Redirect,
    TypeHandler,
    raw,
)


def plainify(obj, contexts: ContextsProvider | None = None) -> AbstractData:
    """
    Convert a value into abstract data with the default handlers.

    Handlers registered with register_handler() are included.

    Example:
        >>> plainify([1, "2", (3,)])
        ['array', 1, '2', ['tuple', 3]]
    """
    return Reviver().plainify(obj, contexts)


def revive(data: AbstractData, contexts: ContextsProvider | None = None):
    """
    Convert abstract data back into a value with the default handlers.

    Example:
        >>> revive(['array', 1, '2', ['tuple', 3]])
        [1, '2', (3,)]
    """
    return Reviver().revive(data, contexts)


def stringify(obj) -> str:
    """Plainify a value and encode it as JSON text."""
    return Reviver().stringify(obj)


async def parse(data: str):
    """Decode JSON text produced by stringify() and revive it."""
    return await Reviver().parse(data)


__all__ = [
    # Core API
    "plainify",
    "revive",
    "stringify",
    "parse",
    "Reviver",
    # Handlers
    "TypeHandler",
    "Redirect",
    "register_handler",
    "default_handlers",
    "ModelHandler",
    "PickleHandler",
    "register_by_value",
    # Abstract data and markers
    "AbstractData",
    "Raw",
    "raw",
    "ContextWrapper",
    # Contexts
    "ReviveContext",
    "PlainContext",
    "ContextSide",
    "ContextStorage",
    "ContextsStoragesManager",
    "ContextsProvider",
    "ContextsWrapperHandler",
    "CircularContext",
    "CircularWrap",
    "CircularWrapHandler",
    "circular_handlers",
    # Providers
    "DataProvider",
    "JsonDataProvider",
    "MsgpackDataProvider",
    # Settings
    "is_production",
    # Errors
    "ReviveError",
    "ConfigurationError",
    "StructuralError",
    "DuplicateContextError",
    "ContextNotFoundError",
    "DuplicateStorageError",
    "StorageNotFoundError",
    "StorageCycleError",
    "UnknownTagError",
    "UnresolvableValueError",
    "HandlerConflictError",
    "IgnoreMarkerError",
    "NestedMarkerError",
    "MalformedDataError",
]
