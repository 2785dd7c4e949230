"""
Core type definitions for the pyrevive library.

This module defines the shapes every other module works with:

- AbstractData: the wire-neutral tree all handlers target. A node is either a
  primitive (None, bool, int, float, str) or a list whose first element is a
  string type tag and whose remaining elements are AbstractData.
- Raw: the ignore marker. The engine returns the wrapped value unchanged
  instead of dispatching it, so handlers can inject pre-built fragments.
- ContextWrapper: a value bound to a set of contexts for one wrap boundary.
- Redirect: the third outcome of TypeHandler.can_apply, asking the engine to
  process a substitute value instead.
- TypeHandler: base class for pluggable converters between a Python value and
  its tagged-sequence form.

Writing a handler:
    >>> class PointHandler(TypeHandler):
    ...     tag = "point"
    ...
    ...     def can_apply(self, value):
    ...         return isinstance(value, Point)
    ...
    ...     def get_arguments(self, value, contexts, reviver):
    ...         return [value.x, value.y]
    ...
    ...     def revive(self, args, contexts, reviver):
    ...         return Point(*args)
    >>>
    >>> Reviver([PointHandler()]).plainify(Point(1, 2))
    ['point', 1, 2]
"""

from __future__ import annotations

from typing import Any, Iterable, List, NamedTuple, Optional, Union, TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError
from typing_extensions import TypeAliasType

from pyrevive.errors import MalformedDataError

if TYPE_CHECKING:
    from pyrevive.contexts import ContextsProvider
    from pyrevive.serialize import Reviver
else:
    ContextsProvider = Any
    Reviver = Any


# =============================================================================
# Abstract Data
# =============================================================================

# Values the engine passes through untouched on both directions
Primitive = Union[None, bool, int, float, str]
PRIMITIVE_TYPES = (bool, int, float, str)

AbstractData = TypeAliasType(
    "AbstractData", "Union[None, bool, int, float, str, List[AbstractData]]"
)

_abstract_data_adapter: TypeAdapter = TypeAdapter(AbstractData)


def is_primitive(value: Any) -> bool:
    """Return True for values that are their own abstract representation."""
    return value is None or isinstance(value, PRIMITIVE_TYPES)


def validate_abstract_data(tree: Any) -> Any:
    """
    Check that a decoded tree only contains legal AbstractData shapes.

    Validation is strict: no coercion between primitive kinds, and dicts,
    bytes or any other container are rejected.

    Raises:
        MalformedDataError: If the tree contains an illegal node.
    """
    try:
        return _abstract_data_adapter.validate_python(tree, strict=True)
    except ValidationError as exc:
        raise MalformedDataError(
            f"Decoded data is not a valid abstract data tree:\n{exc}", tree
        ) from exc


# =============================================================================
# Markers
# =============================================================================


class Raw(BaseModel):
    """
    Ignore marker.

    Wrapping a value in Raw makes the engine return the value as-is, exactly
    once, on either direction. Only use it for values that already are valid
    AbstractData, typically inside TypeHandler.get_arguments.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    value: Any


def raw(value: Any) -> Raw:
    """Mark a pre-built AbstractData fragment so the engine skips it."""
    return Raw(value=value)


class ContextWrapper(BaseModel):
    """
    A value bound to a wrap boundary.

    ``key`` is either the tag of a ContextsWrapperHandler or the registration
    key of one of the contexts that handler is configured with.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    key: str
    value: Any


# =============================================================================
# Handlers
# =============================================================================


class Redirect(NamedTuple):
    """Returned by TypeHandler.can_apply to process ``value`` instead."""

    value: Any


class TypeHandler:
    """
    Abstract base class for type handlers.

    Each subclass must provide:
    - tag: The type tag written as the first element of the tagged sequence.
      It must be unique within one Reviver.
    - can_apply(): Answer False (not applicable), True (applicable) or
      Redirect(substitute) for an arbitrary value.
    - get_arguments(): The ordered sub-values needed to rebuild the value.
      They are consumed lazily and in order, so a generator may yield items
      that depend on the processing of earlier ones.
    - revive(): Rebuild the value from its fully revived arguments.

    A handler may also define ``before_revive(raw_args, contexts, reviver)``.
    It is called with the raw, not yet revived arguments and returns the list
    to revive in their place. It exists for handlers that must set up session
    state before their children are revived.
    """

    tag: str = "type"

    def __init__(self, tag: Optional[str] = None):
        if tag is not None:
            self.tag = tag

    def can_apply(self, value: Any) -> Union[bool, Redirect]:
        """Check whether this handler processes the given value."""
        raise NotImplementedError

    def get_arguments(
        self, value: Any, contexts: ContextsProvider, reviver: Reviver
    ) -> Iterable[Any]:
        """Return the sub-values needed to rebuild the value."""
        raise NotImplementedError

    def revive(self, args: list, contexts: ContextsProvider, reviver: Reviver) -> Any:
        """Rebuild the value from revived arguments."""
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}(tag={self.tag!r})"
