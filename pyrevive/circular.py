"""
Shared-object context.

CircularContext lets handlers store a value once and refer to it by key, so
that a value referenced from several places is written once and revived as a
single instance. It is built only on the contexts protocol: the wrapper
handler activates it and carries its storage, CircularWrapHandler turns
markers into keys and back.

The context does not detect shared or circular structures by itself. A
handler decides which values to share by calling ``wrap_value`` from its
``get_arguments``:

    >>> class BoxHandler(TypeHandler):
    ...     tag = "box"
    ...
    ...     def can_apply(self, value):
    ...         return isinstance(value, Box)
    ...
    ...     def get_arguments(self, value, contexts, reviver):
    ...         circular = contexts.use(CircularContext.registration_key())
    ...         return [circular.wrap_value(value.payload)]
    ...
    ...     def revive(self, args, contexts, reviver):
    ...         return Box(args[0])
    >>>
    >>> circular = CircularContext()
    >>> reviver = Reviver([BoxHandler(), *circular_handlers(circular)])
    >>> shared = {"a": 1}
    >>> data = reviver.plainify(circular.wrap_context([Box(shared), Box(shared)]))
    >>> first, second = reviver.revive(data)
    >>> first.payload is second.payload
    True
"""

from __future__ import annotations

import dataclasses
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from pyrevive.contexts import ContextsWrapperHandler, ContextStorage, ReviveContext
from pyrevive.errors import ContextNotFoundError, NestedMarkerError, StructuralError
from pyrevive.settings import short_tag
from pyrevive.stypes import ContextWrapper, TypeHandler, is_primitive


class CircularWrap(BaseModel):
    """
    Marker standing for a value stored in a CircularContext.

    Attributes:
        key: The storage key of the value.
        context: Registration key of the context owning the storage. Defaults
            to the default CircularContext key of the current mode.
    """

    model_config = ConfigDict(frozen=True)

    key: str
    context: str = Field(default_factory=lambda: CircularContext.registration_key())


class CircularContext(ReviveContext):
    """
    Context storing values once and handing out markers referring to them.

    Handlers look the context up with
    ``contexts.use(CircularContext.registration_key())``, which follows
    production mode like the instance does.

    Args:
        key: Registration key. Defaults to registration_key(production).
        production: Force production mode; None reads the environment.
    """

    KEY = "circular"

    def __init__(self, key: Optional[str] = None, production: Optional[bool] = None):
        self.key = key if key is not None else self.registration_key(production)
        self.storage: Optional[ContextStorage] = None
        self.side = None

    @classmethod
    def registration_key(cls, production: Optional[bool] = None) -> str:
        """Default registration key: KEY, shortened in production mode."""
        return short_tag(cls.KEY, production)

    def wrap_context(self, value: Any) -> ContextWrapper:
        """
        Mark a value as a wrap boundary activating this context.

        The context only works inside such a boundary.
        """
        return ContextWrapper(key=self.key, value=value)

    def reset(self) -> None:
        self.storage = None
        self.side = None

    def init(self, provider, storage, side) -> None:
        self.storage = storage
        self.side = side

    def get_registration_key(self) -> str:
        return self.key

    def _require_storage(self) -> ContextStorage:
        if self.storage is None:
            raise ContextNotFoundError(self.key)
        return self.storage

    def find_marker(self, value: Any, path: str = "@", _seen: Optional[set] = None) -> Optional[str]:
        """
        Return the path of the first marker of this context inside value.

        Containers, pydantic models, dataclasses and plain objects are
        searched recursively. Returns None if there is no such marker.
        """
        if isinstance(value, CircularWrap):
            return path if value.context == self.key else None

        if is_primitive(value) or isinstance(value, type):
            return None

        if _seen is None:
            _seen = set()
        if id(value) in _seen:
            return None
        _seen.add(id(value))

        if isinstance(value, ContextWrapper):
            children = [("value", value.value)]
        elif isinstance(value, dict):
            children = value.items()
        elif isinstance(value, (list, tuple, set, frozenset)):
            children = enumerate(value)
        elif isinstance(value, BaseModel):
            children = ((name, getattr(value, name)) for name in type(value).model_fields)
        elif dataclasses.is_dataclass(value):
            children = ((f.name, getattr(value, f.name)) for f in dataclasses.fields(value))
        elif hasattr(value, "__dict__"):
            children = vars(value).items()
        else:
            return None

        for name, child in children:
            found = self.find_marker(child, f"{path}.{name}", _seen)
            if found is not None:
                return found
        return None

    def wrap_value(self, value: Any) -> CircularWrap:
        """
        Store a value and return a marker referring to it.

        The same object (by identity) is stored once; wrapping it again
        returns a marker with the existing key.

        Raises:
            NestedMarkerError: If the value contains a marker of this context.
            ContextNotFoundError: If the context is not active.
        """
        found = self.find_marker(value)
        if found is not None:
            raise NestedMarkerError(found, value)

        storage = self._require_storage()
        if storage.has_value(value):
            return CircularWrap(key=storage.get_key(value), context=self.key)

        return CircularWrap(key=storage.add(value), context=self.key)

    def unwrap_value(self, wrap: CircularWrap) -> Any:
        """
        Return the value a marker refers to.

        Raises:
            StructuralError: If wrap is not a marker.
            StorageNotFoundError: If the key is not stored.
        """
        if not isinstance(wrap, CircularWrap):
            raise StructuralError(f"Given value is not a circular wrap: {wrap!r}", wrap)
        return self._require_storage().get(wrap.key)

    def get_value(self, key: str) -> Any:
        """Return the value stored under key, or None if there is none."""
        storage = self._require_storage()
        if storage.has(key):
            return storage.get(key)
        return None


class CircularWrapHandler(TypeHandler):
    """
    Handler for CircularWrap markers.

    On revive the marker resolves to the stored value, read from the context
    registered under the marker's context key. That storage was rebuilt by
    the enclosing wrapper's before_revive, ahead of this handler's turn.
    """

    def __init__(self, context: Union[CircularContext, str, None] = None):
        if isinstance(context, CircularContext):
            self.context_key = context.get_registration_key()
        elif context is None:
            self.context_key = CircularContext.registration_key()
        else:
            self.context_key = context
        super().__init__(f"{self.context_key}_wrap")

    def can_apply(self, value):
        return isinstance(value, CircularWrap) and value.context == self.context_key

    def get_arguments(self, value: CircularWrap, contexts, reviver):
        return [value.key]

    def revive(self, args, contexts, reviver):
        context: CircularContext = contexts.use(self.context_key)
        return context.get_value(args[0])


def circular_handlers(
    context: Optional[CircularContext] = None,
    key_name: str = "wrapper",
    production: Optional[bool] = None,
) -> list[TypeHandler]:
    """
    Return the wrapper and marker handlers needed to use a CircularContext.

    Args:
        context: The context to activate. A new CircularContext if omitted.
        key_name: Key name of the wrapper handler (see ContextsWrapperHandler).
        production: Force production mode; None reads the environment.
    """
    if context is None:
        context = CircularContext(production=production)
    return [
        ContextsWrapperHandler([context], key_name, production),
        CircularWrapHandler(context),
    ]
