"""
Exception types raised by pyrevive.

Errors fall into two families:

- ConfigurationError: the handlers or contexts in play cannot process the
  input (duplicate registration, unknown tag, missing context or storage,
  value with no applicable handler, Raw around something that is not
  abstract data).
- StructuralError: the input itself has the wrong shape (nested markers of
  the same context, malformed abstract data, a stored value referring to
  itself).

Both are deterministic functions of the input; nothing in the engine retries.
Recoverable conditions are logged as warnings instead of raised.
"""

from __future__ import annotations

from typing import Any


class ReviveError(Exception):
    """Base class for every error raised by pyrevive."""


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(ReviveError):
    """The active handlers or contexts cannot process the given input."""


class DuplicateContextError(ConfigurationError, KeyError):
    """A context was registered under a key that is already in use."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(
            f"Cannot register context '{key}': another context has the same "
            "registration key."
        )

    def __str__(self):
        return self.args[0]


class ContextNotFoundError(ConfigurationError, LookupError):
    """No context is registered under the requested key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Context '{key}' is not registered.")


class DuplicateStorageError(ConfigurationError):
    """A storage was requested for a context that already owns one."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Context '{key}' already has a storage.")


class StorageNotFoundError(ConfigurationError, LookupError):
    """A storage, or an entry inside one, does not exist."""


class UnknownTagError(ConfigurationError, LookupError):
    """Deserialization met a type tag that no handler owns."""

    def __init__(self, tag: Any):
        self.tag = tag
        super().__init__(f"No handler for type tag {tag!r}, cannot continue.")


class UnresolvableValueError(ConfigurationError, TypeError):
    """Serialization met a value that no handler applies to."""

    def __init__(self, value: Any):
        self.value = value
        super().__init__(
            f"No handler for value {value!r} of type "
            f"{type(value).__name__}, cannot continue."
        )


class HandlerConflictError(ConfigurationError):
    """Two distinct custom handlers were registered with the same tag."""

    def __init__(self, tag: str, first: Any, second: Any):
        self.tag = tag
        super().__init__(
            f"Handlers {type(first).__name__} and {type(second).__name__} "
            f"both use the type tag {tag!r}."
        )


class IgnoreMarkerError(ConfigurationError, TypeError):
    """A Raw marker wraps something that is not abstract data."""

    def __init__(self, value: Any):
        self.value = value
        super().__init__(
            f"Raw can only wrap abstract data, received {value!r} of type "
            f"{type(value).__name__}."
        )


# =============================================================================
# Structural Errors
# =============================================================================


class StructuralError(ReviveError, ValueError):
    """The input value or tree has a shape the engine cannot represent."""

    def __init__(self, message: str, value: Any = None):
        self.value = value
        super().__init__(message)


class NestedMarkerError(StructuralError):
    """A value wrapped by a context contains a marker of the same context."""

    def __init__(self, path: str, value: Any = None):
        self.path = path
        super().__init__(
            f"Wrapped value cannot contain other wrapped values of the same "
            f"context (found at {path})",
            value,
        )


class MalformedDataError(StructuralError):
    """Abstract data that is not a primitive or a tagged sequence."""


class StorageCycleError(StructuralError):
    """A stored value refers, directly or not, to its own storage key."""

    def __init__(self, key: str, context: str):
        self.key = key
        super().__init__(
            f"Stored value '{key}' of context '{context}' refers to itself and "
            "cannot be revived.",
            key,
        )
