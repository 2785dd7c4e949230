"""
Contexts: session-scoped state shared between handlers.

A context is a stateful collaborator registered in a ContextsProvider for
the duration of one plainify/revive session. Each context owns exactly one
ContextStorage, a string-keyed store whose contents travel with the
serialized value, so that handlers on the revive side can look up state the
plainify side recorded.

Pieces:

- ReviveContext: the lifecycle protocol (reset, init, get_registration_key).
- ContextStorage: a per-context keyed store with generated keys.
- ContextsStoragesManager: the context that owns every storage of a session.
  It is itself registered in the provider under a well-known key.
- ContextsProvider: the session registry of active contexts.
- ContextsWrapperHandler: the handler marking a wrap boundary. It activates
  its configured contexts before the wrapped value is processed and writes
  their storages next to it.

Lifecycle guarantees:
    reset() is always called before init(). Contexts are activated at most
    once per session: a second wrap boundary that names an active context
    reuses it. On the revive side, contexts are activated and their storages
    filled in before_revive(), before the wrapped value (which may reference
    them) is revived. Stored values are revived the first time they are read,
    so they may refer to each other in any order.

Wire layout of a wrap boundary::

    ["@wrapper", inner, "ctx_key_1", [k, v, k, v, ...], "ctx_key_2", [...], ...]
"""

from __future__ import annotations

import functools
import logging
import random
import string
from typing import Any, Callable, Iterator, Literal, Optional, TYPE_CHECKING

from pyrevive.errors import (
    ContextNotFoundError,
    DuplicateContextError,
    DuplicateStorageError,
    MalformedDataError,
    StorageCycleError,
    StorageNotFoundError,
)
from pyrevive.settings import short_tag
from pyrevive.stypes import ContextWrapper, Raw, TypeHandler

if TYPE_CHECKING:
    from pyrevive.serialize import Reviver
else:
    Reviver = Any

logger = logging.getLogger(__name__)

ContextSide = Literal["plainify", "revive"]


# =============================================================================
# Context Protocol
# =============================================================================


class ReviveContext:
    """
    Base class for contexts.

    Subclasses must implement:
    - reset(): Return to a neutral state. Always called before init().
    - init(): Bind to a provider, a storage and a side. The context may
      behave differently on the plainify and revive sides.
    - get_registration_key(): The key the context is registered under. It
      must be unique within a session.
    """

    def reset(self) -> None:
        raise NotImplementedError

    def init(
        self,
        provider: ContextsProvider,
        storage: Optional[ContextStorage],
        side: ContextSide,
    ) -> None:
        raise NotImplementedError

    def get_registration_key(self) -> str:
        raise NotImplementedError


class PlainContext(ReviveContext):
    """
    A context built from a key and callbacks, without subclassing.

    The bound storage is available as ``context.storage`` after init.

    Example:
        >>> seen = PlainContext("seen", on_init=lambda provider, side: print(side))
        >>> handler = ContextsWrapperHandler([seen])
    """

    def __init__(
        self,
        key: str,
        on_init: Optional[Callable[[ContextsProvider, ContextSide], None]] = None,
        on_reset: Optional[Callable[[], None]] = None,
    ):
        self.key = key
        self.on_init = on_init
        self.on_reset = on_reset
        self.storage: Optional[ContextStorage] = None
        self.side: Optional[ContextSide] = None

    def reset(self) -> None:
        self.storage = None
        self.side = None
        if self.on_reset is not None:
            self.on_reset()

    def init(self, provider, storage, side) -> None:
        self.storage = storage
        self.side = side
        if self.on_init is not None:
            self.on_init(provider, side)

    def get_registration_key(self) -> str:
        return self.key


# =============================================================================
# Storage
# =============================================================================


class ContextStorage:
    """
    String-keyed value store owned by one context for one session.

    Keys are either chosen by the caller (set) or generated (add). Generated
    keys are random alphanumeric strings of a fixed size; collisions are
    detected and retried, they are not made impossible. Keys are not
    cryptographically random.

    Values may also be deferred: ``defer(key, loader)`` stores a loader that
    is called the first time the key is read, and its result is kept. Stored
    values revived from a payload use this, so that an entry referring to
    another entry works whatever their order.

    Attributes:
        context: The context owning this storage.
        manager: The storages manager that created it.
    """

    KEY_CHARACTERS = string.ascii_uppercase + string.ascii_lowercase + string.digits

    def __init__(self, context: ReviveContext, manager: ContextsStoragesManager):
        self.context = context
        self.manager = manager
        self._data: dict[str, Any] = {}
        self._pending: dict[str, Callable[[], Any]] = {}
        self._loading: set[str] = set()

    def _load(self, key: str) -> None:
        loader = self._pending.get(key)
        if loader is None:
            return
        if key in self._loading:
            raise StorageCycleError(key, self.context.get_registration_key())

        self._loading.add(key)
        try:
            value = loader()
        finally:
            self._loading.discard(key)
        del self._pending[key]
        self._data[key] = value

    def _load_all(self) -> None:
        for key in list(self._pending):
            self._load(key)

    def set(self, key: str, value: Any) -> None:
        """Store a value under a key, replacing any previous value."""
        self._pending.pop(key, None)
        self._data[key] = value

    def defer(self, key: str, loader: Callable[[], Any]) -> None:
        """Store the result of ``loader()`` under a key, computed on first read."""
        self._data.pop(key, None)
        self._pending[key] = loader

    def has(self, key: str) -> bool:
        return key in self._data or key in self._pending

    def has_value(self, value: Any) -> bool:
        """Check whether this exact object (by identity) is stored."""
        self._load_all()
        return any(stored is value for stored in self._data.values())

    def get(self, key: str) -> Any:
        """
        Return the value stored under a key.

        Raises:
            StorageNotFoundError: If the key is absent.
            StorageCycleError: If a deferred value needs itself to load.
        """
        self._load(key)
        try:
            return self._data[key]
        except KeyError:
            raise StorageNotFoundError(
                f"No value stored under key {key!r} in the storage of "
                f"context '{self.context.get_registration_key()}'."
            ) from None

    def get_key(self, value: Any) -> str:
        """
        Return the key of a stored object (by identity).

        Raises:
            StorageNotFoundError: If the object is not stored.
        """
        self._load_all()
        for key, stored in self._data.items():
            if stored is value:
                return key
        raise StorageNotFoundError(
            f"Value {value!r} is not stored in the storage of context "
            f"'{self.context.get_registration_key()}'."
        )

    def generate_key(self, key_size: int = 10) -> str:
        """
        Generate a key of ``key_size`` characters not yet used in this storage.

        Example:
            >>> storage.generate_key()
            '1qwYwiWdM8'
        """
        while True:
            key = "".join(random.choices(self.KEY_CHARACTERS, k=key_size))
            if not self.has(key):
                return key

    def add(self, value: Any, key_size: int = 10) -> str:
        """Store a value under a freshly generated key and return the key."""
        key = self.generate_key(key_size)
        self._data[key] = value
        return key

    def remove(self, key: str) -> None:
        """Drop a key. Missing keys are ignored."""
        self._data.pop(key, None)
        self._pending.pop(key, None)

    def clear(self) -> None:
        self._data = {}
        self._pending = {}

    def keys(self) -> Iterator[str]:
        return iter([*self._data, *self._pending])

    def values(self) -> Iterator[Any]:
        self._load_all()
        return iter(list(self._data.values()))

    def entries(self) -> Iterator[tuple[str, Any]]:
        self._load_all()
        return iter(list(self._data.items()))

    def __iter__(self):
        return self.entries()

    def __len__(self):
        return len(self._data) + len(self._pending)

    def __contains__(self, key):
        return self.has(key)

    def __repr__(self):
        return (
            f"ContextStorage(context={self.context.get_registration_key()!r}, "
            f"size={len(self)})"
        )


class ContextsStoragesManager(ReviveContext):
    """
    The context owning every ContextStorage of a session.

    It does not use a storage itself; it provides them. One manager is
    registered per session, under KEY, before any other context.

    Attributes:
        storages: Storages created in this session, in creation order.
        provider: The session the manager is bound to (set by init).
    """

    KEY = "@storages_manager"

    def __init__(self):
        self.storages: list[ContextStorage] = []
        self.provider: Optional[ContextsProvider] = None

    @classmethod
    def ensure(cls, contexts: ContextsProvider, side: ContextSide) -> ContextsStoragesManager:
        """
        Return the session's manager, registering a fresh one if needed.

        A newly registered manager is reset and initialized; an already
        registered one is returned untouched so that the storages of
        contexts activated earlier in the session survive.
        """
        if contexts.has(cls.KEY):
            return contexts.use(cls.KEY)

        manager = cls()
        contexts.register(manager)
        manager.reset()
        manager.init(contexts, None, side)
        return manager

    def reset(self) -> None:
        self.storages = []
        self.provider = None

    def init(self, provider, storage=None, side=None) -> None:
        self.storages = []
        self.provider = provider

    def get_registration_key(self) -> str:
        return self.KEY

    def _find(self, context: ReviveContext) -> Optional[ContextStorage]:
        key = context.get_registration_key()
        for storage in self.storages:
            if storage.context.get_registration_key() == key:
                return storage
        return None

    def has_storage(self, context: ReviveContext) -> bool:
        return self._find(context) is not None

    def get_storage(self, context: ReviveContext) -> ContextStorage:
        """
        Return the storage of a context.

        Raises:
            StorageNotFoundError: If the context has no storage in this session.
        """
        storage = self._find(context)
        if storage is None:
            raise StorageNotFoundError(
                f"Context '{context.get_registration_key()}' has no storage."
            )
        return storage

    def create_storage(self, context: ReviveContext) -> ContextStorage:
        """
        Allocate the storage of a context.

        Raises:
            DuplicateStorageError: If the context already has one.
        """
        if self._find(context) is not None:
            raise DuplicateStorageError(context.get_registration_key())

        storage = ContextStorage(context, self)
        self.storages.append(storage)
        logger.debug("Created storage for context '%s'.", context.get_registration_key())
        return storage

    def revive_storage(
        self,
        storage: ContextStorage,
        data: list,
        reviver: Reviver,
        overwrite: bool = True,
    ) -> None:
        """
        Fill a storage from its serialized form.

        Values are revived on first read, in this manager's session, so the
        owning context must be active before any of them is looked up.

        Args:
            storage: The storage to fill.
            data: Flat key/value sequence ``[k1, v1, k2, v2, ...]``. Keys are
                used verbatim, values are revived through the engine.
            reviver: The engine reviving the values.
            overwrite: When False, keys already present are left alone.

        Raises:
            MalformedDataError: If data is not a flat sequence of string keys
                and values.
        """
        if not isinstance(data, (list, tuple)) or len(data) % 2:
            raise MalformedDataError(
                f"Serialized storage must be a flat key/value sequence, received {data!r}",
                data,
            )

        for key, value in zip(data[::2], data[1::2]):
            if not isinstance(key, str):
                raise MalformedDataError(f"Storage key must be a string, received {key!r}", data)
            if not overwrite and storage.has(key):
                continue
            storage.defer(key, functools.partial(reviver.revive, value, self.provider))


# =============================================================================
# Session Registry
# =============================================================================


class ContextsProvider:
    """
    The set of contexts active in one session.

    A provider is created for each top-level plainify/revive call unless the
    caller passes one in. It is not safe to share between operations running
    at the same time.

    Attributes:
        reviver: The engine that created the session.
    """

    def __init__(self, reviver: Optional[Reviver] = None):
        self.reviver = reviver
        self._contexts: dict[str, ReviveContext] = {}

    def register(self, context: ReviveContext) -> ContextsProvider:
        """
        Register a context.

        Raises:
            DuplicateContextError: If the registration key is already in use.
        """
        key = context.get_registration_key()
        if key in self._contexts:
            raise DuplicateContextError(key)
        self._contexts[key] = context
        logger.debug("Registered context '%s'.", key)
        return self

    def use(self, key: str) -> Any:
        """
        Return the context registered under a key.

        Raises:
            ContextNotFoundError: If none is.
        """
        try:
            return self._contexts[key]
        except KeyError:
            raise ContextNotFoundError(key) from None

    def has(self, key: str) -> bool:
        return key in self._contexts

    def remove(self, key: str) -> ContextsProvider:
        """Unregister a context. Missing keys are ignored."""
        self._contexts.pop(key, None)
        return self

    def __contains__(self, key):
        return key in self._contexts

    def __iter__(self):
        return iter(list(self._contexts.values()))

    def __len__(self):
        return len(self._contexts)


# =============================================================================
# Wrapper Handler
# =============================================================================


class ContextsWrapperHandler(TypeHandler, ReviveContext):
    """
    Handler binding a value to a fixed set of contexts.

    It applies to ContextWrapper values whose key is this handler's tag or
    the registration key of one of its contexts. A ContextWrapper with any
    other key is logged and left to other handlers.

    The handler follows the context lifecycle itself: each boundary resets
    it and initializes it with the session and side being processed. It
    owns no storage.

    Args:
        contexts: The contexts activated at this boundary.
        key_name: Tag suffix; the tag is ``"@" + key_name``. Handlers with
            different contexts in one Reviver need different key names.
        production: Force production-mode tags; None reads the environment.

    Example:
        >>> circular = CircularContext()
        >>> wrapper = ContextsWrapperHandler([circular])
        >>> reviver = Reviver([wrapper, CircularWrapHandler(circular)])
        >>> reviver.plainify(wrapper.wrap(document))
        ['@wrapper', [...], 'circular', ['kS3a9QdL0p', [...]]]
    """

    def __init__(self, contexts, key_name: str = "wrapper", production: Optional[bool] = None):
        super().__init__(short_tag(f"@{key_name}", production))
        self.contexts: list[ReviveContext] = list(contexts)
        self.provider: Optional[ContextsProvider] = None
        self.side: Optional[ContextSide] = None

    def reset(self) -> None:
        self.provider = None
        self.side = None

    def init(self, provider, storage=None, side=None) -> None:
        self.provider = provider
        self.side = side

    def get_registration_key(self) -> str:
        return self.tag

    def context_keys(self) -> list[str]:
        return [context.get_registration_key() for context in self.contexts]

    def wrap(self, value: Any) -> ContextWrapper:
        """Mark a value as a wrap boundary handled by this handler."""
        return ContextWrapper(key=self.tag, value=value)

    def can_apply(self, value):
        if not isinstance(value, ContextWrapper):
            return False

        if value.key == self.tag or value.key in self.context_keys():
            return True

        logger.warning(
            "%s detected a context wrapper it is not configured for: '%s'. "
            "Consider adding the corresponding context to the wrapper. Ignoring this one.",
            type(self).__name__,
            value.key,
        )
        return False

    def get_arguments(self, value: ContextWrapper, contexts, reviver):
        storages = ContextsStoragesManager.ensure(contexts, "plainify")
        self.reset()
        self.init(contexts, None, "plainify")

        for context in self.contexts:
            key = context.get_registration_key()
            if contexts.has(key):
                continue
            contexts.register(context)
            storage = storages.create_storage(context)
            context.reset()
            context.init(contexts, storage, "plainify")

        return self._arguments(value, storages, contexts, reviver)

    def _arguments(self, value, storages, contexts, reviver):
        # Storages are only complete once the wrapped value has been
        # processed, so they are read after it has been yielded.
        yield value.value

        for context in self.contexts:
            yield context.get_registration_key()
            yield Raw(value=self._plainify_storage(storages.get_storage(context), contexts, reviver))

    @staticmethod
    def _plainify_storage(storage: ContextStorage, contexts, reviver) -> list:
        plain: dict[str, Any] = {}
        # Processing an entry may add new ones.
        while True:
            pending = [key for key in storage.keys() if key not in plain]
            if not pending:
                break
            for key in pending:
                plain[key] = reviver.plainify(storage.get(key), contexts)

        flat: list = []
        for key, item in plain.items():
            flat.extend((key, item))
        return flat

    def before_revive(self, raw_args: list, contexts, reviver) -> list:
        if not raw_args or len(raw_args) % 2 == 0:
            raise MalformedDataError(
                f"Context wrapper expects a value followed by key/storage pairs, "
                f"received {raw_args!r}",
                raw_args,
            )

        inner, pairs = raw_args[0], raw_args[1:]
        if not all(isinstance(key, str) for key in pairs[::2]):
            raise MalformedDataError(
                f"Context wrapper keys must be strings, received {pairs[::2]!r}", raw_args
            )
        serialized = dict(zip(pairs[::2], pairs[1::2]))
        storages = ContextsStoragesManager.ensure(contexts, "revive")
        self.reset()
        self.init(contexts, None, "revive")

        for context in self.contexts:
            key = context.get_registration_key()

            if key not in serialized:
                logger.warning(
                    "Context '%s' was not serialized with this value but is "
                    "configured now, ignoring.",
                    key,
                )
                continue

            if contexts.has(key):
                storages.revive_storage(
                    storages.get_storage(context), serialized[key], reviver, overwrite=False
                )
                continue

            # Stored values may refer to their own context, so it is active
            # before any of them is revived.
            storage = storages.create_storage(context)
            contexts.register(context)
            context.reset()
            context.init(contexts, storage, "revive")
            storages.revive_storage(storage, serialized[key], reviver)

        return [inner]

    def revive(self, args, contexts, reviver):
        return args[0]
