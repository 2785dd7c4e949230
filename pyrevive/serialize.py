"""
Dispatch engine for the pyrevive library.

This module contains the Reviver class, which converts values to and from
abstract data by trying an ordered list of type handlers:

- plainify(): value -> AbstractData. Primitives pass through, Raw markers are
  unwrapped, anything else goes to the first handler whose can_apply()
  accepts it (or redirects to a substitute value).
- revive(): AbstractData -> value. Primitives pass through, Raw markers are
  unwrapped, tagged sequences go to the handler owning the tag. A handler's
  before_revive() hook sees the raw arguments before any of them is revived.
- stringify() / parse(): plainify/revive combined with a data provider that
  turns the tree into text or bytes.

Every top-level call runs in a session: one ContextsProvider shared by the
whole recursion. Pass an existing provider to make nested calls share context
state; never share one provider between concurrent operations.

Handler order:
    Handlers passed to Reviver come first, then handlers registered globally
    with register_handler(), then the built-ins. The first applicable handler
    wins. A custom handler whose tag matches a built-in replaces that built-in
    (with a warning); two distinct custom handlers with the same tag are an
    error.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from pyrevive.contexts import ContextsProvider
from pyrevive.errors import (
    HandlerConflictError,
    IgnoreMarkerError,
    MalformedDataError,
    UnknownTagError,
    UnresolvableValueError,
)
from pyrevive.handlers import default_handlers
from pyrevive.providers import DataProvider, JsonDataProvider
from pyrevive.stypes import (
    AbstractData,
    Raw,
    Redirect,
    TypeHandler,
    is_primitive,
    validate_abstract_data,
)

logger = logging.getLogger(__name__)


# Handlers registered process-wide, consulted by every Reviver built afterwards.
registered_handlers: list[TypeHandler] = []


def register_handler(handler: TypeHandler) -> None:
    """
    Register a handler for every Reviver created from now on.

    Globally registered handlers are tried after the handlers passed to a
    Reviver and before the built-ins.

    Example:
        >>> register_handler(PointHandler())
        >>> Reviver().plainify(Point(1, 2))
        ['point', 1, 2]
    """
    registered_handlers.append(handler)


def _merge_handlers(
    custom: Iterable[TypeHandler], builtin: Iterable[TypeHandler]
) -> list[TypeHandler]:
    """
    Build the ordered handler list, checking for tag collisions.

    Raises:
        HandlerConflictError: If two distinct custom handlers share a tag.
    """
    merged: list[TypeHandler] = []
    by_tag: dict[str, TypeHandler] = {}

    for handler in custom:
        previous = by_tag.get(handler.tag)
        if previous is handler:
            continue
        if previous is not None:
            raise HandlerConflictError(handler.tag, previous, handler)
        by_tag[handler.tag] = handler
        merged.append(handler)

    for handler in builtin:
        if handler.tag in by_tag:
            logger.warning(
                "Handler %r replaces the built-in handler for tag %r.",
                by_tag[handler.tag],
                handler.tag,
            )
            continue
        by_tag[handler.tag] = handler
        merged.append(handler)

    return merged


class Reviver:
    """
    Converts values to abstract data and back through type handlers.

    Attributes:
        handlers: The ordered handler list (custom handlers first).
        provider: The data provider used by stringify() and parse().

    Example:
        >>> reviver = Reviver()
        >>> reviver.plainify({"when": datetime(2020, 1, 1)})
        ['object', 'when', ['date', '2020-01-01T00:00:00']]
        >>> reviver.revive(['set', 1, 2, 3])
        {1, 2, 3}

    Example with contexts:
        >>> circular = CircularContext()
        >>> reviver = Reviver(circular_handlers(circular))
        >>> text = reviver.stringify(circular.wrap_context(document))
        >>> restored = asyncio.run(reviver.parse(text))
    """

    def __init__(
        self,
        handlers: Optional[Iterable[TypeHandler]] = None,
        provider: Optional[DataProvider] = None,
        production: Optional[bool] = None,
    ):
        """
        Initialize the engine.

        Args:
            handlers: Custom handlers, tried before the built-ins.
            provider: Data provider for stringify()/parse(). Defaults to
                JsonDataProvider.
            production: Force production-mode tags for the built-ins; None
                reads the environment (see pyrevive.settings).
        """
        custom = [*(handlers or []), *registered_handlers]
        self.handlers = _merge_handlers(custom, default_handlers(production))
        self.provider = provider if provider is not None else JsonDataProvider()
        self._by_tag = {handler.tag: handler for handler in self.handlers}

    def handler_for_tag(self, tag: str) -> TypeHandler:
        """
        Look up the handler owning a type tag.

        Raises:
            UnknownTagError: If no handler uses this tag.
        """
        try:
            return self._by_tag[tag]
        except KeyError:
            raise UnknownTagError(tag) from None

    def plainify(self, value: Any, contexts: Optional[ContextsProvider] = None) -> AbstractData:
        """
        Convert a value into abstract data.

        Args:
            value: Any value some handler applies to.
            contexts: The session to run in; a new one is created if omitted.

        Returns:
            A primitive or a tagged sequence.

        Raises:
            UnresolvableValueError: If no handler applies to a (sub-)value.
            IgnoreMarkerError: If a Raw marker wraps something that is not
                abstract data.
        """
        if contexts is None:
            contexts = ContextsProvider(self)

        if is_primitive(value):
            return value

        if isinstance(value, Raw):
            try:
                validate_abstract_data(value.value)
            except MalformedDataError as exc:
                raise IgnoreMarkerError(value.value) from exc
            return value.value

        for handler in self.handlers:
            outcome = handler.can_apply(value)

            if isinstance(outcome, Redirect):
                return self.plainify(outcome.value, contexts)

            if outcome:
                args = handler.get_arguments(value, contexts, self)
                # Arguments are pulled one at a time, each fully processed
                # before the next is requested.
                return [handler.tag, *(self.plainify(arg, contexts) for arg in args)]

        raise UnresolvableValueError(value)

    def revive(self, data: AbstractData, contexts: Optional[ContextsProvider] = None) -> Any:
        """
        Convert abstract data back into a value.

        Args:
            data: A primitive or a tagged sequence.
            contexts: The session to run in; a new one is created if omitted.

        Raises:
            MalformedDataError: If a node is neither a primitive nor a
                non-empty sequence starting with a string tag.
            UnknownTagError: If a tag has no handler.
        """
        if contexts is None:
            contexts = ContextsProvider(self)

        if is_primitive(data):
            return data

        if isinstance(data, Raw):
            return data.value

        if not isinstance(data, (list, tuple)):
            raise MalformedDataError(
                f"Invalid value received: expected a tagged sequence, received {data!r}",
                data,
            )

        if not data or not isinstance(data[0], str):
            raise MalformedDataError(
                f"Invalid value received: a tagged sequence must start with a "
                f"string tag, received {data!r}",
                data,
            )

        handler = self.handler_for_tag(data[0])
        args = list(data[1:])

        before_revive = getattr(handler, "before_revive", None)
        if before_revive is not None:
            args = before_revive(args, contexts, self)

        revived = [self.revive(arg, contexts) for arg in args]
        return handler.revive(revived, contexts, self)

    def stringify(self, value: Any, contexts: Optional[ContextsProvider] = None):
        """Plainify a value and encode it with the data provider."""
        return self.provider.encode(self.plainify(value, contexts))

    async def parse(self, data, contexts: Optional[ContextsProvider] = None) -> Any:
        """Decode data with the data provider and revive the result."""
        return self.revive(await self.provider.decode(data), contexts)
