"""Tests for the shared-object context."""

import asyncio

import pytest

from pyrevive import (
    CircularContext,
    CircularWrap,
    CircularWrapHandler,
    ContextNotFoundError,
    ContextsProvider,
    ContextsStoragesManager,
    ContextsWrapperHandler,
    MsgpackDataProvider,
    NestedMarkerError,
    Reviver,
    StorageCycleError,
    StructuralError,
    TypeHandler,
    circular_handlers,
)


# ============================================================================
# Module-level classes and handlers used by the tests
# ============================================================================


class Box:
    """Holds a payload that is shared through the circular context."""

    def __init__(self, payload):
        self.payload = payload


class BoxHandler(TypeHandler):
    tag = "box"

    def can_apply(self, value):
        return isinstance(value, Box)

    def get_arguments(self, value, contexts, reviver):
        circular = contexts.use(CircularContext.registration_key())
        return [circular.wrap_value(value.payload)]

    def revive(self, args, contexts, reviver):
        return Box(args[0])


def make_reviver(circular=None, provider=None):
    circular = circular or CircularContext(production=False)
    return circular, Reviver([BoxHandler(), *circular_handlers(circular, production=False)], provider)


def activate(circular):
    """Bind a context to a storage outside of a wrap boundary."""
    contexts = ContextsProvider()
    manager = ContextsStoragesManager.ensure(contexts, "plainify")
    storage = manager.create_storage(circular)
    contexts.register(circular)
    circular.reset()
    circular.init(contexts, storage, "plainify")
    return storage


# ============================================================================
# Tests
# ============================================================================


class TestSharedObjects:
    """Storing shared values once."""

    def test_same_object_is_stored_once(self):
        circular, reviver = make_reviver()
        shared = {"name": "shared"}

        data = reviver.plainify(circular.wrap_context([Box(shared), Box(shared)]))

        tag, inner, key, entries = data
        assert tag == "@wrapper"
        assert key == "circular"
        assert len(entries) == 2
        stored_key = entries[0]
        assert entries[1] == ["object", "name", "shared"]
        assert inner == [
            "array",
            ["box", ["circular_wrap", stored_key]],
            ["box", ["circular_wrap", stored_key]],
        ]

    def test_revived_references_are_identical(self):
        circular, reviver = make_reviver()
        shared = {"name": "shared", "items": [1, 2]}

        data = reviver.plainify(circular.wrap_context([Box(shared), Box(shared)]))
        first, second = reviver.revive(data)

        assert first.payload == shared
        assert first.payload is second.payload

    def test_equal_but_distinct_objects_are_stored_twice(self):
        circular, reviver = make_reviver()
        data = reviver.plainify(circular.wrap_context([Box({"a": 1}), Box({"a": 1})]))
        assert len(data[3]) == 4

        first, second = reviver.revive(data)
        assert first.payload == second.payload
        assert first.payload is not second.payload

    def test_json_roundtrip(self):
        circular, reviver = make_reviver()
        shared = [1, 2, 3]
        text = reviver.stringify(circular.wrap_context({"a": Box(shared), "b": Box(shared)}))
        result = asyncio.run(reviver.parse(text))
        assert result["a"].payload == [1, 2, 3]
        assert result["a"].payload is result["b"].payload

    def test_msgpack_roundtrip(self):
        circular, reviver = make_reviver(provider=MsgpackDataProvider())
        shared = {"x": 1.5}
        payload = reviver.stringify(circular.wrap_context((Box(shared), Box(shared))))
        first, second = asyncio.run(reviver.parse(payload))
        assert first.payload is second.payload

    def test_sibling_boundaries_share_storage(self):
        circular, reviver = make_reviver()
        shared = {"shared": True}
        data = reviver.plainify(
            [circular.wrap_context(Box(shared)), circular.wrap_context([Box(shared), Box({"late": 1})])]
        )

        first, (second, third) = reviver.revive(data)
        assert first.payload is second.payload
        assert third.payload == {"late": 1}

    def test_shared_value_containing_shared_values(self):
        circular, reviver = make_reviver()
        leaf = {"leaf": 1}

        data = reviver.plainify(circular.wrap_context([Box([Box(leaf)]), Box(leaf)]))
        assert len(data[3]) == 4

        outer, sibling = reviver.revive(data)
        assert outer.payload[0].payload == {"leaf": 1}
        assert outer.payload[0].payload is sibling.payload

    def test_value_only_reached_through_storage(self):
        circular, reviver = make_reviver()
        leaf = {"leaf": 1}
        first, second = [Box(leaf)], [Box(leaf)]

        text = reviver.stringify(circular.wrap_context([Box(first), Box(second)]))
        a, b = asyncio.run(reviver.parse(text))

        assert a.payload is not b.payload
        assert a.payload[0].payload is b.payload[0].payload

    def test_cycle_through_storage_is_reported(self):
        circular, reviver = make_reviver()
        cyclic = []
        cyclic.append(Box(cyclic))

        data = reviver.plainify(circular.wrap_context(Box(cyclic)))
        stored_key = data[3][0]
        assert data[3][1] == ["array", ["box", ["circular_wrap", stored_key]]]

        with pytest.raises(StorageCycleError) as exc_info:
            reviver.revive(data)
        assert exc_info.value.key == stored_key
        assert isinstance(exc_info.value, StructuralError)

    def test_production_roundtrip(self, monkeypatch):
        monkeypatch.setenv("PYREVIVE_ENV", "production")
        circular = CircularContext()
        reviver = Reviver([BoxHandler(), *circular_handlers(circular)])
        shared = {"a": 1}

        data = reviver.plainify(circular.wrap_context([Box(shared), Box(shared)]))
        assert data[0] == "11"
        assert data[2] == "12"
        assert data[1][1] == ["box", ["12_wrap", data[3][0]]]

        first, second = reviver.revive(data)
        assert first.payload == shared
        assert first.payload is second.payload

    def test_missing_key_revives_to_none(self):
        _, reviver = make_reviver()
        assert reviver.revive(["@wrapper", ["circular_wrap", "unknown"], "circular", []]) is None


class TestMarkers:
    """wrap_value / unwrap_value / get_value."""

    def test_wrap_value_deduplicates(self):
        circular = CircularContext(production=False)
        storage = activate(circular)
        value = {"a": 1}

        first = circular.wrap_value(value)
        second = circular.wrap_value(value)

        assert first == second
        assert first.context == "circular"
        assert len(storage) == 1
        assert circular.unwrap_value(first) is value
        assert circular.get_value(first.key) is value

    def test_nested_marker_is_rejected(self):
        circular = CircularContext(production=False)
        storage = activate(circular)
        marker = circular.wrap_value([1])

        with pytest.raises(NestedMarkerError) as exc_info:
            circular.wrap_value({"inner": [marker]})

        assert exc_info.value.path == "@.inner.0"
        assert isinstance(exc_info.value, StructuralError)
        assert len(storage) == 1

    def test_nested_marker_in_object_attributes(self):
        circular = CircularContext(production=False)
        activate(circular)
        marker = circular.wrap_value("x")
        with pytest.raises(NestedMarkerError) as exc_info:
            circular.wrap_value(Box(Box(marker)))
        assert exc_info.value.path == "@.payload.payload"

    def test_marker_of_other_context_is_allowed(self):
        circular = CircularContext(production=False)
        activate(circular)
        foreign = CircularWrap(key="abc", context="other")
        assert circular.wrap_value([foreign]).context == "circular"

    def test_cyclic_value_can_be_wrapped(self):
        circular = CircularContext(production=False)
        activate(circular)
        cyclic = []
        cyclic.append(cyclic)
        marker = circular.wrap_value(cyclic)
        assert circular.unwrap_value(marker) is cyclic

    def test_inactive_context(self):
        with pytest.raises(ContextNotFoundError):
            CircularContext(production=False).wrap_value(1)

    def test_unwrap_requires_marker(self):
        circular = CircularContext(production=False)
        activate(circular)
        with pytest.raises(StructuralError):
            circular.unwrap_value("not a marker")

    def test_get_missing_value(self):
        circular = CircularContext(production=False)
        activate(circular)
        assert circular.get_value("missing") is None


class TestCircularHandlers:
    """Handler wiring."""

    def test_circular_handlers(self):
        circular = CircularContext(production=False)
        wrapper, marker = circular_handlers(circular, production=False)
        assert isinstance(wrapper, ContextsWrapperHandler)
        assert wrapper.contexts == [circular]
        assert wrapper.tag == "@wrapper"
        assert isinstance(marker, CircularWrapHandler)
        assert marker.tag == "circular_wrap"

    def test_production_keys(self):
        circular = CircularContext(production=True)
        assert circular.get_registration_key() == "12"
        assert CircularWrapHandler(circular).tag == "12_wrap"
        assert ContextsWrapperHandler([circular], production=True).tag == "11"

    def test_default_keys_follow_mode(self, monkeypatch):
        monkeypatch.setenv("PYREVIVE_ENV", "development")
        assert CircularContext.registration_key() == "circular"
        assert CircularWrap(key="k").context == "circular"

        monkeypatch.setenv("PYREVIVE_ENV", "production")
        assert CircularContext.registration_key() == "12"
        assert CircularContext.registration_key(production=False) == "circular"
        assert CircularWrap(key="k").context == "12"
        assert CircularWrapHandler().can_apply(CircularWrap(key="k"))

    def test_marker_handler_only_matches_its_context(self):
        handler = CircularWrapHandler("circular")
        assert handler.can_apply(CircularWrap(key="k"))
        assert not handler.can_apply(CircularWrap(key="k", context="other"))
        assert not handler.can_apply({"key": "k"})
