"""Tests for tagson dispatch order, registration, wire shape and errors."""

import datetime
import functools
import logging
import math
import re

import pytest

from tagson import (
    CATEGORIES,
    UNDEFINED,
    DeserializeError,
    DuplicateTagError,
    Envelope,
    Record,
    SerializationContext,
    SerializeError,
    Transformer,
    TransformerRegistry,
    default_registry,
    deserialize,
    register_builtins,
    register_transformer,
    serialize,
    stringify,
    with_recursion_tracker,
)
from tagson.stypes import NaNType, PrimitiveType


# ============================================================================
# Module-level helpers for custom transformer tests
# ============================================================================


class ComplexType(Transformer):
    tag = "COMPLEX"

    def check(self, value):
        return isinstance(value, complex)

    def serialize(self, value, context):
        return [value.real, value.imag]

    def deserialize(self, value, context):
        return complex(*value)


class Bag:
    """Slotted container, so only BagType can handle it."""

    __slots__ = ["items"]

    def __init__(self, items=None):
        self.items = items if items is not None else []


class BagType(Transformer):
    tag = "BAG"

    def check(self, value):
        return isinstance(value, Bag)

    def serialize(self, value, context):
        return [context.serialize(item) for item in value.items]

    def deserialize(self, value, context):
        bag = Bag()
        context.publish(bag)
        for item in value:
            bag.items.append(context.deserialize(item))
        return bag


class FloatWithAttrs(float):
    pass


class DictWithAttrs(dict):
    pass


@pytest.fixture
def registry():
    registry = TransformerRegistry()
    register_builtins(registry)
    return registry


# ============================================================================
# Tests
# ============================================================================


class TestDispatchOrder:
    """Test which transformer claims which value."""

    @pytest.mark.parametrize(
        "value, tag",
        [
            (float("nan"), "NAN"),
            (math.inf, "INF"),
            (-math.inf, "-INF"),
            (-0.0, "-0"),
            (2**57 - 1, "BIGINT"),
            (-(2**53), "BIGINT"),
            (2**53 - 1, "PRIMITIVE"),
            (1, "PRIMITIVE"),
            (1.0, "PRIMITIVE"),
            (0.0, "PRIMITIVE"),
            (True, "PRIMITIVE"),
            (None, "PRIMITIVE"),
            ("text", "PRIMITIVE"),
            (UNDEFINED, "UNDEFINED"),
            (re.compile("x"), "REGEXP"),
            (datetime.datetime(2021, 1, 1), "DATE"),
            ({}, "RECURSIVE(MAP)"),
            (set(), "RECURSIVE(SET)"),
            ([], "RECURSIVE(ARRAY)"),
            ((), "TUPLE"),
            (frozenset(), "FROZENSET"),
            (Record(), "RECURSIVE(OBJECT)"),
        ],
    )
    def test_tag(self, value, tag):
        assert serialize(value).tag == tag

    def test_builtin_order(self):
        assert [transformer.tag for transformer in default_registry] == [
            "NAN",
            "INF",
            "-INF",
            "-0",
            "BIGINT",
            "PRIMITIVE",
            "UNDEFINED",
            "REGEXP",
            "DATE",
            "RECURSIVE(MAP)",
            "RECURSIVE(SET)",
            "RECURSIVE(ARRAY)",
            "TUPLE",
            "FROZENSET",
            "RECURSIVE(OBJECT)",
        ]

    def test_earlier_category_beats_catch_all(self):
        # Instances of these subclasses carry a __dict__, so the catch-all
        # would accept them too
        assert serialize(FloatWithAttrs("nan")).tag == "NAN"
        assert serialize(FloatWithAttrs(1.5)).tag == "PRIMITIVE"
        assert serialize(DictWithAttrs(a=1)).tag == "RECURSIVE(MAP)"

    def test_earlier_registration_wins_within_category(self):
        class FirstInt(Transformer):
            tag = "FIRST_INT"

            def check(self, value):
                return isinstance(value, int)

        registry = TransformerRegistry()
        registry.register("primitive", FirstInt())
        registry.register("primitive", PrimitiveType())
        assert registry.find_by_value(3).tag == "FIRST_INT"
        assert registry.find_by_value("3").tag == "PRIMITIVE"

    def test_find_by_tag(self, registry):
        assert registry.find_by_tag("RECURSIVE(MAP)").tag == "RECURSIVE(MAP)"
        assert registry.find_by_tag("MAP") is None


class TestWireShape:
    """Test the exact envelope layout."""

    def test_literal_payloads(self):
        assert serialize(float("nan")).model_dump() == {"tag": "NAN", "value": None}
        assert serialize(-0.0).model_dump() == {"tag": "-0", "value": 0}
        assert serialize(2**57 - 1).model_dump() == {
            "tag": "BIGINT",
            "value": str(2**57 - 1),
        }
        assert serialize(UNDEFINED).model_dump() == {"tag": "UNDEFINED", "value": None}

    def test_regexp_payload(self):
        assert serialize(re.compile("a+", re.IGNORECASE)).model_dump() == {
            "tag": "REGEXP",
            "value": ["a+", "iu"],
        }

    def test_date_payload(self):
        value = datetime.datetime(2021, 3, 4, 5, 6, 7, tzinfo=datetime.timezone.utc)
        assert serialize(value).model_dump() == {
            "tag": "DATE",
            "value": "2021-03-04T05:06:07+00:00",
        }

    def test_self_referencing_list(self):
        value = []
        value.append(value)
        assert serialize(value).model_dump() == {
            "tag": "RECURSIVE(ARRAY)",
            "value": {
                "id": 1,
                "value": [{"tag": "RECURSIVE(ARRAY)", "value": 1}],
            },
        }

    def test_dict_entries_are_pairs(self):
        assert serialize({"a": 1}).model_dump() == {
            "tag": "RECURSIVE(MAP)",
            "value": {
                "id": 1,
                "value": [
                    {
                        "tag": "RECURSIVE(ARRAY)",
                        "value": {
                            "id": 2,
                            "value": [
                                {"tag": "PRIMITIVE", "value": "a"},
                                {"tag": "PRIMITIVE", "value": 1},
                            ],
                        },
                    }
                ],
            },
        }

    def test_record_payload(self):
        assert serialize(Record(x=1)).model_dump() == {
            "tag": "RECURSIVE(OBJECT)",
            "value": {"id": 1, "value": {"x": {"tag": "PRIMITIVE", "value": 1}}},
        }

    def test_stringify_compact(self):
        assert stringify(float("inf")) == '{"tag":"INF","value":null}'


class TestContext:
    """Test traversal state sharing."""

    def test_shared_context_reuses_ids(self):
        context = SerializationContext()
        shared = [1]
        first = serialize(shared, context)
        second = serialize(shared, context)
        assert first.value.id == 1
        assert second.value == 1
        assert context.recursive_count == 1

        regen = SerializationContext()
        a = deserialize(first.model_dump(), regen)
        b = deserialize(second.model_dump(), regen)
        assert a is b

    def test_fresh_context_per_call(self):
        shared = [1]
        assert serialize(shared).value.id == 1
        assert serialize(shared).value.id == 1

    def test_ids_follow_first_sighting_order(self):
        inner = []
        envelope = serialize([inner, inner])
        first, second = envelope.value.value
        assert envelope.value.id == 1
        assert first.value.id == 2
        assert second.value == 2

    def test_publish_is_one_shot(self):
        context = SerializationContext()
        published = []
        context.set_ref = published.append
        context.publish("first")
        context.publish("second")
        assert published == ["first"]
        assert context.set_ref is None

    def test_publish_without_set_ref(self):
        SerializationContext().publish([])

    def test_set_ref_restored_after_container(self):
        context = SerializationContext()
        deserialize(serialize([[1], {2}]).model_dump(), context)
        assert context.set_ref is None
        assert sorted(context.recursive_regenerator) == [1, 2, 3]


class TestRegistration:
    """Test the registry and custom transformers."""

    def test_duplicate_tag_across_categories(self, registry):
        with pytest.raises(DuplicateTagError) as exc_info:
            registry.register("object", PrimitiveType())
        assert exc_info.value.tag == "PRIMITIVE"
        assert [t.tag for t in registry].count("PRIMITIVE") == 1

    def test_duplicate_tag_in_default_registry(self):
        before = [t.tag for t in default_registry]
        with pytest.raises(DuplicateTagError):
            register_transformer("final", NaNType())
        assert [t.tag for t in default_registry] == before

    def test_unknown_category(self):
        with pytest.raises(ValueError, match="Unknown transformer category"):
            TransformerRegistry().register("special", ComplexType())

    def test_categories(self):
        assert CATEGORIES == ("literal", "primitive", "object", "final")

    def test_custom_transformer(self, registry):
        registry.register("primitive", ComplexType())
        envelope = serialize([1 + 2j], SerializationContext(registry))
        recovered = deserialize(envelope.model_dump(), SerializationContext(registry))
        assert recovered == [1 + 2j]

    def test_custom_transformer_not_in_default_registry(self, registry):
        registry.register("primitive", ComplexType())
        assert "COMPLEX" in registry
        assert "COMPLEX" not in default_registry
        with pytest.raises(SerializeError):
            serialize(1 + 2j)

    def test_custom_tracked_container(self, registry):
        registry.register("object", with_recursion_tracker(BagType()))
        bag = Bag()
        bag.items.append(bag)
        bag.items.append(UNDEFINED)

        envelope = serialize(bag, SerializationContext(registry))
        assert envelope.tag == "RECURSIVE(BAG)"

        recovered = deserialize(envelope.model_dump(), SerializationContext(registry))
        assert isinstance(recovered, Bag)
        assert recovered.items[0] is recovered
        assert recovered.items[1] is UNDEFINED

    def test_registration_is_logged(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="tagson.serialize"):
            TransformerRegistry().register("primitive", ComplexType())
        assert "Registered primitive transformer COMPLEX" in caplog.text


class TestErrors:
    """Test failure modes."""

    @pytest.mark.parametrize(
        "value",
        [
            object(),
            b"bytes",
            1 + 2j,
            len,
            int,
            math,
            re.compile(b"x"),
            ValueError("boom"),
            functools.partial(int, "7"),
            Record(__wrapped__=1),
        ],
    )
    def test_unserializable(self, value):
        with pytest.raises(SerializeError) as exc_info:
            serialize(value)
        assert exc_info.value.value is value

    def test_unserializable_nested(self):
        bad = object()
        with pytest.raises(SerializeError) as exc_info:
            serialize({"ok": [1, 2], "bad": [bad]})
        assert exc_info.value.value is bad

    def test_unknown_tag(self):
        with pytest.raises(DeserializeError) as exc_info:
            deserialize({"tag": "SYMBOL", "value": "x"})
        assert exc_info.value.tag == "SYMBOL"
        assert 'value of tag "SYMBOL" cannot be deserialized' in str(exc_info.value)

    def test_untracked_tag_is_unknown(self):
        with pytest.raises(DeserializeError):
            deserialize({"tag": "ARRAY", "value": []})

    def test_dangling_back_reference(self):
        with pytest.raises(DeserializeError, match="unassigned id 7") as exc_info:
            deserialize({"tag": "RECURSIVE(ARRAY)", "value": 7})
        assert exc_info.value.tag == "RECURSIVE(ARRAY)"

    def test_bool_is_not_a_back_reference(self):
        with pytest.raises(DeserializeError):
            deserialize({"tag": "RECURSIVE(ARRAY)", "value": True})

    def test_malformed_envelope(self):
        with pytest.raises(DeserializeError) as exc_info:
            deserialize({"value": 1})
        assert exc_info.value.tag is None

    def test_envelope_with_extra_keys(self):
        with pytest.raises(DeserializeError):
            deserialize({"tag": "PRIMITIVE", "value": 1, "extra": True})

    def test_malformed_recursive_reference(self):
        with pytest.raises(DeserializeError):
            deserialize({"tag": "RECURSIVE(SET)", "value": {"value": []}})

    def test_unknown_regexp_flag(self):
        with pytest.raises(DeserializeError, match="unknown flag 'g'"):
            deserialize({"tag": "REGEXP", "value": ["a", "g"]})

    def test_invalid_date(self):
        with pytest.raises(DeserializeError):
            deserialize({"tag": "DATE", "value": "yesterday"})

    def test_errors_are_value_errors(self):
        assert issubclass(SerializeError, ValueError)
        assert issubclass(DeserializeError, ValueError)
        assert issubclass(DuplicateTagError, ValueError)

    @pytest.mark.parametrize(
        "envelope, tag",
        [
            ({"tag": "BIGINT", "value": "abc"}, "BIGINT"),
            ({"tag": "BIGINT", "value": "1_000"}, "BIGINT"),
            ({"tag": "BIGINT", "value": 12}, "BIGINT"),
            ({"tag": "REGEXP", "value": ["(", ""]}, "REGEXP"),
            ({"tag": "REGEXP", "value": ["ab"]}, "REGEXP"),
            ({"tag": "REGEXP", "value": ["a", "au"]}, "REGEXP"),
            (
                {
                    "tag": "RECURSIVE(MAP)",
                    "value": {"id": 1, "value": [{"tag": "PRIMITIVE", "value": 5}]},
                },
                "MAP",
            ),
            (
                {
                    "tag": "RECURSIVE(MAP)",
                    "value": {
                        "id": 1,
                        "value": [
                            {
                                "tag": "TUPLE",
                                "value": [{"tag": "PRIMITIVE", "value": 1}],
                            }
                        ],
                    },
                },
                "MAP",
            ),
            ({"tag": "RECURSIVE(ARRAY)", "value": {"id": 1, "value": 5}}, "ARRAY"),
            (
                {
                    "tag": "RECURSIVE(SET)",
                    "value": {
                        "id": 1,
                        "value": [
                            {"tag": "RECURSIVE(ARRAY)", "value": {"id": 2, "value": []}}
                        ],
                    },
                },
                "SET",
            ),
            ({"tag": "TUPLE", "value": "xy"}, "TUPLE"),
            ({"tag": "FROZENSET", "value": None}, "FROZENSET"),
            ({"tag": "RECURSIVE(OBJECT)", "value": {"id": 1, "value": [1]}}, "OBJECT"),
        ],
    )
    def test_malformed_payload(self, envelope, tag):
        with pytest.raises(DeserializeError) as exc_info:
            deserialize(envelope)
        assert exc_info.value.tag == tag

    @pytest.mark.parametrize("key", ["__dict__", "__class__", "__init__"])
    def test_record_rejects_dunder_attributes(self, key):
        envelope = {
            "tag": "RECURSIVE(OBJECT)",
            "value": {"id": 1, "value": {key: {"tag": "PRIMITIVE", "value": 1}}},
        }
        with pytest.raises(DeserializeError, match="invalid attribute name"):
            deserialize(envelope)

    def test_unencodable_text(self):
        with pytest.raises(SerializeError) as exc_info:
            stringify(["\ud800"])
        assert exc_info.value.value == ["\ud800"]

    def test_envelope_model_accepted(self):
        assert deserialize(Envelope(tag="PRIMITIVE", value=5)) == 5


class TestMarkers:
    """Test UNDEFINED and Record."""

    def test_undefined_singleton(self):
        assert type(UNDEFINED)() is UNDEFINED
        assert not UNDEFINED
        assert repr(UNDEFINED) == "UNDEFINED"
        assert UNDEFINED is not None

    def test_record_identity_semantics(self):
        a = Record(x=1)
        b = Record(x=1)
        assert a != b
        assert len({a, b}) == 2

    def test_record_repr(self):
        record = Record(x=1)
        record.me = record
        assert repr(record) == "Record(x=1, me=...)"
