"""
Serialization context and dispatch logic for the tagson library.

This module contains:
- TransformerRegistry: ordered, category-partitioned store of transformers
  with a global tag namespace
- SerializationContext: per-traversal state (identity tracking on the way
  out, object regeneration on the way in) and the dispatch itself
- serialize() / deserialize(): entry points that create a fresh context
  when the caller does not supply one

Dispatch order:
    Transformers are tried category by category in the order
    ``literal, primitive, object, final`` and, within a category, in
    registration order. The first match wins. This lets NaN and -0.0 be
    caught before ordinary floats, and lets the specific container types be
    caught before the catch-all ``final`` transformer.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, Literal

from pydantic import ValidationError

from tagson.errors import DeserializeError, DuplicateTagError, SerializeError
from tagson.stypes import (
    ArrayType,
    BigIntType,
    DateType,
    Envelope,
    FrozenSetType,
    InfinityType,
    MapType,
    NaNType,
    NegativeInfinityType,
    NegativeZeroType,
    ObjectType,
    PrimitiveType,
    RegExpType,
    SetRef,
    SetType,
    Transformer,
    TupleType,
    UndefinedType,
    with_recursion_tracker,
)

logger = logging.getLogger(__name__)


Category = Literal["literal", "primitive", "object", "final"]

# Order in which categories are consulted during dispatch
CATEGORIES: tuple[Category, ...] = ("literal", "primitive", "object", "final")


# =============================================================================
# Transformer Registry
# =============================================================================


class TransformerRegistry:
    """
    Ordered store of transformers, partitioned by category.

    Categories:
        literal: Values recognized by exact value (NaN, infinities, -0.0)
            that must be caught before generic primitive handling.
        primitive: Scalar, non-container values.
        object: Containers and structured types with specific checks.
        final: Catch-all checked last; meant for a single broad transformer
            that would otherwise shadow every object transformer.

    Tags are unique across all categories.

    Example:
        >>> registry = TransformerRegistry()
        >>> registry.register("primitive", PrimitiveType())
        >>> registry.find_by_value(1)
        <PrimitiveType PRIMITIVE>
    """

    def __init__(self):
        self.transformers: dict[Category, list[Transformer]] = {
            category: [] for category in CATEGORIES
        }
        self.tags: set[str] = set()

    def register(self, category: Category, transformer: Transformer) -> None:
        """
        Append a transformer to a category.

        Args:
            category: One of ``literal``, ``primitive``, ``object``, ``final``.
            transformer: The transformer to add.

        Raises:
            ValueError: If the category is unknown.
            DuplicateTagError: If the tag is already registered in any
                category.
        """
        if category not in self.transformers:
            raise ValueError(
                f"Unknown transformer category '{category}'. "
                f"Available categories: {list(CATEGORIES)}"
            )
        if transformer.tag in self.tags:
            raise DuplicateTagError(transformer.tag)

        self.transformers[category].append(transformer)
        self.tags.add(transformer.tag)
        logger.debug("Registered %s transformer %s", category, transformer.tag)

    def __iter__(self) -> Iterator[Transformer]:
        """Yield transformers in dispatch order."""
        for category in CATEGORIES:
            yield from self.transformers[category]

    def __contains__(self, tag: object) -> bool:
        return tag in self.tags

    def find_by_value(self, value: Any) -> Transformer | None:
        """Return the first transformer whose check() accepts the value."""
        for transformer in self:
            if transformer.check(value):
                return transformer
        return None

    def find_by_tag(self, tag: str) -> Transformer | None:
        """Return the transformer registered under the tag."""
        for transformer in self:
            if transformer.tag == tag:
                return transformer
        return None


def register_builtins(registry: TransformerRegistry) -> None:
    """
    Register the built-in transformers.

    The order below is part of the dispatch contract, not incidental.
    """
    # Literal transformers
    registry.register("literal", NaNType())
    registry.register("literal", InfinityType())
    registry.register("literal", NegativeInfinityType())
    registry.register("literal", NegativeZeroType())

    # Primitive transformers
    registry.register("primitive", BigIntType())
    registry.register("primitive", PrimitiveType())
    registry.register("primitive", UndefinedType())

    # Object transformers
    registry.register("object", RegExpType())
    registry.register("object", DateType())
    registry.register("object", with_recursion_tracker(MapType()))
    registry.register("object", with_recursion_tracker(SetType()))
    registry.register("object", with_recursion_tracker(ArrayType()))
    registry.register("object", TupleType())
    registry.register("object", FrozenSetType())

    # Final transformer
    registry.register("final", with_recursion_tracker(ObjectType()))


# Process-wide registry used when a context is not given one
default_registry = TransformerRegistry()
register_builtins(default_registry)


def register_transformer(category: Category, transformer: Transformer) -> None:
    """
    Register a transformer in the default registry.

    This is the extension point for host code adding its own tagged types.
    Container transformers that may take part in cycles should be wrapped
    with ``with_recursion_tracker`` first.

    Args:
        category: Dispatch category for the transformer.
        transformer: The transformer instance.

    Raises:
        DuplicateTagError: If the tag collides with any registered tag.

    Example:
        >>> class PointType(Transformer):
        ...     tag = "POINT"
        ...
        ...     def check(self, value):
        ...         return isinstance(value, Point)
        ...
        ...     def serialize(self, value, context):
        ...         return [value.x, value.y]
        ...
        ...     def deserialize(self, value, context):
        ...         return Point(*value)
        ...
        >>> register_transformer("object", PointType())
    """
    default_registry.register(category, transformer)


# =============================================================================
# Serialization Context
# =============================================================================


class SerializationContext:
    """
    Manages one serialization or deserialization traversal.

    The context is threaded by reference through every recursive call, so
    identity tracking spans the whole value graph:

    Attributes:
        registry: The registry dispatched against.
        recursive_tracker: Maps ``id()`` of each tracked container seen while
            serializing to the ref id assigned to it.
        recursive_count: The last ref id assigned.
        recursive_regenerator: Maps ref ids to the containers rebuilt (or
            still being rebuilt) while deserializing.
        set_ref: One-shot callback present only while a tracked container's
            own deserialize() runs; see publish().

    A context belongs to a single traversal. Reuse one across calls only to
    put several values into the same shared-reference space.

    Example:
        >>> context = SerializationContext()
        >>> shared = [1, 2]
        >>> first = context.serialize(shared)
        >>> second = context.serialize(shared)
        >>> second.value
        1
    """

    def __init__(self, registry: TransformerRegistry | None = None):
        """
        Initialize the context.

        Args:
            registry: Optional registry to dispatch against. Defaults to the
                process-wide registry holding the built-in transformers.
        """
        self.registry = registry if registry is not None else default_registry
        self.recursive_tracker: dict[int, int] = {}
        self.recursive_count = 0
        self.recursive_regenerator: dict[int, Any] = {}
        self.set_ref: SetRef | None = None
        # Keep references to all tracked objects to prevent id() reuse.
        # Transient values (such as the [key, value] pairs built for dicts)
        # could otherwise be freed and have their address handed to a new
        # object, which would then be mistaken for a back-reference.
        self._refs: list = []

    def track(self, value: Any) -> int:
        """
        Assign the next ref id to a value and remember it.

        Returns:
            The newly assigned ref id.
        """
        self.recursive_count += 1
        self.recursive_tracker[id(value)] = self.recursive_count
        self._refs.append(value)
        return self.recursive_count

    def publish(self, instance: Any) -> None:
        """
        Register a container under its ref id before it is populated.

        Container transformers call this with their empty instance before
        deserializing any children. Does nothing outside a tracked
        container's deserialize(), and only the first call per container
        takes effect, so nested children never overwrite their parent's slot.
        """
        set_ref, self.set_ref = self.set_ref, None
        if set_ref is not None:
            set_ref(instance)

    def serialize(self, value: Any) -> Envelope:
        """
        Serialize a value into an envelope.

        Args:
            value: The Python value to serialize.

        Returns:
            The envelope tagged with the first matching transformer.

        Raises:
            SerializeError: If no registered transformer accepts the value.
        """
        transformer = self.registry.find_by_value(value)
        if transformer is None:
            logger.debug("No transformer for value of type %s", type(value).__qualname__)
            raise SerializeError(value)

        return Envelope(tag=transformer.tag, value=transformer.serialize(value, self))

    def deserialize(self, envelope: Envelope | dict) -> Any:
        """
        Deserialize an envelope back into a value.

        Args:
            envelope: An Envelope, or a plain dict as produced by
                ``json.loads()`` on serialized output.

        Returns:
            The reconstructed Python value.

        Raises:
            DeserializeError: If the envelope is malformed or its tag is not
                registered.
        """
        try:
            envelope = Envelope.model_validate(envelope)
        except ValidationError as e:
            raise DeserializeError(None, "malformed envelope") from e

        transformer = self.registry.find_by_tag(envelope.tag)
        if transformer is None:
            logger.debug("No transformer for tag %r", envelope.tag)
            raise DeserializeError(envelope.tag)

        return transformer.deserialize(envelope.value, self)


# =============================================================================
# Entry Points
# =============================================================================


def serialize(value: Any, context: SerializationContext | None = None) -> Envelope:
    """
    Serialize a value into an envelope.

    Args:
        value: The value to serialize.
        context: Optional context. A fresh one is created when omitted;
            pass the same context to several calls to share ref ids
            between them.

    Returns:
        The root envelope. Use ``model_dump()`` for a plain dict or
        ``model_dump_json()`` for JSON text.

    Raises:
        SerializeError: If the value, or anything inside it, matches no
            registered transformer.
    """
    if context is None:
        context = SerializationContext()
    return context.serialize(value)


def deserialize(envelope: Envelope | dict, context: SerializationContext | None = None) -> Any:
    """
    Deserialize an envelope back into a value.

    Args:
        envelope: An Envelope or its plain-dict form.
        context: Optional context. A fresh one is created when omitted.

    Returns:
        The reconstructed value.

    Raises:
        DeserializeError: On unknown tags, malformed envelopes or payloads,
            and back-references to unassigned ids.
    """
    if context is None:
        context = SerializationContext()
    return context.deserialize(envelope)
