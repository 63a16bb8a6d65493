"""
Wire models and transformer definitions for the tagson library.

This module defines the Pydantic models that make up the wire format and
the transformers that turn Python values into it and back:

- Envelope: ``{tag, value}`` node produced for every serialized value
- RecursiveRef: ``{id, value}`` wrapper for the first sighting of a tracked
  container; later sightings are the bare integer id
- Transformer: base class pairing a match predicate with serialize() and
  deserialize() callbacks, identified by a unique tag
- RecursiveTransformer: wraps a container transformer with identity
  tracking so cyclic and shared graphs survive the round trip

Built-in transformers:

- NaNType, InfinityType, NegativeInfinityType, NegativeZeroType: floats
  the JSON tree cannot carry
- BigIntType, PrimitiveType, UndefinedType: scalars
- RegExpType, DateType: compiled patterns and timestamps
- MapType, SetType, ArrayType: mutable containers (tracked)
- TupleType, FrozenSetType: immutable containers (untracked)
- ObjectType: catch-all for attribute-bearing objects (tracked)

Each transformer provides:
- check(): Predicate used to pick a transformer when serializing
- serialize(): Convert a Python value to its wire payload
- deserialize(): Rebuild the Python value from its wire payload
"""

from __future__ import annotations

import datetime
import math
import re
import reprlib
import types
from typing import Any, Callable, TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, ValidationError

from tagson.errors import DeserializeError, SerializeError

if TYPE_CHECKING:
    from tagson.serialize import SerializationContext
else:
    SerializationContext = Any


# =============================================================================
# Constants and Markers
# =============================================================================

# Largest integer a double represents exactly; anything beyond travels as BIGINT
MAX_SAFE_INTEGER = 2**53 - 1


class _Undefined:
    """Type of the UNDEFINED singleton."""

    __slots__ = ()
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


# Absent-value marker, distinct from None (which travels as null)
UNDEFINED = _Undefined()


class Record:
    """
    Plain attribute bag rebuilt from a serialized keyed record.

    Records compare and hash by identity, so they can be set members and
    dict keys even while they are still being populated.

    Example:
        >>> node = Record(name="root")
        >>> node.child = Record(parent=node)
    """

    def __init__(self, **fields: Any):
        self.__dict__.update(fields)

    @reprlib.recursive_repr()
    def __repr__(self) -> str:
        fields = ", ".join(f"{key}={value!r}" for key, value in vars(self).items())
        return f"{type(self).__name__}({fields})"


# =============================================================================
# Wire Models
# =============================================================================


class Envelope(BaseModel):
    """
    Wire-level node produced by serialization.

    Attributes:
        tag: Tag of the transformer that produced this node.
        value: Transformer-specific payload, possibly holding nested
            envelopes.

    Envelopes form a tree; cycles in the original value are expressed with
    RecursiveRef payloads and bare integer back-references instead.
    """

    model_config = ConfigDict(strict=True, extra="forbid")

    tag: str
    value: Any


class RecursiveRef(BaseModel):
    """
    Payload of a tracked container on its first sighting.

    Attributes:
        id: Traversal-unique id assigned to the container.
        value: The wrapped transformer's payload.
    """

    model_config = ConfigDict(strict=True, extra="forbid")

    id: int
    value: Any


# Signature of the callback installed on a context while a tracked
# container is being deserialized
SetRef = Callable[[Any], None]


# =============================================================================
# Base Class
# =============================================================================


class Transformer:
    """
    Abstract base class for all transformers.

    Each subclass must provide:
    - tag: A string unique across the whole registry
    - check(): Pure predicate, consulted only when serializing
    - serialize(): Convert a matching value to a JSON-compatible payload,
      recursing through ``context.serialize`` for nested values
    - deserialize(): Rebuild the value from its payload, recursing through
      ``context.deserialize``

    Example:
        >>> class ComplexType(Transformer):
        ...     tag = "COMPLEX"
        ...
        ...     def check(self, value):
        ...         return isinstance(value, complex)
        ...
        ...     def serialize(self, value, context):
        ...         return [value.real, value.imag]
        ...
        ...     def deserialize(self, value, context):
        ...         return complex(*value)
        ...
        >>> register_transformer("primitive", ComplexType())
    """

    tag: str

    def check(self, value: Any) -> bool:
        """Return True if this transformer handles the value."""
        raise NotImplementedError

    def serialize(self, value: Any, context: SerializationContext) -> Any:
        """Serialize a Python value to this transformer's payload."""
        raise NotImplementedError

    def deserialize(self, value: Any, context: SerializationContext) -> Any:
        """Deserialize this transformer's payload back to a Python value."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.tag}>"


# =============================================================================
# Recursion Tracking
# =============================================================================


def _is_back_reference(value: Any) -> bool:
    # bool is an int subclass but never a valid id
    return isinstance(value, int) and not isinstance(value, bool)


class RecursiveTransformer(Transformer):
    """
    Adds cycle detection and identity preservation to a container transformer.

    The wrapped transformer never sees the tracking. On serialization, the
    first sighting of a container is assigned the next id and wrapped in a
    RecursiveRef; any later sighting within the same traversal is emitted as
    the bare integer id, which is what stops a cycle from recursing forever.

    On deserialization, a bare integer resolves to the object already
    registered under that id. A RecursiveRef installs a one-shot
    ``set_ref`` callback on the context before calling the wrapped
    deserialize(); the wrapped transformer publishes its empty instance
    through ``context.publish()`` before populating it, so children that
    cycle back find the (still filling) container.
    """

    def __init__(self, transformer: Transformer):
        self.transformer = transformer
        self.tag = f"RECURSIVE({transformer.tag})"

    def check(self, value: Any) -> bool:
        return self.transformer.check(value)

    def serialize(self, value: Any, context: SerializationContext):
        tracked = context.recursive_tracker.get(id(value))
        if tracked is not None:
            return tracked

        # Record the id before recursing so descendants can refer back to it
        ref_id = context.track(value)
        return RecursiveRef(id=ref_id, value=self.transformer.serialize(value, context))

    def deserialize(self, value: Any, context: SerializationContext):
        regenerator = context.recursive_regenerator

        if _is_back_reference(value):
            if value not in regenerator:
                raise DeserializeError(
                    self.tag, f"back-reference to unassigned id {value}"
                )
            return regenerator[value]

        try:
            ref = RecursiveRef.model_validate(value)
        except ValidationError as e:
            raise DeserializeError(self.tag, "malformed recursive reference") from e

        def set_ref(instance: Any) -> None:
            regenerator[ref.id] = instance

        previous = context.set_ref
        context.set_ref = set_ref
        try:
            result = self.transformer.deserialize(ref.value, context)
        finally:
            context.set_ref = previous

        regenerator[ref.id] = result
        return result


def with_recursion_tracker(transformer: Transformer) -> RecursiveTransformer:
    """
    Wrap a container transformer with identity tracking.

    The returned transformer is tagged ``RECURSIVE(<tag>)`` and shares the
    wrapped transformer's check().

    Args:
        transformer: The container transformer to wrap. Its deserialize()
            must call ``context.publish(instance)`` with the empty container
            before deserializing any children.

    Returns:
        The tracking transformer, ready to register.
    """
    return RecursiveTransformer(transformer)


# =============================================================================
# Literal Types
# =============================================================================


class NaNType(Transformer):
    tag = "NAN"

    def check(self, value: Any) -> bool:
        return isinstance(value, float) and math.isnan(value)

    def serialize(self, value: float, context: SerializationContext):
        return None

    def deserialize(self, value: None, context: SerializationContext):
        return math.nan


class InfinityType(Transformer):
    tag = "INF"

    def check(self, value: Any) -> bool:
        return isinstance(value, float) and value == math.inf

    def serialize(self, value: float, context: SerializationContext):
        return None

    def deserialize(self, value: None, context: SerializationContext):
        return math.inf


class NegativeInfinityType(Transformer):
    tag = "-INF"

    def check(self, value: Any) -> bool:
        return isinstance(value, float) and value == -math.inf

    def serialize(self, value: float, context: SerializationContext):
        return None

    def deserialize(self, value: None, context: SerializationContext):
        return -math.inf


class NegativeZeroType(Transformer):
    """
    Serializer for negative zero.

    ``-0.0 == 0.0`` in Python, so the sign bit is what tells them apart.
    """

    tag = "-0"

    def check(self, value: Any) -> bool:
        return (
            isinstance(value, float)
            and value == 0.0
            and math.copysign(1.0, value) < 0
        )

    def serialize(self, value: float, context: SerializationContext):
        return 0

    def deserialize(self, value: int, context: SerializationContext):
        return -0.0


# =============================================================================
# Primitive Types
# =============================================================================

_DECIMAL_INT = re.compile(r"-?[0-9]+")

# Stays below the interpreter's int/str conversion limit (4300 digits)
_CHUNK_DIGITS = 4000
_CHUNK = 10**_CHUNK_DIGITS


def _int_to_decimal(value: int) -> str:
    """Base-10 text of an int of any size, converted chunk by chunk."""
    if value < 0:
        return "-" + _int_to_decimal(-value)
    chunks = []
    while value >= _CHUNK:
        value, low = divmod(value, _CHUNK)
        chunks.append(str(low).zfill(_CHUNK_DIGITS))
    chunks.append(str(value))
    return "".join(reversed(chunks))


def _decimal_to_int(text: str) -> int:
    """Inverse of _int_to_decimal."""
    if text.startswith("-"):
        return -_decimal_to_int(text[1:])
    head = len(text) % _CHUNK_DIGITS or _CHUNK_DIGITS
    value = int(text[:head])
    for start in range(head, len(text), _CHUNK_DIGITS):
        value = value * _CHUNK + int(text[start:start + _CHUNK_DIGITS])
    return value


class BigIntType(Transformer):
    """
    Serializer for integers too large for a double to carry exactly.

    The value travels as its base-10 string so JSON decoders that parse
    numbers as doubles do not round it.
    """

    tag = "BIGINT"

    def check(self, value: Any) -> bool:
        return (
            isinstance(value, int)
            and not isinstance(value, bool)
            and abs(value) > MAX_SAFE_INTEGER
        )

    def serialize(self, value: int, context: SerializationContext):
        return _int_to_decimal(value)

    def deserialize(self, value: str, context: SerializationContext):
        if not isinstance(value, str) or not _DECIMAL_INT.fullmatch(value):
            raise DeserializeError(self.tag, f"invalid integer {value!r}")
        return _decimal_to_int(value)


class PrimitiveType(Transformer):
    """
    Serializer for primitive types: int, float, bool, str, None.

    These types are directly JSON-serializable and don't require
    special handling.
    """

    tag = "PRIMITIVE"

    def check(self, value: Any) -> bool:
        if value is None or isinstance(value, (bool, int, str)):
            return True
        return isinstance(value, float) and math.isfinite(value)

    def serialize(self, value: Any, context: SerializationContext):
        return value

    def deserialize(self, value: Any, context: SerializationContext):
        return value


class UndefinedType(Transformer):
    tag = "UNDEFINED"

    def check(self, value: Any) -> bool:
        return value is UNDEFINED

    def serialize(self, value: Any, context: SerializationContext):
        return None

    def deserialize(self, value: None, context: SerializationContext):
        return UNDEFINED


# =============================================================================
# Object Types
# =============================================================================

def _expect_list(tag: str, value: Any) -> None:
    if not isinstance(value, list):
        raise DeserializeError(tag, f"expected a list payload, got {type(value).__name__}")


# Inline flag letters, as accepted in a pattern's (?aimsux) group
_REGEX_FLAGS: tuple[tuple[str, re.RegexFlag], ...] = (
    ("a", re.ASCII),
    ("i", re.IGNORECASE),
    ("m", re.MULTILINE),
    ("s", re.DOTALL),
    ("u", re.UNICODE),
    ("x", re.VERBOSE),
)


class RegExpType(Transformer):
    """
    Serializer for compiled regular expressions over str.

    Stored as a ``[pattern, flags]`` pair where flags is a string of inline
    flag letters, e.g. ``["^a+$", "iu"]``. Bytes patterns are not handled.
    """

    tag = "REGEXP"

    def check(self, value: Any) -> bool:
        return isinstance(value, re.Pattern) and isinstance(value.pattern, str)

    def serialize(self, value: re.Pattern, context: SerializationContext):
        flags = "".join(letter for letter, flag in _REGEX_FLAGS if value.flags & flag)
        return [value.pattern, flags]

    def deserialize(self, value: list, context: SerializationContext):
        if (
            not isinstance(value, list)
            or len(value) != 2
            or not all(isinstance(part, str) for part in value)
        ):
            raise DeserializeError(self.tag, "expected a [pattern, flags] pair")

        pattern, letters = value
        flags = 0
        lookup = dict(_REGEX_FLAGS)
        for letter in letters:
            if letter not in lookup:
                raise DeserializeError(self.tag, f"unknown flag '{letter}'")
            flags |= lookup[letter]

        try:
            return re.compile(pattern, flags)
        except (re.error, ValueError) as e:
            raise DeserializeError(self.tag, f"invalid pattern {pattern!r}") from e


class DateType(Transformer):
    """Serializer for timestamps, stored as an ISO-8601 string."""

    tag = "DATE"

    def check(self, value: Any) -> bool:
        return isinstance(value, datetime.datetime)

    def serialize(self, value: datetime.datetime, context: SerializationContext):
        return value.isoformat()

    def deserialize(self, value: str, context: SerializationContext):
        try:
            return datetime.datetime.fromisoformat(value)
        except (TypeError, ValueError) as e:
            raise DeserializeError(self.tag, f"invalid timestamp {value!r}") from e


class MapType(Transformer):
    """
    Serializer for dicts.

    Each entry is serialized as a two-element list ``[key, value]``, so keys
    of any supported type survive, not just strings.
    """

    tag = "MAP"

    def check(self, value: Any) -> bool:
        return isinstance(value, dict)

    def serialize(self, value: dict, context: SerializationContext):
        return [context.serialize([key, val]) for key, val in value.items()]

    def deserialize(self, value: list, context: SerializationContext):
        _expect_list(self.tag, value)

        # Publish the empty dict first for circular refs
        obj = {}
        context.publish(obj)

        for source in value:
            pair = context.deserialize(source)
            if not isinstance(pair, list) or len(pair) != 2:
                raise DeserializeError(self.tag, "entries must be [key, value] pairs")
            key, val = pair
            try:
                obj[key] = val
            except TypeError as e:
                raise DeserializeError(self.tag, "unhashable key") from e

        return obj


class SetType(Transformer):
    tag = "SET"

    def check(self, value: Any) -> bool:
        return isinstance(value, set)

    def serialize(self, value: set, context: SerializationContext):
        return [context.serialize(item) for item in value]

    def deserialize(self, value: list, context: SerializationContext):
        _expect_list(self.tag, value)

        obj = set()
        context.publish(obj)

        for item in value:
            member = context.deserialize(item)
            try:
                obj.add(member)
            except TypeError as e:
                raise DeserializeError(self.tag, "unhashable element") from e

        return obj


class ArrayType(Transformer):
    """Serializer for lists, element by element."""

    tag = "ARRAY"

    def check(self, value: Any) -> bool:
        return isinstance(value, list)

    def serialize(self, value: list, context: SerializationContext):
        return [context.serialize(item) for item in value]

    def deserialize(self, value: list, context: SerializationContext):
        _expect_list(self.tag, value)

        # Create empty list first and publish it to handle circular refs
        obj = []
        context.publish(obj)

        # Then populate it
        for item in value:
            obj.append(context.deserialize(item))

        return obj


class TupleType(Transformer):
    """
    Serializer for Python tuples.

    Tuples are immutable, so they're handled specially:
    - Elements are deserialized first
    - Then the tuple is created
    They are not identity tracked; a tuple shared in several places comes
    back as equal, separate tuples.
    """

    tag = "TUPLE"

    def check(self, value: Any) -> bool:
        return isinstance(value, tuple)

    def serialize(self, value: tuple, context: SerializationContext):
        return [context.serialize(item) for item in value]

    def deserialize(self, value: list, context: SerializationContext):
        _expect_list(self.tag, value)
        return tuple(context.deserialize(item) for item in value)


class FrozenSetType(Transformer):
    tag = "FROZENSET"

    def check(self, value: Any) -> bool:
        return isinstance(value, frozenset)

    def serialize(self, value: frozenset, context: SerializationContext):
        return [context.serialize(item) for item in value]

    def deserialize(self, value: list, context: SerializationContext):
        _expect_list(self.tag, value)
        members = [context.deserialize(item) for item in value]
        try:
            return frozenset(members)
        except TypeError as e:
            raise DeserializeError(self.tag, "unhashable element") from e


# =============================================================================
# Final Type
# =============================================================================


def _is_dunder(key: str) -> bool:
    return key.startswith("__") and key.endswith("__")


class ObjectType(Transformer):
    """
    Catch-all serializer for attribute-bearing objects.

    Any object with an instance ``__dict__`` is stored as a mapping of
    attribute name to serialized value and rebuilt as a Record. Rejected,
    rather than silently reduced to their ``__dict__``:
    - objects without a ``__dict__`` (``object()``, ``bytes``, ``Decimal``)
    - classes, modules and anything callable (functions, ``functools.partial``)
    - exceptions, whose ``args`` live outside ``__dict__``
    - objects carrying dunder attributes such as ``__wrapped__``

    Must be registered last: its check() is broad enough to shadow any
    more specific object transformer checked after it.
    """

    tag = "OBJECT"

    def check(self, value: Any) -> bool:
        if isinstance(value, (type, types.ModuleType, BaseException)) or callable(value):
            return False
        return hasattr(value, "__dict__")

    def serialize(self, value: Any, context: SerializationContext):
        state = vars(value)
        if any(_is_dunder(key) for key in state):
            raise SerializeError(value)
        return {key: context.serialize(val) for key, val in state.items()}

    def deserialize(self, value: dict, context: SerializationContext):
        if not isinstance(value, dict):
            raise DeserializeError(self.tag, f"expected a mapping payload, got {type(value).__name__}")
        for key in value:
            if not isinstance(key, str) or _is_dunder(key):
                raise DeserializeError(self.tag, f"invalid attribute name {key!r}")

        # Create blank record and publish before setting state (for circular refs)
        obj = Record()
        context.publish(obj)

        for key, val in value.items():
            setattr(obj, key, context.deserialize(val))

        return obj
