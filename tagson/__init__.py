"""
tagson - tagged JSON serialization for values JSON cannot carry.

This library serializes Python values to a tree of JSON-compatible tagged
envelopes, round-tripping values a plain JSON tree loses:

- Non-finite floats (nan, inf, -inf) and negative zero
- Integers beyond the exactly-representable double range
- An absent-value marker distinct from None (UNDEFINED)
- Compiled regular expressions and datetimes
- dicts, sets, lists, tuples, frozensets and attribute-bearing objects,
  including cyclic and shared structures, with object identity preserved

Every node on the wire is an envelope ``{"tag": ..., "value": ...}``. The
tag names the transformer that produced it. Containers that may take part
in cycles carry ``{"id": ..., "value": ...}`` the first time they are seen
and the bare integer id on every later sighting.

Basic Usage:
    >>> from tagson import stringify, parse, UNDEFINED
    >>>
    >>> text = stringify({"scores": [1.5, float("nan")], "missing": UNDEFINED})
    >>> result = parse(text)

Envelope Usage:
    >>> from tagson import serialize, deserialize
    >>> import json
    >>>
    >>> envelope = serialize([1, 2, 3])
    >>> json_str = envelope.model_dump_json()
    >>> result = deserialize(json.loads(json_str))

Cycles:
    >>> node = []
    >>> node.append(node)
    >>> result = parse(stringify(node))
    >>> assert result[0] is result

To add transformers for new types:
    >>> from tagson import Transformer, register_transformer
    >>>
    >>> class ComplexType(Transformer):
    ...     tag = "COMPLEX"
    ...     def check(self, value):
    ...         return isinstance(value, complex)
    ...     def serialize(self, value, context):
    ...         return [value.real, value.imag]
    ...     def deserialize(self, value, context):
    ...         return complex(*value)
    >>>
    >>> register_transformer("primitive", ComplexType())

Container transformers that can appear in cycles should be wrapped with
with_recursion_tracker() and call ``context.publish()`` on their empty
instance before deserializing children.
"""

import json
from typing import Any

from pydantic_core import PydanticSerializationError

from tagson.errors import DeserializeError, DuplicateTagError, SerializeError
from tagson.serialize import (
    CATEGORIES,
    Category,
    SerializationContext,
    TransformerRegistry,
    default_registry,
    deserialize,
    register_builtins,
    register_transformer,
    serialize,
)
from tagson.stypes import (
    MAX_SAFE_INTEGER,
    UNDEFINED,
    Envelope,
    RecursiveRef,
    Record,
    RecursiveTransformer,
    Transformer,
    with_recursion_tracker,
)


def stringify(value: Any, *, indent: int | None = None) -> str:
    """
    Serialize a value straight to JSON text.

    Args:
        value: The value to serialize.
        indent: Optional indentation passed to the JSON encoder.

    Returns:
        The JSON text of the root envelope.

    Raises:
        SerializeError: If the value, or anything inside it, matches no
            registered transformer, or if the result cannot be encoded as
            JSON text (e.g. a str holding a lone surrogate).

    Example:
        >>> stringify(float("inf"))
        '{"tag":"INF","value":null}'
    """
    envelope = serialize(value)
    try:
        return envelope.model_dump_json(indent=indent)
    except PydanticSerializationError as e:
        raise SerializeError(value) from e


def parse(text: str | bytes) -> Any:
    """
    Deserialize JSON text produced by stringify().

    Args:
        text: The JSON text.

    Returns:
        The reconstructed value.

    Raises:
        json.JSONDecodeError: If the text is not valid JSON.
        DeserializeError: If the decoded tree is not a valid envelope tree.
    """
    return deserialize(json.loads(text))


__all__ = [
    # Core API
    "serialize",
    "deserialize",
    "stringify",
    "parse",
    "Envelope",
    "RecursiveRef",
    # Registration
    "register_transformer",
    "register_builtins",
    "with_recursion_tracker",
    "default_registry",
    "TransformerRegistry",
    "CATEGORIES",
    "Category",
    # Types
    "SerializationContext",
    "Transformer",
    "RecursiveTransformer",
    "Record",
    "UNDEFINED",
    "MAX_SAFE_INTEGER",
    # Errors
    "DuplicateTagError",
    "SerializeError",
    "DeserializeError",
]
