"""
Exceptions raised by the tagson library.

All three are local, synchronous failures. They subclass ValueError so
callers that already guard serialization with ``except ValueError`` keep
working.
"""

from __future__ import annotations

from typing import Any


class DuplicateTagError(ValueError):
    """Raised when a transformer is registered under a tag already in use."""

    def __init__(self, tag: str):
        super().__init__(f"Conflicting tag on '{tag}'")
        self.tag = tag


class SerializeError(ValueError):
    """
    Raised when no registered transformer accepts a value.

    Attributes:
        value: The offending value, kept for diagnostics.
    """

    def __init__(self, value: Any):
        super().__init__(
            f"Failed to serialize value of type {type(value).__qualname__}"
        )
        self.value = value


class DeserializeError(ValueError):
    """
    Raised when an envelope cannot be turned back into a value.

    This covers unknown tags, malformed envelopes and payloads, and
    back-references to ids never assigned in the current traversal.

    Attributes:
        tag: The envelope tag involved, or None if the envelope itself was
            malformed.
        reason: Optional detail on why deserialization failed.
    """

    def __init__(self, tag: str | None, reason: str | None = None):
        message = f'value of tag "{tag}" cannot be deserialized'
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.tag = tag
        self.reason = reason
