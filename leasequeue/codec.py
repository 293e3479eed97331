"""
Payload codec.

The store treats payloads as opaque bytes. Typed payloads are encoded to JSON
with pydantic-core at enqueue time and validated back into the handler's
payload type at consumption time.
"""

from functools import lru_cache
from typing import Any, TypeVar

from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError, to_json

from leasequeue.errors import EncodingError

T = TypeVar("T")


@lru_cache(maxsize=256)
def _adapter(payload_type: Any) -> TypeAdapter:
    return TypeAdapter(payload_type)


def encode_payload(payload: Any) -> bytes:
    """
    Encode a payload for storage.

    ``bytes`` pass through untouched; anything else is serialized to JSON
    (pydantic models, dataclasses, dicts, lists and scalars are supported).

    Raises:
        EncodingError: If the payload cannot be serialized.
    """
    if isinstance(payload, bytes):
        return payload
    try:
        return to_json(payload)
    except PydanticSerializationError as e:
        raise EncodingError(f"Failed to encode payload: {e}") from e


def decode_payload(data: bytes, payload_type: type[T]) -> T:
    """
    Decode stored bytes into ``payload_type``.

    Raises:
        EncodingError: If the bytes are not valid for the type.
    """
    if payload_type is bytes:
        return data  # type: ignore[return-value]
    try:
        return _adapter(payload_type).validate_json(data)
    except ValidationError as e:
        raise EncodingError(f"Failed to decode payload as {payload_type!r}: {e}", data) from e
