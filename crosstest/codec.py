# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Message codecs shared by the transport bindings.

Two encodings are provided:

``arrow``
    Binary.  Each message is a single-row Arrow IPC stream produced by
    :class:`~crosstest.utils.ArrowSerializableDataclass`.
``json``
    Text.  Field names are camelCase, ``bytes`` are standard base64, enums
    travel by member name and unset optional fields are omitted.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import fields as dataclass_fields
from dataclasses import is_dataclass
from enum import Enum
from typing import Any, Protocol, TypeVar, get_args, get_origin, get_type_hints

from crosstest.errors import Code, RpcError
from crosstest.utils import IPCError, _is_optional_type, _unwrap_annotated

__all__ = [
    "ArrowCodec",
    "Codec",
    "CodecError",
    "JsonCodec",
    "decode_request",
    "decode_response",
    "get_codec",
]

MessageT = TypeVar("MessageT")


class CodecError(ValueError):
    """Raised when bytes cannot be decoded into the expected message."""


class Codec(Protocol):
    """Encodes and decodes Test Service messages."""

    name: str

    def encode(self, message: Any) -> bytes:
        """Encode one message."""
        ...

    def decode(self, data: bytes, message_type: type[MessageT]) -> MessageT:
        """Decode one message of *message_type*.

        Raises:
            CodecError: If *data* does not hold a valid message.

        """
        ...


class ArrowCodec:
    """Arrow IPC codec."""

    name = "arrow"

    def encode(self, message: Any) -> bytes:
        """Encode *message* as a single-row IPC stream."""
        data: bytes = message.serialize_to_bytes()
        return data

    def decode(self, data: bytes, message_type: type[MessageT]) -> MessageT:
        """Decode an IPC stream into *message_type*."""
        try:
            return message_type.deserialize_from_bytes(data)  # type: ignore[attr-defined,no-any-return]
        except (IPCError, ValueError, TypeError, KeyError) as e:
            raise CodecError(f"Cannot decode {message_type.__name__}: {e}") from e

    def __repr__(self) -> str:
        return "ArrowCodec()"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _to_json_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    if is_dataclass(value) and not isinstance(value, type):
        return _to_json_object(value)
    if isinstance(value, (list, tuple)):
        return [_to_json_value(v) for v in value]
    return value


def _to_json_object(message: Any) -> dict[str, Any]:
    obj: dict[str, Any] = {}
    for f in dataclass_fields(message):
        value = getattr(message, f.name)
        if value is None:
            continue
        obj[_camel(f.name)] = _to_json_value(value)
    return obj


def _from_json_value(value: Any, field_type: Any) -> Any:
    if value is None:
        return None
    inner, _ = _is_optional_type(field_type)
    inner, _ = _unwrap_annotated(inner)
    if isinstance(inner, type) and issubclass(inner, Enum):
        if isinstance(value, int) and not isinstance(value, bool):
            members = list(inner)
            if not 0 <= value < len(members):
                raise ValueError(f"{value} is not a valid {inner.__name__} number")
            return members[value]
        if not isinstance(value, str):
            raise TypeError(f"expected {inner.__name__} name or number, got {type(value).__name__}")
        return inner[value]
    if inner is bytes:
        if not isinstance(value, str):
            raise TypeError(f"expected base64 string, got {type(value).__name__}")
        text = value + "=" * (-len(value) % 4)
        if "-" in text or "_" in text:
            return base64.urlsafe_b64decode(text)
        return base64.b64decode(text, validate=True)
    if isinstance(inner, type) and is_dataclass(inner):
        if not isinstance(value, dict):
            raise TypeError(f"expected object for {inner.__name__}, got {type(value).__name__}")
        return _from_json_object(value, inner)
    if get_origin(inner) is list:
        if not isinstance(value, list):
            raise TypeError(f"expected array, got {type(value).__name__}")
        (element_type,) = get_args(inner)
        return [_from_json_value(v, element_type) for v in value]
    if inner is int:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        # Large integers may arrive quoted.
        if isinstance(value, str) and value.lstrip("-").isdigit():
            return int(value)
        raise TypeError(f"expected integer, got {value!r}")
    if inner is str and not isinstance(value, str):
        raise TypeError(f"expected string, got {type(value).__name__}")
    return value


def _from_json_object(obj: dict[str, Any], message_type: type[MessageT]) -> MessageT:
    hints = get_type_hints(message_type, include_extras=True)
    kwargs: dict[str, Any] = {}
    for f in dataclass_fields(message_type):  # type: ignore[arg-type]
        for key in (_camel(f.name), f.name):
            if key in obj:
                kwargs[f.name] = _from_json_value(obj[key], hints.get(f.name, f.type))
                break
    return message_type(**kwargs)


class JsonCodec:
    """JSON codec."""

    name = "json"

    def encode(self, message: Any) -> bytes:
        """Encode *message* as a compact UTF-8 JSON object."""
        return json.dumps(_to_json_object(message), separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    def decode(self, data: bytes, message_type: type[MessageT]) -> MessageT:
        """Decode a JSON object into *message_type*; unknown keys are ignored."""
        try:
            obj = json.loads(data) if data else {}
            if not isinstance(obj, dict):
                raise TypeError(f"expected a JSON object, got {type(obj).__name__}")
            return _from_json_object(obj, message_type)
        except (ValueError, TypeError, KeyError, IndexError, binascii.Error) as e:
            raise CodecError(f"Cannot decode {message_type.__name__}: {e}") from e

    def __repr__(self) -> str:
        return "JsonCodec()"


_CODECS: dict[str, type[ArrowCodec] | type[JsonCodec]] = {
    ArrowCodec.name: ArrowCodec,
    JsonCodec.name: JsonCodec,
}


def get_codec(name: str) -> Codec:
    """Return a codec instance by name (``"arrow"`` or ``"json"``).

    Raises:
        ValueError: If *name* is not a known codec.

    """
    try:
        return _CODECS[name.lower()]()
    except KeyError:
        raise ValueError(f"Unknown codec {name!r}; expected one of {sorted(_CODECS)}") from None


def decode_request(codec: Codec, data: bytes, message_type: type[MessageT]) -> MessageT:
    """Decode an inbound request; malformed data is the client's fault.

    Raises:
        RpcError: ``INVALID_ARGUMENT`` when *data* cannot be decoded.

    """
    try:
        return codec.decode(data, message_type)
    except CodecError as e:
        raise RpcError(Code.INVALID_ARGUMENT, str(e)) from e


def decode_response(codec: Codec, data: bytes, message_type: type[MessageT]) -> MessageT:
    """Decode a response; malformed data means the server misbehaved.

    Raises:
        RpcError: ``INTERNAL`` when *data* cannot be decoded.

    """
    try:
        return codec.decode(data, message_type)
    except CodecError as e:
        raise RpcError(Code.INTERNAL, str(e)) from e
