# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Arrow IPC helpers and the dataclass serialization mixin.

Test Service messages are frozen dataclasses.  Mixing in
:class:`ArrowSerializableDataclass` derives an Arrow schema from their
annotations and encodes each message as a single-row record batch in Arrow
IPC stream format.  That encoding is the binary message format shared by
the ``local``, ``http`` and ``grpc`` bindings.

KEY FUNCTIONS
-------------
serialize_record_batch_bytes(batch) : Encode one batch as an IPC stream
deserialize_record_batch(data) : Decode the first batch of an IPC stream

KEY CLASSES
-----------
ArrowType : Annotation marker overriding the inferred Arrow type of a field
ArrowSerializableDataclass : Mixin adding ``serialize_to_bytes`` and
    ``deserialize_from_bytes`` to a dataclass
IPCError : Raised on malformed IPC data

"""

from __future__ import annotations

import os
import sys
from dataclasses import MISSING, dataclass
from dataclasses import fields as dataclass_fields
from enum import Enum
from io import BytesIO
from types import UnionType
from typing import (
    Annotated,
    Any,
    ClassVar,
    Self,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

import pyarrow as pa
import structlog
from pyarrow import ipc

__all__ = [
    "ArrowSerializableDataclass",
    "ArrowType",
    "IPCError",
    "deserialize_record_batch",
    "serialize_record_batch_bytes",
    "wire_debug_enabled",
    "wire_log",
]

# Wire debug logging - enable with CROSSTEST_WIRE_DEBUG=1
_WIRE_DEBUG = os.environ.get("CROSSTEST_WIRE_DEBUG", "").lower() in ("1", "true", "yes")
_wire_log: structlog.stdlib.BoundLogger | None = None


def wire_debug_enabled() -> bool:
    """Return True when ``CROSSTEST_WIRE_DEBUG`` tracing is on."""
    return _WIRE_DEBUG


def wire_log() -> structlog.stdlib.BoundLogger:
    """Get or create the wire debug logger, configured to write to stderr."""
    global _wire_log
    if _wire_log is None:
        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(0),
            logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        )
        _wire_log = structlog.get_logger().bind(component="wire")
    return _wire_log


def _schema_to_dict(schema: pa.Schema) -> dict[str, str]:
    return {field.name: str(field.type) for field in schema}


class IPCError(Exception):
    """Error during IPC message reading or writing."""


def serialize_record_batch_bytes(batch: pa.RecordBatch) -> bytes:
    """Serialize a RecordBatch as a complete Arrow IPC stream.

    The stream holds the schema, the batch and an end-of-stream marker.

    Args:
        batch: The RecordBatch to serialize.

    Returns:
        Complete Arrow IPC stream bytes.

    """
    buffer = BytesIO()
    with ipc.RecordBatchStreamWriter(buffer, batch.schema) as writer:
        writer.write_batch(batch)
    data = buffer.getvalue()
    if _WIRE_DEBUG:
        wire_log().debug("ipc_write", num_rows=batch.num_rows, schema=_schema_to_dict(batch.schema), nbytes=len(data))
    return data


def deserialize_record_batch(data: bytes) -> pa.RecordBatch:
    """Deserialize the first RecordBatch of an Arrow IPC stream.

    Raises:
        IPCError: If *data* is not an IPC stream or holds no batch.

    """
    try:
        with ipc.open_stream(pa.BufferReader(data)) as reader:
            try:
                batch = reader.read_next_batch()
            except StopIteration:
                # A schema with no fields round-trips as a stream without batches.
                if len(reader.schema) == 0:
                    return pa.RecordBatch.from_pylist([], schema=reader.schema)
                raise IPCError("No RecordBatch found in provided data") from None
    except pa.ArrowInvalid as e:
        raise IPCError(f"Malformed Arrow IPC data: {e}") from e
    if _WIRE_DEBUG:
        wire_log().debug("ipc_read", num_rows=batch.num_rows, schema=_schema_to_dict(batch.schema), nbytes=len(data))
    return batch


# =============================================================================
# ArrowSerializableDataclass - Auto-serialization mixin for dataclasses
# =============================================================================


@dataclass(frozen=True)
class ArrowType:
    """Annotation marker to specify explicit Arrow type for a field.

    Use with Annotated to override the default inferred Arrow type:

        @dataclass(frozen=True)
        class Sample(ArrowSerializableDataclass):
            kind: Annotated[Kind, ArrowType(pa.string())]

    """

    arrow_type: pa.DataType


def _is_optional_type(python_type: Any) -> tuple[Any, bool]:
    """Split ``X | None`` into ``(X, True)``; anything else is ``(type, False)``."""
    origin = get_origin(python_type)
    args = get_args(python_type)
    if origin is UnionType or origin is Union:
        non_none_types = [t for t in args if t is not type(None)]
        if len(non_none_types) == 1 and len(args) == 2:
            return non_none_types[0], True
    return python_type, False


def _unwrap_annotated(python_type: Any) -> tuple[Any, pa.DataType | None]:
    """Strip ``Annotated`` and return the base type plus any ``ArrowType`` override."""
    if get_origin(python_type) is not Annotated:
        return python_type, None
    args = get_args(python_type)
    for arg in args[1:]:
        if isinstance(arg, ArrowType):
            return args[0], arg.arrow_type
    return args[0], None


def _is_arrow_dataclass(python_type: Any) -> bool:
    return isinstance(python_type, type) and issubclass(python_type, ArrowSerializableDataclass)


def _infer_arrow_type(python_type: Any) -> pa.DataType:
    """Infer the Arrow type of a field annotation.

    Supports str, bytes, int, float, bool, ``list[T]``, Enum (as
    dictionary-encoded string), nested ArrowSerializableDataclass (as
    struct) and ``Annotated[T, ArrowType(...)]``.

    Raises:
        TypeError: If the type cannot be automatically inferred.

    """
    inner_type, _ = _is_optional_type(python_type)
    if inner_type is not python_type:
        return _infer_arrow_type(inner_type)

    base, override = _unwrap_annotated(python_type)
    if override is not None:
        return override
    if base is not python_type:
        return _infer_arrow_type(base)

    if isinstance(python_type, type) and issubclass(python_type, Enum):
        return pa.dictionary(pa.int8(), pa.string())

    if _is_arrow_dataclass(python_type):
        return pa.struct([pa.field(f.name, f.type, nullable=f.nullable) for f in python_type.ARROW_SCHEMA])

    if get_origin(python_type) is list:
        args = get_args(python_type)
        return pa.list_(_infer_arrow_type(args[0]) if args else pa.string())

    type_map: dict[type, pa.DataType] = {
        str: pa.string(),
        bytes: pa.binary(),
        int: pa.int64(),
        float: pa.float64(),
        bool: pa.bool_(),
    }
    if python_type in type_map:
        return type_map[python_type]

    raise TypeError(
        f"Cannot infer Arrow type for: {python_type}. "
        f"Use Annotated[T, ArrowType(...)] to specify the Arrow type explicitly."
    )


def _field_types(cls: type) -> dict[str, Any]:
    # include_extras keeps Annotated[T, ArrowType(...)] wrappers
    return get_type_hints(cls, include_extras=True)


class _ArrowSchemaDescriptor:
    """Descriptor that lazily generates ARROW_SCHEMA on first access.

    ``@dataclass`` runs after ``__init_subclass__``, so the fields are only
    known once the class body has been fully processed.
    """

    def __set_name__(self, owner: type, name: str) -> None:
        self._name = name

    def __get__(self, instance: object | None, owner: type[ArrowSerializableDataclass]) -> pa.Schema:
        cache_attr = f"_cached_{self._name}"
        cached: pa.Schema | None = owner.__dict__.get(cache_attr)
        if cached is None:
            cached = self._generate_schema(owner)
            setattr(owner, cache_attr, cached)
        return cached

    def _generate_schema(self, cls: type[ArrowSerializableDataclass]) -> pa.Schema:
        hints = _field_types(cls)
        arrow_fields: list[pa.Field[Any]] = []
        for field in dataclass_fields(cls):  # type: ignore[arg-type]
            field_type = hints.get(field.name, field.type)
            base, override = _unwrap_annotated(field_type)
            _, nullable = _is_optional_type(base)
            try:
                arrow_type = override if override is not None else _infer_arrow_type(base)
            except TypeError as e:
                raise TypeError(f"Cannot generate Arrow schema for {cls.__name__}.{field.name}: {e}") from e
            arrow_fields.append(pa.field(field.name, arrow_type, nullable=nullable))
        return pa.schema(arrow_fields)


class ArrowSerializableDataclass:
    """Mixin for dataclasses with automatic Arrow IPC serialization.

    The ARROW_SCHEMA is generated from field annotations on first use.
    Optional fields (annotated with ``| None``) are nullable, enums travel
    by member name, nested mixin dataclasses become structs.

    Attributes:
        ARROW_SCHEMA: Auto-generated Arrow schema from field annotations.

    """

    ARROW_SCHEMA: ClassVar[pa.Schema] = _ArrowSchemaDescriptor()  # type: ignore[assignment]

    def _to_row_dict(self) -> dict[str, Any]:
        return {
            field.name: _to_arrow_value(getattr(self, field.name))
            for field in dataclass_fields(self)  # type: ignore[arg-type]
        }

    def to_record_batch(self) -> pa.RecordBatch:
        """Return this instance as a single-row RecordBatch."""
        schema = self.ARROW_SCHEMA
        if len(schema) == 0:
            return pa.RecordBatch.from_pylist([], schema=schema)
        return pa.RecordBatch.from_pylist([self._to_row_dict()], schema=schema)

    def serialize_to_bytes(self) -> bytes:
        """Serialize this instance to Arrow IPC bytes."""
        return serialize_record_batch_bytes(self.to_record_batch())

    @classmethod
    def deserialize_from_batch(cls, batch: pa.RecordBatch) -> Self:
        """Deserialize an instance from a single-row RecordBatch.

        Fields absent from the batch take their dataclass default, so older
        peers that omit optional fields still decode.

        Raises:
            ValueError: If the batch has the wrong row count or is missing
                a required field.

        """
        fields = dataclass_fields(cls)  # type: ignore[arg-type]
        if not fields:
            return cls()
        if batch.num_rows != 1:
            raise ValueError(f"Expected single-row RecordBatch for {cls.__name__}, got {batch.num_rows} rows")
        row: dict[str, Any] = batch.to_pylist()[0]
        return cls(**_build_kwargs(cls, row))

    @classmethod
    def deserialize_from_bytes(cls, data: bytes) -> Self:
        """Deserialize an instance from Arrow IPC bytes.

        Raises:
            IPCError: If *data* is not a valid IPC stream.
            ValueError: If the batch does not describe this class.

        """
        return cls.deserialize_from_batch(deserialize_record_batch(data))


def _to_arrow_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, ArrowSerializableDataclass):
        return value._to_row_dict()
    if isinstance(value, (list, tuple)):
        return [_to_arrow_value(v) for v in value]
    return value


def _build_kwargs(cls: type, row: dict[str, Any]) -> dict[str, Any]:
    hints = _field_types(cls)
    kwargs: dict[str, Any] = {}
    for field in dataclass_fields(cls):
        if field.name not in row:
            if field.default is MISSING and field.default_factory is MISSING:
                raise ValueError(f"Missing field {field.name!r} in {cls.__name__} RecordBatch")
            continue
        field_type, _ = _unwrap_annotated(hints.get(field.name, field.type))
        kwargs[field.name] = _from_arrow_value(row[field.name], field_type)
    return kwargs


def _from_arrow_value(value: Any, field_type: Any) -> Any:
    if value is None:
        return None
    inner_type, _ = _is_optional_type(field_type)
    inner_type, _ = _unwrap_annotated(inner_type)

    if isinstance(inner_type, type) and issubclass(inner_type, Enum):
        try:
            return inner_type[value]
        except KeyError:
            raise ValueError(f"{value!r} is not a valid {inner_type.__name__} name") from None

    if _is_arrow_dataclass(inner_type) and isinstance(value, dict):
        return inner_type(**_build_kwargs(inner_type, value))

    if get_origin(inner_type) is list and isinstance(value, list):
        args = get_args(inner_type)
        if args:
            return [_from_arrow_value(v, args[0]) for v in value]

    return value
