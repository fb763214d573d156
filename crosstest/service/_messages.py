# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Request and response messages of the Test Service."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated

import pyarrow as pa

from crosstest.payload import Payload, PayloadType
from crosstest.utils import ArrowSerializableDataclass, ArrowType

__all__ = [
    "EchoStatus",
    "Empty",
    "ResponseParameters",
    "SimpleRequest",
    "SimpleResponse",
    "StreamingInputCallRequest",
    "StreamingInputCallResponse",
    "StreamingOutputCallRequest",
    "StreamingOutputCallResponse",
]


@dataclass(frozen=True)
class Empty(ArrowSerializableDataclass):
    """Message with no fields."""


@dataclass(frozen=True)
class EchoStatus(ArrowSerializableDataclass):
    """Status the server must fail the call with when ``code`` is non-zero."""

    code: Annotated[int, ArrowType(pa.int32())] = 0
    message: str = ""


@dataclass(frozen=True)
class SimpleRequest(ArrowSerializableDataclass):
    """Unary request.

    Attributes:
        response_type: Payload type of the response body.
        response_size: Requested response body length.
        payload: Optional request body, ignored by the server.
        response_status: Optional status to echo back as the call outcome.

    """

    response_type: Annotated[PayloadType, ArrowType(pa.string())] = PayloadType.COMPRESSABLE
    response_size: Annotated[int, ArrowType(pa.int32())] = 0
    payload: Payload | None = None
    response_status: EchoStatus | None = None


@dataclass(frozen=True)
class SimpleResponse(ArrowSerializableDataclass):
    """Unary response."""

    payload: Payload | None = None


@dataclass(frozen=True)
class ResponseParameters(ArrowSerializableDataclass):
    """One response the server emits: body length, and delay before it."""

    size: Annotated[int, ArrowType(pa.int32())] = 0
    interval_us: Annotated[int, ArrowType(pa.int32())] = 0


@dataclass(frozen=True)
class StreamingOutputCallRequest(ArrowSerializableDataclass):
    """Request expanded into zero or more streamed responses."""

    response_type: Annotated[PayloadType, ArrowType(pa.string())] = PayloadType.COMPRESSABLE
    response_parameters: list[ResponseParameters] = field(default_factory=list)
    payload: Payload | None = None
    response_status: EchoStatus | None = None


@dataclass(frozen=True)
class StreamingOutputCallResponse(ArrowSerializableDataclass):
    """One streamed response."""

    payload: Payload | None = None


@dataclass(frozen=True)
class StreamingInputCallRequest(ArrowSerializableDataclass):
    """One message of a client stream."""

    payload: Payload | None = None


@dataclass(frozen=True)
class StreamingInputCallResponse(ArrowSerializableDataclass):
    """Sum of the body lengths of every message in a client stream."""

    aggregated_payload_size: Annotated[int, ArrowType(pa.int64())] = 0
