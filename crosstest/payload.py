# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Payload model: sized opaque byte bodies carried by test messages."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Annotated

import pyarrow as pa

from crosstest.errors import Code, RpcError
from crosstest.utils import ArrowSerializableDataclass, ArrowType

__all__ = [
    "Payload",
    "PayloadType",
    "make_payload",
]


class PayloadType(Enum):
    """Kind of body a payload carries.

    Only ``COMPRESSABLE`` is supported; the other members exist so peers that
    send them decode cleanly and receive ``UNIMPLEMENTED``.
    """

    COMPRESSABLE = "COMPRESSABLE"
    UNCOMPRESSABLE = "UNCOMPRESSABLE"
    RANDOM = "RANDOM"


@dataclass(frozen=True)
class Payload(ArrowSerializableDataclass):
    """A typed byte body.

    Attributes:
        type: Body kind.
        body: The bytes; its length is the payload size.

    """

    type: Annotated[PayloadType, ArrowType(pa.string())] = PayloadType.COMPRESSABLE
    body: bytes = b""


def make_payload(payload_type: PayloadType, size: int) -> Payload:
    """Build a payload whose body is exactly *size* zero bytes.

    Args:
        payload_type: Requested body kind.
        size: Body length in bytes.

    Raises:
        RpcError: ``INVALID_ARGUMENT`` when *size* is negative,
            ``UNIMPLEMENTED`` for any type other than ``COMPRESSABLE``.

    """
    if size < 0:
        raise RpcError(Code.INVALID_ARGUMENT, f"requested a response with invalid length {size}")
    if payload_type is not PayloadType.COMPRESSABLE:
        raise RpcError(Code.UNIMPLEMENTED, f"payload type {payload_type.name} is not supported")
    return Payload(type=payload_type, body=bytes(size))
