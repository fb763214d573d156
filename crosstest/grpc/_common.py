# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Status and metadata conversions between crosstest and grpcio."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Final

import grpc

from crosstest.errors import Code, RpcError
from crosstest.metadata import Metadata, is_binary_key

_TO_GRPC: Final[dict[int, grpc.StatusCode]] = {status.value[0]: status for status in grpc.StatusCode}

# Keys grpcio and HTTP/2 manage themselves.
_RESERVED_PREFIXES: Final = (":", "grpc-")
_RESERVED_KEYS: Final = frozenset({"user-agent", "content-type", "te"})


def to_grpc_status(code: Code) -> grpc.StatusCode:
    """Return the grpcio status for *code*."""
    return _TO_GRPC.get(int(code), grpc.StatusCode.UNKNOWN)


def from_grpc_status(status: grpc.StatusCode | None) -> Code:
    """Return the code for a grpcio status; ``None`` maps to ``UNKNOWN``."""
    if status is None:
        return Code.UNKNOWN
    return Code.coerce(status.value[0])


def metadata_from_grpc(pairs: Iterable[Any] | None) -> Metadata:
    """Convert grpcio metadata into :class:`Metadata`, dropping reserved keys."""
    md = Metadata()
    for key, value in pairs or ():
        key = key.lower()
        if key in _RESERVED_KEYS or key.startswith(_RESERVED_PREFIXES):
            continue
        if is_binary_key(key) and isinstance(value, str):
            value = value.encode("latin-1")
        elif not is_binary_key(key) and isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        md.add(key, value)
    return md


def metadata_to_grpc(md: Metadata) -> tuple[tuple[str, str | bytes], ...]:
    """Convert :class:`Metadata` into grpcio's tuple-of-pairs form."""
    return tuple(md.items())


def error_from_grpc(exc: grpc.RpcError) -> RpcError:
    """Convert a grpcio client error (which is also a ``grpc.Call``) into an RpcError."""
    code = from_grpc_status(exc.code()) if hasattr(exc, "code") else Code.UNKNOWN
    details = exc.details() if hasattr(exc, "details") else None
    headers = metadata_from_grpc(exc.initial_metadata()) if hasattr(exc, "initial_metadata") else None
    trailers = metadata_from_grpc(exc.trailing_metadata()) if hasattr(exc, "trailing_metadata") else None
    return RpcError(code, details or "", headers=headers, trailers=trailers)
