# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Status codes and the error type surfaced to callers.

Every transport binding reports failures as :class:`RpcError` carrying a
:class:`Code`.  Codes use the numbering shared by gRPC and Connect, so a
status injected by a test request travels unchanged across protocols.
"""

from __future__ import annotations

from enum import IntEnum

from crosstest.metadata import Metadata

__all__ = [
    "Code",
    "RpcError",
    "code_from_http_status",
]


class Code(IntEnum):
    """Canonical RPC status codes."""

    OK = 0
    CANCELED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16

    @property
    def wire_name(self) -> str:
        """Lowercase name used on the Connect wire (``"deadline_exceeded"``)."""
        return self.name.lower()

    @property
    def http_status(self) -> int:
        """HTTP status a Connect server answers with for this code."""
        return _HTTP_STATUS[self]

    @classmethod
    def coerce(cls, value: int) -> Code:
        """Return the member for *value*, or ``UNKNOWN`` when it is out of range."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

    @classmethod
    def from_wire_name(cls, name: str) -> Code:
        """Parse a Connect code name, falling back to ``UNKNOWN``."""
        # "cancelled" is accepted for peers that use the British spelling.
        normalized = name.strip().upper()
        if normalized == "CANCELLED":
            return cls.CANCELED
        return cls.__members__.get(normalized, cls.UNKNOWN)


_HTTP_STATUS: dict[Code, int] = {
    Code.OK: 200,
    Code.CANCELED: 499,
    Code.UNKNOWN: 500,
    Code.INVALID_ARGUMENT: 400,
    Code.DEADLINE_EXCEEDED: 504,
    Code.NOT_FOUND: 404,
    Code.ALREADY_EXISTS: 409,
    Code.PERMISSION_DENIED: 403,
    Code.RESOURCE_EXHAUSTED: 429,
    Code.FAILED_PRECONDITION: 400,
    Code.ABORTED: 409,
    Code.OUT_OF_RANGE: 400,
    Code.UNIMPLEMENTED: 501,
    Code.INTERNAL: 500,
    Code.UNAVAILABLE: 503,
    Code.DATA_LOSS: 500,
    Code.UNAUTHENTICATED: 401,
}


def code_from_http_status(status: int) -> Code:
    """Map an HTTP status without a Connect error body to a code."""
    match status:
        case 400:
            return Code.INTERNAL
        case 401:
            return Code.UNAUTHENTICATED
        case 403:
            return Code.PERMISSION_DENIED
        case 404 | 501:
            return Code.UNIMPLEMENTED
        case 408 | 504:
            return Code.DEADLINE_EXCEEDED
        case 429 | 502 | 503:
            return Code.UNAVAILABLE
        case _:
            return Code.UNKNOWN


class RpcError(Exception):
    """An RPC finished with a non-OK status.

    Raised locally when a request cannot be built, by handlers to fail a
    call, and on the client side when the peer reports a failure.

    Attributes:
        code: The status code.
        message: Human-readable detail, arbitrary UTF-8.
        headers: Response headers received before the failure, if any.
        trailers: Response trailers sent with the failure, if any.

    """

    def __init__(
        self,
        code: Code,
        message: str = "",
        *,
        headers: Metadata | None = None,
        trailers: Metadata | None = None,
    ) -> None:
        """Initialize with a status code, message and optional metadata."""
        self.code = Code.coerce(int(code))
        self.message = message
        self.headers = headers.copy() if headers is not None else Metadata()
        self.trailers = trailers.copy() if trailers is not None else Metadata()
        super().__init__(f"{self.code.name}: {message}" if message else self.code.name)
