# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Server-side dispatch shared by every binding.

Bindings decode requests, then hand an iterator of request messages to
:func:`invoke`, which adapts the four method shapes to a single
"iterator in, iterator out" form.  :class:`ServerCall` turns the outcome
into a status and writes the error and access logs.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from typing import Any, Literal

from crosstest.errors import Code, RpcError
from crosstest.rpc._context import CallContext
from crosstest.service._protocol import MethodShape, MethodSpec

__all__ = [
    "ServerCall",
    "invoke",
]

_logger = logging.getLogger("crosstest.rpc")
_access_logger = logging.getLogger("crosstest.access")


def _single(requests: Iterator[Any], spec: MethodSpec) -> Any:
    """Return the only message of a unary request stream."""
    request = next(requests, None)
    if request is None:
        raise RpcError(Code.INVALID_ARGUMENT, f"{spec.path} expects exactly one request message, got none")
    if next(requests, None) is not None:
        raise RpcError(Code.INVALID_ARGUMENT, f"{spec.path} expects exactly one request message, got more")
    return request


def invoke(handler: object, spec: MethodSpec, ctx: CallContext, requests: Iterator[Any]) -> Iterator[Any]:
    """Run *spec* on *handler* and yield its responses.

    Args:
        handler: Object implementing the Test Service methods.
        spec: Method being called.
        ctx: Call context of this call.
        requests: Decoded request messages; exactly one for unary and
            server-stream methods.

    Raises:
        RpcError: Whatever the handler raises, or ``UNIMPLEMENTED`` when
            it lacks the method.

    """
    method = getattr(handler, spec.attr, None)
    if method is None:
        raise RpcError(Code.UNIMPLEMENTED, f"{spec.path} is not implemented")
    match spec.shape:
        case MethodShape.UNARY:
            yield method(_single(requests, spec), ctx)
        case MethodShape.SERVER_STREAM:
            yield from method(_single(requests, spec), ctx)
        case MethodShape.CLIENT_STREAM:
            yield method(requests, ctx)
        case MethodShape.BIDI_STREAM:
            yield from method(requests, ctx)


class ServerCall:
    """Tracks one served call from start to final status."""

    __slots__ = ("_start", "ctx")

    def __init__(self, ctx: CallContext) -> None:
        """Start timing *ctx*'s call."""
        self.ctx = ctx
        self._start = time.monotonic()

    def finish(self, exc: BaseException | None) -> RpcError | None:
        """Record the outcome of the call.

        Exceptions other than :class:`RpcError` are handler bugs: they are
        logged with their traceback and reported to the client as
        ``UNKNOWN``.

        Args:
            exc: The exception that ended the call, or ``None`` on success.

        Returns:
            The status error to send to the client, or ``None``.

        """
        error: RpcError | None
        if exc is None:
            error = None
        elif isinstance(exc, RpcError):
            error = exc
        else:
            _log_method_error(self.ctx, exc)
            error = RpcError(Code.UNKNOWN, f"{type(exc).__name__}: {exc}")
        _emit_access_log(
            self.ctx,
            duration_ms=(time.monotonic() - self._start) * 1000,
            status="ok" if error is None else "error",
            code=Code.OK if error is None else error.code,
        )
        return error


def _log_method_error(ctx: CallContext, exc: BaseException) -> None:
    _logger.error(
        "Error in %s: %s",
        ctx.method.path,
        exc,
        exc_info=exc,
        extra={"method": ctx.method.name, "protocol": ctx.protocol, "error_type": type(exc).__name__},
    )


def _emit_access_log(ctx: CallContext, *, duration_ms: float, status: Literal["ok", "error"], code: Code) -> None:
    """Emit a structured access log record for a completed call."""
    if not _access_logger.isEnabledFor(logging.INFO):
        return
    extra: dict[str, object] = {
        "protocol": ctx.protocol,
        "service": ctx.method.service,
        "method": ctx.method.name,
        "method_type": ctx.method.method_type,
        "peer": ctx.peer,
        "duration_ms": round(duration_ms, 2),
        "status": status,
        "code": code.wire_name,
    }
    _access_logger.info("%s %s %s", ctx.method.path, status, code.wire_name, extra=extra)
