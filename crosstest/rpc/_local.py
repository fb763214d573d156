# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""In-process binding: each call is served on its own thread.

Messages still pass through a codec in both directions, so client and
handler never share message objects and encoding bugs surface here too.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterator
from typing import Any, Final

from crosstest.codec import ArrowCodec, Codec, decode_request, decode_response
from crosstest.errors import Code, RpcError
from crosstest.metadata import Metadata
from crosstest.rpc._calls import UnaryResult
from crosstest.rpc._context import CallContext
from crosstest.rpc._dispatch import ServerCall, invoke
from crosstest.service._protocol import MethodSpec, find_method

__all__ = ["LocalChannel"]

_logger = logging.getLogger("crosstest.local")

_END: Final = object()
_CANCEL: Final = object()


class _LocalStream:
    """Both ends of one in-process call, joined by two queues."""

    def __init__(
        self,
        handler: object,
        spec: MethodSpec,
        codec: Codec,
        headers: Metadata,
        timeout: float | None,
    ) -> None:
        self._spec = spec
        self._codec = codec
        self._ctx = CallContext(spec, headers, timeout=timeout, protocol="local", peer="local")
        self._inbound: queue.SimpleQueue[Any] = queue.SimpleQueue()
        self._outbound: queue.SimpleQueue[tuple[Any, ...]] = queue.SimpleQueue()
        self._headers_ready = threading.Event()
        self._headers = Metadata()
        self._trailers = Metadata()
        self._ended = False
        self._thread = threading.Thread(
            target=self._serve, args=(handler,), daemon=True, name=f"crosstest.local.{spec.name}"
        )
        self._thread.start()

    # ------------------------------------------------------------------
    # Server side (runs on the call thread)
    # ------------------------------------------------------------------

    def _requests(self) -> Iterator[Any]:
        ctx = self._ctx
        while True:
            try:
                item = self._inbound.get(timeout=ctx.time_remaining())
            except queue.Empty:
                ctx.check()
                continue
            if item is _END:
                return
            if item is _CANCEL:
                ctx.check()
                continue
            yield decode_request(self._codec, item, self._spec.request_type)

    def _publish_headers(self) -> None:
        if not self._headers_ready.is_set():
            self._headers = self._ctx.response_headers.copy()
            self._headers_ready.set()

    def _serve(self, handler: object) -> None:
        ctx = self._ctx
        call = ServerCall(ctx)
        exc: Exception | None = None
        try:
            for response in invoke(handler, self._spec, ctx, self._requests()):
                ctx.check()
                self._publish_headers()
                self._outbound.put(("message", self._codec.encode(response)))
        except Exception as e:
            exc = e
        error = call.finish(exc)
        self._publish_headers()
        self._outbound.put(("end", error, ctx.response_trailers.copy()))

    # ------------------------------------------------------------------
    # Client side
    # ------------------------------------------------------------------

    def _expire(self) -> RpcError:
        self._ctx.cancel(Code.DEADLINE_EXCEEDED)
        return RpcError(Code.DEADLINE_EXCEEDED, "deadline exceeded", headers=self._headers)

    def send(self, message: Any) -> None:
        if self._ctx.time_remaining() == 0.0:
            raise self._expire()
        self._inbound.put(self._codec.encode(message))

    def close_send(self) -> None:
        self._inbound.put(_END)

    def receive(self) -> Any | None:
        if self._ended:
            return None
        try:
            item = self._outbound.get(timeout=self._ctx.time_remaining())
        except queue.Empty:
            raise self._expire() from None
        match item:
            case ("message", data):
                return decode_response(self._codec, data, self._spec.response_type)
            case ("cancel",):
                raise RpcError(Code.CANCELED, "call canceled by client")
            case ("end", error, trailers):
                self._ended = True
                self._trailers = trailers
                if error is not None:
                    raise RpcError(error.code, error.message, headers=self._headers, trailers=trailers)
                return None
        raise RpcError(Code.INTERNAL, f"unexpected local stream item {item[0]!r}")

    def headers(self) -> Metadata:
        self._headers_ready.wait(self._ctx.time_remaining())
        return self._headers.copy()

    def trailers(self) -> Metadata:
        return self._trailers.copy()

    def cancel(self) -> None:
        self._ctx.cancel(Code.CANCELED, "call canceled by client")
        self._inbound.put(_CANCEL)
        self._outbound.put(("cancel",))


class LocalChannel:
    """Channel that serves calls with an in-process handler.

    Args:
        handler: Test Service implementation, typically
            :class:`~crosstest.service.ReferenceServer`.
        codec: Message codec; Arrow IPC by default.

    """

    protocol = "local"

    def __init__(self, handler: object, *, codec: Codec | None = None) -> None:
        """Bind the channel to *handler*."""
        self._handler = handler
        self._codec = codec or ArrowCodec()

    def supports(self, method: MethodSpec) -> bool:
        """Every method shape can be carried in-process."""
        return True

    def _route(self, method: MethodSpec) -> MethodSpec:
        spec = find_method(method.path)
        if spec is None:
            raise RpcError(Code.UNIMPLEMENTED, f"{method.path} is not registered")
        return spec

    def open_stream(self, method: MethodSpec, *, headers: Metadata, timeout: float | None) -> _LocalStream:
        """Start serving one call on a new thread."""
        spec = self._route(method)
        _logger.debug("Opening %s", spec.path, extra={"method": spec.name, "timeout": timeout})
        return _LocalStream(self._handler, spec, self._codec, headers, timeout)

    def unary(
        self, method: MethodSpec, request: Any, *, headers: Metadata, timeout: float | None
    ) -> UnaryResult[Any]:
        """Perform a unary call and wait for its status."""
        stream = self.open_stream(method, headers=headers, timeout=timeout)
        stream.send(request)
        stream.close_send()
        message = stream.receive()
        if message is None:
            raise RpcError(Code.INTERNAL, f"{method.path} ended without a response", trailers=stream.trailers())
        if stream.receive() is not None:
            raise RpcError(Code.INTERNAL, f"{method.path} returned more than one response")
        return UnaryResult(message, stream.headers(), stream.trailers())

    def close(self) -> None:
        """Nothing to release; call threads are daemons that end with their call."""

    def __repr__(self) -> str:
        return f"LocalChannel({type(self._handler).__name__}, codec={self._codec!r})"
