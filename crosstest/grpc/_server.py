# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""grpcio server for the gRPC binding.

The Test Service is registered through generic method handlers without
(de)serializers: handlers see raw bytes and the configured codec decodes
them, so malformed requests surface as ``INVALID_ARGUMENT`` instead of
grpcio's generic deserialization failure.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Final

import grpc

from crosstest.codec import ArrowCodec, Codec, decode_request
from crosstest.errors import Code, RpcError
from crosstest.grpc._common import metadata_from_grpc, metadata_to_grpc, to_grpc_status
from crosstest.rpc._context import CallContext
from crosstest.rpc._dispatch import ServerCall, invoke
from crosstest.service._protocol import TEST_SERVICE, TEST_SERVICE_METHODS, MethodShape, MethodSpec

__all__ = ["make_grpc_server"]

_logger = logging.getLogger("crosstest.grpc")

# grpcio reports "no deadline" as a time_remaining() far in the future.
_NO_DEADLINE: Final = 1e8


class _GrpcTestService:
    """Adapts a Test Service handler to grpcio method behaviors."""

    def __init__(self, handler: object, codec: Codec) -> None:
        self._handler = handler
        self._codec = codec

    def _context(self, spec: MethodSpec, context: grpc.ServicerContext) -> CallContext:
        remaining = context.time_remaining()
        timeout = remaining if remaining is not None and remaining < _NO_DEADLINE else None
        ctx = CallContext(
            spec,
            metadata_from_grpc(context.invocation_metadata()),
            timeout=timeout,
            protocol="grpc",
            peer=context.peer() or "",
        )

        def _on_terminate() -> None:
            # Runs when the RPC ends for any reason; after a normal finish
            # nothing observes the context any more.
            ctx.cancel(Code.DEADLINE_EXCEEDED if ctx.time_remaining() == 0.0 else Code.CANCELED)

        context.add_callback(_on_terminate)
        return ctx

    def _requests(self, spec: MethodSpec, ctx: CallContext, request_iterator: Iterator[bytes]) -> Iterator[Any]:
        try:
            for data in request_iterator:
                yield decode_request(self._codec, data, spec.request_type)
        except grpc.RpcError:
            ctx.check()
            raise RpcError(Code.CANCELED, "request stream aborted") from None

    def _inbound(self, spec: MethodSpec, ctx: CallContext, request: Any) -> Iterator[Any]:
        if spec.shape.client_streams:
            return self._requests(spec, ctx, request)
        return iter([decode_request(self._codec, request, spec.request_type)])

    @staticmethod
    def _complete(context: grpc.ServicerContext, ctx: CallContext, error: RpcError | None, headers_sent: bool) -> None:
        if not headers_sent and ctx.response_headers:
            context.send_initial_metadata(metadata_to_grpc(ctx.response_headers))
        context.set_trailing_metadata(metadata_to_grpc(ctx.response_trailers))
        if error is not None:
            context.abort(to_grpc_status(error.code), error.message)

    def unary_behavior(self, spec: MethodSpec) -> Callable[[Any, grpc.ServicerContext], bytes]:
        """Behavior for methods answering with one message."""

        def behavior(request: Any, context: grpc.ServicerContext) -> bytes:
            ctx = self._context(spec, context)
            call = ServerCall(ctx)
            response: Any = None
            exc: Exception | None = None
            try:
                (response,) = invoke(self._handler, spec, ctx, self._inbound(spec, ctx, request))
            except Exception as e:
                exc = e
            error = call.finish(exc)
            self._complete(context, ctx, error, headers_sent=False)
            return self._codec.encode(response)

        return behavior

    def stream_behavior(self, spec: MethodSpec) -> Callable[[Any, grpc.ServicerContext], Iterator[bytes]]:
        """Behavior for methods answering with a stream of messages."""

        def behavior(request: Any, context: grpc.ServicerContext) -> Iterator[bytes]:
            ctx = self._context(spec, context)
            call = ServerCall(ctx)
            headers_sent = False
            exc: Exception | None = None
            try:
                for response in invoke(self._handler, spec, ctx, self._inbound(spec, ctx, request)):
                    if not headers_sent:
                        context.send_initial_metadata(metadata_to_grpc(ctx.response_headers))
                        headers_sent = True
                    yield self._codec.encode(response)
            except GeneratorExit:
                # grpcio stopped consuming responses: the RPC already ended.
                call.finish(ctx.error or RpcError(Code.CANCELED, "call terminated"))
                raise
            except Exception as e:
                exc = e
            error = call.finish(exc)
            self._complete(context, ctx, error, headers_sent)

        return behavior

    def method_handler(self, spec: MethodSpec) -> grpc.RpcMethodHandler:
        """Build the grpcio handler for *spec*."""
        match spec.shape:
            case MethodShape.UNARY:
                return grpc.unary_unary_rpc_method_handler(self.unary_behavior(spec))
            case MethodShape.CLIENT_STREAM:
                return grpc.stream_unary_rpc_method_handler(self.unary_behavior(spec))
            case MethodShape.SERVER_STREAM:
                return grpc.unary_stream_rpc_method_handler(self.stream_behavior(spec))
            case MethodShape.BIDI_STREAM:
                return grpc.stream_stream_rpc_method_handler(self.stream_behavior(spec))


def make_grpc_server(
    handler: object,
    *,
    host: str = "127.0.0.1",
    port: int = 0,
    max_workers: int = 16,
    codec: Codec | None = None,
) -> tuple[grpc.Server, int]:
    """Create (but do not start) a grpcio server for *handler*.

    Each in-flight call holds one worker thread, so *max_workers* bounds the
    number of concurrent streaming calls.

    Returns:
        The server and the port it is bound to (useful with ``port=0``).

    """
    service = _GrpcTestService(handler, codec or ArrowCodec())
    generic = grpc.method_handlers_generic_handler(
        TEST_SERVICE,
        {spec.name: service.method_handler(spec) for spec in TEST_SERVICE_METHODS},
    )
    server = grpc.server(ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="crosstest.grpc"))
    server.add_generic_rpc_handlers((generic,))
    bound_port = server.add_insecure_port(f"{host}:{port}")
    _logger.info(
        "gRPC server created for %s on %s:%d",
        type(handler).__name__,
        host,
        bound_port,
        extra={"host": host, "port": bound_port, "max_workers": max_workers},
    )
    return server, bound_port
