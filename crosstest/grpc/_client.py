# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""grpcio client for the gRPC binding.

Request streams are fed to grpcio from a queue-backed iterator, so the
typed call objects can send and receive from the same thread.  Server
streams start when the single request is closed, matching the other
bindings.
"""

from __future__ import annotations

import logging
import queue
import time
from collections.abc import Iterator
from types import TracebackType
from typing import Any, Final

import grpc

from crosstest.codec import ArrowCodec, Codec, decode_response
from crosstest.errors import Code, RpcError
from crosstest.grpc._common import error_from_grpc, metadata_from_grpc, metadata_to_grpc
from crosstest.metadata import Metadata
from crosstest.rpc._calls import UnaryResult
from crosstest.service._protocol import MethodShape, MethodSpec

__all__ = ["GrpcChannel"]

_logger = logging.getLogger("crosstest.grpc")

_END: Final = object()


class _GrpcStream:
    """One streaming call backed by a grpcio rendezvous."""

    def __init__(self, channel: GrpcChannel, spec: MethodSpec, headers: Metadata, timeout: float | None) -> None:
        self._channel = channel
        self._spec = spec
        self._metadata = metadata_to_grpc(headers)
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._requests: queue.SimpleQueue[Any] = queue.SimpleQueue()
        self._pending_request: bytes | None = None
        self._call: Any = None
        self._responses: Iterator[bytes] | None = None
        self._single_received = False
        self._ended = False
        if spec.shape.client_streams:
            self._start()

    def _remaining(self) -> float | None:
        if self._deadline is None:
            return None
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise RpcError(Code.DEADLINE_EXCEEDED, "deadline exceeded")
        return remaining

    def _request_iterator(self) -> Iterator[bytes]:
        while (item := self._requests.get()) is not _END:
            yield item

    def _start(self) -> None:
        grpc_channel = self._channel._channel
        timeout = self._remaining()
        match self._spec.shape:
            case MethodShape.CLIENT_STREAM:
                self._call = grpc_channel.stream_unary(self._spec.path).future(
                    self._request_iterator(), timeout=timeout, metadata=self._metadata
                )
            case MethodShape.BIDI_STREAM:
                self._call = grpc_channel.stream_stream(self._spec.path)(
                    self._request_iterator(), timeout=timeout, metadata=self._metadata
                )
                self._responses = self._call
            case MethodShape.SERVER_STREAM:
                self._call = grpc_channel.unary_stream(self._spec.path)(
                    self._pending_request or b"", timeout=timeout, metadata=self._metadata
                )
                self._responses = self._call
        _logger.debug("Started %s", self._spec.path, extra={"method": self._spec.name, "timeout": timeout})

    def send(self, message: Any) -> None:
        data = self._channel.codec.encode(message)
        if self._spec.shape.client_streams:
            self._requests.put(data)
        elif self._pending_request is not None:
            raise RpcError(Code.FAILED_PRECONDITION, f"{self._spec.path} takes a single request")
        else:
            self._pending_request = data

    def close_send(self) -> None:
        if self._spec.shape.client_streams:
            self._requests.put(_END)
        elif self._call is None:
            self._start()

    def receive(self) -> Any | None:
        if self._ended:
            return None
        if self._call is None:
            raise RpcError(Code.FAILED_PRECONDITION, "the request has not been sent")
        try:
            if self._responses is None:
                if self._single_received:
                    self._ended = True
                    return None
                data = self._call.result()
                self._single_received = True
            else:
                data = next(self._responses)
        except StopIteration:
            self._ended = True
            return None
        except grpc.FutureCancelledError:
            self._ended = True
            raise RpcError(Code.CANCELED, "call canceled by client") from None
        except grpc.RpcError as e:
            self._ended = True
            raise error_from_grpc(e) from None
        return decode_response(self._channel.codec, data, self._spec.response_type)

    def headers(self) -> Metadata:
        if self._call is None:
            return Metadata()
        return metadata_from_grpc(self._call.initial_metadata())

    def trailers(self) -> Metadata:
        if self._call is None or not self._ended:
            return Metadata()
        return metadata_from_grpc(self._call.trailing_metadata())

    def cancel(self) -> None:
        self._ended = True
        self._requests.put(_END)
        if self._call is not None:
            self._call.cancel()


class GrpcChannel:
    """Channel speaking real gRPC (HTTP/2) through grpcio.

    Args:
        target: Server address, e.g. ``127.0.0.1:50051``.
        codec: Message codec; Arrow IPC by default.
        channel: Optional pre-built ``grpc.Channel``.  When omitted the
            channel opens (and owns) an insecure one.

    """

    protocol = "grpc"

    def __init__(self, target: str, *, codec: Codec | None = None, channel: grpc.Channel | None = None) -> None:
        """Create the channel."""
        self.target = target
        self.codec = codec or ArrowCodec()
        self._owns_channel = channel is None
        self._channel = channel if channel is not None else grpc.insecure_channel(target)

    def supports(self, method: MethodSpec) -> bool:
        """HTTP/2 carries every method shape."""
        return True

    def unary(
        self, method: MethodSpec, request: Any, *, headers: Metadata, timeout: float | None
    ) -> UnaryResult[Any]:
        """Perform a unary call and collect its metadata."""
        multicallable = self._channel.unary_unary(method.path)
        _logger.debug("Calling %s", method.path, extra={"method": method.name, "timeout": timeout})
        try:
            data, call = multicallable.with_call(
                self.codec.encode(request), timeout=timeout, metadata=metadata_to_grpc(headers)
            )
        except grpc.RpcError as e:
            raise error_from_grpc(e) from None
        message = decode_response(self.codec, data, method.response_type)
        return UnaryResult(
            message, metadata_from_grpc(call.initial_metadata()), metadata_from_grpc(call.trailing_metadata())
        )

    def open_stream(self, method: MethodSpec, *, headers: Metadata, timeout: float | None) -> _GrpcStream:
        """Open a streaming call."""
        return _GrpcStream(self, method, headers, timeout)

    def close(self) -> None:
        """Close the owned ``grpc.Channel``."""
        if self._owns_channel:
            self._channel.close()

    def __enter__(self) -> GrpcChannel:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"GrpcChannel({self.target!r}, codec={self.codec!r})"
