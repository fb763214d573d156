# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for the gRPC binding."""

from __future__ import annotations

import time
from collections.abc import Iterator

import grpc
import pytest

from crosstest.errors import Code, RpcError
from crosstest.grpc import GrpcChannel, from_grpc_status, to_grpc_status
from crosstest.grpc._common import metadata_from_grpc, metadata_to_grpc
from crosstest.metadata import INITIAL_METADATA_KEY, TRAILING_METADATA_KEY, Metadata
from crosstest.payload import Payload
from crosstest.service import (
    FULL_DUPLEX_CALL,
    ResponseParameters,
    SimpleRequest,
    StreamingInputCallRequest,
    StreamingOutputCallRequest,
    TestServiceClient,
)


@pytest.fixture
def grpc_client(grpc_target: str) -> Iterator[TestServiceClient]:
    """Client bound to the session's grpcio server."""
    with TestServiceClient(GrpcChannel(grpc_target)) as client:
        yield client


class TestStatusMapping:
    """Codes map one to one onto grpcio status codes."""

    @pytest.mark.parametrize("code", list(Code))
    def test_round_trip(self, code: Code) -> None:
        """Every code survives a trip through grpc.StatusCode."""
        assert from_grpc_status(to_grpc_status(code)) is code

    def test_none_is_unknown(self) -> None:
        """A missing status is UNKNOWN."""
        assert from_grpc_status(None) is Code.UNKNOWN


class TestMetadataConversion:
    """grpcio metadata pairs to and from Metadata."""

    def test_reserved_keys_dropped(self) -> None:
        """Transport-managed keys never reach handlers."""
        md = metadata_from_grpc(
            [(":authority", "x"), ("grpc-accept-encoding", "gzip"), ("user-agent", "grpc-python"), ("x-a", "1")]
        )
        assert md.items() == [("x-a", "1")]

    def test_binary_values(self) -> None:
        """``-bin`` keys carry bytes, other keys carry text."""
        md = metadata_from_grpc([("x-b-bin", b"\x00\xff"), ("x-t", b"caf\xc3\xa9")])
        assert md.get("x-b-bin") == b"\x00\xff"
        assert md.get("x-t") == "café"

    def test_to_grpc(self) -> None:
        """Metadata becomes grpcio's tuple of pairs, order kept."""
        md = Metadata([("x-a", "1"), ("x-a", "2")])
        assert metadata_to_grpc(md) == (("x-a", "1"), ("x-a", "2"))


class TestGrpcChannel:
    """GrpcChannel against a live grpcio server."""

    def test_supports_full_duplex(self, grpc_client: TestServiceClient) -> None:
        """HTTP/2 carries every method shape."""
        assert grpc_client.protocol == "grpc"
        assert grpc_client.supports(FULL_DUPLEX_CALL)

    def test_metadata_echo(self, grpc_client: TestServiceClient) -> None:
        """Initial metadata echoes as headers, trailing as trailers."""
        result = grpc_client.unary_call(
            SimpleRequest(response_size=1),
            headers={INITIAL_METADATA_KEY: "test", TRAILING_METADATA_KEY: b"\x0a\x0b"},
        )
        assert result.headers.get(INITIAL_METADATA_KEY) == "test"
        assert result.trailers.get(TRAILING_METADATA_KEY) == b"\x0a\x0b"

    def test_non_ascii_status_message(self, grpc_client: TestServiceClient) -> None:
        """Status messages are arbitrary UTF-8."""
        with pytest.raises(RpcError) as exc_info:
            grpc_client.fail_unary_call()
        assert exc_info.value.code is Code.RESOURCE_EXHAUSTED
        assert exc_info.value.message == "soirée 🎉"

    def test_unimplemented_service(self, grpc_client: TestServiceClient) -> None:
        """grpcio answers unknown services with UNIMPLEMENTED."""
        with pytest.raises(RpcError) as exc_info:
            grpc_client.unimplemented_service_call()
        assert exc_info.value.code is Code.UNIMPLEMENTED

    def test_client_stream(self, grpc_client: TestServiceClient) -> None:
        """Client streaming aggregates every message."""
        call = grpc_client.streaming_input_call()
        for size in (10, 20):
            call.send(StreamingInputCallRequest(payload=Payload(body=bytes(size))))
        assert call.close_and_receive().aggregated_payload_size == 30

    def test_full_duplex_cancel(self, grpc_client: TestServiceClient) -> None:
        """Cancelling a live bidi call ends it with CANCELED."""
        call = grpc_client.full_duplex_call()
        call.send(StreamingOutputCallRequest(response_parameters=[ResponseParameters(size=4)]))
        response = call.receive()
        assert response is not None
        call.cancel()
        with pytest.raises(RpcError) as exc_info:
            call.receive()
        assert exc_info.value.code is Code.CANCELED

    def test_deadline(self, grpc_client: TestServiceClient) -> None:
        """A slow server stream is cut off by its deadline."""
        request = StreamingOutputCallRequest(response_parameters=[ResponseParameters(size=1, interval_us=2_000_000)])
        start = time.monotonic()
        with pytest.raises(RpcError) as exc_info:
            list(grpc_client.streaming_output_call(request, timeout=0.1))
        assert exc_info.value.code is Code.DEADLINE_EXCEEDED
        assert time.monotonic() - start < 2.0

    def test_malformed_request_bytes(self, grpc_target: str) -> None:
        """Bytes the codec cannot decode are INVALID_ARGUMENT, not a transport failure."""
        with grpc.insecure_channel(grpc_target) as channel:
            stub = channel.unary_unary("/grpc.testing.TestService/UnaryCall")
            with pytest.raises(grpc.RpcError) as exc_info:
                stub(b"definitely not arrow", timeout=5)
        assert exc_info.value.code() is grpc.StatusCode.INVALID_ARGUMENT  # type: ignore[attr-defined]

    def test_unreachable_target(self) -> None:
        """A target nobody listens on is UNAVAILABLE."""
        with TestServiceClient(GrpcChannel("127.0.0.1:1")) as client:
            with pytest.raises(RpcError) as exc_info:
                client.empty_call(timeout=5)
        assert exc_info.value.code is Code.UNAVAILABLE
