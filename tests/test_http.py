# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for the HTTP binding: wire format via Falcon's test client, and HttpChannel."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator

import falcon
import falcon.testing
import pytest

from crosstest.codec import ArrowCodec, JsonCodec
from crosstest.errors import Code, RpcError
from crosstest.http import (
    FLAG_END_STREAM,
    TIMEOUT_HEADER,
    HttpChannel,
    encode_envelope,
    make_http_server,
    make_wsgi_app,
)
from crosstest.http._client import _HttpStream
from crosstest.http._common import (
    format_timeout,
    metadata_from_headers,
    parse_content_type,
    parse_end_stream,
    parse_timeout,
    split_envelopes,
)
from crosstest.metadata import INITIAL_METADATA_KEY, TRAILING_METADATA_KEY, Metadata
from crosstest.service import (
    FULL_DUPLEX_CALL,
    HALF_DUPLEX_CALL,
    STREAMING_OUTPUT_CALL,
    ReferenceServer,
    ResponseParameters,
    SimpleRequest,
    SimpleResponse,
    StreamingOutputCallRequest,
    StreamingOutputCallResponse,
    TestServiceClient,
)

_UNARY_PATH = "/grpc.testing.TestService/UnaryCall"
_STREAM_PATH = "/grpc.testing.TestService/StreamingOutputCall"
_HALF_DUPLEX_PATH = "/grpc.testing.TestService/HalfDuplexCall"


@pytest.fixture
def wsgi_client() -> falcon.testing.TestClient:
    """Falcon test client for the reference server app."""
    return falcon.testing.TestClient(make_wsgi_app(ReferenceServer()))


@pytest.fixture
def http_client(http_base_url: str) -> Iterator[TestServiceClient]:
    """Client bound to the session's waitress server."""
    with TestServiceClient(HttpChannel(http_base_url)) as client:
        yield client


def _stream_body(*messages: bytes) -> bytes:
    return b"".join(encode_envelope(m) for m in messages)


class TestHttpCommon:
    """Helpers shared by the HTTP client and server."""

    def test_content_types(self) -> None:
        """Unary and streaming content types name the codec."""
        assert parse_content_type("application/arrow") == (False, "arrow")
        assert parse_content_type("application/connect+json; charset=utf-8") == (True, "json")
        with pytest.raises(ValueError):
            parse_content_type("text/plain")

    def test_timeout_round_trip(self) -> None:
        """Deadlines travel as whole milliseconds."""
        assert format_timeout(1.5) == "1500"
        assert parse_timeout("250") == pytest.approx(0.25)
        assert parse_timeout(None) is None
        with pytest.raises(ValueError):
            parse_timeout("soon")

    def test_trailer_prefix(self) -> None:
        """``trailer-`` headers become trailers; protocol headers are dropped."""
        headers, trailers = metadata_from_headers(
            [("Content-Type", "application/arrow"), ("x-a", "1"), ("trailer-x-b", "2")]
        )
        assert headers.items() == [("x-a", "1")]
        assert trailers.items() == [("x-b", "2")]

    def test_truncated_envelope(self) -> None:
        """A body ending inside an envelope is INVALID_ARGUMENT."""
        with pytest.raises(RpcError) as exc_info:
            split_envelopes(encode_envelope(b"abc")[:-1])
        assert exc_info.value.code is Code.INVALID_ARGUMENT


class TestWsgiApp:
    """The Falcon app speaks the wire format directly."""

    def test_unary_arrow(self, wsgi_client: falcon.testing.TestClient) -> None:
        """A unary call answers with one encoded message."""
        codec = ArrowCodec()
        result = wsgi_client.simulate_post(
            _UNARY_PATH,
            body=codec.encode(SimpleRequest(response_size=7)),
            headers={"Content-Type": "application/arrow"},
        )
        assert result.status_code == 200
        assert result.headers["content-type"] == "application/arrow"
        response = codec.decode(result.content, SimpleResponse)
        assert response.payload is not None
        assert len(response.payload.body) == 7

    def test_unary_metadata_headers(self, wsgi_client: falcon.testing.TestClient) -> None:
        """Echoed trailers travel as ``trailer-`` headers on unary responses."""
        result = wsgi_client.simulate_post(
            _UNARY_PATH,
            body=JsonCodec().encode(SimpleRequest()),
            headers={"Content-Type": "application/json", INITIAL_METADATA_KEY: "hello", TRAILING_METADATA_KEY: "CgsK"},
        )
        assert result.status_code == 200
        assert result.headers[INITIAL_METADATA_KEY] == "hello"
        assert result.headers[f"trailer-{TRAILING_METADATA_KEY}"] == "CgsK"

    def test_unary_error_is_json(self, wsgi_client: falcon.testing.TestClient) -> None:
        """Errors are a JSON body and the mapped HTTP status."""
        result = wsgi_client.simulate_post(
            "/grpc.testing.TestService/FailUnaryCall",
            body=JsonCodec().encode(SimpleRequest()),
            headers={"Content-Type": "application/json"},
        )
        assert result.status_code == 429
        assert result.json["code"] == "resource_exhausted"
        assert result.json["message"] == "soirée 🎉"

    def test_unknown_method_is_501(self, wsgi_client: falcon.testing.TestClient) -> None:
        """Unregistered paths are UNIMPLEMENTED."""
        result = wsgi_client.simulate_post(
            "/grpc.testing.UnimplementedService/UnimplementedCall",
            body=b"{}",
            headers={"Content-Type": "application/json"},
        )
        assert result.status_code == 501
        assert result.json["code"] == "unimplemented"

    def test_unsupported_content_type(self, wsgi_client: falcon.testing.TestClient) -> None:
        """Unknown codecs are rejected with 415."""
        result = wsgi_client.simulate_post(_UNARY_PATH, body=b"x", headers={"Content-Type": "text/plain"})
        assert result.status_code == 415

    def test_streaming_content_type_on_unary_method(self, wsgi_client: falcon.testing.TestClient) -> None:
        """A unary method cannot be called with a streaming content type."""
        result = wsgi_client.simulate_post(
            _UNARY_PATH, body=b"", headers={"Content-Type": "application/connect+json"}
        )
        assert result.status_code == 415

    def test_malformed_request_is_invalid_argument(self, wsgi_client: falcon.testing.TestClient) -> None:
        """A body the codec cannot decode fails with INVALID_ARGUMENT."""
        result = wsgi_client.simulate_post(
            _UNARY_PATH, body=b"not arrow", headers={"Content-Type": "application/arrow"}
        )
        assert result.status_code == 400
        assert result.json["code"] == "invalid_argument"

    def test_bad_timeout_header(self, wsgi_client: falcon.testing.TestClient) -> None:
        """An unparseable deadline header is rejected before dispatch."""
        result = wsgi_client.simulate_post(
            _UNARY_PATH,
            body=JsonCodec().encode(SimpleRequest()),
            headers={"Content-Type": "application/json", TIMEOUT_HEADER: "later"},
        )
        assert result.status_code == 400

    def test_stream_envelopes(self, wsgi_client: falcon.testing.TestClient) -> None:
        """Streams are enveloped messages closed by an end-of-stream envelope."""
        codec = JsonCodec()
        request = StreamingOutputCallRequest(response_parameters=[ResponseParameters(size=s) for s in (2, 0, 5)])
        result = wsgi_client.simulate_post(
            _HALF_DUPLEX_PATH,
            body=_stream_body(codec.encode(request)),
            headers={"Content-Type": "application/connect+json", TRAILING_METADATA_KEY: "AAE="},
        )
        assert result.status_code == 200
        envelopes = split_envelopes(result.content)
        *messages, (end_flags, end_data) = envelopes
        sizes = []
        for flags, data in messages:
            assert flags == 0
            payload = codec.decode(data, StreamingOutputCallResponse).payload
            sizes.append(len(payload.body) if payload is not None else 0)
        assert sizes == [2, 0, 5]
        assert end_flags & FLAG_END_STREAM
        error, trailers = parse_end_stream(end_data)
        assert error is None
        assert trailers.get(TRAILING_METADATA_KEY) == b"\x00\x01"

    def test_server_stream_sends_no_echo_trailers(self, wsgi_client: falcon.testing.TestClient) -> None:
        """StreamingOutputCall does not echo metadata; its end message has no trailers."""
        codec = JsonCodec()
        request = StreamingOutputCallRequest(response_parameters=[ResponseParameters(size=1)])
        result = wsgi_client.simulate_post(
            _STREAM_PATH,
            body=_stream_body(codec.encode(request)),
            headers={"Content-Type": "application/connect+json", TRAILING_METADATA_KEY: "AAE="},
        )
        *_, (_, end_data) = split_envelopes(result.content)
        error, trailers = parse_end_stream(end_data)
        assert error is None
        assert TRAILING_METADATA_KEY not in trailers

    def test_server_stream_error_in_end_message(self, wsgi_client: falcon.testing.TestClient) -> None:
        """Streaming errors keep HTTP 200 and travel in the end-of-stream message."""
        codec = JsonCodec()
        request = StreamingOutputCallRequest(response_parameters=[ResponseParameters(size=-1)])
        result = wsgi_client.simulate_post(
            _STREAM_PATH,
            body=_stream_body(codec.encode(request)),
            headers={"Content-Type": "application/connect+json"},
        )
        assert result.status_code == 200
        ((flags, data),) = split_envelopes(result.content)
        assert flags & FLAG_END_STREAM
        assert json.loads(data)["error"]["code"] == "invalid_argument"


class TestMakeHttpServer:
    """The waitress server factory."""

    def test_serves_on_ephemeral_port(self) -> None:
        """A server built with port=0 binds a real port and answers calls."""
        server = make_http_server(ReferenceServer(), port=0, threads=2)
        port = int(server.effective_port)  # type: ignore[union-attr]
        assert port > 0
        thread = threading.Thread(target=server.run, daemon=True)
        thread.start()
        try:
            with TestServiceClient(HttpChannel(f"http://127.0.0.1:{port}")) as client:
                assert client.empty_call(timeout=5).message is not None
        finally:
            server.close()


class TestHttpChannel:
    """HttpChannel against a live waitress server."""

    def test_supports(self) -> None:
        """Only interleaved full duplex is out of reach."""
        channel = HttpChannel("http://127.0.0.1:1")
        assert channel.supports(STREAMING_OUTPUT_CALL)
        assert channel.supports(HALF_DUPLEX_CALL)
        assert not channel.supports(FULL_DUPLEX_CALL)
        channel.close()

    def test_full_duplex_unimplemented(self, http_client: TestServiceClient) -> None:
        """Opening a full-duplex call fails fast with UNIMPLEMENTED."""
        with pytest.raises(RpcError) as exc_info:
            http_client.full_duplex_call()
        assert exc_info.value.code is Code.UNIMPLEMENTED

    def test_receive_before_close(self, http_client: TestServiceClient) -> None:
        """Half-duplex responses are only available after close_send."""
        call = http_client.half_duplex_call()
        call.send(StreamingOutputCallRequest(response_parameters=[ResponseParameters(size=1)]))
        with pytest.raises(RpcError) as exc_info:
            call.receive()
        assert exc_info.value.code is Code.FAILED_PRECONDITION

    def test_envelope_read_before_response(self) -> None:
        """Reading envelopes before the body was posted is a precondition error, not an assert."""
        channel = HttpChannel("http://127.0.0.1:1")
        stream = _HttpStream(channel, HALF_DUPLEX_CALL, Metadata(), None)
        with pytest.raises(RpcError) as exc_info:
            stream._next_envelope()
        assert exc_info.value.code is Code.FAILED_PRECONDITION
        channel.close()

    def test_half_duplex(self, http_client: TestServiceClient) -> None:
        """Buffered bidi works over HTTP/1.1."""
        call = http_client.half_duplex_call()
        for size in (3, 4):
            call.send(StreamingOutputCallRequest(response_parameters=[ResponseParameters(size=size)]))
        call.close_send()
        assert [len(r.payload.body) for r in call if r.payload is not None] == [3, 4]

    def test_unary_trailers(self, http_client: TestServiceClient) -> None:
        """Binary trailers survive base64 on the wire."""
        result = http_client.unary_call(
            SimpleRequest(), headers=Metadata({TRAILING_METADATA_KEY: b"\xfe\xff"})
        )
        assert result.trailers.get(TRAILING_METADATA_KEY) == b"\xfe\xff"

    def test_unreachable_server(self) -> None:
        """Connection failures surface as UNAVAILABLE."""
        with TestServiceClient(HttpChannel("http://127.0.0.1:1")) as client:
            with pytest.raises(RpcError) as exc_info:
                client.empty_call()
        assert exc_info.value.code is Code.UNAVAILABLE

    def test_prefix(self) -> None:
        """A route prefix in front of the method paths."""
        wsgi = falcon.testing.TestClient(make_wsgi_app(ReferenceServer(), prefix="/rpc"))
        result = wsgi.simulate_post(
            f"/rpc{_UNARY_PATH}", body=JsonCodec().encode(SimpleRequest()), headers={"Content-Type": "application/json"}
        )
        assert result.status_code == 200
