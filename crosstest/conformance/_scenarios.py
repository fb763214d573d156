# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Interop scenario library.

Each scenario drives a :class:`~crosstest.service.TestServiceClient` and
raises ``AssertionError`` (or an unexpected :class:`RpcError`) when the
peer misbehaves.  Scenarios are registered under ``category.name`` and
declare the methods they need, so the runner can skip those a binding
cannot carry.  The sizes and metadata values are the canonical interop
ones, so failures line up with other implementations' reports.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Final, TypeAlias

from crosstest.errors import Code, RpcError
from crosstest.metadata import INITIAL_METADATA_KEY, TRAILING_METADATA_KEY, Metadata
from crosstest.payload import Payload, PayloadType
from crosstest.service._client import TestServiceClient
from crosstest.service._impl import NON_ASCII_ERROR_MESSAGE
from crosstest.service._messages import (
    EchoStatus,
    ResponseParameters,
    SimpleRequest,
    StreamingInputCallRequest,
    StreamingOutputCallRequest,
)
from crosstest.service._protocol import (
    EMPTY_CALL,
    FAIL_UNARY_CALL,
    FULL_DUPLEX_CALL,
    HALF_DUPLEX_CALL,
    STREAMING_INPUT_CALL,
    STREAMING_OUTPUT_CALL,
    UNARY_CALL,
    UNIMPLEMENTED_CALL,
    UNIMPLEMENTED_SERVICE_CALL,
    MethodSpec,
)

LARGE_REQUEST_SIZE: Final = 271828
LARGE_RESPONSE_SIZE: Final = 314159
CLIENT_STREAM_SIZES: Final = (27182, 8, 1828, 45904)
CLIENT_STREAM_TOTAL: Final = 74922
SERVER_STREAM_SIZES: Final = (31415, 9, 2653, 58979)
PAYLOAD_SIZE_BOUNDARIES: Final = (0, 1, 1023, 1024, 65535, 65536, 1 << 20)

INITIAL_METADATA_VALUE: Final = "test_initial_metadata_value"
TRAILING_METADATA_VALUE: Final = b"\x0a\x0b\x0a\x0b\x0a\x0b"
STATUS_CODE: Final = 2
STATUS_MESSAGE: Final = "test status message"
SPECIAL_STATUS_MESSAGE: Final = "\t\ntest with whitespace\r\nand Unicode BMP ☺ and non-BMP \U0001f608\t\n"

_INTERVAL_US: Final = 50_000
_SHORT_DEADLINE: Final = 0.01
_STREAM_DEADLINE: Final = 0.1
_SLEEP_US: Final = 2_000_000


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


ScenarioFn: TypeAlias = Callable[[TestServiceClient], None]


@dataclass(frozen=True)
class Scenario:
    """A registered interop scenario."""

    category: str
    name: str
    fn: ScenarioFn
    requires: tuple[MethodSpec, ...] = ()

    @property
    def full_name(self) -> str:
        """Return category.name format."""
        return f"{self.category}.{self.name}"

    def unsupported(self, client: TestServiceClient) -> list[MethodSpec]:
        """Methods this scenario needs that *client*'s channel cannot carry."""
        return [m for m in self.requires if not client.supports(m)]


SCENARIOS: list[Scenario] = []


def _scenario(*, category: str, name: str, requires: tuple[MethodSpec, ...]) -> Callable[[ScenarioFn], ScenarioFn]:
    """Register a scenario function."""

    def decorator(fn: ScenarioFn) -> ScenarioFn:
        SCENARIOS.append(Scenario(category=category, name=name, fn=fn, requires=requires))
        return fn

    return decorator


# ---------------------------------------------------------------------------
# Assertion helpers
# ---------------------------------------------------------------------------


def _expect_error(code: Code, fn: Callable[[], object], *, message: str | None = None) -> RpcError:
    """Run *fn* and check that it fails with *code* (and *message* when given)."""
    try:
        fn()
    except RpcError as e:
        assert e.code is code, f"expected {code.name}, got {e.code.name}: {e.message!r}"
        if message is not None:
            assert e.message == message, f"expected message {message!r}, got {e.message!r}"
        return e
    raise AssertionError(f"expected {code.name}, but the call succeeded")


def _body_size(payload: Payload | None) -> int:
    return len(payload.body) if payload is not None else 0


def _check_size(observed: Payload | None, expected: int, what: str = "response payload") -> None:
    size = _body_size(observed)
    assert size == expected, f"{what}: expected {expected} bytes, got {size}"


def _stream_request(*sizes: int, interval_us: int = 0, payload_size: int = 0) -> StreamingOutputCallRequest:
    return StreamingOutputCallRequest(
        response_parameters=[ResponseParameters(size=s, interval_us=interval_us) for s in sizes],
        payload=Payload(body=bytes(payload_size)) if payload_size else None,
    )


def _echo_headers() -> Metadata:
    return Metadata({INITIAL_METADATA_KEY: INITIAL_METADATA_VALUE, TRAILING_METADATA_KEY: TRAILING_METADATA_VALUE})


def _check_echoed(headers: Metadata, trailers: Metadata) -> None:
    initial = headers.get(INITIAL_METADATA_KEY)
    assert initial == INITIAL_METADATA_VALUE, (
        f"header {INITIAL_METADATA_KEY}: expected {INITIAL_METADATA_VALUE!r}, got {initial!r}"
    )
    trailing = trailers.get(TRAILING_METADATA_KEY)
    assert trailing == TRAILING_METADATA_VALUE, (
        f"trailer {TRAILING_METADATA_KEY}: expected {TRAILING_METADATA_VALUE!r}, got {trailing!r}"
    )


# ---------------------------------------------------------------------------
# Unary
# ---------------------------------------------------------------------------


@_scenario(category="unary", name="empty", requires=(EMPTY_CALL,))
def _empty(client: TestServiceClient) -> None:
    result = client.empty_call()
    assert result.message is not None, "EmptyCall returned no message"


@_scenario(category="unary", name="large", requires=(UNARY_CALL,))
def _large(client: TestServiceClient) -> None:
    result = client.unary_call(
        SimpleRequest(response_size=LARGE_RESPONSE_SIZE, payload=Payload(body=bytes(LARGE_REQUEST_SIZE)))
    )
    _check_size(result.message.payload, LARGE_RESPONSE_SIZE)


@_scenario(category="unary", name="payload_size_boundaries", requires=(UNARY_CALL,))
def _payload_size_boundaries(client: TestServiceClient) -> None:
    for size in PAYLOAD_SIZE_BOUNDARIES:
        result = client.unary_call(SimpleRequest(response_size=size, payload=Payload(body=bytes(size))))
        _check_size(result.message.payload, size, f"response payload for size {size}")


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


@_scenario(category="client_streaming", name="aggregate", requires=(STREAMING_INPUT_CALL,))
def _client_streaming(client: TestServiceClient) -> None:
    call = client.streaming_input_call()
    for size in CLIENT_STREAM_SIZES:
        call.send(StreamingInputCallRequest(payload=Payload(body=bytes(size))))
    response = call.close_and_receive()
    assert response.aggregated_payload_size == CLIENT_STREAM_TOTAL, (
        f"expected aggregated size {CLIENT_STREAM_TOTAL}, got {response.aggregated_payload_size}"
    )


@_scenario(category="server_streaming", name="sizes", requires=(STREAMING_OUTPUT_CALL,))
def _server_streaming(client: TestServiceClient) -> None:
    responses = list(client.streaming_output_call(_stream_request(*SERVER_STREAM_SIZES)))
    observed = [_body_size(r.payload) for r in responses]
    assert observed == list(SERVER_STREAM_SIZES), f"expected sizes {list(SERVER_STREAM_SIZES)}, got {observed}"


@_scenario(category="server_streaming", name="intervals", requires=(STREAMING_OUTPUT_CALL,))
def _server_streaming_intervals(client: TestServiceClient) -> None:
    start = time.monotonic()
    responses = list(client.streaming_output_call(_stream_request(1, 1, 1, interval_us=_INTERVAL_US)))
    elapsed = time.monotonic() - start
    assert len(responses) == 3, f"expected 3 responses, got {len(responses)}"
    minimum = 3 * _INTERVAL_US / 1_000_000
    assert elapsed >= minimum, f"expected at least {minimum:.3f}s between responses, took {elapsed:.3f}s"


@_scenario(category="full_duplex", name="ping_pong", requires=(FULL_DUPLEX_CALL,))
def _ping_pong(client: TestServiceClient) -> None:
    call = client.full_duplex_call()
    for request_size, response_size in zip(CLIENT_STREAM_SIZES, SERVER_STREAM_SIZES, strict=True):
        call.send(_stream_request(response_size, payload_size=request_size))
        response = call.receive()
        assert response is not None, f"stream ended before the response of size {response_size}"
        _check_size(response.payload, response_size)
    call.close_send()
    extra = call.receive()
    assert extra is None, f"expected end of stream after close, got a {_body_size(extra.payload)}-byte response"


@_scenario(category="full_duplex", name="empty_stream", requires=(FULL_DUPLEX_CALL,))
def _empty_stream(client: TestServiceClient) -> None:
    call = client.full_duplex_call()
    call.close_send()
    response = call.receive()
    assert response is None, "expected an empty response stream"


@_scenario(category="half_duplex", name="buffered_replay", requires=(HALF_DUPLEX_CALL,))
def _buffered_replay(client: TestServiceClient) -> None:
    call = client.half_duplex_call()
    for size in SERVER_STREAM_SIZES:
        call.send(_stream_request(size))
    call.close_send()
    observed = [_body_size(r.payload) for r in call]
    assert observed == list(SERVER_STREAM_SIZES), f"expected sizes {list(SERVER_STREAM_SIZES)}, got {observed}"


# ---------------------------------------------------------------------------
# Deadlines and cancellation
# ---------------------------------------------------------------------------


@_scenario(category="deadline", name="timeout_on_sleeping_server", requires=(FULL_DUPLEX_CALL,))
def _timeout_on_sleeping_server(client: TestServiceClient) -> None:
    def _run() -> None:
        call = client.full_duplex_call(timeout=_SHORT_DEADLINE)
        call.send(_stream_request(payload_size=CLIENT_STREAM_SIZES[0]))
        call.receive()

    _expect_error(Code.DEADLINE_EXCEEDED, _run)


@_scenario(category="deadline", name="server_streaming_timeout", requires=(STREAMING_OUTPUT_CALL,))
def _server_streaming_timeout(client: TestServiceClient) -> None:
    def _run() -> None:
        # Over buffered bindings the deadline can expire while starting the call.
        for _ in client.streaming_output_call(_stream_request(1, interval_us=_SLEEP_US), timeout=_STREAM_DEADLINE):
            pass

    _expect_error(Code.DEADLINE_EXCEEDED, _run)


@_scenario(category="cancellation", name="cancel_after_begin", requires=(STREAMING_INPUT_CALL,))
def _cancel_after_begin(client: TestServiceClient) -> None:
    call = client.streaming_input_call()
    call.cancel()
    _expect_error(Code.CANCELED, call.close_and_receive)
    assert call.cancelled, "call does not report itself cancelled"


@_scenario(category="cancellation", name="cancel_after_first_response", requires=(FULL_DUPLEX_CALL,))
def _cancel_after_first_response(client: TestServiceClient) -> None:
    call = client.full_duplex_call()
    call.send(_stream_request(SERVER_STREAM_SIZES[0], payload_size=CLIENT_STREAM_SIZES[0]))
    first = call.receive()
    assert first is not None, "stream ended before the first response"
    _check_size(first.payload, SERVER_STREAM_SIZES[0])
    call.cancel()
    _expect_error(Code.CANCELED, call.receive)
    _expect_error(Code.CANCELED, lambda: call.send(_stream_request(1)))


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------


@_scenario(category="metadata", name="custom_metadata_unary", requires=(UNARY_CALL,))
def _custom_metadata_unary(client: TestServiceClient) -> None:
    result = client.unary_call(
        SimpleRequest(response_size=LARGE_RESPONSE_SIZE, payload=Payload(body=bytes(LARGE_REQUEST_SIZE))),
        headers=_echo_headers(),
    )
    _check_size(result.message.payload, LARGE_RESPONSE_SIZE)
    _check_echoed(result.headers, result.trailers)


@_scenario(category="metadata", name="custom_metadata_full_duplex", requires=(FULL_DUPLEX_CALL,))
def _custom_metadata_full_duplex(client: TestServiceClient) -> None:
    call = client.full_duplex_call(headers=_echo_headers())
    call.send(_stream_request(LARGE_RESPONSE_SIZE, payload_size=LARGE_REQUEST_SIZE))
    response = call.receive()
    assert response is not None, "stream ended before the response"
    _check_size(response.payload, LARGE_RESPONSE_SIZE)
    call.close_send()
    assert call.receive() is None, "expected end of stream after close"
    _check_echoed(call.headers(), call.trailers())


# ---------------------------------------------------------------------------
# Status propagation
# ---------------------------------------------------------------------------


@_scenario(category="status", name="status_code_and_message_unary", requires=(UNARY_CALL,))
def _status_unary(client: TestServiceClient) -> None:
    request = SimpleRequest(response_status=EchoStatus(code=STATUS_CODE, message=STATUS_MESSAGE))
    _expect_error(Code(STATUS_CODE), lambda: client.unary_call(request), message=STATUS_MESSAGE)


@_scenario(category="status", name="status_code_and_message_full_duplex", requires=(FULL_DUPLEX_CALL,))
def _status_full_duplex(client: TestServiceClient) -> None:
    def _run() -> None:
        call = client.full_duplex_call()
        call.send(
            StreamingOutputCallRequest(response_status=EchoStatus(code=STATUS_CODE, message=STATUS_MESSAGE))
        )
        call.close_send()
        call.receive()

    _expect_error(Code(STATUS_CODE), _run, message=STATUS_MESSAGE)


@_scenario(category="status", name="zero_code_is_not_error", requires=(UNARY_CALL,))
def _zero_code(client: TestServiceClient) -> None:
    request = SimpleRequest(response_size=1, response_status=EchoStatus(code=0, message="ignored when the code is 0"))
    result = client.unary_call(request)
    _check_size(result.message.payload, 1)


@_scenario(category="status", name="special_status_message", requires=(UNARY_CALL,))
def _special_status_message(client: TestServiceClient) -> None:
    request = SimpleRequest(response_status=EchoStatus(code=STATUS_CODE, message=SPECIAL_STATUS_MESSAGE))
    _expect_error(Code(STATUS_CODE), lambda: client.unary_call(request), message=SPECIAL_STATUS_MESSAGE)


# ---------------------------------------------------------------------------
# Unimplemented
# ---------------------------------------------------------------------------


@_scenario(category="unimplemented", name="method", requires=(UNIMPLEMENTED_CALL,))
def _unimplemented_method(client: TestServiceClient) -> None:
    _expect_error(Code.UNIMPLEMENTED, client.unimplemented_call)


@_scenario(category="unimplemented", name="service", requires=(UNIMPLEMENTED_SERVICE_CALL,))
def _unimplemented_service(client: TestServiceClient) -> None:
    _expect_error(Code.UNIMPLEMENTED, client.unimplemented_service_call)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


@_scenario(category="errors", name="fail_with_non_ascii_error", requires=(FAIL_UNARY_CALL,))
def _fail_with_non_ascii_error(client: TestServiceClient) -> None:
    _expect_error(Code.RESOURCE_EXHAUSTED, client.fail_unary_call, message=NON_ASCII_ERROR_MESSAGE)


@_scenario(category="errors", name="negative_response_size", requires=(UNARY_CALL,))
def _negative_response_size(client: TestServiceClient) -> None:
    _expect_error(Code.INVALID_ARGUMENT, lambda: client.unary_call(SimpleRequest(response_size=-1)))


@_scenario(category="errors", name="unsupported_payload_type", requires=(UNARY_CALL,))
def _unsupported_payload_type(client: TestServiceClient) -> None:
    request = SimpleRequest(response_type=PayloadType.UNCOMPRESSABLE, response_size=10)
    _expect_error(Code.UNIMPLEMENTED, lambda: client.unary_call(request))
