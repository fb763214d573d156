# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""The Test Service: messages, method table, reference handler and client.

Usage::

    from crosstest.rpc import LocalChannel
    from crosstest.service import ReferenceServer, SimpleRequest, TestServiceClient

    client = TestServiceClient(LocalChannel(ReferenceServer()))
    assert len(client.unary_call(SimpleRequest(response_size=8)).message.payload.body) == 8

"""

from crosstest.service._client import TestServiceClient
from crosstest.service._impl import NON_ASCII_ERROR_MESSAGE, ReferenceServer, StreamMode
from crosstest.service._messages import (
    EchoStatus,
    Empty,
    ResponseParameters,
    SimpleRequest,
    SimpleResponse,
    StreamingInputCallRequest,
    StreamingInputCallResponse,
    StreamingOutputCallRequest,
    StreamingOutputCallResponse,
)
from crosstest.service._protocol import (
    EMPTY_CALL,
    FAIL_UNARY_CALL,
    FULL_DUPLEX_CALL,
    HALF_DUPLEX_CALL,
    STREAMING_INPUT_CALL,
    STREAMING_OUTPUT_CALL,
    TEST_SERVICE,
    TEST_SERVICE_METHODS,
    UNARY_CALL,
    UNIMPLEMENTED_CALL,
    UNIMPLEMENTED_SERVICE,
    UNIMPLEMENTED_SERVICE_CALL,
    MethodShape,
    MethodSpec,
    TestServiceHandler,
    UnimplementedTestService,
    find_method,
)

__all__ = [
    "EMPTY_CALL",
    "FAIL_UNARY_CALL",
    "FULL_DUPLEX_CALL",
    "HALF_DUPLEX_CALL",
    "NON_ASCII_ERROR_MESSAGE",
    "STREAMING_INPUT_CALL",
    "STREAMING_OUTPUT_CALL",
    "TEST_SERVICE",
    "TEST_SERVICE_METHODS",
    "UNARY_CALL",
    "UNIMPLEMENTED_CALL",
    "UNIMPLEMENTED_SERVICE",
    "UNIMPLEMENTED_SERVICE_CALL",
    "EchoStatus",
    "Empty",
    "MethodShape",
    "MethodSpec",
    "ReferenceServer",
    "ResponseParameters",
    "SimpleRequest",
    "SimpleResponse",
    "StreamMode",
    "StreamingInputCallRequest",
    "StreamingInputCallResponse",
    "StreamingOutputCallRequest",
    "StreamingOutputCallResponse",
    "TestServiceClient",
    "TestServiceHandler",
    "UnimplementedTestService",
    "find_method",
]
