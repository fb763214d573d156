# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""RPC interop conformance suite: Test Service, reference server, bindings and scenarios."""

import logging

from crosstest.codec import ArrowCodec, Codec, CodecError, JsonCodec, get_codec
from crosstest.conformance import (
    DEFAULT_TEST_TIMEOUT,
    ConformanceResult,
    ConformanceSuite,
    list_conformance_tests,
    run_conformance,
)
from crosstest.errors import Code, RpcError
from crosstest.grpc import GrpcChannel, make_grpc_server
from crosstest.http import HttpChannel, make_http_server, make_wsgi_app
from crosstest.metadata import INITIAL_METADATA_KEY, TRAILING_METADATA_KEY, Metadata
from crosstest.payload import Payload, PayloadType, make_payload
from crosstest.rpc import (
    BidiStreamCall,
    CallContext,
    Channel,
    ClientStreamCall,
    LocalChannel,
    ServerStreamCall,
    UnaryResult,
)
from crosstest.service import (
    EchoStatus,
    Empty,
    ReferenceServer,
    ResponseParameters,
    SimpleRequest,
    SimpleResponse,
    StreamingInputCallRequest,
    StreamingInputCallResponse,
    StreamingOutputCallRequest,
    StreamingOutputCallResponse,
    StreamMode,
    TestServiceClient,
    TestServiceHandler,
    UnimplementedTestService,
)
from crosstest.utils import ArrowSerializableDataclass, ArrowType, IPCError

__all__ = [
    # Core
    "Code",
    "RpcError",
    "Metadata",
    "INITIAL_METADATA_KEY",
    "TRAILING_METADATA_KEY",
    # Payload
    "Payload",
    "PayloadType",
    "make_payload",
    # Messages
    "EchoStatus",
    "Empty",
    "ResponseParameters",
    "SimpleRequest",
    "SimpleResponse",
    "StreamingInputCallRequest",
    "StreamingInputCallResponse",
    "StreamingOutputCallRequest",
    "StreamingOutputCallResponse",
    # Service
    "ReferenceServer",
    "StreamMode",
    "TestServiceClient",
    "TestServiceHandler",
    "UnimplementedTestService",
    # Runtime
    "BidiStreamCall",
    "CallContext",
    "Channel",
    "ClientStreamCall",
    "LocalChannel",
    "ServerStreamCall",
    "UnaryResult",
    # Bindings
    "GrpcChannel",
    "HttpChannel",
    "make_grpc_server",
    "make_http_server",
    "make_wsgi_app",
    # Codecs
    "ArrowCodec",
    "Codec",
    "CodecError",
    "JsonCodec",
    "get_codec",
    # Scenarios
    "DEFAULT_TEST_TIMEOUT",
    "ConformanceResult",
    "ConformanceSuite",
    "list_conformance_tests",
    "run_conformance",
    # Serialization
    "ArrowSerializableDataclass",
    "ArrowType",
    "IPCError",
]

# Attach NullHandler to the package logger so library users don't get
# "No handler found" warnings.
logging.getLogger("crosstest").addHandler(logging.NullHandler())
