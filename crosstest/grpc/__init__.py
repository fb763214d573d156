# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""gRPC binding over HTTP/2, built on grpcio.

Method paths are the standard ``/grpc.testing.TestService/<Method>``;
message bodies use the configured codec (Arrow IPC by default), so a
crosstest client and server interoperate but a protobuf peer does not.

Server::

    server, port = make_grpc_server(ReferenceServer(), port=0)
    server.start()

Client::

    with TestServiceClient(GrpcChannel(f"127.0.0.1:{port}")) as client:
        client.empty_call()

"""

from crosstest.grpc._client import GrpcChannel
from crosstest.grpc._common import from_grpc_status, to_grpc_status
from crosstest.grpc._server import make_grpc_server

__all__ = ["GrpcChannel", "from_grpc_status", "make_grpc_server", "to_grpc_status"]
