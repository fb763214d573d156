# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Shared test fixtures for crosstest tests."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator

import httpx
import pytest

from crosstest.codec import get_codec
from crosstest.grpc import GrpcChannel, make_grpc_server
from crosstest.http import HttpChannel, make_http_server
from crosstest.rpc import LocalChannel
from crosstest.service import ReferenceServer, TestServiceClient

ClientFactory = Callable[[], TestServiceClient]
"""Type alias for the ``make_client`` fixture return type."""


def _wait_for_http(port: int, timeout: float = 5.0) -> None:
    """Poll until the HTTP server is accepting connections."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            _ = httpx.get(f"http://127.0.0.1:{port}/", timeout=5.0)
            return
        except (httpx.ConnectError, httpx.ConnectTimeout):
            time.sleep(0.05)
    raise TimeoutError(f"HTTP server on port {port} did not start within {timeout}s")


@pytest.fixture
def reference_server() -> ReferenceServer:
    """A fresh reference handler."""
    return ReferenceServer()


@pytest.fixture(scope="session")
def http_base_url() -> Iterator[str]:
    """Run the reference server on waitress in a daemon thread for the whole session."""
    server = make_http_server(ReferenceServer(), host="127.0.0.1", port=0, threads=16)
    port = int(server.effective_port)  # type: ignore[union-attr]
    thread = threading.Thread(target=server.run, daemon=True, name="crosstest-test-http")
    thread.start()
    _wait_for_http(port)
    yield f"http://127.0.0.1:{port}"
    server.close()


@pytest.fixture(scope="session")
def grpc_target() -> Iterator[str]:
    """Run the reference server on grpcio for the whole session."""
    server, port = make_grpc_server(ReferenceServer(), host="127.0.0.1", port=0, max_workers=32)
    server.start()
    yield f"127.0.0.1:{port}"
    server.stop(None)


@pytest.fixture(scope="session")
def grpc_json_target() -> Iterator[str]:
    """A second grpcio server that speaks the JSON codec."""
    server, port = make_grpc_server(ReferenceServer(), host="127.0.0.1", port=0, codec=get_codec("json"))
    server.start()
    yield f"127.0.0.1:{port}"
    server.stop(None)


# ---------------------------------------------------------------------------
# Fixture: make_client, parametrized over every binding and codec
# ---------------------------------------------------------------------------


@pytest.fixture(params=["local", "local-json", "http", "http-json", "grpc", "grpc-json"])
def make_client(
    request: pytest.FixtureRequest,
    http_base_url: str,
    grpc_target: str,
    grpc_json_target: str,
) -> Iterator[ClientFactory]:
    """Return a factory of clients bound to the reference server.

    Parametrized over the in-process, HTTP and gRPC bindings, each with the
    Arrow and JSON codecs, so tests run against all six.
    """
    created: list[TestServiceClient] = []
    protocol, _, codec_name = request.param.partition("-")
    codec = get_codec(codec_name or "arrow")

    def factory() -> TestServiceClient:
        if protocol == "local":
            client = TestServiceClient(LocalChannel(ReferenceServer(), codec=codec))
        elif protocol == "http":
            client = TestServiceClient(HttpChannel(http_base_url, codec=codec))
        else:
            target = grpc_json_target if codec_name == "json" else grpc_target
            client = TestServiceClient(GrpcChannel(target, codec=codec))
        created.append(client)
        return client

    yield factory
    for client in created:
        client.close()
