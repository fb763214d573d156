# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Command-line interface for crosstest.

Provides ``serve`` to run the reference server over a network binding and
``test`` to run the scenario library against any server.

Usage::

    crosstest serve --protocol http --port 8080
    crosstest serve --protocol grpc
    crosstest test --protocol local
    crosstest test --protocol http --url http://127.0.0.1:8080 --filter "unary*,status*"
    crosstest test --protocol grpc --target 127.0.0.1:50051 --format json
    crosstest test --list

"""

from __future__ import annotations

import importlib.metadata
import json
import logging
import socket
import sys
from collections.abc import Callable
from enum import StrEnum
from typing import Annotated

import typer
import waitress

from crosstest.codec import get_codec
from crosstest.conformance import (
    DEFAULT_TEST_TIMEOUT,
    ConformanceResult,
    ConformanceSuite,
    list_conformance_tests,
    run_conformance,
)
from crosstest.grpc import GrpcChannel, make_grpc_server
from crosstest.http import HttpChannel, make_wsgi_app
from crosstest.rpc import Channel, LocalChannel
from crosstest.service import ReferenceServer, TestServiceClient

# ---------------------------------------------------------------------------
# Option enums
# ---------------------------------------------------------------------------


class OutputFormat(StrEnum):
    """Output format for test results."""

    auto = "auto"
    json = "json"
    table = "table"


class ServeProtocol(StrEnum):
    """Network bindings the reference server can be served over."""

    http = "http"
    grpc = "grpc"


class TestProtocol(StrEnum):
    """Bindings the scenario runner can drive."""

    local = "local"
    http = "http"
    grpc = "grpc"


class LogFormat(StrEnum):
    """Stderr log format."""

    text = "text"
    json = "json"


_KNOWN_LOGGERS: tuple[tuple[str, str], ...] = (
    ("crosstest", "Root logger for all crosstest output"),
    ("crosstest.access", "One structured record per completed server call"),
    ("crosstest.rpc", "Handler dispatch and unexpected handler failures"),
    ("crosstest.http", "HTTP binding lifecycle"),
    ("crosstest.grpc", "gRPC binding lifecycle"),
    ("crosstest.local", "In-process binding lifecycle"),
    ("crosstest.conformance", "One record per scenario result"),
)

app = typer.Typer(
    name="crosstest",
    help="RPC interop conformance suite: reference server and scenario runner.",
    add_completion=False,
    no_args_is_help=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _configure_logging(level: str | None, log_format: LogFormat) -> None:
    """Attach a stderr handler to the ``crosstest`` logger at *level*."""
    if level is None:
        return
    handler = logging.StreamHandler(sys.stderr)
    if log_format is LogFormat.json:
        from crosstest.logging_utils import CrosstestJsonFormatter

        handler.setFormatter(CrosstestJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(name)-24s %(levelname)-5s %(message)s"))
    try:
        numeric_level = logging.getLevelNamesMapping()[level.upper()]
    except KeyError:
        raise typer.BadParameter(f"unknown log level {level!r}", param_hint="--log-level") from None
    logger = logging.getLogger("crosstest")
    logger.setLevel(numeric_level)
    logger.addHandler(handler)


def _free_port(host: str) -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return int(s.getsockname()[1])


def _format_table(suite: ConformanceSuite) -> str:
    """Format results as a human-readable table."""
    lines: list[str] = []
    lines.append(
        f"crosstest: {suite.passed} passed, {suite.failed} failed, {suite.skipped} skipped"
        f" ({suite.duration_ms / 1000:.2f}s)"
    )
    lines.append("")

    for r in suite.results:
        status = "SKIP" if r.skipped else "PASS" if r.passed else "FAIL"
        lines.append(f"  {r.name:<50s} {status:>4s}  {r.duration_ms:>7.1f}ms")
        if r.error:
            lines.append(f"    {r.error}")

    return "\n".join(lines)


def _format_json(suite: ConformanceSuite) -> str:
    """Format results as JSON."""
    data: dict[str, object] = {
        "total": suite.total,
        "passed": suite.passed,
        "failed": suite.failed,
        "skipped": suite.skipped,
        "duration_ms": round(suite.duration_ms, 1),
        "results": [
            {
                "name": r.name,
                "category": r.category,
                "passed": r.passed,
                "skipped": r.skipped,
                "duration_ms": round(r.duration_ms, 1),
                "error": r.error,
            }
            for r in suite.results
        ],
    }
    return json.dumps(data, indent=2, ensure_ascii=False)


def _make_progress_callback() -> Callable[[ConformanceResult], None] | None:
    """Create a progress callback for real-time output on TTY stderr."""
    if not sys.stderr.isatty():
        return None

    def _progress(result: ConformanceResult) -> None:
        status = "SKIP" if result.skipped else "PASS" if result.passed else "FAIL"
        sys.stderr.write(f"  {result.name:<50s} {status}\n")
        sys.stderr.flush()

    return _progress


def _open_channel(protocol: TestProtocol, url: str | None, target: str | None, codec_name: str) -> Channel:
    codec = get_codec(codec_name)
    match protocol:
        case TestProtocol.local:
            return LocalChannel(ReferenceServer(), codec=codec)
        case TestProtocol.http:
            if not url:
                raise typer.BadParameter("--url is required with --protocol http", param_hint="--url")
            return HttpChannel(url, codec=codec)
        case TestProtocol.grpc:
            if not target:
                raise typer.BadParameter("--target is required with --protocol grpc", param_hint="--target")
            return GrpcChannel(target, codec=codec)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def serve(
    protocol: Annotated[ServeProtocol, typer.Option("--protocol", "-p", help="Binding to serve")] = ServeProtocol.http,
    host: Annotated[str, typer.Option("--host", help="Interface to bind")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", help="Port to bind; 0 picks a free one")] = 0,
    codec: Annotated[str, typer.Option("--codec", help="Message codec (gRPC only; HTTP negotiates)")] = "arrow",
    log_level: Annotated[str | None, typer.Option("--log-level", help="Logging level for crosstest loggers")] = None,
    log_format: Annotated[LogFormat, typer.Option("--log-format", help="Stderr log format")] = LogFormat.text,
) -> None:
    """Serve the reference server until interrupted; prints ``PORT:<n>`` once listening."""
    _configure_logging(log_level, log_format)
    try:
        message_codec = get_codec(codec)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--codec") from None
    handler = ReferenceServer()
    if protocol is ServeProtocol.grpc:
        server, bound_port = make_grpc_server(handler, host=host, port=port, codec=message_codec)
        server.start()
        typer.echo(f"PORT:{bound_port}")
        try:
            server.wait_for_termination()
        except KeyboardInterrupt:
            server.stop(grace=1.0)
        return
    if port == 0:
        port = _free_port(host)
    wsgi_app = make_wsgi_app(handler)
    typer.echo(f"PORT:{port}")
    waitress.serve(wsgi_app, host=host, port=port, _quiet=True)


@app.command()
def test(
    protocol: Annotated[TestProtocol, typer.Option("--protocol", "-p", help="Binding to test")] = TestProtocol.local,
    url: Annotated[str | None, typer.Option("--url", "-u", help="HTTP base URL (http)")] = None,
    target: Annotated[str | None, typer.Option("--target", "-t", help="host:port (grpc)")] = None,
    codec: Annotated[str, typer.Option("--codec", help="Message codec: arrow or json")] = "arrow",
    filter_: Annotated[
        str | None, typer.Option("--filter", "-k", help="Comma-separated glob patterns (e.g. 'unary*,status*')")
    ] = None,
    list_: Annotated[bool, typer.Option("--list", "-l", help="List available scenarios and exit")] = False,
    fmt: Annotated[OutputFormat, typer.Option("--format", "-f", help="Output format")] = OutputFormat.auto,
    output: Annotated[str | None, typer.Option("--output", "-o", help="Output file (default: stdout)")] = None,
    timeout: Annotated[
        float, typer.Option("--timeout", help="Per-scenario timeout in seconds; 0 disables")
    ] = DEFAULT_TEST_TIMEOUT,
    log_level: Annotated[str | None, typer.Option("--log-level", help="Logging level for crosstest loggers")] = None,
    log_format: Annotated[LogFormat, typer.Option("--log-format", help="Stderr log format")] = LogFormat.text,
) -> None:
    """Run the scenario library; exits 0 when nothing failed, 1 otherwise."""
    filter_patterns: list[str] | None = None
    if filter_:
        filter_patterns = [p.strip() for p in filter_.split(",") if p.strip()]

    if list_:
        for name in list_conformance_tests(filter_patterns):
            typer.echo(name)
        raise typer.Exit(0)

    _configure_logging(log_level, log_format)
    try:
        channel = _open_channel(protocol, url, target, codec)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--codec") from None

    if fmt is OutputFormat.auto:
        fmt = OutputFormat.table if sys.stdout.isatty() else OutputFormat.json

    try:
        with TestServiceClient(channel) as client:
            suite = run_conformance(
                client,
                filter_patterns=filter_patterns,
                on_progress=_make_progress_callback() if fmt is OutputFormat.table else None,
                timeout=timeout,
            )
    except KeyboardInterrupt:
        typer.echo("Interrupted", err=True)
        raise typer.Exit(2) from None
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2) from None

    output_text = _format_json(suite) if fmt is OutputFormat.json else _format_table(suite)
    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(output_text + "\n")
    else:
        typer.echo(output_text)
    raise typer.Exit(0 if suite.success else 1)


@app.command()
def loggers() -> None:
    """List the logger names crosstest emits to."""
    for name, description in _KNOWN_LOGGERS:
        typer.echo(f"{name:<24s} {description}")


@app.command()
def version() -> None:
    """Show the installed crosstest version."""
    try:
        installed = importlib.metadata.version("crosstest")
    except importlib.metadata.PackageNotFoundError:
        installed = "unknown"
    typer.echo(f"crosstest {installed}")


if __name__ == "__main__":
    app()
