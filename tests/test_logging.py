# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for server-side logging: access log, handler errors, JSON formatter."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from typing import Any

import pytest

from crosstest.errors import Code, RpcError
from crosstest.logging_utils import CrosstestJsonFormatter
from crosstest.metadata import Metadata
from crosstest.rpc import CallContext, LocalChannel
from crosstest.rpc._context import _ContextLoggerAdapter
from crosstest.service import (
    HALF_DUPLEX_CALL,
    UNARY_CALL,
    MethodShape,
    ReferenceServer,
    ResponseParameters,
    SimpleRequest,
    SimpleResponse,
    StreamingOutputCallRequest,
    TestServiceClient,
)


def _extra(record: logging.LogRecord, key: str) -> Any:
    """Read a dynamic extra field from a log record without ``type: ignore``."""
    return record.__dict__[key]


class _RaisingServer(ReferenceServer):
    def unary_call(self, request: SimpleRequest, ctx: CallContext) -> SimpleResponse:
        ctx.logger.info("about to fail", extra={"attempt": 1})
        raise ZeroDivisionError("division by zero")


@pytest.fixture
def client() -> Iterator[TestServiceClient]:
    """In-process client against the reference server."""
    with TestServiceClient(LocalChannel(ReferenceServer())) as c:
        yield c


class TestAccessLog:
    """One record per completed call on ``crosstest.access``."""

    def test_ok_call(self, client: TestServiceClient, caplog: pytest.LogCaptureFixture) -> None:
        """A successful unary call logs status ok with its method details."""
        with caplog.at_level(logging.INFO, logger="crosstest.access"):
            client.unary_call(SimpleRequest(response_size=1))
        (record,) = [r for r in caplog.records if r.name == "crosstest.access"]
        assert _extra(record, "method") == "UnaryCall"
        assert _extra(record, "service") == "grpc.testing.TestService"
        assert _extra(record, "method_type") == "unary"
        assert _extra(record, "protocol") == "local"
        assert _extra(record, "status") == "ok"
        assert _extra(record, "code") == "ok"
        assert _extra(record, "duration_ms") >= 0

    def test_error_call(self, client: TestServiceClient, caplog: pytest.LogCaptureFixture) -> None:
        """A failed call logs status error with the code's wire name."""
        with caplog.at_level(logging.INFO, logger="crosstest.access"), pytest.raises(RpcError):
            client.fail_unary_call()
        (record,) = [r for r in caplog.records if r.name == "crosstest.access"]
        assert _extra(record, "status") == "error"
        assert _extra(record, "code") == "resource_exhausted"

    def test_streaming_call_logged_once(self, client: TestServiceClient, caplog: pytest.LogCaptureFixture) -> None:
        """Streams are logged when they end, not per message."""
        request = StreamingOutputCallRequest(response_parameters=[ResponseParameters(size=1)] * 3)
        with caplog.at_level(logging.INFO, logger="crosstest.access"):
            assert len(list(client.streaming_output_call(request))) == 3
        records = [r for r in caplog.records if r.name == "crosstest.access"]
        assert len(records) == 1
        assert _extra(records[0], "method_type") == "server_stream"

    def test_disabled_by_default(self, client: TestServiceClient, caplog: pytest.LogCaptureFixture) -> None:
        """Nothing is emitted while the logger is above INFO."""
        with caplog.at_level(logging.WARNING, logger="crosstest.access"):
            client.empty_call()
        assert not [r for r in caplog.records if r.name == "crosstest.access"]


class TestHandlerErrors:
    """Handler bugs are logged with their traceback and reported as UNKNOWN."""

    def test_bug_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """The original exception reaches ``crosstest.rpc`` at ERROR."""
        with caplog.at_level(logging.INFO, logger="crosstest"):
            with TestServiceClient(LocalChannel(_RaisingServer())) as c, pytest.raises(RpcError) as exc_info:
                c.unary_call(SimpleRequest())
        assert exc_info.value.code is Code.UNKNOWN
        (record,) = [r for r in caplog.records if r.name == "crosstest.rpc"]
        assert record.levelno == logging.ERROR
        assert record.exc_info is not None
        assert _extra(record, "error_type") == "ZeroDivisionError"

    def test_rpc_errors_not_logged_as_bugs(self, client: TestServiceClient, caplog: pytest.LogCaptureFixture) -> None:
        """Deliberate RpcErrors are statuses, not bugs."""
        with caplog.at_level(logging.INFO, logger="crosstest"), pytest.raises(RpcError):
            client.fail_unary_call()
        assert not [r for r in caplog.records if r.name == "crosstest.rpc"]

    def test_context_logger(self, caplog: pytest.LogCaptureFixture) -> None:
        """``ctx.logger`` binds method, protocol and peer to handler records."""
        with caplog.at_level(logging.INFO, logger="crosstest"):
            with TestServiceClient(LocalChannel(_RaisingServer())) as c, pytest.raises(RpcError):
                c.unary_call(SimpleRequest())
        (record,) = [r for r in caplog.records if r.name == "crosstest.service.TestService"]
        assert record.getMessage() == "about to fail"
        assert _extra(record, "method") == "UnaryCall"
        assert _extra(record, "peer") == "local"
        assert _extra(record, "attempt") == 1


class TestContextLoggerAdapter:
    """Bound fields win over caller extras."""

    def test_bound_fields_win(self) -> None:
        """A caller cannot overwrite the bound ``method``."""
        adapter = _ContextLoggerAdapter(logging.getLogger("x"), {"method": "UnaryCall"})
        _, kwargs = adapter.process("msg", {"extra": {"method": "other", "k": 1}})
        assert kwargs["extra"] == {"method": "UnaryCall", "k": 1}


class TestJsonFormatter:
    """CrosstestJsonFormatter output."""

    def _record(self, **extra: Any) -> logging.LogRecord:
        record = logging.LogRecord("crosstest.access", logging.INFO, __file__, 1, "%s done", ("call",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def _format(self, record: logging.LogRecord) -> dict[str, Any]:
        obj: dict[str, Any] = json.loads(CrosstestJsonFormatter().format(record))
        return obj

    def test_fields(self) -> None:
        """Standard fields and extras appear in one JSON object."""
        obj = self._format(self._record(code="ok", duration_ms=1.5))
        assert obj["logger"] == "crosstest.access"
        assert obj["level"] == "INFO"
        assert obj["message"] == "call done"
        assert obj["code"] == "ok"
        assert obj["duration_ms"] == 1.5

    def test_timestamp_is_iso_utc(self) -> None:
        """Timestamps are ISO-8601 in UTC with milliseconds."""
        record = self._record()
        record.created = 0.25
        assert self._format(record)["timestamp"] == "1970-01-01T00:00:00.250+00:00"

    def test_reserved_keys_not_overwritten(self) -> None:
        """An extra named ``level`` cannot replace the record level."""
        assert self._format(self._record(level="bogus"))["level"] == "INFO"

    def test_code_by_wire_name(self) -> None:
        """Status codes are written by wire name, not as integers."""
        obj = self._format(self._record(code=Code.DEADLINE_EXCEEDED, codes=[Code.OK, Code.CANCELED]))
        assert obj["code"] == "deadline_exceeded"
        assert obj["codes"] == ["ok", "canceled"]

    def test_bytes_as_base64(self) -> None:
        """Binary values use the same unpadded base64 as ``-bin`` headers."""
        assert self._format(self._record(value=b"\x0a\x0b\x0a\x0b"))["value"] == "CgsKCw"

    def test_metadata(self) -> None:
        """Metadata becomes a key-to-values object with binary values encoded."""
        md = Metadata([("x-grpc-test-echo-initial", "v"), ("x-grpc-test-echo-trailing-bin", b"\xab\xab\xab")])
        obj = self._format(self._record(headers=md))
        assert obj["headers"] == {"x-grpc-test-echo-initial": ["v"], "x-grpc-test-echo-trailing-bin": ["q6ur"]}

    def test_rpc_error_and_method(self) -> None:
        """Errors render as code and message; methods as their path."""
        obj = self._format(self._record(error=RpcError(Code.RESOURCE_EXHAUSTED, "soirée 🎉"), method=UNARY_CALL))
        assert obj["error"] == {"code": "resource_exhausted", "message": "soirée 🎉"}
        assert obj["method"] == "/grpc.testing.TestService/UnaryCall"

    def test_non_ascii_kept(self) -> None:
        """Non-ASCII text is written as is."""
        line = CrosstestJsonFormatter().format(self._record(note="soirée", shape=MethodShape.UNARY))
        assert "soirée" in line
        assert json.loads(line)["shape"] == "unary"

    def test_exception(self) -> None:
        """Exception info is rendered under ``exception``."""
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        obj = self._format(record)
        assert "ValueError: boom" in obj["exception"]
        assert "error_code" not in obj

    def test_rpc_error_exception_code(self) -> None:
        """An RpcError exception adds its code as ``error_code``."""
        try:
            raise RpcError(Code.UNAVAILABLE, "down")
        except RpcError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        assert self._format(record)["error_code"] == "unavailable"


class TestHalfDuplexDebugLog:
    """The handler's debug log carries the bound call fields."""

    def test_buffered_count(self, client: TestServiceClient, caplog: pytest.LogCaptureFixture) -> None:
        """Buffered half-duplex calls log how many requests they buffered."""
        assert client.supports(HALF_DUPLEX_CALL)
        with caplog.at_level(logging.DEBUG, logger="crosstest.service"):
            call = client.half_duplex_call()
            call.send(StreamingOutputCallRequest(response_parameters=[ResponseParameters(size=1)]))
            call.close_send()
            assert len(list(call)) == 1
        (record,) = [r for r in caplog.records if r.name == "crosstest.service.TestService"]
        assert record.getMessage() == "Buffered 1 requests"
        assert _extra(record, "method") == "HalfDuplexCall"
