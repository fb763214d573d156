# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Falcon WSGI server for the HTTP binding.

Routes ``POST {prefix}/{service}/{method}``.  Unary calls answer with a
single encoded message (or a JSON error and a mapped HTTP status); streaming
calls answer with enveloped messages terminated by an end-of-stream message
carrying the status and trailers.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from typing import Any, Final

import falcon
import waitress
from waitress.server import BaseWSGIServer, MultiSocketServer

from crosstest.codec import ArrowCodec, Codec, JsonCodec, decode_request
from crosstest.errors import Code, RpcError
from crosstest.http._common import (
    _ERROR_CONTENT_TYPE,
    FLAG_END_STREAM,
    TIMEOUT_HEADER,
    TRAILER_PREFIX,
    _RpcHttpError,
    encode_envelope,
    end_stream_body,
    error_to_json,
    headers_from_metadata,
    metadata_from_headers,
    parse_content_type,
    parse_timeout,
    split_envelopes,
    stream_content_type,
    unary_content_type,
)
from crosstest.rpc._context import CallContext
from crosstest.rpc._dispatch import ServerCall, invoke
from crosstest.service._protocol import MethodSpec, find_method

__all__ = ["make_http_server", "make_wsgi_app"]

_logger = logging.getLogger("crosstest.http")

_NOTHING: Final = object()


def _set_error_response(resp: falcon.Response, error: RpcError, *, status_code: int | None = None) -> None:
    """Set a Falcon response to a JSON error body."""
    resp.status = str(status_code if status_code is not None else error.code.http_status)
    resp.content_type = _ERROR_CONTENT_TYPE
    resp.data = json.dumps(error_to_json(error)).encode("utf-8")


def _append_headers(resp: falcon.Response, pairs: Iterable[tuple[str, str]]) -> None:
    for name, value in pairs:
        resp.append_header(name, value)


class _HttpRpcApp:
    """Binds a handler to the request/response protocol."""

    def __init__(self, handler: object, codecs: dict[str, Codec]) -> None:
        self._handler = handler
        self._codecs = codecs

    def _negotiate(self, req: falcon.Request, spec: MethodSpec) -> tuple[bool, Codec]:
        try:
            is_stream, codec_name = parse_content_type(req.content_type or "")
            codec = self._codecs[codec_name]
        except (ValueError, KeyError):
            raise _RpcHttpError(
                RpcError(Code.INTERNAL, f"Unsupported Content-Type {req.content_type!r}"), status_code=415
            ) from None
        if is_stream != (spec.shape.client_streams or spec.shape.server_streams):
            kind = "streaming" if is_stream else "unary"
            raise _RpcHttpError(
                RpcError(Code.INTERNAL, f"{spec.path} is not a {kind} method"), status_code=415
            )
        return is_stream, codec

    def _context(self, req: falcon.Request, spec: MethodSpec) -> CallContext:
        try:
            metadata, _ = metadata_from_headers(req.headers.items())
            timeout = parse_timeout(req.get_header(TIMEOUT_HEADER))
        except ValueError as e:
            raise _RpcHttpError(RpcError(Code.INVALID_ARGUMENT, str(e))) from None
        return CallContext(spec, metadata, timeout=timeout, protocol="http", peer=req.remote_addr or "")

    def handle(self, req: falcon.Request, resp: falcon.Response, path: str) -> None:
        spec = find_method(path)
        try:
            if spec is None:
                raise _RpcHttpError(RpcError(Code.UNIMPLEMENTED, f"{path} is not implemented"))
            is_stream, codec = self._negotiate(req, spec)
            ctx = self._context(req, spec)
        except _RpcHttpError as e:
            _logger.debug("Rejected %s: %s", path, e.error, extra={"path": path, "code": e.error.code.wire_name})
            _set_error_response(resp, e.error, status_code=e.status_code)
            return
        body = req.bounded_stream.read()
        if is_stream:
            self._serve_stream(resp, spec, codec, ctx, body)
        else:
            self._serve_unary(resp, spec, codec, ctx, body)

    def _serve_unary(
        self, resp: falcon.Response, spec: MethodSpec, codec: Codec, ctx: CallContext, body: bytes
    ) -> None:
        call = ServerCall(ctx)
        response: Any = None
        exc: Exception | None = None
        try:
            (response,) = invoke(self._handler, spec, ctx, iter([decode_request(codec, body, spec.request_type)]))
        except Exception as e:
            exc = e
        error = call.finish(exc)
        _append_headers(resp, headers_from_metadata(ctx.response_headers))
        _append_headers(resp, headers_from_metadata(ctx.response_trailers, prefix=TRAILER_PREFIX))
        if error is not None:
            _set_error_response(resp, error)
            return
        resp.status = "200"
        resp.content_type = unary_content_type(codec.name)
        resp.data = codec.encode(response)

    def _serve_stream(
        self, resp: falcon.Response, spec: MethodSpec, codec: Codec, ctx: CallContext, body: bytes
    ) -> None:
        call = ServerCall(ctx)

        def requests() -> Iterator[Any]:
            for flags, data in split_envelopes(body):
                if flags & FLAG_END_STREAM:
                    return
                ctx.check()
                yield decode_request(codec, data, spec.request_type)

        responses = invoke(self._handler, spec, ctx, requests())
        # Response headers must be final before the first body byte, and
        # handlers set them before producing their first response.
        first: Any = _NOTHING
        exc: Exception | None = None
        try:
            first = next(responses)
        except StopIteration:
            pass
        except Exception as e:
            exc = e
        resp.status = "200"
        resp.content_type = stream_content_type(codec.name)
        _append_headers(resp, headers_from_metadata(ctx.response_headers))
        resp.stream = self._stream_body(call, ctx, codec, responses, first, exc)

    def _stream_body(
        self,
        call: ServerCall,
        ctx: CallContext,
        codec: Codec,
        responses: Iterator[Any],
        first: Any,
        exc: Exception | None,
    ) -> Iterator[bytes]:
        if first is not _NOTHING:
            try:
                yield encode_envelope(codec.encode(first))
                for response in responses:
                    yield encode_envelope(codec.encode(response))
            except GeneratorExit:
                # The WSGI server closed the body: the client went away.
                ctx.cancel(Code.CANCELED, "client disconnected")
                call.finish(RpcError(Code.CANCELED, "client disconnected"))
                raise
            except Exception as e:
                exc = e
        error = call.finish(exc)
        yield encode_envelope(end_stream_body(error, ctx.response_trailers), FLAG_END_STREAM)


class _RpcResource:
    """Falcon resource for every call: ``POST {prefix}/{service}/{method}``."""

    def __init__(self, app: _HttpRpcApp) -> None:
        self._app = app

    def on_post(self, req: falcon.Request, resp: falcon.Response, service: str, method: str) -> None:
        """Dispatch one call."""
        self._app.handle(req, resp, f"/{service}/{method}")


def make_wsgi_app(
    handler: object,
    *,
    prefix: str = "",
    codecs: Iterable[Codec] | None = None,
) -> falcon.App[falcon.Request, falcon.Response]:
    """Create a Falcon WSGI app serving *handler* over the HTTP binding.

    Args:
        handler: Test Service implementation.
        prefix: URL prefix in front of ``/{service}/{method}``.
        codecs: Accepted codecs; Arrow and JSON by default.

    Returns:
        A Falcon application.

    """
    available = {c.name: c for c in (codecs if codecs is not None else (ArrowCodec(), JsonCodec()))}
    app: falcon.App[falcon.Request, falcon.Response] = falcon.App()
    app.add_route(f"{prefix}/{{service}}/{{method}}", _RpcResource(_HttpRpcApp(handler, available)))
    _logger.info(
        "WSGI app created for %s (prefix=%r, codecs=%s)",
        type(handler).__name__,
        prefix,
        ",".join(sorted(available)),
        extra={"prefix": prefix, "codecs": sorted(available)},
    )
    return app


def make_http_server(
    handler: object,
    *,
    host: str = "127.0.0.1",
    port: int = 0,
    threads: int = 8,
    prefix: str = "",
) -> BaseWSGIServer | MultiSocketServer:
    """Create (but do not start) a waitress server for *handler*.

    Call ``run()`` on the result to serve, ``close()`` to stop.  With
    ``port=0`` the bound port is ``server.effective_port``.
    """
    app = make_wsgi_app(handler, prefix=prefix)
    return waitress.create_server(app, host=host, port=port, threads=threads)
