# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""HTTP binding using Falcon (server) and httpx (client).

Provides ``make_wsgi_app`` to expose a Test Service handler as a Falcon WSGI
application, ``make_http_server`` to serve it with waitress, and
``HttpChannel`` to call it from Python with ``httpx``.

HTTP Wire Protocol
------------------
Every call is ``POST {prefix}/{service}/{method}``.

- **Unary**: ``Content-Type: application/{arrow|json}``.  The body is one
  encoded message.  Response headers carry header metadata, trailers are
  sent as ``trailer-<key>`` headers.  Errors are a JSON
  ``{"code", "message"}`` body with a matching HTTP status.
- **Streaming**: ``Content-Type: application/connect+{arrow|json}``.
  Bodies are sequences of envelopes (1 flag byte, 4-byte big-endian
  length, message).  The response ends with an envelope flagged ``0x02``
  holding JSON ``{"error"?, "metadata"?}``: final status and trailers.
- Deadlines travel as ``connect-timeout-ms``; binary (``-bin``) metadata
  values are base64.

Interleaved full-duplex calls need concurrent request and response bodies,
which HTTP/1.1 cannot provide; ``HttpChannel.supports`` reports them as
unsupported.
"""

from crosstest.http._client import HttpChannel
from crosstest.http._common import (
    FLAG_END_STREAM,
    TIMEOUT_HEADER,
    EnvelopeReader,
    encode_envelope,
)
from crosstest.http._server import make_http_server, make_wsgi_app

__all__ = [
    "FLAG_END_STREAM",
    "TIMEOUT_HEADER",
    "EnvelopeReader",
    "HttpChannel",
    "encode_envelope",
    "make_http_server",
    "make_wsgi_app",
]
