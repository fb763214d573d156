# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""RPC runtime seam shared by the transport bindings.

Server side: :class:`CallContext` is handed to every handler call and
:func:`invoke` / :class:`ServerCall` run a handler method and account for
its outcome.  Client side: a :class:`Channel` carries calls for one binding
and the typed call objects (:class:`ServerStreamCall`,
:class:`ClientStreamCall`, :class:`BidiStreamCall`) drive streaming calls
with uniform cancellation semantics.  :class:`LocalChannel` is the
in-process binding.
"""

from crosstest.rpc._calls import (
    BidiStreamCall,
    Channel,
    ClientStreamCall,
    ServerStreamCall,
    StreamTransport,
    UnaryResult,
)
from crosstest.rpc._context import CallContext
from crosstest.rpc._dispatch import ServerCall, invoke
from crosstest.rpc._local import LocalChannel

__all__ = [
    "BidiStreamCall",
    "CallContext",
    "Channel",
    "ClientStreamCall",
    "LocalChannel",
    "ServerCall",
    "ServerStreamCall",
    "StreamTransport",
    "UnaryResult",
    "invoke",
]
