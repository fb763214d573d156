# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Server-side call context handed to every handler method."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, MutableMapping
from typing import TYPE_CHECKING, Any

from crosstest.errors import Code, RpcError
from crosstest.metadata import Metadata

if TYPE_CHECKING:
    from crosstest.service._protocol import MethodSpec

__all__ = ["CallContext"]


class _ContextLoggerAdapter(logging.LoggerAdapter[logging.Logger]):
    """LoggerAdapter that keeps the call's bound fields on every record.

    User-supplied ``extra`` is merged, bound fields win on key conflicts.
    """

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        """Merge user extra with bound extra, bound fields win on conflict."""
        user_extra = kwargs.get("extra", {})
        kwargs["extra"] = {**user_extra, **(self.extra or {})}
        return msg, kwargs


class CallContext:
    """Request-scoped state of one server call.

    Carries request metadata in, response metadata out, and the call's
    deadline and cancellation state.  Transport bindings create one per
    call and cancel it when the client goes away or the deadline passes.

    Attributes:
        method: The method being served.
        request_headers: Copy of the metadata the client sent.
        response_headers: Metadata sent before the first response.
        response_trailers: Metadata sent with the final status.
        protocol: Name of the binding serving the call.
        peer: Transport-specific client address.

    """

    __slots__ = (
        "_callbacks",
        "_done",
        "_error",
        "_lock",
        "_logger",
        "deadline",
        "method",
        "peer",
        "protocol",
        "request_headers",
        "response_headers",
        "response_trailers",
    )

    def __init__(
        self,
        method: MethodSpec,
        request_headers: Metadata | None = None,
        *,
        timeout: float | None = None,
        protocol: str = "",
        peer: str = "",
    ) -> None:
        """Initialize for one call.

        Args:
            method: The method being served.
            request_headers: Client metadata; copied.
            timeout: Seconds until the call's deadline, or ``None``.
            protocol: Binding name used in logs.
            peer: Client address used in logs.

        """
        self.method = method
        self.request_headers = request_headers.copy() if request_headers is not None else Metadata()
        self.response_headers = Metadata()
        self.response_trailers = Metadata()
        self.protocol = protocol
        self.peer = peer
        self.deadline: float | None = time.monotonic() + timeout if timeout is not None else None
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._error: RpcError | None = None
        self._callbacks: list[Callable[[RpcError], None]] = []
        self._logger: _ContextLoggerAdapter | None = None

    def time_remaining(self) -> float | None:
        """Seconds left before the deadline (never negative), or ``None``."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def cancelled(self) -> bool:
        """Whether the call was cancelled or its deadline has passed."""
        return self._done.is_set()

    @property
    def error(self) -> RpcError | None:
        """The terminal error set by :meth:`cancel`, if any."""
        return self._error

    def cancel(self, code: Code = Code.CANCELED, message: str = "") -> None:
        """Terminate the call; the first cancellation wins.

        Wakes any :meth:`wait` in progress and runs registered callbacks.
        """
        with self._lock:
            if self._error is not None:
                return
            self._error = RpcError(code, message or _default_message(code))
            callbacks = list(self._callbacks)
            self._done.set()
        for callback in callbacks:
            callback(self._error)

    def add_done_callback(self, callback: Callable[[RpcError], None]) -> None:
        """Register *callback* to run once the call is cancelled."""
        with self._lock:
            if self._error is None:
                self._callbacks.append(callback)
                return
        callback(self._error)

    def check(self) -> None:
        """Raise the call's terminal error if it was cancelled or timed out.

        Raises:
            RpcError: ``CANCELED`` or ``DEADLINE_EXCEEDED``.

        """
        if self._error is None and self.deadline is not None and time.monotonic() >= self.deadline:
            self.cancel(Code.DEADLINE_EXCEEDED)
        if self._error is not None:
            raise RpcError(self._error.code, self._error.message)

    def wait(self, seconds: float) -> None:
        """Sleep at least *seconds*, waking early only to fail the call.

        Raises:
            RpcError: If the call is cancelled or its deadline passes first.

        """
        end = time.monotonic() + seconds
        while True:
            self.check()
            remaining = end - time.monotonic()
            if remaining <= 0:
                return
            budget = self.time_remaining()
            self._done.wait(remaining if budget is None else min(remaining, budget))

    @property
    def logger(self) -> logging.LoggerAdapter[logging.Logger]:
        """Server-side logger with call context pre-bound.

        Returns:
            A ``LoggerAdapter`` named ``crosstest.service.<Service>`` that
            always includes ``method``, ``protocol`` and ``peer``.

        """
        if self._logger is None:
            service = self.method.service.rsplit(".", 1)[-1]
            base = logging.getLogger(f"crosstest.service.{service}")
            extra: dict[str, object] = {
                "method": self.method.name,
                "protocol": self.protocol,
                "peer": self.peer,
            }
            self._logger = _ContextLoggerAdapter(base, extra)
        return self._logger


def _default_message(code: Code) -> str:
    if code is Code.DEADLINE_EXCEEDED:
        return "deadline exceeded"
    if code is Code.CANCELED:
        return "call canceled"
    return code.wire_name
