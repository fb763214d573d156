# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""JSON log formatter that understands crosstest values.

:class:`CrosstestJsonFormatter` writes one JSON object per record with an
ISO-8601 UTC timestamp.  Fields passed through ``extra`` (the access log's
``code``, the runner's ``scenario``, a handler's bound ``method``) are
emitted next to the standard ones, rendered the way they travel on the
wire:

- :class:`~crosstest.errors.Code` as its wire name (``"deadline_exceeded"``)
- :class:`~crosstest.errors.RpcError` as ``{"code", "message"}``
- :class:`~crosstest.metadata.Metadata` as ``{key: [values]}``
- ``bytes`` as unpadded base64, as in ``-bin`` headers
- :class:`~crosstest.service.MethodSpec` as its path

The CLI installs it with ``--log-format json``; elsewhere import it
explicitly::

    from crosstest.logging_utils import CrosstestJsonFormatter
"""

from __future__ import annotations

import datetime
import json
import logging
from enum import Enum
from typing import Any

from crosstest.errors import Code, RpcError
from crosstest.metadata import Metadata, encode_binary_header
from crosstest.service._protocol import MethodSpec

__all__ = ["CrosstestJsonFormatter"]

# Anything not in this set was injected via ``extra``.
_RECORD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
}

_OWN_KEYS: frozenset[str] = frozenset({"timestamp", "level", "logger", "message", "exception", "error_code"})


def _render(value: Any) -> Any:
    """Convert *value* into something ``json.dumps`` writes the way the wire does."""
    # Code is an IntEnum: it must be caught before json sees it as an int.
    if isinstance(value, Code):
        return value.wire_name
    if isinstance(value, RpcError):
        return {"code": value.code.wire_name, "message": value.message}
    if isinstance(value, Metadata):
        rendered: dict[str, list[Any]] = {}
        for key, item in value.items():
            rendered.setdefault(key, []).append(_render(item))
        return rendered
    if isinstance(value, (bytes, bytearray)):
        return encode_binary_header(bytes(value))
    if isinstance(value, MethodSpec):
        return value.path
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _render(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_render(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


class CrosstestJsonFormatter(logging.Formatter):
    """Single-line JSON formatter for crosstest loggers.

    ``timestamp``, ``level``, ``logger`` and ``message`` always come from the
    record and are never replaced by extra fields of the same name.  When the
    record carries an :class:`RpcError` as its exception, its code is added
    as ``error_code`` so failed calls can be filtered without parsing the
    traceback.
    """

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:  # noqa: N802
        """Render the record time as ISO-8601 UTC with milliseconds."""
        created = datetime.datetime.fromtimestamp(record.created, tz=datetime.UTC)
        if datefmt:
            return created.strftime(datefmt)
        return created.isoformat(timespec="milliseconds")

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        record.message = record.getMessage()
        obj: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and key not in _OWN_KEYS:
                obj[key] = _render(value)
        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            if isinstance(exc, RpcError):
                obj["error_code"] = exc.code.wire_name
            obj["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            obj["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(obj, ensure_ascii=False)
