# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Request and response metadata shared by every transport binding.

Centralises the well-known test metadata keys and the :class:`Metadata`
multimap so that ``rpc/``, ``http/`` and ``grpc/`` agree on key
normalization and on how binary (``-bin``) values are carried in text
headers.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Iterable, Iterator, Mapping
from typing import TypeAlias

__all__ = [
    "BINARY_SUFFIX",
    "INITIAL_METADATA_KEY",
    "TRAILING_METADATA_KEY",
    "Metadata",
    "MetadataValue",
    "decode_binary_header",
    "encode_binary_header",
    "is_binary_key",
]

# ---------------------------------------------------------------------------
# Well-known metadata keys
# ---------------------------------------------------------------------------

INITIAL_METADATA_KEY = "x-grpc-test-echo-initial"
TRAILING_METADATA_KEY = "x-grpc-test-echo-trailing-bin"
BINARY_SUFFIX = "-bin"

MetadataValue: TypeAlias = str | bytes


def is_binary_key(key: str) -> bool:
    """Return True when *key* carries binary values."""
    return key.lower().endswith(BINARY_SUFFIX)


def encode_binary_header(value: bytes) -> str:
    """Encode a binary metadata value for a text header (unpadded base64)."""
    return base64.b64encode(value).decode("ascii").rstrip("=")


def decode_binary_header(value: str) -> bytes:
    """Decode a binary header value, accepting padded or unpadded base64.

    Raises:
        ValueError: If *value* is not valid base64.

    """
    text = value.strip()
    text += "=" * (-len(text) % 4)
    try:
        if "-" in text or "_" in text:
            return base64.urlsafe_b64decode(text)
        return base64.b64decode(text, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"Invalid base64 in binary header: {value!r}") from exc


class Metadata:
    """Ordered multimap of lowercase keys to metadata values.

    Keys ending in ``-bin`` hold ``bytes``; every other key holds ``str``.
    Instances are mutable; bindings :meth:`copy` them at every request and
    response boundary so a handler never aliases the caller's object.
    """

    __slots__ = ("_items",)

    def __init__(self, items: Mapping[str, MetadataValue] | Iterable[tuple[str, MetadataValue]] | None = None) -> None:
        """Initialize from a mapping or an iterable of ``(key, value)`` pairs."""
        self._items: list[tuple[str, MetadataValue]] = []
        if items is None:
            return
        pairs = items.items() if isinstance(items, Mapping) else items
        for key, value in pairs:
            self.add(key, value)

    @staticmethod
    def _check(key: str, value: MetadataValue) -> tuple[str, MetadataValue]:
        key = key.lower()
        if not key:
            raise ValueError("Metadata keys must be non-empty")
        if is_binary_key(key):
            if not isinstance(value, bytes):
                raise TypeError(f"Metadata key {key!r} requires a bytes value, got {type(value).__name__}")
        elif not isinstance(value, str):
            raise TypeError(f"Metadata key {key!r} requires a str value, got {type(value).__name__}")
        return key, value

    def add(self, key: str, value: MetadataValue) -> None:
        """Append a value for *key*, keeping any existing values."""
        self._items.append(self._check(key, value))

    def set(self, key: str, value: MetadataValue) -> None:
        """Replace every value for *key* with *value*."""
        key, value = self._check(key, value)
        self._items = [(k, v) for k, v in self._items if k != key]
        self._items.append((key, value))

    def get(self, key: str, default: MetadataValue | None = None) -> MetadataValue | None:
        """Return the first value for *key*, or *default*."""
        key = key.lower()
        for k, v in self._items:
            if k == key:
                return v
        return default

    def get_all(self, key: str) -> list[MetadataValue]:
        """Return every value for *key* in insertion order."""
        key = key.lower()
        return [v for k, v in self._items if k == key]

    def keys(self) -> list[str]:
        """Return the distinct keys in first-seen order."""
        return list(dict.fromkeys(k for k, _ in self._items))

    def items(self) -> list[tuple[str, MetadataValue]]:
        """Return all ``(key, value)`` pairs in insertion order."""
        return list(self._items)

    def extend(self, other: Metadata) -> None:
        """Append every pair of *other*."""
        self._items.extend(other._items)

    def copy(self) -> Metadata:
        """Return an independent copy."""
        clone = Metadata()
        clone._items = list(self._items)
        return clone

    def to_text_pairs(self) -> list[tuple[str, str]]:
        """Render as text header pairs, base64-encoding binary values."""
        return [(k, encode_binary_header(v) if isinstance(v, bytes) else v) for k, v in self._items]

    @classmethod
    def from_text_pairs(cls, pairs: Iterable[tuple[str, str]]) -> Metadata:
        """Build from text header pairs, decoding ``-bin`` values."""
        md = cls()
        for key, value in pairs:
            md.add(key, decode_binary_header(value) if is_binary_key(key) else value)
        return md

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and any(k == key.lower() for k, _ in self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Metadata):
            return self._items == other._items
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"Metadata({self._items!r})"
