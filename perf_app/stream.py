"""
Decoder for the autoupdate change stream.

The autoupdate service keeps an HTTP response open and writes one JSON
object per line.  Each object maps opaque keys of the form
``"<collection>/<id>/<field>"`` to JSON values.  There is no fixed schema:
consumers pick the keys they care about through :class:`ChangeLine`.

Lines may be large (whole committee trees or poll results), so the
decoder accumulates chunks without a fixed buffer and only enforces an
upper bound per line.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from typing import Any

from perf_app.errors import DecodeError

DEFAULT_MAX_LINE_BYTES = 16 << 20

_decoder = json.JSONDecoder()


def iter_lines(
    chunks: Iterable[bytes], max_line_bytes: int = DEFAULT_MAX_LINE_BYTES
) -> Iterator[bytes]:
    """
    Split a stream of byte chunks into newline-delimited lines.

    Blank lines are skipped.  A trailing line without a newline is still
    yielded when the stream ends.

    Raises:
        DecodeError: If a single line grows beyond *max_line_bytes*.
    """
    pending = bytearray()
    for chunk in chunks:
        if not chunk:
            continue
        pending += chunk
        start = 0
        while True:
            end = pending.find(b"\n", start)
            if end == -1:
                break
            line = bytes(pending[start:end]).strip()
            start = end + 1
            if len(line) > max_line_bytes:
                raise DecodeError(f"line of {len(line)} bytes exceeds limit of {max_line_bytes}")
            if line:
                yield line
        del pending[:start]
        if len(pending) > max_line_bytes:
            raise DecodeError(f"line exceeds limit of {max_line_bytes} bytes")

    line = bytes(pending).strip()
    if line:
        yield line


class ChangeLine:
    """
    One decoded line of the change stream.

    Keeps the raw line so that a value can be forwarded byte for byte
    (the result of a backend action is handed on unchanged).
    """

    __slots__ = ("raw_line", "data")

    def __init__(self, raw_line: bytes, data: dict[str, Any]):
        self.raw_line = raw_line
        self.data = data

    @classmethod
    def decode(cls, raw_line: bytes) -> ChangeLine:
        try:
            data = json.loads(raw_line)
        except ValueError as exc:
            raise DecodeError(f"decoding autoupdate line: {exc}") from exc
        if not isinstance(data, dict):
            raise DecodeError(f"autoupdate line is a {type(data).__name__}, not an object")
        return cls(raw_line, data)

    def __contains__(self, key: str) -> bool:
        return key in self.data

    def value(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def project(self, keys: Iterable[str]) -> dict[str, Any]:
        """Return only the given keys that are present in this line."""
        return {key: self.data[key] for key in keys if key in self.data}

    def raw(self, key: str) -> bytes | None:
        """
        Return the raw JSON text of *key*'s value, or ``None`` if missing.

        Walks the top-level object with ``raw_decode`` so nested values keep
        their exact bytes (spacing, key order, number formatting).
        """
        if key not in self.data:
            return None

        text = self.raw_line.decode("utf-8")
        pos = _skip_ws(text, 0)
        if text[pos] != "{":
            return None
        pos = _skip_ws(text, pos + 1)
        found = None
        while pos < len(text) and text[pos] != "}":
            name, pos = _decoder.raw_decode(text, pos)
            pos = _skip_ws(text, pos)
            pos = _skip_ws(text, pos + 1)  # colon
            _, end = _decoder.raw_decode(text, pos)
            if name == key:
                found = text[pos:end].encode("utf-8")
            pos = _skip_ws(text, end)
            if pos < len(text) and text[pos] == ",":
                pos = _skip_ws(text, pos + 1)
        return found


def _skip_ws(text: str, pos: int) -> int:
    while pos < len(text) and text[pos] in " \t\r\n":
        pos += 1
    return pos


def iter_changes(
    chunks: Iterable[bytes], max_line_bytes: int = DEFAULT_MAX_LINE_BYTES
) -> Iterator[ChangeLine]:
    """
    Decode a newline-delimited JSON stream into :class:`ChangeLine` objects.

    The iterator is lazy and not replayable.  A malformed line ends the
    stream with :class:`DecodeError`; there is no recovery mid-stream.
    """
    for raw_line in iter_lines(chunks, max_line_bytes):
        yield ChangeLine.decode(raw_line)
