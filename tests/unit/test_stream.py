"""
Unit tests for the newline-delimited JSON stream decoder.

Key SDET Concepts Demonstrated:
- Boundary testing on chunk borders and line limits
- Negative testing for malformed lines
- Byte-exact checks on forwarded values
"""

from __future__ import annotations

import pytest

from perf_app.errors import DecodeError
from perf_app.stream import ChangeLine, iter_changes, iter_lines

pytestmark = pytest.mark.unit


def test_iter_lines_joins_lines_split_across_chunks():
    """Test that a line cut by a chunk border is yielded once, whole."""
    # Arrange
    chunks = [b'{"a":', b'1}\n{"b"', b":2}\n"]

    # Act
    lines = list(iter_lines(chunks))

    # Assert
    assert lines == [b'{"a":1}', b'{"b":2}']


def test_iter_lines_skips_blank_lines_and_keeps_trailing_line():
    """Test that empty lines are dropped and an unterminated last line is kept."""
    # Arrange
    chunks = [b"\n\n first \r\n", b"", b"\n", b"last"]

    # Act
    lines = list(iter_lines(chunks))

    # Assert
    assert lines == [b"first", b"last"]


def test_iter_lines_rejects_line_over_limit():
    """Test that a line larger than the limit ends the stream with DecodeError."""
    # Arrange
    chunks = [b"x" * 8, b"x" * 8]

    # Act / Assert
    with pytest.raises(DecodeError):
        list(iter_lines(chunks, max_line_bytes=10))


def test_iter_lines_accepts_line_at_limit():
    """Test that a line of exactly the limit is accepted."""
    # Act
    lines = list(iter_lines([b"y" * 10 + b"\n"], max_line_bytes=10))

    # Assert
    assert lines == [b"y" * 10]


def test_iter_changes_decodes_objects():
    """Test that every line becomes a ChangeLine with its parsed data."""
    # Arrange
    chunks = [b'{"user/1/name": "a"}\n{"user/2/name": "b"}\n']

    # Act
    changes = list(iter_changes(chunks))

    # Assert
    assert [change.data for change in changes] == [{"user/1/name": "a"}, {"user/2/name": "b"}]


@pytest.mark.parametrize("raw_line", [b"{not json", b"[1, 2]", b'"text"'])
def test_change_line_rejects_non_objects(raw_line):
    """Test that invalid JSON and non-object lines raise DecodeError."""
    with pytest.raises(DecodeError):
        ChangeLine.decode(raw_line)


def test_iter_changes_stops_at_first_malformed_line():
    """Test that decoding stops at a malformed line without skipping it."""
    # Arrange
    changes = iter_changes([b'{"a": 1}\nbroken\n{"b": 2}\n'])

    # Act / Assert
    assert next(changes).data == {"a": 1}
    with pytest.raises(DecodeError):
        next(changes)


def test_change_line_raw_returns_exact_bytes():
    """Test that raw() hands on a nested value byte for byte."""
    # Arrange
    line = ChangeLine.decode(
        b'{"action_worker/1/state": "end", "action_worker/1/result": {"z": 1,  "a": [1.50]}}'
    )

    # Act
    raw = line.raw("action_worker/1/result")

    # Assert
    assert raw == b'{"z": 1,  "a": [1.50]}'


def test_change_line_raw_missing_key_is_none():
    """Test that raw() returns None for a key that is not in the line."""
    line = ChangeLine.decode(b'{"a": 1}')

    assert line.raw("b") is None


def test_change_line_raw_uses_last_duplicate_key():
    """Test that raw() agrees with the parsed value for duplicated keys."""
    # Arrange
    line = ChangeLine.decode(b'{"k": 1, "k": "second"}')

    # Act / Assert
    assert line.value("k") == "second"
    assert line.raw("k") == b'"second"'


def test_change_line_project_and_contains():
    """Test that project() keeps only present keys."""
    # Arrange
    line = ChangeLine.decode(b'{"a/1/x": 1, "a/1/y": null, "b/1/x": 3}')

    # Act
    projected = line.project(["a/1/x", "a/1/y", "a/1/z"])

    # Assert
    assert projected == {"a/1/x": 1, "a/1/y": None}
    assert "b/1/x" in line
    assert "a/1/z" not in line
    assert line.value("a/1/z", "missing") == "missing"
