"""
Unit tests for reading the user id from auth tokens.

The harness never verifies token signatures; it only reads the payload
segment.  These tests cover well-formed tokens as issued by the server
and a set of malformed ones.

Key SDET Concepts Demonstrated:
- Negative testing for malformed / tampered tokens
- Required-claim validation (userId)
"""

from __future__ import annotations

import pytest

from perf_app.client import decode_user_id
from perf_app.errors import DecodeError, HTTPStatusError, TokenDecodeError
from shared.test_helpers import create_test_token, encode_payload, token_with_payload_segment

pytestmark = pytest.mark.unit


def test_decode_user_id_from_payload_segment():
    """Test that the userId claim is read from an unsigned payload."""
    token = token_with_payload_segment(encode_payload({"userId": 42}))

    assert decode_user_id(token) == 42


def test_decode_user_id_reads_only_middle_segment():
    """Test that header and signature segments are not decoded."""
    token = "x." + encode_payload({"userId": 42}) + ".y"

    assert decode_user_id(token) == 42


def test_decode_user_id_from_signed_token():
    """Test that a token signed by an unknown key is still read."""
    assert decode_user_id(create_test_token(user_id=7)) == 7


@pytest.mark.parametrize(
    "token",
    [
        "",
        "not-a-token",
        "a." + encode_payload({"userId": 1}),
        token_with_payload_segment("!!!"),
        token_with_payload_segment(encode_payload([1, 2])),
        token_with_payload_segment(encode_payload({"sessionId": "abc"})),
        token_with_payload_segment(encode_payload({"userId": "42"})),
        token_with_payload_segment(encode_payload({"userId": True})),
    ],
)
def test_decode_user_id_rejects_malformed_tokens(token):
    """Test that malformed tokens raise TokenDecodeError."""
    with pytest.raises(TokenDecodeError) as exc_info:
        decode_user_id(token)

    assert isinstance(exc_info.value, DecodeError)


def test_http_status_error_message():
    """Test that status errors name the status, its phrase and the body."""
    assert str(HTTPStatusError(500, b"boom")) == "got status 500 Internal Server Error: boom"
    assert str(HTTPStatusError(599, b"")) == "got status 599 Unknown: "
