"""Test helper functions used across the harness test suites."""

from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


DEFAULT_TEST_USER_ID = 1


def _generate_rsa_private_key() -> str:
    """Generate an in-memory RSA private key as a PEM string."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


# Stable for one Python process: generated once on import, reused everywhere in tests.
TEST_PRIVATE_KEY = _generate_rsa_private_key()


def create_test_token(
    user_id: int = DEFAULT_TEST_USER_ID,
    private_key: str = TEST_PRIVATE_KEY,
    **extra_claims: Any,
) -> str:
    """Create a signed RS256 auth token carrying ``userId`` like the real server."""
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "userId": user_id,
        "sessionId": f"session-{user_id}",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=10)).timestamp()),
    }
    payload.update(extra_claims)
    return jwt.encode(payload, private_key, algorithm="RS256")


def token_with_payload_segment(segment: str) -> str:
    """Return a three-segment token whose middle segment is *segment* verbatim."""
    header = _b64url(json.dumps({"alg": "RS256", "typ": "JWT"}).encode())
    return f"{header}.{segment}.{_b64url(b'signature')}"


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def encode_payload(payload: Any) -> str:
    """base64url (no padding) encoding of *payload* as JSON."""
    return _b64url(json.dumps(payload).encode())
